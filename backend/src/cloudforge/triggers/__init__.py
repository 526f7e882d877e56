"""CloudForge trigger system.

Runs user-supplied cloud code around data writes and on demand:
- beforeSave / beforeDelete: run before the write (can mutate, can abort)
- afterSave / afterDelete: run after the write (notifications, never roll back)
- beforeFind / afterFind: rewrite a query or its results
- functions: invoked by name, return a value

Usage:
    from cloudforge.triggers import EventKind, TriggerRegistry

    registry = TriggerRegistry()

    @registry.hook("Contract", EventKind.BEFORE_SAVE)
    async def compute_total(ctx):
        ctx.object["total"] = sum(i["amount"] for i in ctx.object["items"])

    @registry.function("hello")
    def hello(ctx, responder):
        responder.success(f"Hello {ctx.params.get('name', 'world')}")
"""

from cloudforge.triggers.errors import (
    CloudError,
    ErrorCode,
    HandlerShapeError,
    NormalizedError,
    normalize_error,
)
from cloudforge.triggers.handlers import (
    Convention,
    NormalizedHandler,
    Responder,
    normalize_handler,
)
from cloudforge.triggers.pipeline import InvocationPipeline
from cloudforge.triggers.registry import TriggerRegistry
from cloudforge.triggers.service import TriggerService, WriteOutcome
from cloudforge.triggers.types import (
    HOOK_KINDS,
    CallerIdentity,
    EventContext,
    EventKind,
    HandlerRegistration,
    HookOptions,
    InvocationResult,
    compute_changes,
)

__all__ = [
    "HOOK_KINDS",
    "CallerIdentity",
    "CloudError",
    "Convention",
    "ErrorCode",
    "EventContext",
    "EventKind",
    "HandlerRegistration",
    "HandlerShapeError",
    "HookOptions",
    "InvocationPipeline",
    "InvocationResult",
    "NormalizedError",
    "NormalizedHandler",
    "Responder",
    "TriggerRegistry",
    "TriggerService",
    "WriteOutcome",
    "compute_changes",
    "normalize_error",
    "normalize_handler",
]
