"""Trigger points for CloudForge.

Orchestrates lifecycle hooks and cloud functions around the persistence
layer:
- before hooks gate a write: any failure aborts it
- the write runs only after the before hook has fully completed
- after hooks run only after the write has completed; their failures
  are logged and reported but never undo the write
"""

import copy
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from cloudforge.triggers.errors import ErrorCode, NormalizedError
from cloudforge.triggers.pipeline import InvocationPipeline
from cloudforge.triggers.registry import TriggerRegistry
from cloudforge.triggers.types import (
    CallerIdentity,
    EventContext,
    EventKind,
    InvocationResult,
)

logger = logging.getLogger(__name__)

# write(object) -> saved object; may be sync or async
WriteFn = Callable[[dict[str, Any]], dict[str, Any] | Awaitable[dict[str, Any]]]
# delete(object) -> anything; may be sync or async
DeleteFn = Callable[[dict[str, Any]], Any]


@dataclass
class WriteOutcome:
    """Result of a guarded write or delete.

    Attributes:
        object: The object as written (None if the write was aborted)
        error: Before-hook failure that aborted the write
        after_error: After-hook failure (the write still happened)
    """

    object: dict[str, Any] | None = None
    error: NormalizedError | None = None
    after_error: NormalizedError | None = None

    @property
    def written(self) -> bool:
        return self.error is None


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class TriggerService:
    """Runs hooks and functions for incoming events.

    Args:
        registry: Where handlers are looked up
        pipeline: Executes the handlers
    """

    def __init__(self, registry: TriggerRegistry, pipeline: InvocationPipeline):
        self.registry = registry
        self.pipeline = pipeline

    def has_hook(self, class_name: str, kind: EventKind) -> bool:
        return self.registry.lookup(class_name, kind) is not None

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    async def run_before_hook(
        self, class_name: str, context: EventContext
    ) -> InvocationResult:
        """Run the before hook for context.kind.

        On success the result value is the dict the handler returned, or
        the context object as the handler left it when it returned anything
        else. That is what the persistence layer may write. With no hook
        registered the object passes through untouched.
        """
        registration = self.registry.lookup(class_name, context.kind)
        if registration is None:
            return InvocationResult(value=context.object)

        result = await self.pipeline.execute(registration, context)
        if not result.ok:
            return result
        value = result.value if isinstance(result.value, dict) else context.object
        return InvocationResult(value=value, elapsed_ms=result.elapsed_ms)

    async def run_after_hook(
        self, class_name: str, context: EventContext
    ) -> InvocationResult:
        """Run the after hook for context.kind.

        Failures are logged and returned, never raised: the operation
        the hook reports on has already happened.
        """
        registration = self.registry.lookup(class_name, context.kind)
        if registration is None:
            return InvocationResult(value=context.object)

        result = await self.pipeline.execute(registration, context)
        if not result.ok:
            logger.error(
                "%s hook for %s failed (operation not rolled back): [%s] %s",
                context.trigger_name,
                class_name,
                result.error.code,
                result.error.message,
            )
        return result

    # ------------------------------------------------------------------
    # Guarded writes
    # ------------------------------------------------------------------

    async def run_guarded_write(
        self,
        class_name: str,
        object: dict[str, Any],
        caller: CallerIdentity,
        write: WriteFn,
        original: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> WriteOutcome:
        """beforeSave -> write -> afterSave, strictly in that order.

        Args:
            class_name: Entity class being written
            object: The object to write (before hooks may mutate it)
            caller: Who is writing
            write: Persists the object and returns the saved version
            original: Persisted state before this write (None on create)
            headers: Request headers to expose to handlers
        """
        snapshot = copy.deepcopy(original) if original is not None else None
        before_ctx = EventContext(
            class_name=class_name,
            kind=EventKind.BEFORE_SAVE,
            object=object,
            original=snapshot,
            caller=caller,
            headers=headers or {},
        )
        before = await self.run_before_hook(class_name, before_ctx)
        if not before.ok:
            return WriteOutcome(error=before.error)

        saved = await _maybe_await(write(before.value))

        after_ctx = EventContext(
            class_name=class_name,
            kind=EventKind.AFTER_SAVE,
            object=saved,
            original=snapshot,
            caller=caller,
            headers=headers or {},
        )
        after = await self.run_after_hook(class_name, after_ctx)
        return WriteOutcome(object=saved, after_error=after.error)

    async def run_guarded_delete(
        self,
        class_name: str,
        object: dict[str, Any],
        caller: CallerIdentity,
        delete: DeleteFn,
        headers: dict[str, str] | None = None,
    ) -> WriteOutcome:
        """beforeDelete -> delete -> afterDelete, strictly in that order."""
        before_ctx = EventContext(
            class_name=class_name,
            kind=EventKind.BEFORE_DELETE,
            object=object,
            original=copy.deepcopy(object),
            caller=caller,
            headers=headers or {},
        )
        before = await self.run_before_hook(class_name, before_ctx)
        if not before.ok:
            return WriteOutcome(error=before.error)

        await _maybe_await(delete(before.value))

        after_ctx = EventContext(
            class_name=class_name,
            kind=EventKind.AFTER_DELETE,
            object=before.value,
            caller=caller,
            headers=headers or {},
        )
        after = await self.run_after_hook(class_name, after_ctx)
        return WriteOutcome(object=object, after_error=after.error)

    # ------------------------------------------------------------------
    # Find hooks
    # ------------------------------------------------------------------

    async def run_before_find(
        self,
        class_name: str,
        query: dict[str, Any],
        caller: CallerIdentity,
        headers: dict[str, str] | None = None,
    ) -> InvocationResult:
        """Run beforeFind; the value is the effective query.

        The handler may mutate ctx.query in place or return a new dict.
        """
        context = EventContext(
            class_name=class_name,
            kind=EventKind.BEFORE_FIND,
            query=query,
            caller=caller,
            headers=headers or {},
        )
        registration = self.registry.lookup(class_name, EventKind.BEFORE_FIND)
        if registration is None:
            return InvocationResult(value=query)

        result = await self.pipeline.execute(registration, context)
        if not result.ok:
            return result
        effective = result.value if isinstance(result.value, dict) else context.query
        return InvocationResult(value=effective, elapsed_ms=result.elapsed_ms)

    async def run_after_find(
        self,
        class_name: str,
        objects: list[dict[str, Any]],
        caller: CallerIdentity,
        headers: dict[str, str] | None = None,
    ) -> InvocationResult:
        """Run afterFind; the value is the result list to return.

        A list returned by the handler replaces the results; otherwise
        ctx.objects (possibly mutated) is used. A failure fails the query.
        """
        context = EventContext(
            class_name=class_name,
            kind=EventKind.AFTER_FIND,
            objects=objects,
            caller=caller,
            headers=headers or {},
        )
        registration = self.registry.lookup(class_name, EventKind.AFTER_FIND)
        if registration is None:
            return InvocationResult(value=objects)

        result = await self.pipeline.execute(registration, context)
        if not result.ok:
            return result
        effective = result.value if isinstance(result.value, list) else context.objects
        return InvocationResult(value=effective, elapsed_ms=result.elapsed_ms)

    # ------------------------------------------------------------------
    # Functions
    # ------------------------------------------------------------------

    async def run_function(self, name: str, context: EventContext) -> InvocationResult:
        """Invoke a cloud function by name."""
        registration = self.registry.get_function(name)
        if registration is None:
            return InvocationResult(
                error=NormalizedError(ErrorCode.SCRIPT_FAILED, f'Invalid function: "{name}"')
            )
        return await self.pipeline.execute(registration, context)

    async def call_function(
        self,
        name: str,
        params: dict[str, Any] | None = None,
        caller: CallerIdentity | None = None,
        headers: dict[str, str] | None = None,
    ) -> InvocationResult:
        """Build a function context and run it."""
        context = EventContext(
            class_name=name,
            kind=EventKind.FUNCTION,
            caller=caller or CallerIdentity(),
            params=params or {},
            headers=headers or {},
        )
        return await self.run_function(name, context)
