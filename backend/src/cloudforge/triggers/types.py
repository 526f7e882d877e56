"""Trigger system types for CloudForge.

Defines the core data structures shared by the registry, the invocation
pipeline and the job runner:
- EventKind: the fixed set of events a handler can be bound to
- CallerIdentity: who triggered the invocation
- EventContext: runtime state passed to every handler
- HookOptions: per-registration options
- InvocationResult: normalized outcome of one pipeline execution
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from cloudforge.triggers.errors import NormalizedError

if TYPE_CHECKING:
    from cloudforge.triggers.handlers import NormalizedHandler

handler_logger = logging.getLogger("cloudforge.cloud")


class EventKind(Enum):
    """Events a handler can be registered for."""

    BEFORE_SAVE = "beforeSave"
    AFTER_SAVE = "afterSave"
    BEFORE_DELETE = "beforeDelete"
    AFTER_DELETE = "afterDelete"
    BEFORE_FIND = "beforeFind"
    AFTER_FIND = "afterFind"
    FUNCTION = "function"
    JOB = "job"

    @property
    def is_before(self) -> bool:
        return self in (EventKind.BEFORE_SAVE, EventKind.BEFORE_DELETE, EventKind.BEFORE_FIND)

    @property
    def is_after(self) -> bool:
        return self in (EventKind.AFTER_SAVE, EventKind.AFTER_DELETE, EventKind.AFTER_FIND)

    @property
    def is_hook(self) -> bool:
        return self.is_before or self.is_after


HOOK_KINDS = tuple(kind for kind in EventKind if kind.is_hook)


@dataclass(frozen=True)
class CallerIdentity:
    """Identity and permission level of whoever triggered the invocation.

    Attributes:
        user_id: Authenticated user ID, None for anonymous callers
        tenant_id: Tenant the caller acts in, if any
        roles: Role names held by the caller
        is_master: True for elevated callers that bypass permission checks
        installation_id: Client installation identifier, if supplied
        ip: Remote address of the request, if known
    """

    user_id: str | None = None
    tenant_id: str | None = None
    roles: tuple[str, ...] = ()
    is_master: bool = False
    installation_id: str | None = None
    ip: str | None = None

    @classmethod
    def master(cls) -> "CallerIdentity":
        return cls(is_master=True)

    @classmethod
    def anonymous(cls) -> "CallerIdentity":
        return cls()

    def to_dict(self) -> dict[str, Any]:
        return {
            "userId": self.user_id,
            "tenantId": self.tenant_id,
            "roles": list(self.roles),
            "master": self.is_master,
            "installationId": self.installation_id,
            "ip": self.ip,
        }


@dataclass
class HookOptions:
    """Per-registration options.

    Attributes:
        fields: Fields the hook needs fetched. For afterFind, the reference
            API adds them to a keys projection before querying; the
            pipeline itself never fetches
        timeout_ms: Overrides the configured default timeout for this handler
        require_master: Reject callers without master permission
        require_user: Reject anonymous callers
        validator: Callable(context) -> bool (or awaitable bool) run before
            the handler; a falsy result rejects the invocation
    """

    fields: list[str] = field(default_factory=list)
    timeout_ms: int | None = None
    require_master: bool = False
    require_user: bool = False
    validator: Callable[["EventContext"], Any] | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HookOptions":
        """Create HookOptions from a YAML/JSON style dict."""
        fields = data.get("fields", [])
        if isinstance(fields, str):
            fields = [fields]

        return cls(
            fields=list(fields),
            timeout_ms=data.get("timeoutMs"),
            require_master=bool(data.get("requireMaster", False)),
            require_user=bool(data.get("requireUser", False)),
            validator=data.get("validator"),
        )


@dataclass(frozen=True)
class HandlerRegistration:
    """A normalized handler bound to (class_name, kind)."""

    class_name: str
    kind: EventKind
    handler: "NormalizedHandler"
    options: HookOptions = field(default_factory=HookOptions)

    @property
    def key(self) -> tuple[str, EventKind]:
        return (self.class_name, self.kind)


@dataclass(frozen=True)
class EventContext:
    """Runtime context passed to every handler.

    The context itself is never reassigned after creation. Before hooks
    influence the eventual write by mutating ``object`` in place.

    Attributes:
        class_name: Entity class (or function/job name for those kinds)
        kind: The event being handled
        object: Target object (save/delete hooks)
        original: Snapshot of the persisted state before this write
        caller: Identity and permission level of the caller
        params: Caller-supplied parameters (functions and jobs)
        query: Query constraints (beforeFind)
        objects: Query results (afterFind)
        headers: Request headers, if the invocation came through HTTP
        job_id: Run identifier (jobs only)
        message_sink: Receives message() calls; set by the job runner
    """

    class_name: str
    kind: EventKind
    object: dict[str, Any] | None = None
    original: dict[str, Any] | None = None
    caller: CallerIdentity = field(default_factory=CallerIdentity)
    params: dict[str, Any] = field(default_factory=dict)
    query: dict[str, Any] | None = None
    objects: list[dict[str, Any]] | None = None
    headers: dict[str, str] = field(default_factory=dict)
    job_id: str | None = None
    message_sink: Callable[[str], None] | None = field(
        default=None, repr=False, compare=False
    )

    @property
    def trigger_name(self) -> str:
        return self.kind.value

    @property
    def is_master(self) -> bool:
        return self.caller.is_master

    @property
    def user(self) -> str | None:
        return self.caller.user_id

    @property
    def changes(self) -> dict[str, Any] | None:
        if self.object is None:
            return None
        return compute_changes(self.object, self.original)

    @property
    def log(self) -> logging.LoggerAdapter:
        """Logger handlers should use, tagged with the trigger and class."""
        return logging.LoggerAdapter(
            handler_logger,
            {"trigger": self.trigger_name, "class_name": self.class_name},
        )

    def message(self, text: str) -> None:
        """Report progress.

        For job runs this appends to the run's progress log; elsewhere the
        text is only logged.
        """
        if self.message_sink is not None:
            self.message_sink(str(text))
        else:
            self.log.info("%s %s: %s", self.trigger_name, self.class_name, text)


@dataclass(frozen=True)
class InvocationResult:
    """Outcome of one pipeline execution.

    Attributes:
        value: Handler return value (or the context object for before hooks)
        error: Normalized failure, None on success
        timed_out: True if the handler was abandoned at the deadline
        elapsed_ms: Wall-clock time spent awaiting the handler
    """

    value: Any = None
    error: NormalizedError | None = None
    timed_out: bool = False
    elapsed_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None


def compute_changes(
    record: dict[str, Any], original: dict[str, Any] | None
) -> dict[str, Any] | None:
    """Compute a diff of changed fields between record and original.

    Returns None if original is None (create operations).
    Returns a dict of {field: new_value} for fields that differ.
    """
    if original is None:
        return None

    changes: dict[str, Any] = {}
    for key, value in record.items():
        if key not in original or original[key] != value:
            changes[key] = value

    return changes
