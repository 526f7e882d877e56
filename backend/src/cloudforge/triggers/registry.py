"""Trigger registry for CloudForge.

Maps (class_name, event kind) to a normalized hook handler, and function
and job names to their handlers. The registry is an explicit instance
owned by the server process and handed to the pipeline and job runner.
"""

import threading
from collections.abc import Callable
from typing import Any

from cloudforge.triggers.errors import HandlerShapeError
from cloudforge.triggers.handlers import Convention, normalize_handler
from cloudforge.triggers.types import EventKind, HandlerRegistration, HookOptions

# Classes that only accept after hooks
AFTER_ONLY_CLASSES = ("_PushStatus", "_JobStatus")


def _coerce_kind(kind: EventKind | str) -> EventKind:
    try:
        return EventKind(kind)
    except ValueError as e:
        raise HandlerShapeError(f"Unknown event kind: {kind!r}") from e


def _known_kind(kind: EventKind | str) -> EventKind | None:
    try:
        return EventKind(kind)
    except ValueError:
        return None


class TriggerRegistry:
    """Registry for hooks, functions and jobs.

    Registering the same key again replaces the previous handler. Lookups
    of unregistered keys return None; that is a normal outcome meaning
    "nothing configured".

    Example:
        registry = TriggerRegistry()

        @registry.hook("Contact", EventKind.BEFORE_SAVE)
        async def normalize_email(ctx):
            ctx.object["email"] = ctx.object["email"].lower()
    """

    def __init__(self) -> None:
        self._hooks: dict[tuple[str, EventKind], HandlerRegistration] = {}
        self._functions: dict[str, HandlerRegistration] = {}
        self._jobs: dict[str, HandlerRegistration] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    def register_hook(
        self,
        class_name: str,
        kind: EventKind | str,
        handler: Any,
        options: HookOptions | None = None,
        convention: Convention | str | None = None,
    ) -> HandlerRegistration:
        """Register a lifecycle hook, replacing any existing one.

        Raises:
            HandlerShapeError: If the kind is not a hook kind, the class
                does not accept it, or the handler shape is unrecognized
        """
        kind = _coerce_kind(kind)
        if not kind.is_hook:
            raise HandlerShapeError(
                f"'{kind.value}' is not a hook event; use register_function/register_job"
            )
        if not class_name:
            raise HandlerShapeError("Hooks require a class name")
        if class_name in AFTER_ONLY_CLASSES and not kind.is_after:
            raise HandlerShapeError(f"Only after hooks are allowed for the {class_name} class")

        registration = HandlerRegistration(
            class_name=class_name,
            kind=kind,
            handler=normalize_handler(handler, convention, name=f"{kind.value}.{class_name}"),
            options=options or HookOptions(),
        )
        with self._lock:
            self._hooks[registration.key] = registration
        return registration

    def lookup(self, class_name: str, kind: EventKind | str) -> HandlerRegistration | None:
        """Get the hook registered for (class_name, kind), or None.

        An unknown kind has nothing registered under it and also gives None.
        """
        return self._hooks.get((class_name, _known_kind(kind)))

    def unregister(self, class_name: str, kind: EventKind | str) -> None:
        """Remove a hook. Removing an absent hook (or unknown kind) is a no-op."""
        with self._lock:
            self._hooks.pop((class_name, _known_kind(kind)), None)

    def list_hooks(self) -> list[tuple[str, EventKind]]:
        """List registered (class_name, kind) pairs, sorted."""
        return sorted(self._hooks.keys(), key=lambda key: (key[0], key[1].value))

    # ------------------------------------------------------------------
    # Functions
    # ------------------------------------------------------------------

    def register_function(
        self,
        name: str,
        handler: Any,
        options: HookOptions | None = None,
        convention: Convention | str | None = None,
    ) -> HandlerRegistration:
        """Register a cloud function, replacing any existing one."""
        if not name:
            raise HandlerShapeError("Functions require a name")
        registration = HandlerRegistration(
            class_name=name,
            kind=EventKind.FUNCTION,
            handler=normalize_handler(handler, convention, name=f"function.{name}"),
            options=options or HookOptions(),
        )
        with self._lock:
            self._functions[name] = registration
        return registration

    def get_function(self, name: str) -> HandlerRegistration | None:
        return self._functions.get(name)

    def remove_function(self, name: str) -> None:
        with self._lock:
            self._functions.pop(name, None)

    def list_functions(self) -> list[str]:
        return sorted(self._functions.keys())

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def register_job(
        self,
        name: str,
        handler: Any,
        options: HookOptions | None = None,
        convention: Convention | str | None = None,
    ) -> HandlerRegistration:
        """Register a background job, replacing any existing one."""
        if not name:
            raise HandlerShapeError("Jobs require a name")
        registration = HandlerRegistration(
            class_name=name,
            kind=EventKind.JOB,
            handler=normalize_handler(handler, convention, name=f"job.{name}"),
            options=options or HookOptions(),
        )
        with self._lock:
            self._jobs[name] = registration
        return registration

    def get_job(self, name: str) -> HandlerRegistration | None:
        return self._jobs.get(name)

    def remove_job(self, name: str) -> None:
        with self._lock:
            self._jobs.pop(name, None)

    def list_jobs(self) -> list[str]:
        return sorted(self._jobs.keys())

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def clear(self) -> None:
        """Remove every registration. Primarily for testing."""
        with self._lock:
            self._hooks.clear()
            self._functions.clear()
            self._jobs.clear()

    # ------------------------------------------------------------------
    # Decorators
    # ------------------------------------------------------------------

    def hook(
        self,
        class_name: str,
        kind: EventKind | str,
        convention: Convention | str | None = None,
        **options: Any,
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Decorator form of register_hook.

        Usage:
            @registry.hook("Contract", "beforeSave", timeout_ms=500)
            async def compute_total(ctx):
                ...
        """

        def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
            self.register_hook(class_name, kind, fn, HookOptions(**options), convention)
            return fn

        return decorator

    def function(
        self,
        name: str,
        convention: Convention | str | None = None,
        **options: Any,
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Decorator form of register_function."""

        def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
            self.register_function(name, fn, HookOptions(**options), convention)
            return fn

        return decorator

    def job(
        self,
        name: str,
        convention: Convention | str | None = None,
        **options: Any,
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Decorator form of register_job."""

        def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
            self.register_job(name, fn, HookOptions(**options), convention)
            return fn

        return decorator
