"""Invocation pipeline for cloud code handlers.

Executes one normalized handler for one event:
- applies the registration's access checks and validator
- races the handler against the configured deadline
- converts any failure into a NormalizedError
- writes a trigger log line (input and result, truncated)

Timeouts are non-preemptive. When the deadline passes, the pipeline stops
waiting and reports a TIMEOUT error, but the handler task keeps running
until it finishes on its own; its late result is discarded. Resources the
handler acquired are not reclaimed. Setting ``cancel_on_timeout`` cancels
the task instead, which interrupts it at its next ``await`` only.
"""

import asyncio
import inspect
import json
import logging
import time
from typing import Any

from cloudforge.settings import CloudSettings
from cloudforge.triggers.errors import (
    ErrorCode,
    NormalizedError,
    normalize_error,
    timeout_error,
    validation_error,
)
from cloudforge.triggers.handlers import NormalizedHandler
from cloudforge.triggers.types import (
    EventContext,
    EventKind,
    HandlerRegistration,
    HookOptions,
    InvocationResult,
)

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "... (truncated)"


def truncate_log_message(text: str, limit: int) -> str:
    """Cut text to at most ``limit`` characters plus a truncation marker."""
    if limit <= 0 or len(text) <= limit:
        return text
    return text[:limit] + TRUNCATION_MARKER


class InvocationPipeline:
    """Runs normalized handlers with deadline and error normalization.

    A pipeline holds no per-invocation state, so one instance serves
    every concurrent invocation in the process.
    """

    def __init__(self, settings: CloudSettings | None = None):
        self.settings = settings or CloudSettings()
        self._abandoned: set[asyncio.Task] = set()

    @property
    def abandoned_count(self) -> int:
        """Number of timed-out handler tasks still running."""
        return len(self._abandoned)

    def effective_timeout(
        self,
        kind: EventKind,
        options: HookOptions,
        timeout_ms: int | None = None,
    ) -> int | None:
        """Resolve the deadline: explicit > registration > configured default."""
        if timeout_ms is not None:
            return timeout_ms
        if options.timeout_ms is not None:
            return options.timeout_ms
        if kind is EventKind.JOB:
            return self.settings.job_timeout_ms
        return self.settings.trigger_timeout_ms

    async def execute(
        self,
        handler: HandlerRegistration | NormalizedHandler,
        context: EventContext,
        timeout_ms: int | None = None,
    ) -> InvocationResult:
        """Execute a handler for one event.

        Args:
            handler: A registration (carrying options) or a bare normalized handler
            context: The event context
            timeout_ms: Deadline override; None falls back to the registration
                option, then to the configured default for the event kind

        Returns:
            InvocationResult holding either the handler's value or a
            NormalizedError. This method does not raise for handler failures.
        """
        if isinstance(handler, HandlerRegistration):
            fn = handler.handler
            options = handler.options
        else:
            fn = handler
            options = HookOptions()

        started = time.monotonic()

        rejected = await self._check_access(options, context)
        if rejected is not None:
            self._log_failure(context, rejected)
            return InvocationResult(error=rejected, elapsed_ms=_elapsed_ms(started))

        deadline_ms = self.effective_timeout(context.kind, options, timeout_ms)
        task = asyncio.ensure_future(fn(context))
        done, _ = await asyncio.wait(
            {task},
            timeout=deadline_ms / 1000 if deadline_ms is not None else None,
        )

        if task not in done:
            self._abandon(task, context)
            error = timeout_error(deadline_ms)
            self._log_failure(context, error)
            return InvocationResult(
                error=error, timed_out=True, elapsed_ms=_elapsed_ms(started)
            )

        elapsed = _elapsed_ms(started)
        if task.cancelled():
            error = NormalizedError(ErrorCode.SCRIPT_FAILED, "Script was cancelled.")
            self._log_failure(context, error)
            return InvocationResult(error=error, elapsed_ms=elapsed)

        try:
            value = task.result()
        except Exception as exc:
            error = normalize_error(exc)
            self._log_failure(context, error, exc)
            return InvocationResult(error=error, elapsed_ms=elapsed)

        self._log_success(context, value)
        return InvocationResult(value=value, elapsed_ms=elapsed)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for abandoned handler tasks to finish (shutdown, tests)."""
        if self._abandoned:
            await asyncio.wait(set(self._abandoned), timeout=timeout)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _check_access(
        self, options: HookOptions, context: EventContext
    ) -> NormalizedError | None:
        if options.require_master and not context.is_master:
            return validation_error("Validation failed. Master key is required to complete this request.")
        if options.require_user and not context.is_master and not context.user:
            return validation_error("Validation failed. Please login to continue.")
        if options.validator is None:
            return None

        try:
            passed = options.validator(context)
            if inspect.isawaitable(passed):
                passed = await passed
        except Exception as exc:
            return normalize_error(exc)
        if not passed:
            return validation_error()
        return None

    def _abandon(self, task: asyncio.Task, context: EventContext) -> None:
        if self.settings.cancel_on_timeout:
            task.cancel()
            return
        self._abandoned.add(task)
        task.add_done_callback(self._on_abandoned_done)
        logger.warning(
            "%s for %s exceeded its deadline; abandoning without interrupting",
            context.trigger_name,
            context.class_name,
        )

    def _on_abandoned_done(self, task: asyncio.Task) -> None:
        self._abandoned.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.debug("Abandoned handler failed after its deadline: %s", exc)
        else:
            logger.debug("Abandoned handler finished after its deadline; result discarded")

    def _describe(self, context: EventContext) -> str:
        user = context.user or ("master" if context.is_master else "undefined")
        return f"{context.class_name} for user {user}"

    def _input_of(self, context: EventContext) -> Any:
        if context.kind in (EventKind.FUNCTION, EventKind.JOB):
            return context.params
        if context.kind is EventKind.BEFORE_FIND:
            return context.query
        if context.kind is EventKind.AFTER_FIND:
            return context.objects
        return context.object

    def _dump(self, value: Any) -> str:
        try:
            text = json.dumps(value, default=str)
        except (TypeError, ValueError):
            text = repr(value)
        return truncate_log_message(text, self.settings.log_truncate_length)

    def _log_success(self, context: EventContext, value: Any) -> None:
        if not logger.isEnabledFor(logging.INFO):
            return
        trigger_input = self._dump(self._input_of(context))
        if context.kind.is_after:
            logger.info(
                "%s triggered for %s:\n  Input: %s",
                context.trigger_name,
                self._describe(context),
                trigger_input,
            )
            return
        if context.kind in (EventKind.BEFORE_SAVE, EventKind.BEFORE_DELETE):
            value = context.object
        logger.info(
            "%s triggered for %s:\n  Input: %s\n  Result: %s",
            context.trigger_name,
            self._describe(context),
            trigger_input,
            self._dump(value),
        )

    def _log_failure(
        self,
        context: EventContext,
        error: NormalizedError,
        exc: BaseException | None = None,
    ) -> None:
        logger.error(
            "%s failed for %s:\n  Input: %s\n  Error: %s",
            context.trigger_name,
            self._describe(context),
            self._dump(self._input_of(context)),
            self._dump(error.to_dict()),
            exc_info=exc if error.code == ErrorCode.SCRIPT_FAILED and exc is not None else None,
        )


def _elapsed_ms(started: float) -> float:
    return (time.monotonic() - started) * 1000
