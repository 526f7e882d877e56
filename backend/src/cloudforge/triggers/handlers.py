"""Handler contract normalization.

Cloud code handlers come in two shapes:

- value handlers: ``handler(ctx)`` returns the outcome (or an awaitable
  of it) and fails by raising.
- responder handlers: ``handler(ctx, responder)`` reports the outcome
  through ``responder.success(value)`` / ``responder.error(err)`` and may
  report job progress through ``responder.message(text)``.

Both are wrapped once, at registration time, into a NormalizedHandler:
an async callable ``await handler(ctx) -> value`` that raises on failure.
Nothing past registration branches on the calling convention.

Sync handlers (of either shape) are run with asyncio.to_thread, so a
blocking handler keeps the event loop free and the pipeline deadline
still fires on time. The thread itself cannot be stopped; a timed-out
sync handler runs to completion in the background.
"""

import asyncio
import inspect
import logging
from collections.abc import Callable
from enum import Enum
from typing import Any

from cloudforge.triggers.errors import CloudError, HandlerShapeError, normalize_error
from cloudforge.triggers.types import EventContext

logger = logging.getLogger(__name__)

_POSITIONAL = (
    inspect.Parameter.POSITIONAL_ONLY,
    inspect.Parameter.POSITIONAL_OR_KEYWORD,
)


class Convention(Enum):
    """Calling convention of a registered handler."""

    VALUE = "value"
    RESPONDER = "responder"


class Responder:
    """Side channel handed to responder-style handlers.

    The first call to success() or error() settles the outcome; later
    calls are ignored. Settlement is safe to call from other threads.
    """

    def __init__(self, future: asyncio.Future, context: EventContext):
        self._future = future
        self._loop = future.get_loop()
        self._context = context
        self._body: asyncio.Future | None = None

    @property
    def settled(self) -> bool:
        return self._future.done()

    def success(self, value: Any = None) -> None:
        self._settle(self._resolve, value)

    def error(self, err: Any = None) -> None:
        self._settle(self._reject, err)

    def message(self, text: str) -> None:
        self._context.message(text)

    def _settle(self, fn: Callable[[Any], None], arg: Any) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            fn(arg)
        else:
            self._loop.call_soon_threadsafe(fn, arg)

    def _resolve(self, value: Any) -> None:
        if self._future.done():
            logger.debug("Ignoring success() on settled responder for %s", self._context.class_name)
            return
        self._future.set_result(value)

    def _reject(self, err: Any) -> None:
        if self._future.done():
            logger.debug("Ignoring error() on settled responder for %s", self._context.class_name)
            return
        if isinstance(err, Exception):
            self._future.set_exception(err)
        else:
            normalized = normalize_error(err)
            self._future.set_exception(CloudError(normalized.code, normalized.message))

    def _watch_body(self, body: Any) -> None:
        """Reject the outcome if the handler body fails before settling."""
        self._body = asyncio.ensure_future(body)
        self._body.add_done_callback(self._on_body_done)

    def _on_body_done(self, body: asyncio.Future) -> None:
        if body.cancelled():
            return
        exc = body.exception()
        if exc is not None:
            self._reject(exc)
            return
        # A sync body run in a worker thread may still hand back an awaitable
        returned = body.result()
        if inspect.isawaitable(returned):
            self._watch_body(returned)


class NormalizedHandler:
    """Uniform async wrapper around a registered handler.

    Attributes:
        fn: The user-supplied callable
        convention: How fn reports its outcome
        name: Human-readable name for logs
    """

    def __init__(self, fn: Callable[..., Any], convention: Convention, name: str | None = None):
        self.fn = fn
        self.convention = convention
        self.name = name or getattr(fn, "__qualname__", None) or repr(fn)

    def __repr__(self) -> str:
        return f"NormalizedHandler({self.name!r}, {self.convention.value})"

    @property
    def is_async(self) -> bool:
        return is_async_callable(self.fn)

    async def __call__(self, context: EventContext) -> Any:
        if self.convention is Convention.VALUE:
            if self.is_async:
                result = self.fn(context)
            else:
                result = await asyncio.to_thread(self.fn, context)
            if inspect.isawaitable(result):
                result = await result
            return result

        future = asyncio.get_running_loop().create_future()
        responder = Responder(future, context)
        if self.is_async:
            try:
                returned = self.fn(context, responder)
            except Exception as exc:
                responder.error(exc)
            else:
                if inspect.isawaitable(returned):
                    responder._watch_body(returned)
        else:
            responder._watch_body(asyncio.to_thread(self.fn, context, responder))
        # A responder handler that never settles leaves this pending;
        # only the pipeline timeout ends the wait.
        return await future


def is_async_callable(fn: Any) -> bool:
    """True for coroutine functions, including partials and async __call__."""
    if inspect.iscoroutinefunction(fn):
        return True
    call = getattr(fn, "__call__", None)
    return call is not None and inspect.iscoroutinefunction(call)


def _arity(fn: Callable[..., Any]) -> tuple[int, int, bool]:
    """Return (required positional, total positional, has *args)."""
    try:
        signature = inspect.signature(fn)
    except (TypeError, ValueError) as e:
        raise HandlerShapeError(f"Cannot inspect handler signature: {e}") from e

    positional = [p for p in signature.parameters.values() if p.kind in _POSITIONAL]
    required = [p for p in positional if p.default is inspect.Parameter.empty]
    var_positional = any(
        p.kind == inspect.Parameter.VAR_POSITIONAL for p in signature.parameters.values()
    )
    return len(required), len(positional), var_positional


def detect_convention(fn: Callable[..., Any]) -> Convention:
    """Infer the calling convention from the declared parameters.

    One positional parameter means a value handler, exactly two required
    positional parameters mean a responder handler. Anything else is
    ambiguous and must be tagged explicitly.
    """
    required, total, var_positional = _arity(fn)
    if var_positional:
        raise HandlerShapeError(
            "Handler accepts *args; pass convention= explicitly to register it"
        )
    if total == 1:
        return Convention.VALUE
    if total == 2 and required == 2:
        return Convention.RESPONDER
    raise HandlerShapeError(
        f"Unrecognized handler shape: expected (ctx) or (ctx, responder), "
        f"got {total} positional parameter(s) ({required} required)"
    )


def _check_compatible(fn: Callable[..., Any], convention: Convention) -> None:
    required, total, var_positional = _arity(fn)
    needed = 1 if convention is Convention.VALUE else 2
    if required > needed or (total < needed and not var_positional):
        raise HandlerShapeError(
            f"Handler cannot be called as a {convention.value} handler: "
            f"takes {total} positional parameter(s) ({required} required)"
        )


def normalize_handler(
    fn: Any,
    convention: Convention | str | None = None,
    name: str | None = None,
) -> NormalizedHandler:
    """Wrap a handler into the uniform async contract.

    Args:
        fn: The handler callable
        convention: Explicit calling convention; detected from the
            signature when omitted
        name: Display name for logs

    Returns:
        A NormalizedHandler

    Raises:
        HandlerShapeError: If fn is not callable or its shape is ambiguous
    """
    if isinstance(fn, NormalizedHandler):
        return fn
    if not callable(fn):
        raise HandlerShapeError(f"Handler must be callable, got {type(fn).__name__}")

    if convention is None:
        resolved = detect_convention(fn)
    else:
        try:
            resolved = Convention(convention)
        except ValueError as e:
            raise HandlerShapeError(f"Unknown calling convention: {convention!r}") from e
        _check_compatible(fn, resolved)

    return NormalizedHandler(fn, resolved, name=name)
