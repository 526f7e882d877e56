"""Tests for handler contract normalization."""

import asyncio
import functools
import threading
import time

import pytest

from cloudforge.triggers import (
    CloudError,
    Convention,
    EventContext,
    EventKind,
    HandlerShapeError,
    NormalizedHandler,
    normalize_handler,
)
from cloudforge.triggers.handlers import detect_convention


@pytest.fixture
def context():
    return EventContext(class_name="hello", kind=EventKind.FUNCTION, params={"name": "Ada"})


# =============================================================================
# Detection
# =============================================================================


class TestDetectConvention:
    def test_single_parameter_is_value(self):
        async def handler(ctx):
            return None

        assert detect_convention(handler) is Convention.VALUE

    def test_sync_single_parameter_is_value(self):
        def handler(ctx):
            return None

        assert detect_convention(handler) is Convention.VALUE

    def test_two_parameters_is_responder(self):
        def handler(ctx, responder):
            responder.success()

        assert detect_convention(handler) is Convention.RESPONDER

    def test_bound_method(self):
        class Handlers:
            def on_call(self, ctx):
                return "ok"

        assert detect_convention(Handlers().on_call) is Convention.VALUE

    def test_partial_reduces_arity(self):
        def handler(prefix, ctx):
            return prefix

        assert detect_convention(functools.partial(handler, "x")) is Convention.VALUE

    def test_no_parameters_rejected(self):
        def handler():
            return None

        with pytest.raises(HandlerShapeError, match="Unrecognized handler shape"):
            detect_convention(handler)

    def test_optional_second_parameter_is_ambiguous(self):
        def handler(ctx, responder=None):
            return None

        with pytest.raises(HandlerShapeError):
            detect_convention(handler)

    def test_varargs_is_ambiguous(self):
        def handler(*args):
            return None

        with pytest.raises(HandlerShapeError, match="convention"):
            detect_convention(handler)


class TestNormalizeHandler:
    def test_not_callable(self):
        with pytest.raises(HandlerShapeError, match="callable"):
            normalize_handler("not a function")

    def test_explicit_tag_resolves_ambiguity(self):
        def handler(ctx, responder=None):
            return None

        normalized = normalize_handler(handler, Convention.VALUE)
        assert normalized.convention is Convention.VALUE

    def test_explicit_tag_as_string(self):
        def handler(*args):
            args[1].success()

        assert normalize_handler(handler, "responder").convention is Convention.RESPONDER

    def test_incompatible_explicit_tag(self):
        def handler(ctx):
            return None

        with pytest.raises(HandlerShapeError, match="responder"):
            normalize_handler(handler, Convention.RESPONDER)

    def test_unknown_tag(self):
        with pytest.raises(HandlerShapeError, match="Unknown calling convention"):
            normalize_handler(lambda ctx: None, "callback")

    def test_already_normalized_is_returned(self):
        normalized = normalize_handler(lambda ctx: None)
        assert normalize_handler(normalized) is normalized

    def test_name_defaults_to_qualname(self):
        def greet(ctx):
            return None

        assert "greet" in normalize_handler(greet).name


# =============================================================================
# Value handlers
# =============================================================================


class TestValueHandlers:
    @pytest.mark.asyncio
    async def test_async_return_value(self, context):
        async def handler(ctx):
            return f"Hello {ctx.params['name']}"

        assert await normalize_handler(handler)(context) == "Hello Ada"

    @pytest.mark.asyncio
    async def test_sync_return_value(self, context):
        def handler(ctx):
            return 42

        assert await normalize_handler(handler)(context) == 42

    @pytest.mark.asyncio
    async def test_sync_returning_awaitable(self, context):
        async def later():
            return "later"

        def handler(ctx):
            return later()

        assert await normalize_handler(handler)(context) == "later"

    @pytest.mark.asyncio
    async def test_sync_handler_runs_off_the_event_loop(self, context):
        loop_thread = threading.get_ident()

        def handler(ctx):
            return threading.get_ident()

        assert await normalize_handler(handler)(context) != loop_thread

    @pytest.mark.asyncio
    async def test_async_handler_runs_on_the_event_loop(self, context):
        async def handler(ctx):
            return threading.get_ident()

        assert await normalize_handler(handler)(context) == threading.get_ident()

    @pytest.mark.asyncio
    async def test_async_callable_object(self, context):
        class Greeter:
            async def __call__(self, ctx):
                return asyncio.get_running_loop() is not None

        handler = normalize_handler(Greeter())
        assert handler.is_async
        assert await handler(context) is True

    @pytest.mark.asyncio
    async def test_raise_propagates(self, context):
        async def handler(ctx):
            raise CloudError(142, "nope")

        with pytest.raises(CloudError, match="nope"):
            await normalize_handler(handler)(context)


# =============================================================================
# Responder handlers
# =============================================================================


class TestResponderHandlers:
    @pytest.mark.asyncio
    async def test_success_value(self, context):
        def handler(ctx, responder):
            responder.success({"greeting": "hi"})

        assert await normalize_handler(handler)(context) == {"greeting": "hi"}

    @pytest.mark.asyncio
    async def test_success_without_value(self, context):
        def handler(ctx, responder):
            responder.success()

        assert await normalize_handler(handler)(context) is None

    @pytest.mark.asyncio
    async def test_error_string(self, context):
        def handler(ctx, responder):
            responder.error("X")

        with pytest.raises(CloudError) as exc_info:
            await normalize_handler(handler)(context)
        assert exc_info.value.code == 141
        assert exc_info.value.message == "X"

    @pytest.mark.asyncio
    async def test_error_exception_kept(self, context):
        failure = ValueError("bad input")

        def handler(ctx, responder):
            responder.error(failure)

        with pytest.raises(ValueError) as exc_info:
            await normalize_handler(handler)(context)
        assert exc_info.value is failure

    @pytest.mark.asyncio
    async def test_first_settlement_wins(self, context):
        def handler(ctx, responder):
            responder.success("first")
            responder.error("second")
            responder.success("third")

        assert await normalize_handler(handler)(context) == "first"

    @pytest.mark.asyncio
    async def test_synchronous_raise_rejects(self, context):
        def handler(ctx, responder):
            raise RuntimeError("exploded before responding")

        with pytest.raises(RuntimeError, match="exploded"):
            await normalize_handler(handler)(context)

    @pytest.mark.asyncio
    async def test_deferred_success(self, context):
        async def handler(ctx, responder):
            asyncio.get_running_loop().call_later(0.01, responder.success, "deferred")

        assert await normalize_handler(handler)(context) == "deferred"

    @pytest.mark.asyncio
    async def test_success_from_another_thread(self, context):
        def handler(ctx, responder):
            threading.Timer(0.01, responder.success, args=("threaded",)).start()

        assert await normalize_handler(handler)(context) == "threaded"

    @pytest.mark.asyncio
    async def test_sync_body_runs_off_the_event_loop(self, context):
        loop_thread = threading.get_ident()

        def handler(ctx, responder):
            responder.success(threading.get_ident())

        assert await normalize_handler(handler)(context) != loop_thread

    @pytest.mark.asyncio
    async def test_settled_sync_body_may_keep_running(self, context):
        finished = threading.Event()

        def handler(ctx, responder):
            responder.success("early")
            time.sleep(0.05)
            finished.set()

        assert await normalize_handler(handler)(context) == "early"
        assert not finished.is_set()
        await asyncio.to_thread(finished.wait, 1)

    @pytest.mark.asyncio
    async def test_async_body_failure_rejects(self, context):
        async def handler(ctx, responder):
            await asyncio.sleep(0)
            raise CloudError(142, "async body failed")

        with pytest.raises(CloudError, match="async body failed"):
            await normalize_handler(handler)(context)

    @pytest.mark.asyncio
    async def test_async_body_success(self, context):
        async def handler(ctx, responder):
            await asyncio.sleep(0)
            responder.success("from coroutine")

        assert await normalize_handler(handler)(context) == "from coroutine"

    @pytest.mark.asyncio
    async def test_unsettled_responder_stays_pending(self, context):
        def handler(ctx, responder):
            return None

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(normalize_handler(handler)(context), timeout=0.05)

    @pytest.mark.asyncio
    async def test_message_forwards_to_context(self):
        received = []
        ctx = EventContext(class_name="import", kind=EventKind.JOB, message_sink=received.append)

        def handler(ctx, responder):
            responder.message("step 1")
            responder.message("step 2")
            responder.success()

        await normalize_handler(handler)(ctx)
        assert received == ["step 1", "step 2"]


class TestNormalizedHandlerRepr:
    def test_repr_mentions_convention(self):
        handler = NormalizedHandler(lambda ctx: None, Convention.VALUE, name="function.hello")
        assert repr(handler) == "NormalizedHandler('function.hello', value)"
