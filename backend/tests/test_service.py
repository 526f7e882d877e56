"""Tests for trigger points around persistence: guarded writes, deletes, finds, functions."""

import asyncio
import logging

import pytest

from cloudforge.persistence.sqlite import SQLiteAdapter
from cloudforge.settings import CloudSettings
from cloudforge.triggers import (
    CallerIdentity,
    CloudError,
    EventContext,
    EventKind,
    InvocationPipeline,
    TriggerRegistry,
    TriggerService,
)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def registry():
    return TriggerRegistry()


@pytest.fixture
def service(registry):
    return TriggerService(registry, InvocationPipeline(CloudSettings()))


@pytest.fixture
def db(tmp_path):
    adapter = SQLiteAdapter(tmp_path / "test.db")
    adapter.connect()
    yield adapter
    adapter.close()


@pytest.fixture
def user():
    return CallerIdentity(user_id="U001", tenant_id="T001", roles=("user",))


# =============================================================================
# Guarded writes
# =============================================================================


class TestGuardedWrite:
    @pytest.mark.asyncio
    async def test_no_hooks_writes_object(self, service, db, user):
        outcome = await service.run_guarded_write(
            "Contact", {"name": "Ada"}, user, write=lambda obj: db.create("Contact", obj)
        )

        assert outcome.written
        assert outcome.object["name"] == "Ada"
        assert db.get("Contact", outcome.object["objectId"]) is not None

    @pytest.mark.asyncio
    async def test_before_hook_mutation_is_written(self, registry, service, db, user):
        @registry.hook("Contact", EventKind.BEFORE_SAVE)
        def lowercase_email(ctx):
            ctx.object["email"] = ctx.object["email"].lower()

        outcome = await service.run_guarded_write(
            "Contact", {"email": "ADA@Example.com"}, user, write=lambda obj: db.create("Contact", obj)
        )

        stored = db.get("Contact", outcome.object["objectId"])
        assert stored["email"] == "ada@example.com"

    @pytest.mark.asyncio
    async def test_before_hook_returned_object_is_written(self, registry, service, db, user):
        @registry.hook("Contact", EventKind.BEFORE_SAVE)
        def replace(ctx):
            return {"name": "returned"}

        outcome = await service.run_guarded_write(
            "Contact", {"name": "orig"}, user, write=lambda obj: db.create("Contact", obj)
        )

        assert db.get("Contact", outcome.object["objectId"])["name"] == "returned"

    @pytest.mark.asyncio
    async def test_before_hook_non_dict_return_keeps_object(self, registry, service, db, user):
        @registry.hook("Contact", EventKind.BEFORE_SAVE)
        def approve(ctx, responder):
            ctx.object["approved"] = True
            responder.success(True)

        outcome = await service.run_guarded_write(
            "Contact", {"name": "Ada"}, user, write=lambda obj: db.create("Contact", obj)
        )

        stored = db.get("Contact", outcome.object["objectId"])
        assert stored["name"] == "Ada"
        assert stored["approved"] is True

    @pytest.mark.asyncio
    async def test_failing_before_hook_prevents_write(self, registry, service, db, user):
        @registry.hook("Contact", EventKind.BEFORE_SAVE)
        def reject(ctx, responder):
            responder.error("no")

        writes = []
        outcome = await service.run_guarded_write(
            "Contact", {"name": "Ada"}, user, write=lambda obj: writes.append(obj)
        )

        assert not outcome.written
        assert outcome.object is None
        assert outcome.error.code == 141
        assert outcome.error.message == "no"
        assert writes == []

    @pytest.mark.asyncio
    async def test_before_hook_timeout_prevents_write(self, registry, db, user):
        service = TriggerService(
            registry, InvocationPipeline(CloudSettings(trigger_timeout_ms=20, cancel_on_timeout=True))
        )

        @registry.hook("Contact", EventKind.BEFORE_SAVE)
        async def slow(ctx):
            await asyncio.sleep(1)

        outcome = await service.run_guarded_write(
            "Contact", {"name": "Ada"}, user, write=lambda obj: db.create("Contact", obj)
        )

        assert outcome.error.code == 124
        assert db.find("Contact") == []

    @pytest.mark.asyncio
    async def test_failing_after_hook_keeps_write(self, registry, service, db, user, caplog):
        @registry.hook("Contact", EventKind.AFTER_SAVE)
        def notify(ctx):
            raise RuntimeError("Email service down")

        with caplog.at_level(logging.ERROR):
            outcome = await service.run_guarded_write(
                "Contact", {"name": "Ada"}, user, write=lambda obj: db.create("Contact", obj)
            )

        assert outcome.written
        assert outcome.after_error.message == "Email service down"
        assert db.get("Contact", outcome.object["objectId"])["name"] == "Ada"
        assert "not rolled back" in caplog.text

    @pytest.mark.asyncio
    async def test_before_write_after_order(self, registry, service, user):
        order = []

        @registry.hook("Contact", EventKind.BEFORE_SAVE)
        async def before(ctx):
            await asyncio.sleep(0.01)
            order.append("before")

        @registry.hook("Contact", EventKind.AFTER_SAVE)
        def after(ctx):
            order.append("after")

        async def write(obj):
            order.append("write")
            return {**obj, "objectId": "abc"}

        await service.run_guarded_write("Contact", {"name": "Ada"}, user, write=write)

        assert order == ["before", "write", "after"]

    @pytest.mark.asyncio
    async def test_after_hook_sees_saved_object_and_original(self, registry, service, db, user):
        seen = {}

        @registry.hook("Contact", EventKind.AFTER_SAVE)
        def after(ctx):
            seen["object"] = ctx.object
            seen["original"] = ctx.original
            seen["changes"] = ctx.changes

        created = db.create("Contact", {"name": "Ada", "status": "new"})
        await service.run_guarded_write(
            "Contact",
            {**created, "status": "active"},
            user,
            write=lambda obj: db.update("Contact", created["objectId"], obj),
            original=created,
        )

        assert seen["object"]["objectId"] == created["objectId"]
        assert seen["original"]["status"] == "new"
        assert seen["changes"]["status"] == "active"
        assert "name" not in seen["changes"]

    @pytest.mark.asyncio
    async def test_original_is_a_snapshot(self, registry, service, user):
        @registry.hook("Contact", EventKind.BEFORE_SAVE)
        def tamper(ctx):
            ctx.original["status"] = "tampered"

        original = {"objectId": "abc", "status": "new"}
        await service.run_guarded_write(
            "Contact", {"status": "active"}, user, write=lambda obj: obj, original=original
        )

        assert original["status"] == "new"

    @pytest.mark.asyncio
    async def test_hooks_for_other_classes_do_not_fire(self, registry, service, db, user):
        @registry.hook("Company", EventKind.BEFORE_SAVE)
        def reject(ctx):
            raise CloudError(142, "companies are read-only")

        outcome = await service.run_guarded_write(
            "Contact", {"name": "Ada"}, user, write=lambda obj: db.create("Contact", obj)
        )
        assert outcome.written


class TestGuardedDelete:
    @pytest.mark.asyncio
    async def test_before_delete_can_block(self, registry, service, db, user):
        @registry.hook("Contact", EventKind.BEFORE_DELETE)
        def protect(ctx):
            if ctx.object.get("protected"):
                raise CloudError(142, "protected contact")

        created = db.create("Contact", {"name": "Ada", "protected": True})
        outcome = await service.run_guarded_delete(
            "Contact", created, user, delete=lambda obj: db.delete("Contact", obj["objectId"])
        )

        assert outcome.error.message == "protected contact"
        assert db.get("Contact", created["objectId"]) is not None

    @pytest.mark.asyncio
    async def test_delete_runs_after_hook(self, registry, service, db, user):
        deleted = []

        @registry.hook("Contact", EventKind.AFTER_DELETE)
        def audit(ctx):
            deleted.append(ctx.object["objectId"])

        created = db.create("Contact", {"name": "Ada"})
        outcome = await service.run_guarded_delete(
            "Contact", created, user, delete=lambda obj: db.delete("Contact", obj["objectId"])
        )

        assert outcome.written
        assert db.get("Contact", created["objectId"]) is None
        assert deleted == [created["objectId"]]


class TestBeforeHookValue:
    @pytest.mark.asyncio
    async def test_returned_dict_is_the_value(self, registry, service, user):
        @registry.hook("Contact", EventKind.BEFORE_SAVE)
        def replace(ctx):
            return {"name": "returned"}

        context = EventContext(
            class_name="Contact", kind=EventKind.BEFORE_SAVE, object={"name": "orig"}, caller=user
        )
        result = await service.run_before_hook("Contact", context)

        assert result.ok
        assert result.value == {"name": "returned"}

    @pytest.mark.asyncio
    async def test_none_return_yields_mutated_object(self, registry, service, user):
        @registry.hook("Contact", EventKind.BEFORE_DELETE)
        async def mark(ctx):
            ctx.object["deletedBy"] = ctx.caller.user_id

        context = EventContext(
            class_name="Contact", kind=EventKind.BEFORE_DELETE, object={"name": "Ada"}, caller=user
        )
        result = await service.run_before_hook("Contact", context)

        assert result.value == {"name": "Ada", "deletedBy": "U001"}
        assert result.value is context.object


# =============================================================================
# Find hooks
# =============================================================================


class TestFindHooks:
    @pytest.mark.asyncio
    async def test_before_find_mutates_query(self, registry, service, user):
        @registry.hook("Contact", EventKind.BEFORE_FIND)
        def only_active(ctx):
            ctx.query.setdefault("where", {})["status"] = "active"

        result = await service.run_before_find("Contact", {"where": {}}, user)

        assert result.value == {"where": {"status": "active"}}

    @pytest.mark.asyncio
    async def test_before_find_returned_dict_replaces_query(self, registry, service, user):
        @registry.hook("Contact", EventKind.BEFORE_FIND)
        def replace(ctx):
            return {"where": {"status": "archived"}, "limit": 5}

        result = await service.run_before_find("Contact", {"where": {}}, user)

        assert result.value == {"where": {"status": "archived"}, "limit": 5}

    @pytest.mark.asyncio
    async def test_before_find_failure(self, registry, service, user):
        @registry.hook("Contact", EventKind.BEFORE_FIND)
        def deny(ctx):
            raise CloudError(142, "query not allowed")

        result = await service.run_before_find("Contact", {}, user)
        assert result.error.message == "query not allowed"

    @pytest.mark.asyncio
    async def test_after_find_returned_list_replaces_results(self, registry, service, user):
        @registry.hook("Contact", EventKind.AFTER_FIND)
        def redact(ctx):
            return [{**obj, "email": None} for obj in ctx.objects]

        result = await service.run_after_find("Contact", [{"email": "a@b.c"}], user)
        assert result.value == [{"email": None}]

    @pytest.mark.asyncio
    async def test_no_find_hooks_pass_through(self, service, user):
        query = {"where": {"name": "Ada"}}
        objects = [{"name": "Ada"}]

        assert (await service.run_before_find("Contact", query, user)).value is query
        assert (await service.run_after_find("Contact", objects, user)).value is objects


# =============================================================================
# Functions
# =============================================================================


class TestFunctions:
    @pytest.mark.asyncio
    async def test_call_function(self, registry, service, user):
        @registry.function("hello")
        def hello(ctx, responder):
            responder.success(f"Hello {ctx.params.get('name', 'world')} from {ctx.user}")

        result = await service.call_function("hello", {"name": "Ada"}, user)

        assert result.value == "Hello Ada from U001"

    @pytest.mark.asyncio
    async def test_unknown_function(self, service, user):
        result = await service.call_function("missing", {}, user)

        assert result.error.code == 141
        assert result.error.message == 'Invalid function: "missing"'

    @pytest.mark.asyncio
    async def test_headers_reach_handler(self, registry, service, user):
        @registry.function("whoami")
        def whoami(ctx):
            return ctx.headers.get("x-request-id")

        result = await service.call_function("whoami", {}, user, headers={"x-request-id": "r-1"})
        assert result.value == "r-1"

    def test_has_hook(self, registry, service):
        registry.register_hook("Contact", EventKind.AFTER_SAVE, lambda ctx: None)
        assert service.has_hook("Contact", EventKind.AFTER_SAVE)
        assert not service.has_hook("Contact", EventKind.BEFORE_SAVE)
