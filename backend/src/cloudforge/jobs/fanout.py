"""Fan-out join for job handlers.

Jobs that process many records spawn one sub-task per record. fan_out()
runs them under a concurrency bound and waits for every one of them to
settle. A failure is remembered but does not short-circuit the others;
only after all sub-tasks have settled is the first failure raised, which
fails the run.

Example::

    @registry.job("reindex")
    async def reindex(ctx):
        ids = ctx.params["ids"]
        await fan_out(ids, reindex_one, max_concurrency=20, context=ctx)
        return {"reindexed": len(ids)}
"""

import asyncio
import inspect
import logging
from collections.abc import Callable, Iterable
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Any

from cloudforge.triggers.errors import CloudError, NormalizedError, normalize_error
from cloudforge.triggers.handlers import is_async_callable
from cloudforge.triggers.types import EventContext

logger = logging.getLogger(__name__)

# Set by the job runner for the duration of a run from jobMaxConcurrency
default_concurrency: ContextVar[int] = ContextVar("fan_out_concurrency", default=10)


@dataclass
class FanOutItem:
    """Outcome of one sub-task."""

    index: int
    item: Any
    status: str = "pending"
    result: Any = None
    error: NormalizedError | None = None


class FanOutError(CloudError):
    """Raised once all sub-tasks settled and at least one failed.

    Carries the first failure's code and message, so a job that lets it
    propagate fails with that error.
    """

    def __init__(self, first: NormalizedError, items: list[FanOutItem]):
        super().__init__(first.code, first.message)
        self.items = items

    @property
    def failures(self) -> int:
        return sum(1 for i in self.items if i.status == "failed")

    @property
    def results(self) -> list[Any]:
        return [i.result for i in self.items if i.status == "completed"]


async def fan_out(
    items: Iterable[Any],
    worker: Callable[[Any], Any],
    max_concurrency: int | None = None,
    context: EventContext | None = None,
) -> list[Any]:
    """Run worker(item) for every item and join on all of them.

    Args:
        items: Work items
        worker: Sync or async callable processing one item; sync workers
            run in worker threads
        max_concurrency: Maximum sub-tasks in flight; defaults to the
            running job's configured limit
        context: Job context; failures are reported through context.message()

    Returns:
        Worker results, in item order

    Raises:
        FanOutError: After every sub-task settled, if any failed
    """
    entries = [FanOutItem(index=i, item=item) for i, item in enumerate(items)]
    limit = max_concurrency if max_concurrency is not None else default_concurrency.get()
    sem = asyncio.Semaphore(max(1, limit))
    failures: list[FanOutItem] = []

    async def _run_one(entry: FanOutItem) -> None:
        async with sem:
            entry.status = "running"
            try:
                if is_async_callable(worker):
                    value = worker(entry.item)
                else:
                    value = await asyncio.to_thread(worker, entry.item)
                if inspect.isawaitable(value):
                    value = await value
            except Exception as exc:
                entry.status = "failed"
                entry.error = normalize_error(exc)
                failures.append(entry)
                logger.warning("Fan-out item %d failed: %s", entry.index, entry.error.message)
                if context is not None:
                    context.message(f"Item {entry.index} failed: {entry.error.message}")
                return
            entry.status = "completed"
            entry.result = value

    await asyncio.gather(*[_run_one(entry) for entry in entries])
    logger.debug(
        "Fan-out finished: %d item(s), %d failed", len(entries), len(failures)
    )

    if failures:
        raise FanOutError(failures[0].error, entries)
    return [entry.result for entry in entries]
