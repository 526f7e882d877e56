"""Background job runner.

start() records a run and launches the job handler detached from the
caller; the caller gets the run id back immediately and polls status().
The handler reports progress through ctx.message(); the run becomes
SUCCEEDED or FAILED when the handler's pipeline execution resolves.
Nothing is retried: a failed run is terminal and must be started again.
"""

import asyncio
import copy
import logging
import threading
import uuid
from typing import Any

from cloudforge.jobs.fanout import default_concurrency
from cloudforge.jobs.models import JobRun, JobStatus
from cloudforge.jobs.store import JobStatusStore
from cloudforge.settings import CloudSettings
from cloudforge.triggers.errors import CloudError, ErrorCode, normalize_error
from cloudforge.triggers.pipeline import InvocationPipeline
from cloudforge.triggers.registry import TriggerRegistry
from cloudforge.triggers.types import (
    CallerIdentity,
    EventContext,
    EventKind,
    HandlerRegistration,
)

logger = logging.getLogger(__name__)


class JobRunner:
    """Owns every JobRun of the process.

    Args:
        registry: Where job handlers are looked up
        pipeline: Executes the handlers
        store: Optional durable mirror of run status
        settings: Execution settings; defaults to the pipeline's
        max_finished_runs: Finished runs kept in memory before the oldest
            are dropped (they remain readable through the store)
    """

    def __init__(
        self,
        registry: TriggerRegistry,
        pipeline: InvocationPipeline,
        store: JobStatusStore | None = None,
        settings: CloudSettings | None = None,
        max_finished_runs: int = 1000,
    ):
        self.registry = registry
        self.pipeline = pipeline
        self.store = store
        self.settings = settings or pipeline.settings
        self.max_finished_runs = max_finished_runs
        self._runs: dict[str, JobRun] = {}
        self._done: dict[str, asyncio.Event] = {}
        self._tasks: set[asyncio.Task] = set()
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Job control
    # ------------------------------------------------------------------

    def start(
        self,
        job_name: str,
        params: dict[str, Any] | None = None,
        caller: CallerIdentity | None = None,
        source: str = "api",
        headers: dict[str, str] | None = None,
    ) -> str:
        """Start a job and return its run id without waiting for it.

        Must be called from a running event loop.

        Raises:
            CloudError: If no job is registered under job_name
        """
        registration = self.registry.get_job(job_name)
        if registration is None:
            raise CloudError(ErrorCode.SCRIPT_FAILED, f'Invalid job: "{job_name}"')

        loop = asyncio.get_running_loop()
        run = JobRun(id=uuid.uuid4().hex, job_name=job_name, params=dict(params or {}), source=source)
        done = asyncio.Event()
        with self._lock:
            self._runs[run.id] = run
            self._done[run.id] = done
        self._persist(run)

        context = EventContext(
            class_name=job_name,
            kind=EventKind.JOB,
            caller=caller or CallerIdentity(),
            params=copy.deepcopy(run.params),
            headers=headers or {},
            job_id=run.id,
            message_sink=lambda text: self._message(run, text),
        )
        task = loop.create_task(self._execute(registration, run, context, done))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        logger.info("Started job %s (run %s, source %s)", job_name, run.id, source)
        return run.id

    def status(self, run_id: str) -> JobRun | None:
        """Snapshot of a run, or None if unknown."""
        run = self._runs.get(run_id)
        if run is not None:
            return run.snapshot()
        if self.store is not None:
            return self.store.get(run_id)
        return None

    async def wait(self, run_id: str, timeout: float | None = None) -> JobRun | None:
        """Wait until a run is terminal (or timeout seconds pass) and return a snapshot."""
        done = self._done.get(run_id)
        if done is not None:
            try:
                await asyncio.wait_for(done.wait(), timeout)
            except asyncio.TimeoutError:
                pass
        return self.status(run_id)

    def list_runs(self, job_name: str | None = None) -> list[JobRun]:
        """Snapshots of known runs, newest first."""
        runs = {run.id: run.snapshot() for run in list(self._runs.values())}
        if self.store is not None:
            for stored in self.store.list_runs(job_name):
                runs.setdefault(stored.id, stored)

        result = [r for r in runs.values() if job_name is None or r.job_name == job_name]
        return sorted(result, key=lambda r: r.created_at, reverse=True)

    @property
    def active_count(self) -> int:
        return sum(1 for run in list(self._runs.values()) if not run.is_terminal)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _execute(
        self,
        registration: HandlerRegistration,
        run: JobRun,
        context: EventContext,
        done: asyncio.Event,
    ) -> None:
        default_concurrency.set(self.settings.job_max_concurrency)
        try:
            result = await self.pipeline.execute(registration, context)
            if result.ok:
                run.finish(JobStatus.SUCCEEDED, result=result.value)
                logger.info("Job %s (run %s) succeeded", run.job_name, run.id)
            else:
                run.finish(JobStatus.FAILED, error=result.error)
                logger.error(
                    "Job %s (run %s) failed: [%s] %s",
                    run.job_name,
                    run.id,
                    result.error.code,
                    result.error.message,
                )
        except Exception as exc:
            # The pipeline normalizes handler failures; this is a fault in the
            # runner itself and must still leave the run terminal.
            logger.exception("Job %s (run %s) crashed in the runner", run.job_name, run.id)
            run.finish(JobStatus.FAILED, error=normalize_error(exc))
        finally:
            self._persist(run)
            done.set()
            self._prune()

    def _message(self, run: JobRun, text: str) -> None:
        if not run.append(text):
            logger.debug("Dropping message for finished run %s: %s", run.id, text)
            return
        self._persist(run)

    def _persist(self, run: JobRun) -> None:
        if self.store is None:
            return
        try:
            self.store.save(run)
        except Exception:
            logger.warning("Could not persist status of job run %s", run.id, exc_info=True)

    def _prune(self) -> None:
        with self._lock:
            finished = [r for r in self._runs.values() if r.is_terminal]
            excess = len(finished) - self.max_finished_runs
            if excess <= 0:
                return
            finished.sort(key=lambda r: r.finished_at)
            for run in finished[:excess]:
                self._runs.pop(run.id, None)
                self._done.pop(run.id, None)
