"""Job run records.

A JobRun is created when a job starts and mutated only by the JobRunner
on behalf of the executing handler. Callers only ever see snapshots.
Once the status leaves RUNNING the run is frozen.
"""

import threading
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from cloudforge.triggers.errors import NormalizedError


class JobStatus(str, Enum):
    """Job run status.

    RUNNING → SUCCEEDED | FAILED; both are terminal.
    """

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class ProgressEntry:
    """One message() call, timestamped when it was appended."""

    timestamp: datetime
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"timestamp": self.timestamp.isoformat(), "message": self.message}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProgressEntry":
        return cls(
            timestamp=datetime.fromisoformat(data["timestamp"]),
            message=data["message"],
        )


@dataclass
class JobRun:
    """State of one job execution.

    Attributes:
        id: Opaque run identifier
        job_name: Registered job name
        status: RUNNING, SUCCEEDED or FAILED
        progress_log: Messages in the order their message() calls completed
        result: Handler result (SUCCEEDED only)
        error: Normalized failure (FAILED only)
        params: Parameters the job was started with
        source: Who started it ("api", "cli", "schedule")
        created_at: When the run was recorded
        finished_at: When the run reached a terminal status
    """

    id: str
    job_name: str
    status: JobStatus = JobStatus.RUNNING
    progress_log: list[ProgressEntry] = field(default_factory=list)
    result: Any = None
    error: NormalizedError | None = None
    params: dict[str, Any] = field(default_factory=dict)
    source: str = "api"
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None
    _lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False, compare=False
    )

    @property
    def is_terminal(self) -> bool:
        return self.status is not JobStatus.RUNNING

    @property
    def message(self) -> str | None:
        """Most recent progress message."""
        return self.progress_log[-1].message if self.progress_log else None

    def append(self, text: str) -> bool:
        """Append a progress entry. Returns False if the run is already terminal."""
        with self._lock:
            if self.is_terminal:
                return False
            self.progress_log.append(ProgressEntry(datetime.now(UTC), text))
            return True

    def finish(
        self,
        status: JobStatus,
        result: Any = None,
        error: NormalizedError | None = None,
    ) -> bool:
        """Move to a terminal status. Only the first call has any effect."""
        if status is JobStatus.RUNNING:
            raise ValueError("finish() requires a terminal status")
        with self._lock:
            if self.is_terminal:
                return False
            self.status = status
            self.result = result
            self.error = error
            self.finished_at = datetime.now(UTC)
            return True

    def snapshot(self) -> "JobRun":
        """Independent copy that later appends do not affect."""
        with self._lock:
            return replace(
                self,
                progress_log=list(self.progress_log),
                params=dict(self.params),
            )

    def to_dict(self) -> dict[str, Any]:
        with self._lock:
            return {
                "id": self.id,
                "jobName": self.job_name,
                "status": self.status.value,
                "source": self.source,
                "params": self.params,
                "message": self.message,
                "progressLog": [entry.to_dict() for entry in self.progress_log],
                "result": self.result,
                "error": self.error.to_dict() if self.error else None,
                "createdAt": self.created_at.isoformat(),
                "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
            }
