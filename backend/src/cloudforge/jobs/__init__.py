"""Background jobs: detached execution with a progress log and terminal status."""

from cloudforge.jobs.fanout import FanOutError, FanOutItem, fan_out
from cloudforge.jobs.models import JobRun, JobStatus, ProgressEntry
from cloudforge.jobs.runner import JobRunner
from cloudforge.jobs.store import JobStatusStore

__all__ = [
    "FanOutError",
    "FanOutItem",
    "JobRun",
    "JobRunner",
    "JobStatus",
    "JobStatusStore",
    "ProgressEntry",
    "fan_out",
]
