import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from enum import Enum

from vidvault.errors import VidvaultError


class JobStatus(str, Enum):
    queued = "queued"
    uploading = "uploading"
    reassembling = "reassembling"
    complete = "complete"
    failed = "failed"
    canceled = "canceled"


TERMINAL_STATUSES = {JobStatus.complete, JobStatus.failed, JobStatus.canceled}


@dataclass(frozen=True)
class JobError:
    kind: str
    message: str
    retryable: bool

    @classmethod
    def from_exception(cls, exc: Exception) -> "JobError":
        if isinstance(exc, VidvaultError):
            return cls(kind=exc.kind, message=exc.detail, retryable=exc.retryable)
        return cls(kind="internal_error", message=f"{type(exc).__name__}: {exc}", retryable=False)


@dataclass(frozen=True)
class UploadJob:
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: JobStatus = JobStatus.queued
    progress_percent: float = 0.0
    error: JobError | None = None
    session_id: str | None = None
    final_reference: str | None = None
    created_at: float = field(default_factory=time.time)
    finished_at: float | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


JobListener = Callable[[UploadJob], None]


class JobRegistry:
    """Owns upload jobs from creation until they are collected.

    Jobs are immutable snapshots; ``update`` replaces the stored snapshot and
    notifies listeners. Progress never moves backwards and a terminal job
    never changes again.
    """

    def __init__(self, grace_period_seconds: float = 30.0, clock: Callable[[], float] = time.time) -> None:
        self.grace_period_seconds = grace_period_seconds
        self.clock = clock
        self._jobs: dict[str, UploadJob] = {}
        self._listeners: list[JobListener] = []
        self._lock = threading.RLock()

    def add_listener(self, listener: JobListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def create(self) -> UploadJob:
        job = UploadJob(created_at=self.clock())
        with self._lock:
            self._jobs[job.id] = job
            self._notify(job)
        return job

    def get(self, job_id: str) -> UploadJob | None:
        with self._lock:
            return self._jobs.get(job_id)

    def jobs(self) -> list[UploadJob]:
        with self._lock:
            return list(self._jobs.values())

    def update(self, job_id: str, **changes) -> UploadJob:
        with self._lock:
            current = self._jobs[job_id]
            if current.is_terminal:
                return current
            if "progress_percent" in changes:
                changes["progress_percent"] = min(100.0, max(current.progress_percent, changes["progress_percent"]))
            job = replace(current, **changes)
            if job.is_terminal:
                job = replace(job, finished_at=self.clock())
            self._jobs[job_id] = job
            self._notify(job)
        return job

    def collect(self) -> list[str]:
        now = self.clock()
        with self._lock:
            expired = [
                job_id
                for job_id, job in self._jobs.items()
                if job.finished_at is not None and now - job.finished_at >= self.grace_period_seconds
            ]
            for job_id in expired:
                del self._jobs[job_id]
        return expired

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def _notify(self, job: UploadJob) -> None:
        # runs under the registry lock; listeners must not block
        for listener in list(self._listeners):
            listener(job)
