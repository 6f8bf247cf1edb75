import copy
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Callable, Dict, List, Optional

from formats import OutputRequest


class JobKind:
    TRANSFORM = 'transform'
    CAPTURE = 'capture'


class JobStatus:
    QUEUED = 'queued'
    PROCESSING = 'processing'
    COMPLETED = 'completed'
    FAILED = 'failed'
    EVICTED = 'evicted'

    TERMINAL = frozenset({COMPLETED, FAILED, EVICTED})


class JobNotFound(KeyError):
    """No job with this id is (or is still) in the registry."""


class JobNotReady(RuntimeError):
    """The job exists but has not completed."""


@dataclass(frozen=True)
class SourceRef:
    """Either a local input file, or a remote URL plus the chosen rendition."""
    path: Optional[str] = None
    url: Optional[str] = None
    rendition_id: Optional[str] = None


@dataclass
class Job:
    id: str
    kind: str
    source_ref: SourceRef
    output_request: OutputRequest
    original_label: str
    download_name: str = ''
    status: str = JobStatus.QUEUED
    progress: int = 0
    message: str = 'Waiting to start...'
    output_path: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)
    heartbeat_at: datetime = field(default_factory=datetime.now)

    @property
    def is_terminal(self) -> bool:
        return self.status in JobStatus.TERMINAL

    def to_dict(self):
        data = {
            'job_id': self.id,
            'kind': self.kind,
            'filename': self.download_name,
            'original_name': self.original_label,
            'status': self.status,
            'progress': self.progress,
            'message': self.message,
            'output_request': self.output_request.to_dict(),
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
        }
        if self.error:
            data['error'] = self.error
        return data


class JobStore(ABC):
    """
    Keyed store of job records.

    Writers replace whole records; readers get copies, so a record handed out
    by get() never changes underneath the caller.
    """

    @abstractmethod
    def create(self, kind: str, source_ref: SourceRef, output_request: OutputRequest,
               original_label: str = '', download_name: str = '') -> str:
        ...

    @abstractmethod
    def get(self, job_id: str) -> Job:
        ...

    @abstractmethod
    def update(self, job_id: str, mutation: Callable[[Job], Optional[Job]]) -> Optional[Job]:
        ...

    @abstractmethod
    def delete(self, job_id: str) -> Optional[Job]:
        ...

    @abstractmethod
    def all(self) -> List[Job]:
        ...

    def find(self, job_id: str) -> Optional[Job]:
        try:
            return self.get(job_id)
        except JobNotFound:
            return None


class InMemoryJobStore(JobStore):
    """Process-local job table. Everything is lost on restart."""

    def __init__(self):
        self._jobs: Dict[str, Job] = {}
        self._lock = threading.RLock()

    def create(self, kind, source_ref, output_request, original_label='', download_name=''):
        with self._lock:
            job_id = str(uuid.uuid4())
            while job_id in self._jobs:
                job_id = str(uuid.uuid4())
            self._jobs[job_id] = Job(
                id=job_id,
                kind=kind,
                source_ref=source_ref,
                output_request=output_request,
                original_label=original_label,
                download_name=download_name,
            )
            return job_id

    def get(self, job_id):
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFound(job_id)
            return copy.copy(job)

    def update(self, job_id, mutation):
        """
        Apply mutation to a copy of the record and store what it returns.

        Returns the stored record, or None if the job is gone or the
        mutation returned None (meaning: leave the record alone).
        """
        with self._lock:
            current = self._jobs.get(job_id)
            if current is None:
                return None
            updated = mutation(copy.copy(current))
            if updated is None:
                return None
            self._jobs[job_id] = replace(updated, updated_at=datetime.now())
            return copy.copy(self._jobs[job_id])

    def delete(self, job_id):
        with self._lock:
            return self._jobs.pop(job_id, None)

    def all(self):
        with self._lock:
            return [copy.copy(job) for job in self._jobs.values()]

    def __len__(self):
        with self._lock:
            return len(self._jobs)

    def __contains__(self, job_id):
        with self._lock:
            return job_id in self._jobs


# ── State transitions ─────────────────────────────────────────────────────────
# Each returns a mutation for JobStore.update(). Terminal records are never
# touched again, so late or duplicate engine callbacks fall through as no-ops.

def mark_processing(message: str = 'Processing started'):
    def mutation(job: Job) -> Optional[Job]:
        if job.status != JobStatus.QUEUED:
            return None
        now = datetime.now()
        return replace(job, status=JobStatus.PROCESSING, message=message, heartbeat_at=now)
    return mutation


def record_progress(percent: int, message: Optional[str] = None):
    def mutation(job: Job) -> Optional[Job]:
        if job.is_terminal:
            return None
        progress = max(job.progress, min(int(percent), 95))
        return replace(
            job,
            status=JobStatus.PROCESSING,
            progress=progress,
            message=message or job.message,
            heartbeat_at=datetime.now(),
        )
    return mutation


def mark_completed(output_path: str, message: str = 'Completed!', download_name: Optional[str] = None):
    def mutation(job: Job) -> Optional[Job]:
        if job.is_terminal:
            return None
        return replace(job, status=JobStatus.COMPLETED, progress=100,
                       output_path=output_path, message=message, error=None,
                       download_name=download_name or job.download_name)
    return mutation


def mark_failed(error: str, message: Optional[str] = None):
    def mutation(job: Job) -> Optional[Job]:
        if job.is_terminal:
            return None
        return replace(job, status=JobStatus.FAILED, output_path=None, error=error,
                       message=message or f"Failed: {error}")
    return mutation
