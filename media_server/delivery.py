"""
Artifact delivery with deferred cleanup.

A completed job's artifact is streamed to the requester; only a transfer
that reaches the last byte schedules deletion of the file and the record.
Deletion is idempotent, so several overlapping downloads are harmless.
"""
import logging
import os
from typing import Callable, Dict, Iterator, Optional

from media_server.state import JobKind, JobNotFound, JobNotReady, JobStatus, JobStore
from transcoder import remove_file, schedule_timer

CHUNK_SIZE = 64 * 1024


class ArtifactMissing(RuntimeError):
    """The job says completed but its file is no longer on disk."""


class Artifact:
    """One open delivery of a completed job's output."""

    def __init__(self, delivery: 'Delivery', job_id: str, path: str, download_name: str, size: int):
        self.delivery = delivery
        self.job_id = job_id
        self.path = path
        self.download_name = download_name
        self.size = size

    def stream(self, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
        """
        Yield the file in chunks.

        If the consumer stops early (client disconnect closes the generator)
        or the read fails, nothing is scheduled and the job stays fetchable.
        """
        sent = 0
        try:
            with open(self.path, 'rb') as f:
                while True:
                    chunk = f.read(chunk_size)
                    if not chunk:
                        break
                    sent += len(chunk)
                    yield chunk
        except GeneratorExit:
            logging.info(f"Download connection closed early: {self.job_id} ({sent}/{self.size} bytes)")
            raise
        except OSError as e:
            logging.error(f"Stream error for {self.job_id}: {e}")
            raise

        logging.info(f"Download completed successfully: {self.job_id} ({sent} bytes)")
        self.delivery.schedule_eviction(self.job_id)


class Delivery:
    """
    Hands out completed artifacts and evicts them after a grace period.

    Args:
        registry: Job store.
        grace: Seconds to wait after a full transfer, per job kind.
        schedule: callable(delay, fn); defaults to a daemon timer.
        on_evicted: called with the removed Job after eviction.
    """

    def __init__(self, registry: JobStore, grace: Optional[Dict[str, float]] = None,
                 schedule: Optional[Callable] = None,
                 on_evicted: Optional[Callable] = None):
        self.registry = registry
        self.grace = grace or {JobKind.TRANSFORM: 5.0, JobKind.CAPTURE: 10.0}
        self.schedule = schedule or schedule_timer
        self.on_evicted = on_evicted

    def open(self, job_id: str) -> Artifact:
        """
        Raises:
            JobNotFound: unknown id (or already evicted).
            JobNotReady: job exists but is not completed.
            ArtifactMissing: completed, but the file is gone.
        """
        job = self.registry.get(job_id)
        if job.status != JobStatus.COMPLETED or not job.output_path:
            raise JobNotReady(f"Job {job_id} is {job.status}")
        try:
            size = os.path.getsize(job.output_path)
        except OSError:
            raise ArtifactMissing(f"Output file for {job_id} not found")
        return Artifact(self, job_id, job.output_path, job.download_name, size)

    def schedule_eviction(self, job_id: str):
        job = self.registry.find(job_id)
        if job is None:
            return
        delay = self.grace.get(job.kind, 5.0)
        self.schedule(delay, lambda: self.evict(job_id))

    def evict(self, job_id: str):
        """Delete the artifact and forget the job. Safe to call repeatedly."""
        job = self.registry.delete(job_id)
        if job is None:
            return None
        remove_file(job.output_path)
        if job.source_ref.path:
            remove_file(job.source_ref.path)
        logging.info(f"Evicted delivered job {job_id}")
        if self.on_evicted:
            self.on_evicted(job)
        return job

    def fetch(self, job_id: str) -> Iterator[bytes]:
        """Shortcut: open and stream in one call."""
        return self.open(job_id).stream()


__all__ = ['Artifact', 'ArtifactMissing', 'Delivery', 'JobNotFound', 'JobNotReady']
