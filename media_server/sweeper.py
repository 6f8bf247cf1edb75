"""
Periodic retention sweep.

Jobs are forgotten once they are older than their kind's maximum age,
whatever their status. A job still running at that point has its engine
cancelled first. Jobs whose engine has gone quiet for longer than the stall
timeout are failed early. Files left behind in the working directories by
jobs the registry no longer knows about are removed by age.
"""
import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from media_server.state import Job, JobKind, JobStatus, JobStore, mark_failed
from transcoder import remove_file


@dataclass
class SweepReport:
    evicted: List[str] = field(default_factory=list)
    stalled: List[str] = field(default_factory=list)
    orphans_removed: List[str] = field(default_factory=list)


class RetentionSweeper:
    """
    Args:
        registry: Job store to sweep.
        max_age: Seconds a job may live, per kind.
        interval: Seconds between sweeps when running in the background.
        stall_timeout: Seconds without a heartbeat before a processing job
            is considered dead. None disables stall detection.
        directories: Working directories to scan for orphaned files.
        orphan_max_age: Minimum file age (by mtime) before an unowned file
            is deleted.
        handles: callable(job_id) -> PipelineHandle or None.
        on_evicted / on_stalled: notification hooks, called with the Job.
    """

    def __init__(self, registry: JobStore, max_age: Optional[Dict[str, float]] = None,
                 interval: float = 1800, stall_timeout: Optional[float] = 600,
                 directories: Optional[List[str]] = None, orphan_max_age: float = 3600,
                 handles: Optional[Callable] = None,
                 on_evicted: Optional[Callable[[Job], None]] = None,
                 on_stalled: Optional[Callable[[Job], None]] = None):
        self.registry = registry
        self.max_age = max_age or {JobKind.TRANSFORM: 3600, JobKind.CAPTURE: 7200}
        self.interval = interval
        self.stall_timeout = stall_timeout
        self.directories = directories or []
        self.orphan_max_age = orphan_max_age
        self.handles = handles or (lambda job_id: None)
        self.on_evicted = on_evicted
        self.on_stalled = on_stalled
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ── Background loop ───────────────────────────────────────────────────────

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name='retention-sweeper', daemon=True)
        self._thread.start()
        logging.info(f"Retention sweeper started (every {self.interval}s)")

    def stop(self, timeout: Optional[float] = 5):
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None

    def _run(self):
        while not self._stop.wait(self.interval):
            try:
                self.sweep()
            except Exception:
                logging.exception('Retention sweep failed')

    # ── One pass ──────────────────────────────────────────────────────────────

    def sweep(self, now: Optional[datetime] = None) -> SweepReport:
        now = now or datetime.now()
        report = SweepReport()

        for job in self.registry.all():
            try:
                age = (now - job.created_at).total_seconds()
                if age > self.max_age.get(job.kind, 3600):
                    if self._evict(job):
                        report.evicted.append(job.id)
                elif self._is_stalled(job, now):
                    self._fail_stalled(job, now)
                    report.stalled.append(job.id)
            except Exception:
                logging.exception(f"Sweep failed for job {job.id}")

        report.orphans_removed = self._remove_orphans(now)

        if report.evicted or report.stalled or report.orphans_removed:
            logging.info(
                f"Sweep: evicted {len(report.evicted)} jobs, failed {len(report.stalled)} stalled jobs, "
                f"removed {len(report.orphans_removed)} orphaned files"
            )
        return report

    def _evict(self, job: Job) -> bool:
        handle = self.handles(job.id)
        if handle is not None and not job.is_terminal:
            handle.cancel()
        removed = self.registry.delete(job.id)
        if removed is None:
            return False
        remove_file(removed.output_path)
        remove_file(removed.source_ref.path)
        logging.info(f"Evicted expired {removed.kind} job {removed.id} (status {removed.status})")
        if self.on_evicted:
            self.on_evicted(removed)
        return True

    def _is_stalled(self, job: Job, now: datetime) -> bool:
        if self.stall_timeout is None or job.status != JobStatus.PROCESSING:
            return False
        last_beat = job.heartbeat_at
        handle = self.handles(job.id)
        if handle is not None:
            last_beat = max(last_beat, datetime.fromtimestamp(handle.heartbeat_at))
        return (now - last_beat).total_seconds() > self.stall_timeout

    def _fail_stalled(self, job: Job, now: datetime):
        quiet = int((now - job.heartbeat_at).total_seconds())
        logging.warning(f"Job {job.id} stalled: no progress for {quiet} seconds")
        handle = self.handles(job.id)
        if handle is not None:
            handle.cancel()
        updated = self.registry.update(
            job.id, mark_failed(f"Job stalled: no progress for {quiet} seconds")
        )
        if updated is not None and self.on_stalled:
            self.on_stalled(updated)

    def _owned_paths(self) -> set:
        owned = set()
        for job in self.registry.all():
            for path in (job.output_path, job.source_ref.path):
                if path:
                    owned.add(os.path.abspath(path))
            owned.add(job.id)
        return owned

    def _remove_orphans(self, now: datetime) -> List[str]:
        removed = []
        if not self.directories:
            return removed
        owned = self._owned_paths()
        cutoff = now.timestamp() - self.orphan_max_age
        for directory in self.directories:
            if not os.path.isdir(directory):
                continue
            for name in os.listdir(directory):
                path = os.path.abspath(os.path.join(directory, name))
                if path in owned or name.split('.', 1)[0] in owned:
                    continue
                try:
                    if not os.path.isfile(path) or os.path.getmtime(path) > cutoff:
                        continue
                except OSError:
                    continue
                if remove_file(path):
                    removed.append(path)
        return removed
