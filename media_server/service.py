"""
Job orchestration: the operations the HTTP layer (or anything else) calls.

Synchronous validation happens here before a job exists; once a job is
queued, all further state changes arrive through adapter callbacks and are
written to the registry and published to observers.
"""
import logging
import os
import threading
from typing import Callable, Dict, Optional

from formats import (
    CAPTURE_CONTAINERS, OutputRequest, UnsupportedFormat, capabilities, get_format_config,
    parse_quality,
)
from media_server.broadcast import ProgressBroadcaster, Subscription
from media_server.delivery import Artifact, Delivery
from media_server.state import (
    InMemoryJobStore, Job, JobKind, JobStatus, JobStore, SourceRef,
    mark_completed, mark_failed, mark_processing, record_progress,
)
from media_server.sweeper import RetentionSweeper
from naming import download_name
from prober import InvalidSource, ProbeResult, VideoInfo, fetch_video_info, probe
from selector import select_rendition, wants_audio_only
from transcoder import (
    CaptureAdapter, PipelineAdapter, PipelineHandle, TransformAdapter, remove_file, schedule_timer,
)

DOWNLOAD_URL = '/api/jobs/{id}/download'


class JobService:
    """
    Args:
        upload_folder: Where pending inputs live.
        output_folder: Where produced artifacts are written.
        registry: Job store; a fresh in-memory one by default.
        broadcaster: Progress channel; a fresh one by default.
        ffmpeg_bin / ffprobe_bin: Engine binaries (resolved lazily if None).
        delivery_grace: Seconds between a full download and eviction, per kind.
        input_cleanup_grace: Seconds before a finished transform's input is deleted.
        max_age: Retention per kind, in seconds.
        sweep_interval / stall_timeout / orphan_max_age: Sweeper settings.
        start_sweeper: Start the background sweep thread immediately.
    """

    def __init__(self, upload_folder: str, output_folder: str,
                 registry: Optional[JobStore] = None,
                 broadcaster: Optional[ProgressBroadcaster] = None,
                 ffmpeg_bin: Optional[str] = None, ffprobe_bin: Optional[str] = None,
                 delivery_grace: Optional[Dict[str, float]] = None,
                 input_cleanup_grace: float = 1.0,
                 max_age: Optional[Dict[str, float]] = None,
                 sweep_interval: float = 1800, stall_timeout: Optional[float] = 600,
                 orphan_max_age: float = 3600,
                 start_sweeper: bool = False):
        self.upload_folder = upload_folder
        self.output_folder = output_folder
        os.makedirs(upload_folder, exist_ok=True)
        os.makedirs(output_folder, exist_ok=True)

        self.registry = registry or InMemoryJobStore()
        self.broadcaster = broadcaster or ProgressBroadcaster()
        self.ffmpeg_bin = ffmpeg_bin
        self.ffprobe_bin = ffprobe_bin
        self.input_cleanup_grace = input_cleanup_grace
        self.schedule: Callable = schedule_timer

        self._handles: Dict[str, PipelineHandle] = {}
        self._handles_lock = threading.Lock()
        self._publish_lock = threading.Lock()

        self.delivery = Delivery(
            self.registry,
            grace=delivery_grace,
            schedule=lambda delay, fn: self.schedule(delay, fn),
            on_evicted=self._on_evicted,
        )
        self.sweeper = RetentionSweeper(
            self.registry,
            max_age=max_age,
            interval=sweep_interval,
            stall_timeout=stall_timeout,
            directories=[upload_folder, output_folder],
            orphan_max_age=orphan_max_age,
            handles=self.handle,
            on_evicted=self._on_evicted,
            on_stalled=self._publish,
        )
        if start_sweeper:
            self.sweeper.start()

    # ── Boundary operations ───────────────────────────────────────────────────

    def submit_transform(self, input_path: str, original_name: str, request: OutputRequest) -> str:
        """
        Queue a local format/quality conversion.

        The service takes ownership of input_path: it is deleted when the
        request is rejected, when the job fails, or shortly after it succeeds.

        Raises:
            UnsupportedFormat: format or quality not in the table (input removed).
            InvalidSource: input_path does not exist.
        """
        try:
            get_format_config(request.format, request.quality)
        except UnsupportedFormat:
            remove_file(input_path)
            raise
        if not input_path or not os.path.exists(input_path):
            raise InvalidSource('No audio file provided')

        job_id = self.registry.create(
            JobKind.TRANSFORM,
            SourceRef(path=input_path),
            request,
            original_label=original_name,
            download_name=download_name(original_name, request.format),
        )
        output_path = os.path.join(self.output_folder, f"{job_id}.{request.format}")
        logging.info(f"Queued conversion {job_id}: {original_name} -> {request.format} ({request.quality})")
        self._publish(self.registry.get(job_id))

        adapter = TransformAdapter(
            input_path,
            output_path,
            request,
            ffmpeg_bin=self.ffmpeg_bin,
            ffprobe_bin=self.ffprobe_bin,
            schedule=lambda delay, fn: self.schedule(delay, fn),
            input_cleanup_grace=self.input_cleanup_grace,
            name=f"convert-{job_id[:8]}",
            **self._callbacks(job_id, 'Converting'),
        )
        self._launch(job_id, adapter)
        return job_id

    def submit_capture(self, url: str, request: OutputRequest) -> str:
        """
        Resolve a remote video, choose a rendition and queue its download.

        Raises:
            InvalidSource: missing/unsupported URL or extractor failure.
            UnsupportedFormat: unknown quality label or container.
            NoRenditionAvailable: nothing downloadable matches.
        """
        if not url:
            raise InvalidSource('Video URL is required')
        if request.format not in CAPTURE_CONTAINERS:
            raise UnsupportedFormat(f"Unsupported output format: {request.format}")
        if not wants_audio_only(request):
            parse_quality(request.quality)

        info = fetch_video_info(url)
        rendition = select_rendition(info.renditions, request)
        logging.info(
            f"Selected format {rendition.format_id} "
            f"({rendition.quality_label or 'audio'}, video={rendition.has_video}, audio={rendition.has_audio})"
        )

        job_id = self.registry.create(
            JobKind.CAPTURE,
            SourceRef(url=url, rendition_id=rendition.format_id),
            request,
            original_label=info.title,
        )
        self.registry.update(job_id, lambda job: _with_name(job, info.title, request.format))
        logging.info(f"Queued capture {job_id} from {info.platform}: {url}")
        self._publish(self.registry.get(job_id))

        adapter = CaptureAdapter(
            url,
            rendition,
            self.output_folder,
            job_id,
            request,
            ffmpeg_bin=self.ffmpeg_bin,
            schedule=lambda delay, fn: self.schedule(delay, fn),
            name=f"capture-{job_id[:8]}",
            **self._callbacks(job_id, f"Downloading from {info.platform}"),
        )
        self._launch(job_id, adapter)
        return job_id

    def probe(self, path: str) -> ProbeResult:
        return probe(path, self.ffprobe_bin)

    def video_info(self, url: str) -> VideoInfo:
        if not url:
            raise InvalidSource('Video URL is required')
        return fetch_video_info(url)

    def get_status(self, job_id: str) -> dict:
        """Raises JobNotFound."""
        job = self.registry.get(job_id)
        status = job.to_dict()
        if job.status == JobStatus.COMPLETED:
            status['download_url'] = DOWNLOAD_URL.format(id=job.id)
        return status

    def open_download(self, job_id: str) -> Artifact:
        """Raises JobNotFound, JobNotReady or ArtifactMissing."""
        return self.delivery.open(job_id)

    def subscribe(self, job_id: Optional[str] = None) -> Subscription:
        return self.broadcaster.subscribe(job_id)

    def capabilities(self) -> dict:
        return capabilities()

    def handle(self, job_id: str) -> Optional[PipelineHandle]:
        with self._handles_lock:
            return self._handles.get(job_id)

    def shutdown(self, timeout: float = 5.0):
        """Stop the sweeper, cancel running jobs and wait briefly for their threads."""
        self.sweeper.stop()
        with self._handles_lock:
            handles = list(self._handles.values())
        for handle in handles:
            handle.cancel()
        for handle in handles:
            if handle.is_alive():
                handle.join(timeout)

    # ── Adapter wiring ────────────────────────────────────────────────────────

    def _launch(self, job_id: str, adapter: PipelineAdapter):
        with self._handles_lock:
            self._handles[job_id] = adapter.handle
        adapter.start()

    def _callbacks(self, job_id: str, verb: str) -> dict:
        def on_start():
            self._publish(self.registry.update(job_id, mark_processing(f"{verb}...")))

        def on_progress(percent, marker=None):
            self._publish(self.registry.update(job_id, record_progress(percent, f"{verb}... {percent}%")))

        def on_complete(output_path):
            job = self.registry.find(job_id)
            name = None
            if job is not None and job.kind == JobKind.CAPTURE:
                ext = os.path.splitext(output_path)[1].lstrip('.')
                name = download_name(job.original_label, ext, suffix=job_id[:8], strip_extension=False)
            updated = self.registry.update(job_id, mark_completed(output_path, 'Completed!', name))
            if updated is None:
                # evicted or failed while the engine was finishing; nobody owns the file now
                remove_file(output_path)
            else:
                logging.info(f"Job {job_id} completed")
            self._forget_handle(job_id)
            self._publish(updated)

        def on_error(message):
            updated = self.registry.update(job_id, mark_failed(message))
            if updated is not None:
                logging.error(f"Job {job_id} failed: {message}")
            self._forget_handle(job_id)
            self._publish(updated)

        return {
            'on_start': on_start,
            'on_progress': on_progress,
            'on_complete': on_complete,
            'on_error': on_error,
        }

    def _forget_handle(self, job_id: str):
        with self._handles_lock:
            self._handles.pop(job_id, None)

    def _on_evicted(self, job: Job):
        with self._handles_lock:
            self._handles.pop(job.id, None)
        with self._publish_lock:
            self.broadcaster.publish({
                'id': job.id,
                'kind': job.kind,
                'status': JobStatus.EVICTED,
                'progress': job.progress,
                'message': 'Removed',
            })

    def _publish(self, job: Optional[Job]):
        """
        Publish a record returned by a registry write.

        Callbacks race between their registry write and this call, so a
        non-terminal record is dropped once the stored job has moved past it.
        The writer of the newer state publishes that state itself.
        """
        if job is None:
            return
        with self._publish_lock:
            if not job.is_terminal:
                current = self.registry.find(job.id)
                if current is None or current.is_terminal or current.progress > job.progress:
                    return
            self.broadcaster.publish(self.job_event(job))

    @staticmethod
    def job_event(job: Job) -> dict:
        """Progress event payload for a job's current state."""
        event = {
            'id': job.id,
            'kind': job.kind,
            'status': job.status,
            'progress': job.progress,
            'message': job.message,
        }
        if job.status == JobStatus.COMPLETED:
            event['download_url'] = DOWNLOAD_URL.format(id=job.id)
        if job.error:
            event['error'] = job.error
        return event


def _with_name(job: Job, title: str, container: str) -> Job:
    job.download_name = download_name(title, container, suffix=job.id[:8], strip_extension=False)
    return job
