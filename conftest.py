import os
import shutil
import time

import pytest

from media_server.state import JobStatus


class RecordingScheduler:
    """Stands in for schedule_timer: remembers deferred work instead of sleeping."""

    def __init__(self):
        self.calls = []

    def __call__(self, delay, fn):
        self.calls.append((delay, fn))

    def run_all(self):
        calls, self.calls = self.calls, []
        for _, fn in calls:
            fn()
        return len(calls)


def wait_for_terminal(registry, job_id, timeout=10.0):
    """Poll until the job leaves queued/processing (or disappears)."""
    deadline = time.time() + timeout
    while time.time() < deadline:
        job = registry.find(job_id)
        if job is None or job.status in JobStatus.TERMINAL:
            return job
        time.sleep(0.02)
    raise AssertionError(f"Job {job_id} did not finish within {timeout}s")


def ffmpeg_available():
    return shutil.which('ffmpeg') is not None and shutil.which('ffprobe') is not None


def make_tone(path, duration=10.0):
    """Write a sine tone with ffmpeg's lavfi source."""
    import subprocess
    cmd = [
        shutil.which('ffmpeg'), '-y', '-nostdin', '-hide_banner', '-loglevel', 'error',
        '-f', 'lavfi', '-i', f"sine=frequency=440:duration={duration}",
        '-c:a', 'pcm_s16le', '-ar', '44100', '-ac', '2', path,
    ]
    subprocess.run(cmd, check=True, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
    return path


@pytest.fixture()
def data_dirs(tmp_path):
    uploads = tmp_path / 'uploads'
    outputs = tmp_path / 'outputs'
    uploads.mkdir()
    outputs.mkdir()
    return str(uploads), str(outputs)


@pytest.fixture()
def scheduler():
    return RecordingScheduler()


@pytest.fixture()
def service(data_dirs, scheduler):
    from media_server.service import JobService

    upload_folder, output_folder = data_dirs
    svc = JobService(
        upload_folder,
        output_folder,
        ffmpeg_bin=shutil.which('ffmpeg') or 'ffmpeg',
        ffprobe_bin=shutil.which('ffprobe') or 'ffprobe',
    )
    svc.schedule = scheduler
    yield svc
    svc.shutdown()


@pytest.fixture()
def app(data_dirs, scheduler):
    from media_server.app import create_app

    upload_folder, output_folder = data_dirs
    app = create_app({
        'TESTING': True,
        'UPLOAD_FOLDER': upload_folder,
        'OUTPUT_FOLDER': output_folder,
        'FFMPEG_BIN': shutil.which('ffmpeg') or 'ffmpeg',
        'FFPROBE_BIN': shutil.which('ffprobe') or 'ffprobe',
        'START_SWEEPER': False,
    })
    app.extensions['media_service'].schedule = scheduler
    yield app
    app.extensions['media_service'].shutdown()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def app_service(app):
    return app.extensions['media_service']
