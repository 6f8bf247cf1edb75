"""
Pipeline adapters: one run of an external engine per job.

Both adapters expose the same callback contract regardless of what the
engine is doing underneath:

    on_start()
    on_progress(percent, marker)   0-95 while running, never decreasing
    on_complete(output_path)       exactly one of these two,
    on_error(message)              always the last callback

A local transform drives ffmpeg with machine-readable progress on stdout.
A remote capture drives yt-dlp and turns its progress hooks into the same
signal. Each adapter runs on its own daemon thread and is controlled through
the PipelineHandle returned by start().
"""
import glob
import logging
import os
import subprocess
import threading
import time
from typing import Callable, List, Optional

import yt_dlp

from formats import OutputRequest, get_format_config
from prober import Rendition, USER_AGENT, get_duration, resolve_ffmpeg_bin, resolve_ffprobe_bin

# 96-100 is reserved for the terminal 'completed' event
MAX_RUNNING_PROGRESS = 95

STDERR_TAIL_LINES = 20


class PipelineCancelled(Exception):
    """Raised inside a run when its handle has been cancelled."""


def schedule_timer(delay: float, fn: Callable[[], None]) -> threading.Timer:
    """Run fn once after delay seconds on a daemon timer thread."""
    timer = threading.Timer(delay, fn)
    timer.daemon = True
    timer.start()
    return timer


def remove_file(path: Optional[str]) -> bool:
    """Delete path if it exists. Missing files are not an error."""
    if not path:
        return False
    try:
        os.remove(path)
        return True
    except FileNotFoundError:
        return False
    except OSError as e:
        logging.warning(f"Failed to remove {path}: {e}")
        return False


class PipelineHandle:
    """Cancellable reference to a running adapter, with a liveness heartbeat."""

    def __init__(self):
        self._cancel_event = threading.Event()
        self._process: Optional[subprocess.Popen] = None
        self._lock = threading.Lock()
        self.thread: Optional[threading.Thread] = None
        self.heartbeat_at = time.time()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def beat(self):
        self.heartbeat_at = time.time()

    def attach(self, process: subprocess.Popen):
        with self._lock:
            self._process = process
        if self.cancelled:
            self._terminate()

    def cancel(self):
        self._cancel_event.set()
        self._terminate()

    def _terminate(self):
        with self._lock:
            process = self._process
        if process is not None and process.poll() is None:
            process.terminate()
            logging.info(f"Terminated engine process {process.pid}")

    def is_alive(self) -> bool:
        return self.thread is not None and self.thread.is_alive()

    def join(self, timeout: Optional[float] = None):
        if self.thread is not None:
            self.thread.join(timeout)


class PipelineAdapter:
    """
    Base class holding the callback contract and the cleanup guarantees.

    Subclasses implement _execute(), which blocks until the engine is done
    and returns the path of the produced artifact (or raises). Everything
    else, including clamping, terminal-once semantics and file cleanup,
    lives here.

    Args:
        input_path: Local input artifact, if any.
        owns_input: Delete input_path when the run ends.
        on_start/on_progress/on_complete/on_error: Callbacks, all optional.
        schedule: callable(delay, fn) used for deferred input cleanup.
        input_cleanup_grace: Seconds to wait before deleting the input after
            a successful run.
        name: Used for log lines and the worker thread name.
    """

    def __init__(self, input_path: Optional[str] = None, owns_input: bool = False,
                 on_start: Optional[Callable[[], None]] = None,
                 on_progress: Optional[Callable[[int, Optional[str]], None]] = None,
                 on_complete: Optional[Callable[[str], None]] = None,
                 on_error: Optional[Callable[[str], None]] = None,
                 schedule: Optional[Callable] = None,
                 input_cleanup_grace: float = 1.0,
                 name: str = 'pipeline'):
        self.input_path = input_path
        self.owns_input = owns_input
        self.output_path: Optional[str] = None
        self.on_start = on_start
        self.on_progress = on_progress
        self.on_complete = on_complete
        self.on_error = on_error
        self.schedule = schedule or schedule_timer
        self.input_cleanup_grace = input_cleanup_grace
        self.name = name
        self.handle = PipelineHandle()
        self._progress = 0
        self._finished = False

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def start(self) -> PipelineHandle:
        thread = threading.Thread(target=self.run, name=f"{self.name}-worker", daemon=True)
        self.handle.thread = thread
        thread.start()
        return self.handle

    def run(self):
        """Execute synchronously on the calling thread."""
        logging.info(f"[{self.name}] Starting")
        self.handle.beat()
        self._call(self.on_start)

        try:
            output = self._execute()
            if self.handle.cancelled:
                raise PipelineCancelled()
            self._verify_output(output)
        except PipelineCancelled:
            self._fail('Cancelled')
            return
        except Exception as e:
            if self.handle.cancelled:
                self._fail('Cancelled')
            else:
                logging.error(f"[{self.name}] Failed: {e}")
                self._fail(str(e) or e.__class__.__name__)
            return

        self._complete(output)

    def _execute(self) -> str:
        raise NotImplementedError

    # ── Progress ──────────────────────────────────────────────────────────────

    def report_progress(self, percent: float, marker: Optional[str] = None):
        """Clamp, de-duplicate and forward an engine progress reading."""
        self.handle.beat()
        if self._finished:
            return
        pct = int(max(0, min(MAX_RUNNING_PROGRESS, percent)))
        if pct <= self._progress:
            return
        self._progress = pct
        self._call(self.on_progress, pct, marker)

    @property
    def progress(self) -> int:
        return self._progress

    # ── Terminal events ───────────────────────────────────────────────────────

    def _verify_output(self, output: Optional[str]):
        if not output or not os.path.exists(output):
            raise RuntimeError('Output file was not produced')
        if os.path.getsize(output) == 0:
            raise RuntimeError('Output file is empty')

    def _complete(self, output: str):
        if self._finished:
            return
        self._finished = True
        self.output_path = output
        logging.info(f"[{self.name}] Completed: {output}")
        if self.owns_input and self.input_path:
            input_path = self.input_path
            self.schedule(self.input_cleanup_grace, lambda: remove_file(input_path))
        self._call(self.on_complete, output)

    def _fail(self, message: str):
        if self._finished:
            return
        self._finished = True
        for path in self._partial_outputs():
            if remove_file(path):
                logging.info(f"[{self.name}] Removed incomplete output: {path}")
        if self.owns_input:
            remove_file(self.input_path)
        self._call(self.on_error, message)

    def _partial_outputs(self) -> List[str]:
        return [self.output_path] if self.output_path else []

    def _call(self, callback, *args):
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logging.exception(f"[{self.name}] Callback {getattr(callback, '__name__', callback)} raised")


# ── Local transform (ffmpeg) ───────────────────────────────────────────────────

def build_transform_command(ffmpeg_bin: str, input_path: str, output_path: str,
                            request: OutputRequest) -> List[str]:
    """
    Build the ffmpeg command for one audio transform.

    Lossy formats get a bitrate, wav/flac get a sample rate; explicit values
    in the request override the quality tier. Progress is written as
    key=value lines on stdout.

    Raises:
        UnsupportedFormat: if the format or quality is not in the table.
    """
    config = get_format_config(request.format, request.quality)
    tier_value = config['quality'][request.quality]

    cmd = [
        ffmpeg_bin,
        '-hide_banner',
        '-nostdin',
        '-i', input_path,
        '-vn',
        '-c:a', config['codec'],
    ]

    if config['setting'] == 'sample_rate':
        cmd.extend(['-ar', str(request.sample_rate or tier_value)])
    else:
        cmd.extend(['-b:a', request.bit_rate or tier_value])
        if request.sample_rate:
            cmd.extend(['-ar', str(request.sample_rate)])

    if request.channels:
        cmd.extend(['-ac', str(request.channels)])

    if request.format == 'flac':
        cmd.extend(['-q:a', '0'])
    if config.get('container'):
        cmd.extend(['-f', config['container']])

    cmd.extend([
        '-progress', 'pipe:1',
        '-nostats',
        '-y',
        output_path,
    ])
    return cmd


def parse_progress_line(line: str, duration: float) -> Optional[float]:
    """Percentage for an 'out_time=HH:MM:SS.micro' line, None for anything else."""
    if not line.startswith('out_time=') or duration <= 0:
        return None
    seconds = hhmmss_to_seconds(line.split('=', 1)[1])
    return min(seconds / duration * 100.0, 100.0)


def hhmmss_to_seconds(time_str: str) -> float:
    try:
        h, m, s = time_str.strip().split(':')
        return max(float(h) * 3600 + float(m) * 60 + float(s), 0.0)
    except ValueError:
        return 0.0


class TransformAdapter(PipelineAdapter):
    """Transcode a local file with ffmpeg."""

    def __init__(self, input_path: str, output_path: str, request: OutputRequest,
                 ffmpeg_bin: Optional[str] = None, ffprobe_bin: Optional[str] = None, **kwargs):
        kwargs.setdefault('owns_input', True)
        super().__init__(input_path=input_path, **kwargs)
        self.target_path = output_path
        self.request = request
        self.ffmpeg_bin = ffmpeg_bin or resolve_ffmpeg_bin()
        self.ffprobe_bin = ffprobe_bin or resolve_ffprobe_bin()

    def _partial_outputs(self) -> List[str]:
        return [self.target_path]

    def _execute(self) -> str:
        duration = get_duration(self.input_path, self.ffprobe_bin)
        logging.info(f"[{self.name}] Duration = {duration:.2f}s")

        cmd = build_transform_command(self.ffmpeg_bin, self.input_path, self.target_path, self.request)
        os.makedirs(os.path.dirname(os.path.abspath(self.target_path)), exist_ok=True)
        logging.info(f"[{self.name}] FFmpeg command: {' '.join(cmd)}")

        process = subprocess.Popen(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
        )
        self.handle.attach(process)

        # ffmpeg blocks once the stderr pipe buffer fills, so drain it on the side
        stderr_lines: List[str] = []

        def _drain_stderr():
            for err_line in process.stderr:
                stripped = err_line.rstrip()
                if stripped:
                    stderr_lines.append(stripped)

        stderr_thread = threading.Thread(target=_drain_stderr, daemon=True)
        stderr_thread.start()

        for line in process.stdout:
            line = line.strip()
            pct = parse_progress_line(line, duration)
            if pct is not None:
                self.report_progress(pct, line.split('=', 1)[1])
            elif line:
                self.handle.beat()

        stderr_thread.join()
        process.wait()

        if self.handle.cancelled:
            raise PipelineCancelled()
        if process.returncode != 0:
            tail = '\n'.join(stderr_lines[-STDERR_TAIL_LINES:])
            logging.error(f"[{self.name}] ffmpeg stderr:\n{tail}")
            last = stderr_lines[-1] if stderr_lines else 'no output'
            raise RuntimeError(f"ffmpeg exited with code {process.returncode}: {last}")

        return self.target_path


# ── Remote capture (yt-dlp) ────────────────────────────────────────────────────

class CaptureAdapter(PipelineAdapter):
    """
    Download one chosen rendition of a remote video into output_dir.

    The artifact is written as <output_dir>/<file_stem>.<ext>; the extension
    is whatever yt-dlp (and any post-processor) ends up producing.
    """

    TEMP_SUFFIXES = ('.part', '.ytdl', '.temp')

    def __init__(self, url: str, rendition: Rendition, output_dir: str, file_stem: str,
                 request: OutputRequest, ffmpeg_bin: Optional[str] = None, **kwargs):
        super().__init__(**kwargs)
        self.url = url
        self.rendition = rendition
        self.output_dir = output_dir
        self.file_stem = file_stem
        self.request = request
        self.ffmpeg_bin = ffmpeg_bin or resolve_ffmpeg_bin()

    def ydl_options(self) -> dict:
        opts = {
            'format': self.rendition.format_id,
            'outtmpl': os.path.join(self.output_dir, f"{self.file_stem}.%(ext)s"),
            'noplaylist': True,
            'quiet': True,
            'no_warnings': True,
            'noprogress': True,
            'nomtime': True,
            'retries': 3,
            'extractor_retries': 3,
            'socket_timeout': 60,
            'http_headers': {
                'User-Agent': USER_AGENT,
                'Accept-Language': 'en-US,en;q=0.9',
            },
            'ffmpeg_location': self.ffmpeg_bin,
            'progress_hooks': [self._progress_hook],
        }

        container = (self.request.format or '').lower()
        if container == 'mp3':
            opts['postprocessors'] = [{
                'key': 'FFmpegExtractAudio',
                'preferredcodec': 'mp3',
                'preferredquality': '0',
            }]
        elif self.rendition.has_video and container in ('mp4', 'webm') and self.rendition.ext != container:
            opts['postprocessors'] = [{
                'key': 'FFmpegVideoRemuxer',
                'preferedformat': container,
            }]
        return opts

    def _progress_hook(self, d: dict):
        if self.handle.cancelled:
            raise PipelineCancelled()
        if d.get('status') != 'downloading':
            self.handle.beat()
            return
        downloaded = d.get('downloaded_bytes') or 0
        total = d.get('total_bytes') or d.get('total_bytes_estimate') or 0
        if total > 0:
            self.report_progress(downloaded / total * 100.0, f"{downloaded}/{total}")
        else:
            self.handle.beat()

    def _candidates(self) -> List[str]:
        pattern = os.path.join(glob.escape(self.output_dir), glob.escape(self.file_stem) + '.*')
        return glob.glob(pattern)

    def _partial_outputs(self) -> List[str]:
        return self._candidates()

    def _execute(self) -> str:
        os.makedirs(self.output_dir, exist_ok=True)
        logging.info(
            f"[{self.name}] Capturing {self.url} as format {self.rendition.format_id} "
            f"({self.rendition.quality_label or 'audio'})"
        )

        with yt_dlp.YoutubeDL(self.ydl_options()) as ydl:
            retcode = ydl.download([self.url])
        if retcode:
            raise RuntimeError(f"yt-dlp exited with code {retcode}")

        finished = [p for p in self._candidates() if not p.endswith(self.TEMP_SUFFIXES)]
        if not finished:
            raise RuntimeError('Downloaded file not found')
        return max(finished, key=os.path.getmtime)
