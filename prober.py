"""
Source probing.

Local files are inspected with ffprobe; remote videos are inspected with
yt-dlp's extractor (no download). Neither path creates a job.
"""
import json
import logging
import os
import shutil
import subprocess
from dataclasses import dataclass, field
from typing import List, Optional
from urllib.parse import urlparse

import imageio_ffmpeg
import yt_dlp

SUPPORTED_PLATFORMS = {
    'youtube.com': 'YouTube',
    'youtu.be': 'YouTube',
    'instagram.com': 'Instagram',
    'facebook.com': 'Facebook',
    'fb.watch': 'Facebook',
    'twitter.com': 'X/Twitter',
    'x.com': 'X/Twitter',
}

USER_AGENT = (
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 '
    '(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36'
)


class ProbeError(RuntimeError):
    """ffprobe could not read the file."""


class InvalidSource(ValueError):
    """A remote URL is not a supported video, or could not be resolved."""


@dataclass
class ProbeResult:
    """Structural metadata for a local media file."""
    path: str
    duration_seconds: float = 0.0
    size: int = 0
    bit_rate: int = 0
    format_name: str = ''
    codec: str = ''
    sample_rate: int = 0
    channels: int = 0
    channel_layout: str = ''
    video_codec: str = ''
    width: int = 0
    height: int = 0

    def to_dict(self):
        return {
            'duration': self.duration_seconds,
            'size': self.size,
            'bitRate': self.bit_rate,
            'format': self.format_name,
            'codec': self.codec,
            'sampleRate': self.sample_rate,
            'channels': self.channels,
            'channelLayout': self.channel_layout,
            'videoCodec': self.video_codec or None,
            'width': self.width or None,
            'height': self.height or None,
        }


@dataclass
class Rendition:
    """One concrete encoded variant of a remote video."""
    format_id: str
    height: int = 0
    has_audio: bool = False
    has_video: bool = False
    audio_bitrate: float = 0.0
    ext: str = ''
    filesize: Optional[int] = None
    quality_label: str = ''

    def to_dict(self):
        return {
            'format_id': self.format_id,
            'quality': self.quality_label,
            'ext': self.ext,
            'height': self.height or None,
            'hasVideo': self.has_video,
            'hasAudio': self.has_audio,
            'audioBitrate': self.audio_bitrate or None,
            'filesize': self.filesize,
        }


@dataclass
class VideoInfo:
    """What the extractor tells us about a remote video."""
    url: str
    title: str
    platform: str
    duration: float = 0.0
    thumbnail: str = ''
    author: str = ''
    view_count: int = 0
    upload_date: str = ''
    description: str = ''
    renditions: List[Rendition] = field(default_factory=list)

    def to_dict(self):
        return {
            'title': self.title,
            'duration': str(int(self.duration or 0)),
            'thumbnail': self.thumbnail,
            'author': self.author,
            'viewCount': str(self.view_count or 0),
            'uploadDate': self.upload_date,
            'description': self.description,
            'platform': self.platform,
            'availableQualities': available_qualities(self.renditions),
            'formats': [r.to_dict() for r in self.renditions if r.has_video][:10],
        }


# ── Binaries ──────────────────────────────────────────────────────────────────

def resolve_ffmpeg_bin() -> str:
    """FFMPEG_BIN env var, then PATH, then the binary bundled with imageio-ffmpeg."""
    configured = os.environ.get('FFMPEG_BIN')
    if configured:
        return configured
    return shutil.which('ffmpeg') or imageio_ffmpeg.get_ffmpeg_exe()


def resolve_ffprobe_bin() -> str:
    return os.environ.get('FFPROBE_BIN') or shutil.which('ffprobe') or 'ffprobe'


# ── Local files ───────────────────────────────────────────────────────────────

def probe(path: str, ffprobe_bin: Optional[str] = None) -> ProbeResult:
    """
    Run ffprobe on a local file.

    Raises:
        ProbeError: if the file does not exist or ffprobe fails.
    """
    if not os.path.exists(path):
        raise ProbeError(f"Input file not found: {path}")

    cmd = [
        ffprobe_bin or resolve_ffprobe_bin(),
        '-v', 'quiet',
        '-print_format', 'json',
        '-show_format',
        '-show_streams',
        path,
    ]
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=30)
    except (OSError, subprocess.TimeoutExpired) as e:
        raise ProbeError(f"ffprobe could not run on {os.path.basename(path)}: {e}") from e

    if result.returncode != 0:
        raise ProbeError(f"ffprobe failed on {os.path.basename(path)}: {result.stderr.strip()}")

    try:
        data = json.loads(result.stdout or '{}')
    except json.JSONDecodeError as e:
        raise ProbeError(f"ffprobe returned invalid JSON for {os.path.basename(path)}") from e

    return parse_probe_output(path, data)


def parse_probe_output(path: str, data: dict) -> ProbeResult:
    """Pick the fields we care about out of raw ffprobe JSON."""
    fmt = data.get('format', {})
    streams = data.get('streams', [])
    audio = next((s for s in streams if s.get('codec_type') == 'audio'), {})
    video = next((s for s in streams if s.get('codec_type') == 'video'), {})

    return ProbeResult(
        path=path,
        duration_seconds=_to_float(fmt.get('duration')),
        size=int(_to_float(fmt.get('size'))),
        bit_rate=int(_to_float(fmt.get('bit_rate'))),
        format_name=fmt.get('format_name', ''),
        codec=audio.get('codec_name', ''),
        sample_rate=int(_to_float(audio.get('sample_rate'))),
        channels=int(audio.get('channels') or 0),
        channel_layout=audio.get('channel_layout', ''),
        video_codec=video.get('codec_name', ''),
        width=int(video.get('width') or 0),
        height=int(video.get('height') or 0),
    )


def get_duration(path: str, ffprobe_bin: Optional[str] = None) -> float:
    """Duration in seconds, 0.0 if it can't be determined."""
    try:
        return probe(path, ffprobe_bin).duration_seconds
    except ProbeError as e:
        logging.warning(f"Could not determine duration of {path}: {e}")
        return 0.0


def _to_float(value) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


# ── Remote videos ─────────────────────────────────────────────────────────────

def detect_platform(url: str) -> Optional[str]:
    host = (urlparse(url).hostname or '').lower()
    for domain, name in SUPPORTED_PLATFORMS.items():
        if host == domain or host.endswith('.' + domain):
            return name
    return None


def validate_url(url: str) -> bool:
    if not url or not url.startswith(('http://', 'https://')):
        return False
    return detect_platform(url) is not None


def fetch_video_info(url: str) -> VideoInfo:
    """
    Resolve a remote video with yt-dlp without downloading it.

    Raises:
        InvalidSource: unsupported platform, playlist, or extractor failure.
    """
    if not validate_url(url):
        raise InvalidSource(
            'Unsupported platform. Supported: YouTube, Instagram, Facebook, X/Twitter'
        )

    ydl_opts = {
        'quiet': True,
        'no_warnings': True,
        'skip_download': True,
        'noplaylist': True,
        'http_headers': {'User-Agent': USER_AGENT},
    }
    logging.info(f"Getting video info for {detect_platform(url)}: {url}")
    try:
        with yt_dlp.YoutubeDL(ydl_opts) as ydl:
            info = ydl.extract_info(url, download=False)
    except Exception as e:
        logging.error(f"yt-dlp could not resolve {url}: {e}")
        raise InvalidSource(f"Failed to get video information: {e}") from e

    if not info:
        raise InvalidSource('Failed to get video information')
    if info.get('_type') == 'playlist':
        raise InvalidSource('Playlists are not supported')

    description = info.get('description') or ''
    return VideoInfo(
        url=url,
        title=info.get('title') or 'Unknown Title',
        platform=detect_platform(url),
        duration=info.get('duration') or 0,
        thumbnail=info.get('thumbnail') or '',
        author=info.get('uploader') or info.get('channel') or 'Unknown Author',
        view_count=info.get('view_count') or 0,
        upload_date=info.get('upload_date') or '',
        description=description[:200] + ('...' if len(description) > 200 else ''),
        renditions=parse_renditions(info.get('formats') or []),
    )


def parse_renditions(formats: List[dict]) -> List[Rendition]:
    """Map yt-dlp format dicts to Renditions, preserving extractor order."""
    renditions = []
    for f in formats:
        if not f.get('format_id'):
            continue
        vcodec = f.get('vcodec')
        acodec = f.get('acodec')
        height = int(f.get('height') or 0)
        renditions.append(Rendition(
            format_id=str(f['format_id']),
            height=height,
            has_video=bool(vcodec) and vcodec != 'none',
            has_audio=bool(acodec) and acodec != 'none',
            audio_bitrate=float(f.get('abr') or 0),
            ext=f.get('ext') or '',
            filesize=f.get('filesize') or f.get('filesize_approx'),
            quality_label=f.get('format_note') or (f"{height}p" if height else ''),
        ))
    return renditions


def available_qualities(renditions: List[Rendition]) -> List[str]:
    """Distinct quality labels of the video renditions, plus 'Audio Only'."""
    seen = []
    for r in renditions:
        if r.has_video and r.quality_label and r.quality_label not in seen:
            seen.append(r.quality_label)
    seen.append('Audio Only')
    return seen
