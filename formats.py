"""
Supported input/output formats and their quality tiers.

The table below is the single source of truth for what the transform
pipeline can produce. Lossy formats map a quality tier to an audio bitrate,
uncompressed/lossless formats map it to a sample rate.
"""
import re
from dataclasses import dataclass, asdict
from typing import Dict, Optional

QUALITY_TIERS = ['low', 'medium', 'high', 'lossless']

FORMAT_CONFIGS: Dict[str, dict] = {
    'mp3': {
        'codec': 'libmp3lame',
        'setting': 'bitrate',
        'quality': {'low': '96k', 'medium': '128k', 'high': '192k', 'lossless': '320k'},
    },
    'wav': {
        'codec': 'pcm_s16le',
        'setting': 'sample_rate',
        'quality': {'low': '22050', 'medium': '44100', 'high': '48000', 'lossless': '96000'},
    },
    'ogg': {
        'codec': 'libvorbis',
        'setting': 'bitrate',
        'container': 'ogg',
        'quality': {'low': '96k', 'medium': '128k', 'high': '192k', 'lossless': '320k'},
    },
    'flac': {
        'codec': 'flac',
        'setting': 'sample_rate',
        'quality': {'low': '44100', 'medium': '48000', 'high': '96000', 'lossless': '192000'},
    },
    'aac': {
        'codec': 'aac',
        'setting': 'bitrate',
        'quality': {'low': '96k', 'medium': '128k', 'high': '192k', 'lossless': '256k'},
    },
    'm4a': {
        'codec': 'aac',
        'setting': 'bitrate',
        'container': 'mp4',
        'quality': {'low': '96k', 'medium': '128k', 'high': '192k', 'lossless': '256k'},
    },
    'webm': {
        'codec': 'libopus',
        'setting': 'bitrate',
        'quality': {'low': '96k', 'medium': '128k', 'high': '192k', 'lossless': '320k'},
    },
}

INPUT_EXTENSIONS = ['mp3', 'wav', 'ogg', 'flac', 'aac', 'm4a', 'webm', 'mp4', '3gp', 'amr', 'wma']

INPUT_MIME_TYPES = {
    'audio/mpeg', 'audio/wav', 'audio/ogg', 'audio/flac',
    'audio/aac', 'audio/m4a', 'audio/webm', 'audio/mp4',
    'video/mp4', 'video/webm', 'video/ogg',
}

CAPTURE_QUALITIES = ['highest', '1080p', '720p', '480p', '360p', 'audio']

CAPTURE_CONTAINERS = ['mp4', 'webm', 'mp3']


class UnsupportedFormat(ValueError):
    """Raised when an output format or quality tier is not in the table."""


@dataclass(frozen=True)
class OutputRequest:
    """
    What the client asked for.

    Transforms use format/quality plus the optional explicit encoder
    overrides. Captures use quality ('highest', '720p', 'audio', ...),
    resolution and audio_only; format is the capture container.
    """
    format: str = 'mp3'
    quality: str = 'high'
    sample_rate: Optional[int] = None
    bit_rate: Optional[str] = None
    channels: Optional[int] = None
    resolution: Optional[int] = None
    audio_only: bool = False

    def to_dict(self):
        return {k: v for k, v in asdict(self).items() if v is not None}


_HEIGHT_RE = re.compile(r'^(\d{3,4})p?$')


def parse_quality(quality: Optional[str]) -> Optional[int]:
    """
    Turn a capture quality label into a target height.

    'highest'/'best'/None -> None (no limit), '720p' -> 720.

    Raises:
        UnsupportedFormat: for anything else.
    """
    if quality is None or quality in ('highest', 'best', 'audio'):
        return None
    match = _HEIGHT_RE.match(str(quality).strip().lower())
    if not match:
        raise UnsupportedFormat(f"Unsupported quality: {quality}")
    return int(match.group(1))


def normalize_bitrate(value) -> Optional[str]:
    """'192' -> '192k', '192k' -> '192k', '' -> None."""
    if value in (None, ''):
        return None
    text = str(value).strip().lower()
    if text.isdigit():
        return f"{text}k"
    if re.match(r'^\d+k$', text):
        return text
    raise UnsupportedFormat(f"Invalid bitrate: {value}")


def optional_int(value, name: str) -> Optional[int]:
    if value in (None, ''):
        return None
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise UnsupportedFormat(f"Invalid {name}: {value}")
    if number <= 0:
        raise UnsupportedFormat(f"Invalid {name}: {value}")
    return number


def get_format_config(fmt: str, quality: str = 'high') -> dict:
    """
    Look up the encoder settings for an output format.

    Args:
        fmt: Output format key, e.g. 'mp3'.
        quality: One of QUALITY_TIERS.

    Returns:
        The FORMAT_CONFIGS entry for fmt.

    Raises:
        UnsupportedFormat: if fmt or quality is unknown.
    """
    config = FORMAT_CONFIGS.get((fmt or '').lower())
    if config is None:
        raise UnsupportedFormat(f"Unsupported output format: {fmt}")
    if quality not in QUALITY_TIERS:
        raise UnsupportedFormat(f"Unsupported quality: {quality}")
    return config


def is_supported_input(filename: str, mimetype: str = None) -> bool:
    """True if an upload looks like something ffmpeg can read for us."""
    if mimetype and mimetype in INPUT_MIME_TYPES:
        return True
    ext = filename.rsplit('.', 1)[-1].lower() if '.' in filename else ''
    return ext in INPUT_EXTENSIONS


def capabilities() -> dict:
    return {
        'input': list(INPUT_EXTENSIONS),
        'output': list(FORMAT_CONFIGS),
        'qualities': list(QUALITY_TIERS),
        'quality_table': {fmt: dict(cfg['quality']) for fmt, cfg in FORMAT_CONFIGS.items()},
        'capture_qualities': list(CAPTURE_QUALITIES),
        'capture_formats': list(CAPTURE_CONTAINERS),
    }
