"""
Filename helpers for artifacts handed back to clients.

Free-text labels (upload names, video titles) are never used as path
components. Everything that ends up in a filename or a Content-Disposition
header goes through sanitize_label first.
"""
import os
import re

from werkzeug.utils import secure_filename

# Characters allowed to survive sanitization: ASCII letters, digits, '_', '.', '-'
_DISALLOWED = re.compile(r'[^A-Za-z0-9_.-]')


def sanitize_label(label: str, max_length: int = 50, fallback: str = 'download') -> str:
    """
    Reduce a human-facing label to a safe filename stem.

    secure_filename folds unicode to ASCII, turns whitespace into '_' and
    drops path separators; the allow-list regex is applied on top so the
    result never depends on werkzeug's exact rules. Leading dots are stripped
    so the result can't be a hidden file, and the result is never empty.

    Args:
        label: Original filename or video title.
        max_length: Maximum length of the returned stem.
        fallback: Returned when nothing survives.

    Returns:
        A string matching [A-Za-z0-9_.-]{1,max_length}.
    """
    if not label:
        return fallback
    cleaned = _DISALLOWED.sub('', secure_filename(label))
    cleaned = cleaned.lstrip('.')[:max_length].rstrip('.')
    return cleaned or fallback


def download_name(label: str, extension: str, suffix: str = 'converted', strip_extension: bool = True) -> str:
    """
    Build the filename offered to the client for a finished artifact.

    Upload names carry their own extension, which is dropped; video titles
    are used whole, dots included.

    download_name('My Song.wav', 'mp3') -> 'My_Song_converted.mp3'
    download_name('Mr. Bean', 'mp4', 'ab12', strip_extension=False) -> 'Mr._Bean_ab12.mp4'
    """
    stem = os.path.splitext(label or '')[0] if strip_extension else (label or '')
    ext = sanitize_label(extension.lstrip('.'), max_length=10, fallback='bin')
    return f"{sanitize_label(stem)}_{sanitize_label(suffix, max_length=16)}.{ext}"
