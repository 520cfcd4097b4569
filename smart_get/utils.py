# smart_get/utils.py
"""
Shared helper functions for formatting, validation, and file paths.
"""
from urllib.parse import urlparse, unquote
from pathlib import Path
import os

DEFAULT_FILENAME = "downloaded_file"


def format_bytes(size) -> str:
    """Converts bytes into a human-readable format (KB, MB, GB)."""
    if not isinstance(size, (int, float)):
        return "0 B"
    power = 1024
    n = 0
    power_labels = {0: '', 1: 'K', 2: 'M', 3: 'G', 4: 'T'}
    while size >= power and n < len(power_labels) - 1:
        size /= power
        n += 1
    if n == 0:
        return f"{int(size)} B"
    return f"{size:.2f} {power_labels[n]}B"


def format_eta(seconds: float) -> str:
    """MM:SS, minutes are not wrapped into hours."""
    seconds = int(seconds)
    return f"{seconds // 60:02d}:{seconds % 60:02d}"


def is_valid_url(url: str) -> bool:
    """Accepts only absolute http(s) URLs with a host."""
    try:
        result = urlparse(url)
        return result.scheme in ('http', 'https') and bool(result.netloc)
    except ValueError:
        return False


def get_default_filename(url: str) -> str:
    """Extracts a filename from a URL path."""
    try:
        path = urlparse(url).path
        filename = os.path.basename(unquote(path))
        return filename if filename else DEFAULT_FILENAME
    except ValueError:
        return DEFAULT_FILENAME


def unique_output_path(path) -> Path:
    """Return path, or "<stem> copy N<suffix>" with the first N that is free."""
    path = Path(path)
    if not path.exists():
        return path

    counter = 1
    while True:
        candidate = path.with_name(f"{path.stem} copy {counter}{path.suffix}")
        if not candidate.exists():
            return candidate
        counter += 1
