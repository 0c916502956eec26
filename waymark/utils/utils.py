"""
Utility functions for Waymark: export filenames, sizes and output directories.
"""

from typing import List, Union
import re
from pathlib import Path


# Extensions a user may have typed into a filename stem; stripped before the
# format's own extension is appended.
KNOWN_EXTENSIONS = (
    "geojson", "json", "csv", "kml", "kmz", "gpx", "zip", "shp",
    "tif", "tiff", "png", "svg", "xlsx", "xls",
)

MAX_STEM_LENGTH = 120

_FORBIDDEN_RE = re.compile(r'[\\/:*?"<>|]')
_WS_RE = re.compile(r"\s+")
_TRAILING_EXT_RE = re.compile(r"\.(" + "|".join(KNOWN_EXTENSIONS) + r")$", re.IGNORECASE)


def _sanitize_once(name: str) -> str:
    name = _FORBIDDEN_RE.sub("", name)
    name = _WS_RE.sub("_", name.strip())
    while True:
        stripped = _TRAILING_EXT_RE.sub("", name)
        if stripped == name:
            break
        name = stripped
    return name[:MAX_STEM_LENGTH]


def sanitize_filename(name: str) -> str:
    """
    Clean a label so it can be used as an export filename stem.

    Removes \\ / : * ? " < > |, collapses whitespace runs to underscores,
    strips trailing extensions the user may have typed, and truncates to
    120 characters. Applying it twice gives the same result as applying it
    once.

    Args:
        name: The original label or user-supplied stem

    Returns:
        A filesystem-safe stem ("export" when nothing usable is left)

    Example:
        >>> sanitize_filename("Lost Horse: Trail.geojson")
        'Lost_Horse_Trail'
    """
    if not name:
        return "export"

    # Truncation can expose a new trailing extension; iterate to a fixed point.
    current = str(name)
    for _ in range(8):
        cleaned = _sanitize_once(current)
        if cleaned == current:
            break
        current = cleaned
    return current or "export"


def natural_sort_key(text: str) -> List[Union[str, int]]:
    """
    Sort key that orders "Layer 2" before "Layer 10".

    Examples:
        >>> sorted(["Item 10", "Item 2", "Item 1"], key=natural_sort_key)
        ['Item 1', 'Item 2', 'Item 10']
    """
    if not text:
        return [""]

    def convert(part: str) -> Union[str, int]:
        return int(part) if part.isdigit() else part.lower()

    return [convert(part) for part in re.split(r"(\d+)", text)]


def format_file_size(size_bytes: int) -> str:
    """
    Format a file size in bytes to a human-readable string.

    Args:
        size_bytes: Size in bytes

    Returns:
        Formatted string (e.g., "2.4 MB", "156.0 KB")
    """
    if size_bytes < 1024:
        return f"{size_bytes} B"
    elif size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    elif size_bytes < 1024 * 1024 * 1024:
        return f"{size_bytes / (1024 * 1024):.1f} MB"
    else:
        return f"{size_bytes / (1024 * 1024 * 1024):.1f} GB"


def ensure_output_dir(output_path: Path) -> Path:
    """
    Ensure the output directory exists, creating it if necessary.

    Args:
        output_path: Path to the output directory

    Returns:
        The resolved absolute path
    """
    output_path = Path(output_path).resolve()
    output_path.mkdir(parents=True, exist_ok=True)
    return output_path
