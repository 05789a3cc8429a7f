"""
Image Metadata

Computes ImageRecord values from filesystem entries and formats
modification times in a fixed timezone.
"""

import re
from datetime import datetime, timedelta, timezone, tzinfo
from pathlib import Path
from zoneinfo import ZoneInfo

from .models import ImageRecord

IMAGE_EXTENSIONS = frozenset({".jpg", ".jpeg", ".png", ".gif", ".webp"})

TIME_FORMAT = "%Y-%m-%d %H:%M:%S"

_OFFSET_RE = re.compile(r"^(?:UTC)?([+-])(\d{1,2}):?(\d{2})$")


def is_image_file(filename: str) -> bool:
    """Check the extension allow-list (case-insensitive)."""
    return Path(filename).suffix.lower() in IMAGE_EXTENSIONS


def resolve_timezone(name: str) -> tzinfo:
    """
    Resolve a timezone setting.

    Accepts an IANA name ("Asia/Shanghai") or a fixed offset ("+08:00").
    """
    match = _OFFSET_RE.match(name.strip())
    if match:
        sign, hours, minutes = match.groups()
        delta = timedelta(hours=int(hours), minutes=int(minutes))
        return timezone(-delta if sign == "-" else delta)
    if name.strip().upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name.strip())


def format_mtime(timestamp: float, tz: tzinfo) -> str:
    """Format a POSIX timestamp as YYYY-MM-DD HH:MM:SS in ``tz``."""
    return datetime.fromtimestamp(int(timestamp), tz).strftime(TIME_FORMAT)


def relative_posix(root: Path, file_path: Path) -> str:
    return file_path.relative_to(root).as_posix()


def build_record(root: Path, file_path: Path, tz: tzinfo) -> ImageRecord:
    """
    Stat ``file_path`` and build its record.

    Raises:
        FileNotFoundError: if the file vanished.
    """
    stats = file_path.stat()
    return ImageRecord(
        name=file_path.name,
        size=stats.st_size,
        mtime=format_mtime(stats.st_mtime, tz),
        path=relative_posix(root, file_path),
    )
