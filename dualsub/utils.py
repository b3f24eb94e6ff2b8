"""Utility functions for DualSub."""

import os
import re
import logging
from .exceptions import FileSystemError

logger = logging.getLogger(__name__)

_TIMESTAMP_CHARS = re.compile(r"[^0-9:.,]")

def ensure_dir_exists(dir_path: str) -> None:
    """
    Creates an output or log directory (and its parents) if it is missing.

    Raises:
        ValueError: If ``dir_path`` is empty.
        FileSystemError: If the path is an existing file or cannot be created.
    """
    if not dir_path:
        raise ValueError("Directory path cannot be empty.")
    if os.path.exists(dir_path) and not os.path.isdir(dir_path):
        raise FileSystemError(f"Path exists but is not a directory: {dir_path}")
    try:
        if not os.path.isdir(dir_path):
            os.makedirs(dir_path, exist_ok=True)
            logger.info(f"Created directory: {dir_path}")
    except OSError as e:
        logger.error(f"Could not create directory {dir_path}: {e}", exc_info=True)
        raise FileSystemError(f"Could not create or access directory {dir_path}: {e}") from e

def format_time_srt(seconds: float) -> str:
    """
    Formats seconds as an SRT timestamp ``HH:MM:SS,mmm``.

    Negative values clamp to zero; hours are not wrapped at 24.
    """
    total_ms = max(0, round(seconds * 1000))
    total_secs, millis = divmod(total_ms, 1000)
    total_mins, secs = divmod(total_secs, 60)
    hrs, mins = divmod(total_mins, 60)
    return f"{hrs:02d}:{mins:02d}:{secs:02d},{millis:03d}"

def _split_fields(time_str: str):
    clean = _TIMESTAMP_CHARS.sub("", time_str or "").replace(".", ",")
    parts = clean.split(":")
    seconds_part = parts.pop() if parts else "0"
    minutes_part = parts.pop() if parts else "0"
    hours_part = parts.pop() if parts else "0"
    secs, _, millis = seconds_part.partition(",")
    millis = (millis or "0").ljust(3, "0")[:3]

    def _int(value: str) -> int:
        try:
            return int(value)
        except ValueError:
            return 0

    return _int(hours_part), _int(minutes_part), _int(secs), _int(millis)

def parse_time_srt(time_str: str) -> float:
    """
    Parses a loosely formatted timestamp into seconds.

    Accepts ``HH:MM:SS,mmm``, ``HH:MM:SS.mmm``, ``MM:SS`` and ``SS.mmm``.
    Unparseable fields count as zero.
    """
    if not time_str:
        return 0.0
    hrs, mins, secs, millis = _split_fields(str(time_str))
    return hrs * 3600 + mins * 60 + secs + millis / 1000.0

def normalize_time_srt(time_str: str) -> str:
    """Rewrites a loosely formatted timestamp as strict ``HH:MM:SS,mmm``."""
    if not time_str:
        return "00:00:00,000"
    hrs, mins, secs, millis = _split_fields(str(time_str))
    mins += secs // 60
    secs %= 60
    hrs += mins // 60
    mins %= 60
    return f"{hrs:02d}:{mins:02d}:{secs:02d},{millis:03d}"

def shift_time_srt(time_str: str, offset_seconds: float) -> str:
    """Adds an offset (seconds) to an SRT timestamp."""
    return format_time_srt(parse_time_srt(time_str) + offset_seconds)

def call_sink(sink, value) -> None:
    """Delivers a notification to an optional callback; callback errors are logged, never raised."""
    if sink is None:
        return
    try:
        sink(value)
    except Exception as e:
        logger.warning(f"Notification callback {getattr(sink, '__name__', sink)!r} failed: {e}", exc_info=True)
