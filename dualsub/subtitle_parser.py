"""Conversion of parsed model records into normalized SubtitleItems."""

import logging
from typing import Any, Dict, Iterable, List, Optional

from .models import Segment, SubtitleItem
from .utils import format_time_srt, normalize_time_srt, parse_time_srt

logger = logging.getLogger(__name__)

MIN_DURATION = 0.5
STRETCHED_DURATION = 1.5
OVERRUN_TOLERANCE = 10.0

_ORIGINAL_KEYS = ("text_original", "original_text", "original", "text")
_TRANSLATED_KEYS = ("text_translated", "translated_text", "translated", "translation")


def _first_text(record: Dict[str, Any], keys: Iterable[str]) -> str:
    for key in keys:
        value = record.get(key)
        if value:
            return str(value).strip()
    return ""


def _record_id(record: Dict[str, Any], fallback: int) -> int:
    try:
        return int(record.get("id"))
    except (TypeError, ValueError):
        return fallback


def _repair_range(start: float, end: float):
    if start > end:
        start, end = end, start
    if end - start < MIN_DURATION:
        end = start + STRETCHED_DURATION
    return start, end


def items_from_records(records: List[Any], max_duration: Optional[float] = None) -> List[SubtitleItem]:
    """
    Builds SubtitleItems from loosely shaped JSON records.

    Records with no text or no timestamps are dropped, as are records starting
    more than ten seconds past ``max_duration`` (hallucinated hour offsets).
    Timestamps are normalized to ``HH:MM:SS,mmm``, reversed ranges are swapped
    and lines shorter than half a second are stretched to 1.5 s. Records
    without a usable id are numbered by position.
    """
    items: List[SubtitleItem] = []
    dropped = 0
    for position, record in enumerate(records, start=1):
        if not isinstance(record, dict):
            dropped += 1
            continue
        original = _first_text(record, _ORIGINAL_KEYS)
        translated = _first_text(record, _TRANSLATED_KEYS)
        start_raw, end_raw = record.get("start"), record.get("end")
        if not (original or translated) or not start_raw or not end_raw:
            dropped += 1
            continue

        start = parse_time_srt(normalize_time_srt(str(start_raw)))
        end = parse_time_srt(normalize_time_srt(str(end_raw)))
        if max_duration is not None and start > max_duration + OVERRUN_TOLERANCE:
            dropped += 1
            continue
        start, end = _repair_range(start, end)

        comment = record.get("comment")
        items.append(SubtitleItem(
            id=_record_id(record, position),
            start_time=format_time_srt(start),
            end_time=format_time_srt(end),
            original=original,
            translated=translated,
            comment=str(comment) if comment else None,
        ))
    if dropped:
        logger.debug(f"Dropped {dropped} unusable record(s) from model output")
    return items


def items_from_segments(segments: List[Segment]) -> List[SubtitleItem]:
    """
    Wraps raw transcription segments as untranslated items (chunk-relative times).

    Blank segments are skipped. Ranges get the same swap and stretch repairs as
    model records.
    """
    items: List[SubtitleItem] = []
    for position, segment in enumerate(segments, start=1):
        text = (segment.text or "").strip()
        if not text:
            continue
        start, end = _repair_range(segment.start_time, segment.end_time)
        items.append(SubtitleItem(
            id=position,
            start_time=format_time_srt(start),
            end_time=format_time_srt(end),
            original=text,
        ))
    return items
