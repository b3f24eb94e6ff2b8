"""Handles writing subtitle items to SRT files and the JSON working format."""

import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import asdict
from typing import List, Sequence

from .config_loader import OUTPUT_MODES
from .exceptions import FormattingError
from .models import SubtitleItem
from .utils import format_time_srt, normalize_time_srt, parse_time_srt

logger = logging.getLogger(__name__)


class SubtitleFormatter(ABC):
    """Abstract base class for subtitle formatters."""

    @abstractmethod
    def format_subtitles(self, items: Sequence[SubtitleItem], output_path: str, mode: str = "bilingual") -> None:
        """
        Writes subtitle items to a file.

        Args:
            items: Items in display order.
            output_path: The path to save the formatted subtitle file.
            mode: ``bilingual`` (original above translation) or ``target_only``.

        Raises:
            FormattingError: If formatting or writing fails.
        """
        pass


class SRTFormatter(SubtitleFormatter):
    """Formats subtitles into the SRT (SubRip Text) format."""

    @staticmethod
    def _block_text(item: SubtitleItem, mode: str) -> str:
        if mode == "target_only":
            return item.translated or item.original
        lines = [item.original]
        if item.translated and item.translated != item.original:
            lines.append(item.translated)
        return "\n".join(line for line in lines if line)

    def format_subtitles(self, items: Sequence[SubtitleItem], output_path: str, mode: str = "bilingual") -> None:
        if mode not in OUTPUT_MODES:
            raise FormattingError(f"Unsupported output mode '{mode}'. Choose one of {OUTPUT_MODES}.")
        logger.info(f"Formatting {len(items)} subtitles to SRT ({mode}): {output_path}")

        subtitle_index = 1
        try:
            with open(output_path, 'w', encoding='utf-8') as f:
                for item in items:
                    text = self._block_text(item, mode)
                    if not text:
                        continue
                    start = parse_time_srt(item.start_time)
                    end = parse_time_srt(item.end_time)
                    # Ensure end time is strictly after start time
                    if end <= start:
                        logger.warning(f"Subtitle {item.id} has zero or negative duration ({item.start_time} -> {item.end_time}). Adjusting end time slightly.")
                        end = start + 0.1
                    f.write(f"{subtitle_index}\n")
                    f.write(f"{format_time_srt(start)} --> {format_time_srt(end)}\n")
                    f.write(f"{text}\n\n")
                    subtitle_index += 1
            logger.info(f"Successfully wrote {subtitle_index - 1} subtitle blocks to {output_path}")
        except IOError as e:
            logger.error(f"Failed to write SRT file to {output_path}: {e}", exc_info=True)
            raise FormattingError(f"Could not write SRT file: {e}") from e


def write_items_json(items: Sequence[SubtitleItem], output_path: str) -> None:
    """Saves items as a JSON array, the input format of the regenerate command."""
    try:
        with open(output_path, 'w', encoding='utf-8') as f:
            json.dump([asdict(item) for item in items], f, ensure_ascii=False, indent=2)
    except IOError as e:
        logger.error(f"Failed to write subtitle JSON to {output_path}: {e}", exc_info=True)
        raise FormattingError(f"Could not write subtitle JSON: {e}") from e
    logger.info(f"Saved {len(items)} subtitles to {output_path}")


def read_items_json(input_path: str) -> List[SubtitleItem]:
    """
    Loads items written by ``write_items_json``.

    Raises:
        FileNotFoundError: If the file does not exist.
        FormattingError: If the file is not a JSON array of subtitle objects.
    """
    if not os.path.exists(input_path):
        raise FileNotFoundError(f"Subtitle file not found: {input_path}")
    try:
        with open(input_path, 'r', encoding='utf-8') as f:
            records = json.load(f)
    except (IOError, ValueError) as e:
        raise FormattingError(f"Could not read subtitle JSON {input_path}: {e}") from e
    if not isinstance(records, list):
        raise FormattingError(f"Subtitle JSON {input_path} must contain an array.")

    items = []
    for position, record in enumerate(records, start=1):
        try:
            items.append(SubtitleItem(
                id=int(record.get("id", position)),
                start_time=normalize_time_srt(record["start_time"]),
                end_time=normalize_time_srt(record["end_time"]),
                original=str(record.get("original", "")),
                translated=str(record.get("translated") or ""),
                comment=record.get("comment") or None,
            ))
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise FormattingError(f"Invalid subtitle entry #{position} in {input_path}: {e}") from e
    logger.info(f"Loaded {len(items)} subtitles from {input_path}")
    return items
