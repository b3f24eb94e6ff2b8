"""Regeneration of one group of subtitle batches (proofread, re-time, re-translate)."""

import asyncio
import logging
import math
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Sequence

from .audio import AudioProcessor
from .config_loader import PipelineSettings
from .continuation import generate_long_output, require_items
from .exceptions import AudioProcessingError, OperationCancelledError
from .llm import ModelAdapter, ModelRequest, Part, Turn
from .models import AudioBuffer, BatchMode, Group, SubtitleItem
from .prompts import batch_prompt, specific_instruction, system_instruction
from .retry import RetryPolicy
from .schemas import BATCH_SCHEMA
from .subtitle_parser import items_from_records
from .utils import format_time_srt, parse_time_srt, shift_time_srt

logger = logging.getLogger(__name__)

AUDIO_PADDING = 1.0


def resolve_timestamp_offset(items: Sequence[SubtitleItem], offset: float, span_start: float) -> List[SubtitleItem]:
    """
    Decides whether returned timestamps are relative to a padded audio slice.

    The first item's start is compared with two hypotheses: relative to the
    slice (expected near ``span_start - offset``) and already absolute
    (expected near ``span_start``). The offset is added back only when the
    relative hypothesis is strictly closer. An exact tie is ambiguous; the
    items are returned unchanged and a warning is logged.

    Args:
        items: Items parsed from the model response.
        offset: Start of the audio slice that was sent, in seconds.
        span_start: Absolute start of the group's first input item.

    Returns:
        The items, shifted by ``offset`` if they were judged relative.
    """
    items = list(items)
    if not items or offset <= 0:
        return items
    first_start = parse_time_srt(items[0].start_time)
    relative_distance = abs(first_start - (span_start - offset))
    absolute_distance = abs(first_start - span_start)

    if math.isclose(relative_distance, absolute_distance, abs_tol=1e-3):
        logger.warning(
            f"Cannot tell whether timestamps are relative or absolute (first start "
            f"{items[0].start_time}, span start {format_time_srt(span_start)}, offset {offset:.3f}s); "
            f"leaving them unchanged"
        )
        return items
    if relative_distance < absolute_distance:
        logger.debug(f"Timestamps are relative to the audio slice, adding {offset:.3f}s")
        return [
            replace(
                item,
                start_time=shift_time_srt(item.start_time, offset),
                end_time=shift_time_srt(item.end_time, offset),
            )
            for item in items
        ]
    return items


def enforce_frozen_fields(processed: Sequence[SubtitleItem], originals: Sequence[SubtitleItem], mode: BatchMode) -> List[SubtitleItem]:
    """Restores the field a mode must not touch on every item whose id matches an input item."""
    by_id = {item.id: item for item in originals}
    result = []
    for item in processed:
        source = by_id.get(item.id)
        if source is None:
            result.append(item)
        elif mode is BatchMode.FIX_TIMESTAMPS:
            result.append(replace(item, translated=source.translated))
        elif mode is BatchMode.RETRANSLATE:
            result.append(replace(item, start_time=source.start_time, end_time=source.end_time))
        else:
            result.append(item)
    return result


@dataclass(frozen=True)
class ModeProfile:
    model: str
    system_instruction: str


class BatchProcessor:
    """Sends one group to the model and returns its replacement items, or the originals on failure."""

    def __init__(
        self,
        settings: PipelineSettings,
        adapter: ModelAdapter,
        audio_processor: AudioProcessor,
        policy: RetryPolicy,
        cancel_event: Optional[asyncio.Event] = None,
    ):
        self.settings = settings
        self.adapter = adapter
        self.audio_processor = audio_processor
        self.policy = policy
        self.cancel_event = cancel_event
        self.profiles = {
            BatchMode.PROOFREAD: ModeProfile(
                settings.proofread_model,
                system_instruction(BatchMode.PROOFREAD.value, settings.genre, settings.target_language,
                                   settings.custom_proofreading_prompt, settings.glossary),
            ),
            BatchMode.FIX_TIMESTAMPS: ModeProfile(
                settings.fix_timestamps_model,
                system_instruction(BatchMode.FIX_TIMESTAMPS.value, settings.genre, settings.target_language),
            ),
            BatchMode.RETRANSLATE: ModeProfile(
                settings.retranslate_model,
                system_instruction(BatchMode.RETRANSLATE.value, settings.genre, settings.target_language,
                                   settings.custom_translation_prompt, settings.glossary),
            ),
        }

    async def process(
        self,
        group: Group,
        mode: BatchMode,
        audio: Optional[AudioBuffer],
        previous_end: str = "00:00:00,000",
    ) -> List[SubtitleItem]:
        """
        Regenerates one group.

        Args:
            group: Merged batches and their combined instruction.
            mode: Which regeneration to run.
            audio: Decoded media, or None for text-only processing.
            previous_end: End time of the batch preceding the group.

        Returns:
            Replacement items, or ``group.items`` unchanged if anything failed.

        Raises:
            OperationCancelledError: If the run was cancelled.
        """
        if not group.items:
            return []
        try:
            processed = await self._process(group, mode, audio, previous_end)
        except OperationCancelledError:
            raise
        except Exception as e:
            logger.error(f"Batch {group.label} ({mode.value}) failed, keeping original subtitles: {e}", exc_info=True)
            return list(group.items)
        if not processed:
            logger.warning(f"Batch {group.label} ({mode.value}) returned no subtitles, keeping original subtitles")
            return list(group.items)
        return processed

    async def _slice_audio(self, audio: AudioBuffer, span_start: float, span_end: float, label: str):
        slice_start = max(0.0, span_start - AUDIO_PADDING)
        slice_end = min(audio.duration, span_end + AUDIO_PADDING)
        try:
            wav = await asyncio.to_thread(self.audio_processor.slice, audio, slice_start, slice_end)
        except AudioProcessingError as e:
            logger.warning(f"Batch {label}: audio slice failed, continuing text-only: {e}")
            return None, 0.0
        return wav, slice_start

    @staticmethod
    def _payload(items: Sequence[SubtitleItem], offset: float) -> List[Dict[str, Any]]:
        payload = []
        for item in items:
            entry = {
                "id": item.id,
                "start": shift_time_srt(item.start_time, -offset) if offset > 0 else item.start_time,
                "end": shift_time_srt(item.end_time, -offset) if offset > 0 else item.end_time,
                "text_original": item.original,
                "text_translated": item.translated,
            }
            if item.comment and item.comment.strip():
                entry["comment"] = item.comment.strip()
            payload.append(entry)
        return payload

    async def _process(
        self, group: Group, mode: BatchMode, audio: Optional[AudioBuffer], previous_end: str
    ) -> List[SubtitleItem]:
        items = group.items
        span_start = parse_time_srt(items[0].start_time)
        span_end = parse_time_srt(items[-1].end_time)

        wav, offset = None, 0.0
        if mode.needs_audio and audio is not None and span_start < span_end:
            wav, offset = await self._slice_audio(audio, span_start, span_end, group.label)

        profile = self.profiles[mode]
        prompt = batch_prompt(
            mode,
            group.label,
            previous_end,
            self._payload(items, offset),
            specific_instruction(items, group.comment),
            self.settings.target_language,
            total_duration=audio.duration if audio is not None else None,
            relative_timestamps=offset > 0,
        )
        parts = [Part.from_text(prompt)]
        if wav is not None:
            parts.append(Part.from_audio(wav))
        request = ModelRequest(
            model=profile.model,
            system_instruction=profile.system_instruction,
            turns=(Turn.user(*parts),),
            schema=BATCH_SCHEMA,
            label=f"batch {group.label} {mode.value}",
        )
        logger.debug(f"Batch {group.label}: {mode.value} on {len(items)} items (audio: {wav is not None})")

        text = await generate_long_output(
            self.adapter, request, self.policy, self.settings.continuation_attempts, self.cancel_event
        )
        max_duration = audio.duration if audio is not None else None
        processed = items_from_records(require_items(text), max_duration=max_duration)
        if not processed:
            return []
        if offset > 0:
            processed = resolve_timestamp_offset(processed, offset, span_start)
        processed = enforce_frozen_fields(processed, items, mode)
        # instructions are consumed by the run
        return [replace(item, comment=None) for item in processed]
