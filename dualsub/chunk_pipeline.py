"""Transcribe -> refine -> translate for a single time window of the media."""

import asyncio
import logging
from dataclasses import replace
from typing import Callable, List, Optional

from .audio import AudioProcessor
from .config_loader import PipelineSettings
from .continuation import generate_long_output, require_items
from .exceptions import OperationCancelledError, TranscriptionError
from .llm import ModelAdapter, ModelRequest, Part, Turn
from .models import AudioBuffer, ChunkDescriptor, ProgressStatus, ProgressUpdate, Stage, SubtitleItem
from .prompts import refinement_prompt, system_instruction
from .retry import RetryPolicy, call_with_backoff
from .schemas import REFINEMENT_SCHEMA
from .subtitle_parser import items_from_records, items_from_segments
from .transcriber import Transcriber
from .translator import Translator
from .utils import call_sink, shift_time_srt

logger = logging.getLogger(__name__)


class ChunkPipeline:
    """
    Runs the three generation stages for one chunk and returns its items.

    Transcription failure is fatal for the chunk and raised as
    TranscriptionError. Refinement and translation degrade to the unrefined
    segments and the untranslated text respectively. Cancellation always
    propagates.
    """

    def __init__(
        self,
        settings: PipelineSettings,
        audio_processor: AudioProcessor,
        transcriber: Transcriber,
        adapter: ModelAdapter,
        translator: Translator,
        policy: RetryPolicy,
        transcription_slots: Optional[asyncio.Semaphore] = None,
        progress: Optional[Callable[[ProgressUpdate], None]] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ):
        self.settings = settings
        self.audio_processor = audio_processor
        self.transcriber = transcriber
        self.adapter = adapter
        self.translator = translator
        self.policy = policy
        self.transcription_slots = transcription_slots or asyncio.Semaphore(settings.effective_transcription_concurrency)
        self.progress = progress
        self.cancel_event = cancel_event
        self.refinement_instruction = system_instruction("refinement", settings.genre, settings.target_language)

    def _report(self, chunk: ChunkDescriptor, total: int, stage: Stage, message: str) -> None:
        call_sink(self.progress, ProgressUpdate(
            id=chunk.index + 1, total=total, status=ProgressStatus.PROCESSING, message=message, stage=stage,
        ))

    def _check_cancelled(self) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise OperationCancelledError("Generation cancelled")

    async def process(self, chunk: ChunkDescriptor, audio: AudioBuffer, total_chunks: int) -> List[SubtitleItem]:
        """
        Processes one chunk.

        Args:
            chunk: Time window to process.
            audio: Decoded media, shared by all chunks.
            total_chunks: Used for progress reporting only.

        Returns:
            Items with absolute timestamps (ids are chunk-local).

        Raises:
            TranscriptionError: If the chunk could not be transcribed.
            OperationCancelledError: If the run was cancelled.
        """
        label = f"chunk {chunk.index + 1}/{total_chunks}"
        self._check_cancelled()

        self._report(chunk, total_chunks, Stage.TRANSCRIBING, "Transcribing")
        wav = await asyncio.to_thread(self.audio_processor.slice, audio, chunk.start_sec, chunk.end_sec)
        raw_items = await self._transcribe(wav, label)
        if not raw_items:
            logger.info(f"{label}: no speech detected")
            return []

        self._report(chunk, total_chunks, Stage.REFINING, "Refining transcription")
        refined = await self._refine(wav, raw_items, chunk, label)

        self._report(chunk, total_chunks, Stage.TRANSLATING, "Translating")
        translated = await self.translator.translate(
            refined, self.settings.translation_batch_size, cancel_event=self.cancel_event
        )

        logger.info(f"{label}: {len(translated)} subtitles ready")
        return [
            replace(
                item,
                start_time=shift_time_srt(item.start_time, chunk.start_sec),
                end_time=shift_time_srt(item.end_time, chunk.start_sec),
            )
            for item in translated
        ]

    async def _transcribe(self, wav: bytes, label: str) -> List[SubtitleItem]:
        try:
            async with self.transcription_slots:
                segments = await call_with_backoff(
                    lambda: self.transcriber.transcribe(wav),
                    self.policy,
                    cancel_event=self.cancel_event,
                    description=f"{label} transcription",
                )
        except (OperationCancelledError, TranscriptionError):
            raise
        except Exception as e:
            raise TranscriptionError(f"{label}: transcription failed: {e}") from e
        logger.debug(f"{label}: {len(segments)} raw segments")
        return items_from_segments(segments)

    async def _refine(
        self, wav: bytes, raw_items: List[SubtitleItem], chunk: ChunkDescriptor, label: str
    ) -> List[SubtitleItem]:
        request = ModelRequest(
            model=self.settings.refinement_model,
            system_instruction=self.refinement_instruction,
            turns=(Turn.user(
                Part.from_audio(wav),
                Part.from_text(refinement_prompt(self.settings.genre, raw_items)),
            ),),
            schema=REFINEMENT_SCHEMA,
            label=f"{label} refinement",
        )
        try:
            text = await generate_long_output(
                self.adapter, request, self.policy, self.settings.continuation_attempts, self.cancel_event
            )
            refined = items_from_records(require_items(text), max_duration=chunk.duration)
        except OperationCancelledError:
            raise
        except Exception as e:
            logger.warning(f"{label}: refinement failed, keeping raw transcription: {e}")
            return raw_items
        if not refined:
            logger.warning(f"{label}: refinement returned nothing usable, keeping raw transcription")
            return raw_items
        return refined
