"""Orchestrates the subtitle generation and regeneration pipelines."""

import asyncio
import logging
import time
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set

from .audio import AudioProcessor, split_into_chunks
from .batch_grouper import group_batches, partition_batches
from .batch_processor import BatchProcessor
from .chunk_pipeline import ChunkPipeline
from .concurrency import map_in_parallel
from .config_loader import PipelineSettings
from .exceptions import AudioProcessingError, ConfigurationError, OperationCancelledError
from .llm import GeminiModelAdapter, ModelAdapter, actionable_error_message
from .models import (
    AudioBuffer, BatchMode, ChunkDescriptor, Group, ProgressStatus, ProgressUpdate, SubtitleItem,
    flatten_slots, renumber,
)
from .prompts import system_instruction
from .retry import RetryPolicy
from .transcriber import OpenAITranscriber, Transcriber, WhisperTranscriber
from .translator import GeminiTranslator, Translator
from .usage import UsageReporter
from .utils import call_sink

logger = logging.getLogger(__name__)

ProgressSink = Callable[[ProgressUpdate], None]
SnapshotSink = Callable[[List[SubtitleItem]], None]


def _slot_positions(slots: Sequence[Optional[List[SubtitleItem]]], indices: Set[int]) -> Set[int]:
    """Positions, in the flattened list, of the items held by the slots at ``indices``."""
    positions: Set[int] = set()
    offset = 0
    for index, slot in enumerate(slots):
        count = len(slot or [])
        if index in indices:
            positions.update(range(offset, offset + count))
        offset += count
    return positions


class PipelineOrchestrator:
    """
    Manages the end-to-end generation of bilingual subtitles for a media file,
    and the selective regeneration of already generated batches.
    """

    def __init__(
        self,
        settings: PipelineSettings,
        audio_processor: AudioProcessor,
        adapter: ModelAdapter,
        transcriber: Optional[Transcriber] = None,
        translator: Optional[Translator] = None,
        usage: Optional[UsageReporter] = None,
        progress: Optional[ProgressSink] = None,
        on_snapshot: Optional[SnapshotSink] = None,
        cancel_event: Optional[asyncio.Event] = None,
        policy: Optional[RetryPolicy] = None,
    ):
        """
        Initializes the PipelineOrchestrator.

        Args:
            settings: Validated pipeline settings.
            audio_processor: Decodes and slices media.
            adapter: Generative model backend for refinement, translation and batches.
            transcriber: Speech-to-text backend; only needed by ``generate``.
            translator: Defaults to a GeminiTranslator on ``adapter``.
            usage: Token usage accumulator, summarized and cleared after each run.
            progress: Receives a ProgressUpdate per chunk/group state change.
            on_snapshot: Receives the renumbered partial result after each chunk.
            cancel_event: When set, unstarted work is skipped and partial results returned.
            policy: Retry policy; built from settings when omitted.
        """
        self.settings = settings
        self.audio_processor = audio_processor
        self.adapter = adapter
        self.transcriber = transcriber
        self.usage = usage
        self.progress = progress
        self.on_snapshot = on_snapshot
        self.cancel_event = cancel_event or asyncio.Event()
        self.policy = policy or RetryPolicy(
            max_attempts=settings.retry_attempts, base_delay=settings.retry_base_delay
        )
        self.translator = translator or GeminiTranslator(
            adapter,
            settings.translation_model,
            system_instruction("translation", settings.genre, settings.target_language,
                               settings.custom_translation_prompt, settings.glossary),
            settings.target_language,
            self.policy,
            settings.continuation_attempts,
        )

    @classmethod
    def from_settings(
        cls,
        settings: PipelineSettings,
        with_transcriber: bool = True,
        **kwargs,
    ) -> "PipelineOrchestrator":
        """Builds an orchestrator wired to the real Gemini, OpenAI/Whisper and ffmpeg backends."""
        usage = kwargs.pop("usage", None) or UsageReporter()
        adapter = GeminiModelAdapter(settings.gemini_api_key, usage=usage)
        transcriber = None
        if with_transcriber:
            if settings.transcriber == "whisper":
                transcriber = WhisperTranscriber(settings.whisper_model, settings.device, settings.whisper_fp16)
            else:
                transcriber = OpenAITranscriber(settings.openai_api_key, settings.transcription_model)
        return cls(settings, AudioProcessor(), adapter, transcriber=transcriber, usage=usage, **kwargs)

    def _emit(self, update: ProgressUpdate) -> None:
        call_sink(self.progress, update)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    async def _decode(self, media_path: str) -> AudioBuffer:
        return await asyncio.to_thread(self.audio_processor.decode, media_path)

    def _finish(self, started: float, what: str) -> None:
        if self.usage is not None:
            self.usage.log_summary()
            self.usage.reset()
        state = "cancelled" if self.cancelled else "completed"
        logger.info(f"--- {what} {state} in {time.time() - started:.2f} seconds ---")

    async def generate(self, media_path: str) -> List[SubtitleItem]:
        """
        Runs transcribe -> refine -> translate over every chunk of a media file.

        Failed chunks are reported through progress updates and left out of
        the result; the remaining chunks are kept in chunk order.

        Args:
            media_path: Path to the input video or audio file.

        Returns:
            All produced items with dense ids 1..N (partial when cancelled).

        Raises:
            ConfigurationError: If no transcriber was configured.
            FileNotFoundError: If the media file does not exist.
            AudioProcessingError: If the media could not be decoded.
        """
        if self.transcriber is None:
            raise ConfigurationError("Generation requires a transcriber.")
        started = time.time()
        logger.info(f"--- Starting DualSub generation for: {media_path} ---")

        logger.info("Step 1: Decoding audio...")
        audio = await self._decode(media_path)

        logger.info(f"Step 2: Splitting {audio.duration:.1f}s into {self.settings.chunk_duration}s chunks...")
        chunks = split_into_chunks(audio.duration, self.settings.chunk_duration)
        total = len(chunks)
        slots: List[Optional[List[SubtitleItem]]] = [None] * total

        pipeline = ChunkPipeline(
            self.settings,
            self.audio_processor,
            self.transcriber,
            self.adapter,
            self.translator,
            self.policy,
            transcription_slots=asyncio.Semaphore(self.settings.effective_transcription_concurrency),
            progress=self.progress,
            cancel_event=self.cancel_event,
        )

        async def run(chunk: ChunkDescriptor, index: int) -> Optional[List[SubtitleItem]]:
            try:
                items = await pipeline.process(chunk, audio, total)
            except OperationCancelledError:
                raise
            except Exception as e:
                logger.error(f"Chunk {index + 1}/{total} failed: {e}", exc_info=True)
                self._emit(ProgressUpdate(
                    id=index + 1, total=total, status=ProgressStatus.ERROR,
                    message=actionable_error_message(e) or str(e),
                ))
                return None
            slots[index] = items
            self._emit(ProgressUpdate(
                id=index + 1, total=total, status=ProgressStatus.COMPLETED,
                message=f"{len(items)} subtitles",
            ))
            call_sink(self.on_snapshot, renumber(flatten_slots(slots)))
            return items

        logger.info(f"Step 3: Processing {total} chunks (concurrency {self.settings.concurrency_flash})...")
        try:
            await map_in_parallel(chunks, self.settings.concurrency_flash, run, self.cancel_event)
        except OperationCancelledError:
            logger.warning("Generation cancelled, returning the chunks completed so far.")

        result = renumber(flatten_slots(slots))
        failed = sum(1 for slot in slots if slot is None)
        if failed:
            logger.warning(f"{failed} of {total} chunks produced no subtitles.")
        logger.info(f"Step 4: Collected {len(result)} subtitles.")
        self._finish(started, "DualSub generation")
        return result

    async def regenerate(
        self,
        media_path: Optional[str],
        items: List[SubtitleItem],
        selected: Iterable[int],
        mode: BatchMode,
        comments: Optional[Dict[int, str]] = None,
    ) -> List[SubtitleItem]:
        """
        Re-processes the selected batches of an existing subtitle list.

        Args:
            media_path: Source media, or None to work from the text alone.
            items: The current subtitle list.
            selected: 0-based indices of the batches to regenerate.
            mode: proofread, fix_timestamps or retranslate.
            comments: Optional per-batch instruction keyed by 0-based index.

        Returns:
            The full list with the regenerated regions replaced, ids 1..N.
        """
        started = time.time()
        logger.info(f"--- Starting DualSub {mode.value} ---")
        batches = partition_batches(items, self.settings.proofread_batch_size)
        groups = group_batches(batches, selected, comments)
        if not groups:
            logger.warning("No valid batches selected; nothing to do.")
            return renumber(items)

        audio: Optional[AudioBuffer] = None
        if mode.needs_audio and media_path:
            try:
                audio = await self._decode(media_path)
            except (AudioProcessingError, FileNotFoundError) as e:
                logger.warning(f"Audio decode failed, proceeding text-only: {e}")
        elif mode.needs_audio:
            logger.info("No media provided, running text-only.")

        slots: List[Optional[List[SubtitleItem]]] = [list(batch.items) for batch in batches]
        processor = BatchProcessor(self.settings, self.adapter, self.audio_processor, self.policy, self.cancel_event)
        concurrency = self.settings.concurrency_pro if mode is BatchMode.PROOFREAD else self.settings.concurrency_flash
        regenerated: Set[int] = set()

        async def run(group: Group, index: int) -> List[SubtitleItem]:
            previous_end = "00:00:00,000"
            if group.first_batch > 0 and batches[group.first_batch - 1].items:
                previous_end = batches[group.first_batch - 1].items[-1].end_time
            self._emit(ProgressUpdate(id=group.label, total=len(groups), status=ProgressStatus.PROCESSING,
                                      message=mode.value))
            result = await processor.process(group, mode, audio, previous_end)
            slots[group.first_batch] = result
            regenerated.add(group.first_batch)
            for member in group.batch_indices[1:]:
                slots[member] = []
            self._emit(ProgressUpdate(id=group.label, total=len(groups), status=ProgressStatus.COMPLETED,
                                      message=f"{len(result)} subtitles"))
            return result

        logger.info(f"Processing {len(groups)} group(s) from {len(batches)} batches (concurrency {concurrency})...")
        try:
            await map_in_parallel(groups, concurrency, run, self.cancel_event)
        except OperationCancelledError:
            logger.warning("Regeneration cancelled, unfinished batches keep their original subtitles.")

        merged = renumber(flatten_slots(slots))
        if mode is BatchMode.FIX_TIMESTAMPS and not self.cancelled:
            merged = await self._translate_missing(merged, _slot_positions(slots, regenerated))
        self._finish(started, f"DualSub {mode.value}")
        return merged

    async def _translate_missing(self, items: List[SubtitleItem], positions: Set[int]) -> List[SubtitleItem]:
        """
        Translates entries that re-timing inserted or split without a translation.

        Only the items at ``positions`` (those from regenerated groups) are considered.
        """
        missing = [
            item for position, item in enumerate(items)
            if position in positions and not item.translated.strip()
        ]
        if not missing:
            return items
        logger.info(f"Translating {len(missing)} new entries with empty translations...")
        self._emit(ProgressUpdate(id="auto-translate", total=1, status=ProgressStatus.PROCESSING,
                                  message=f"Translating {len(missing)} new entries"))
        try:
            translated = await self.translator.translate(
                missing, self.settings.translation_batch_size, self.settings.concurrency_flash, self.cancel_event
            )
        except OperationCancelledError:
            logger.warning("Translation of new entries cancelled.")
            return items
        except Exception as e:
            logger.error(f"Failed to translate new entries: {e}", exc_info=True)
            self._emit(ProgressUpdate(id="auto-translate", total=1, status=ProgressStatus.ERROR,
                                      message=actionable_error_message(e) or str(e)))
            return items

        by_id = {item.id: item for item in translated}
        self._emit(ProgressUpdate(id="auto-translate", total=1, status=ProgressStatus.COMPLETED,
                                  message=f"{len(translated)} entries translated"))
        return [by_id.get(item.id, item) for item in items]
