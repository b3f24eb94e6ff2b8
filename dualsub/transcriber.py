"""Handles Speech-to-Text transcription of audio slices (Whisper, OpenAI API)."""

import asyncio
import logging
import os
import re
import tempfile
from abc import ABC, abstractmethod
from typing import Any, Iterable, List, Optional

import torch
import whisper
from openai import AsyncOpenAI

from .exceptions import ConfigurationError, TranscriptionError
from .models import Segment

logger = logging.getLogger(__name__)

# Bracketed annotations and bare sound cues emitted for non-speech audio
_NON_SPEECH = re.compile(
    r"[\[(（【]\s*(?:music|applause|laughter|laughs|noise|silence|inaudible|background\s+\w+|"
    r"音乐|笑声|掌声|噪音)[^\])）】]*[\])）】]|[♪♫]+",
    re.IGNORECASE,
)


def clean_non_speech(text: str) -> str:
    """Removes ``[music]``, ``(laughter)`` style annotations and music notes."""
    cleaned = _NON_SPEECH.sub(" ", text or "")
    return re.sub(r"\s{2,}", " ", cleaned).strip()


def segments_from_raw(raw_segments: Iterable[Any]) -> List[Segment]:
    """Builds cleaned Segments from whisper dicts or SDK segment objects, dropping empty ones."""
    segments = []
    for seg in raw_segments:
        get = seg.get if isinstance(seg, dict) else (lambda key, s=seg: getattr(s, key, None))
        start, end, text = get('start'), get('end'), get('text')
        if start is None or end is None or text is None:
            logger.warning(f"Skipping incomplete segment data: {seg}")
            continue
        text = clean_non_speech(text)
        if not text:
            continue
        segments.append(Segment(start_time=float(start), end_time=float(end), text=text))
    return segments


class Transcriber(ABC):
    """Abstract base class for transcription services."""

    @abstractmethod
    async def transcribe(self, audio_bytes: bytes) -> List[Segment]:
        """
        Transcribes one WAV audio slice.

        Args:
            audio_bytes: WAV-encoded audio.

        Returns:
            Segments with timestamps relative to the start of the slice.

        Raises:
            TranscriptionError: If transcription fails.
        """
        pass


class WhisperTranscriber(Transcriber):
    """Implements transcription using a local OpenAI Whisper model."""

    def __init__(self, model_name: str = "medium", device: str = "cuda", fp16: bool = True, language: Optional[str] = None):
        """
        Initializes the WhisperTranscriber.

        Args:
            model_name: The name of the Whisper model to use (e.g., "base", "medium").
            device: The device to run the model on ("cuda" or "cpu").
            fp16: Whether to use float16 precision (faster on compatible GPUs).
            language: Source language code; None lets Whisper auto-detect.

        Raises:
            ValueError: If the specified device is invalid.
            TranscriptionError: If the model fails to load.
        """
        self.model_name = model_name
        self.device = device
        self.fp16 = fp16
        self.language = language

        if self.device == "cuda" and not torch.cuda.is_available():
            logger.warning("CUDA device requested but not available. Falling back to CPU.")
            self.device = "cpu"
        elif self.device not in ["cuda", "cpu"]:
            raise ValueError(f"Invalid device specified: {self.device}. Choose 'cuda' or 'cpu'.")

        logger.info(f"Initializing WhisperTranscriber with model '{self.model_name}' on device '{self.device}' (FP16: {self.fp16})")
        try:
            self.model = whisper.load_model(self.model_name, device=self.device)
            logger.info(f"Whisper model '{self.model_name}' loaded successfully.")
        except Exception as e:
            logger.error(f"Failed to load Whisper model '{self.model_name}': {e}", exc_info=True)
            raise TranscriptionError(f"Failed to load Whisper model '{self.model_name}': {e}") from e

    def _transcribe_file(self, audio_bytes: bytes) -> List[Segment]:
        # whisper.transcribe decodes through ffmpeg and wants a path
        fd, path = tempfile.mkstemp(suffix=".wav")
        try:
            with os.fdopen(fd, 'wb') as f:
                f.write(audio_bytes)
            result = self.model.transcribe(
                path,
                language=self.language,
                fp16=self.fp16 if self.device == "cuda" else False,  # FP16 only works on CUDA
                verbose=False,
            )
        finally:
            try:
                os.remove(path)
            except OSError as e:
                logger.warning(f"Could not remove temporary audio file {path}: {e}")
        logger.debug(f"Whisper detected language: {result.get('language', 'N/A')}")
        return segments_from_raw(result.get('segments', []))

    async def transcribe(self, audio_bytes: bytes) -> List[Segment]:
        try:
            # model inference is blocking; keep the event loop free for other chunks
            segments = await asyncio.to_thread(self._transcribe_file, audio_bytes)
        except Exception as e:
            logger.error(f"Error during Whisper transcription: {e}", exc_info=True)
            raise TranscriptionError(f"Whisper transcription failed: {e}") from e
        logger.info(f"Whisper produced {len(segments)} segments.")
        return segments


class OpenAITranscriber(Transcriber):
    """Implements transcription using the OpenAI audio transcription API."""

    def __init__(self, api_key: str, model: str = "whisper-1", language: Optional[str] = None, client: Optional[AsyncOpenAI] = None):
        if client is None:
            if not api_key:
                raise ConfigurationError("An OpenAI API key is required for the 'openai' transcriber (set openai_api_key or OPENAI_API_KEY).")
            client = AsyncOpenAI(api_key=api_key)
        self.client = client
        self.model = model
        self.language = language
        logger.info(f"Initializing OpenAITranscriber with model '{self.model}'")

    async def transcribe(self, audio_bytes: bytes) -> List[Segment]:
        kwargs = {}
        if self.language:
            kwargs['language'] = self.language
        try:
            response = await self.client.audio.transcriptions.create(
                model=self.model,
                file=("chunk.wav", audio_bytes),
                response_format="verbose_json",
                timestamp_granularities=["segment"],
                **kwargs,
            )
        except Exception as e:
            logger.error(f"OpenAI transcription request failed: {e}", exc_info=True)
            raise TranscriptionError(f"OpenAI transcription failed: {e}") from e

        segments = segments_from_raw(getattr(response, 'segments', None) or [])
        logger.info(f"OpenAI transcription produced {len(segments)} segments.")
        return segments
