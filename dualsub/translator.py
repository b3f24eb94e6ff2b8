"""Handles subtitle translation through a generative model."""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Dict, List, Optional

from .concurrency import map_in_parallel
from .continuation import generate_long_output, require_items
from .exceptions import ModelOutputError, OperationCancelledError, TranslationError
from .llm import ModelAdapter, ModelRequest, Part, Turn
from .models import SubtitleItem
from .prompts import translation_prompt
from .retry import RetryPolicy
from .schemas import TRANSLATION_SCHEMA

logger = logging.getLogger(__name__)


class Translator(ABC):
    """Abstract base class for translation services."""

    @abstractmethod
    async def translate_batch(self, items: List[SubtitleItem], cancel_event: Optional[asyncio.Event] = None) -> List[SubtitleItem]:
        """
        Translates one batch of items.

        Args:
            items: Items whose ``original`` text should be translated.
            cancel_event: Cancellation signal for the run.

        Returns:
            The same items, in order, with ``translated`` filled in.

        Raises:
            TranslationError: If the batch could not be translated.
        """
        pass

    async def translate(
        self,
        items: List[SubtitleItem],
        batch_size: int,
        concurrency: int = 1,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> List[SubtitleItem]:
        """
        Translates items in sub-batches of ``batch_size``.

        A failed sub-batch keeps the original text as its translation; only
        cancellation propagates.

        Raises:
            OperationCancelledError: If the run was cancelled.
        """
        if not items:
            return []
        batches = [items[i:i + batch_size] for i in range(0, len(items), batch_size)]

        async def run(batch: List[SubtitleItem], index: int) -> List[SubtitleItem]:
            try:
                return await self.translate_batch(batch, cancel_event)
            except OperationCancelledError:
                raise
            except Exception as e:
                logger.error(f"Translation sub-batch {index + 1}/{len(batches)} failed, keeping original text: {e}")
                return [replace(item, translated=item.original) for item in batch]

        results = await map_in_parallel(batches, concurrency, run, cancel_event)
        if any(result is None for result in results):
            raise OperationCancelledError("Translation cancelled")
        return [item for batch in results for item in batch]


class GeminiTranslator(Translator):
    """Translates subtitle batches with a Gemini model, keyed by integer id."""

    def __init__(
        self,
        adapter: ModelAdapter,
        model: str,
        system_instruction: str,
        target_language: str,
        policy: RetryPolicy,
        continuation_attempts: int = 3,
    ):
        self.adapter = adapter
        self.model = model
        self.system_instruction = system_instruction
        self.target_language = target_language
        self.policy = policy
        self.continuation_attempts = continuation_attempts
        logger.info(f"Initializing GeminiTranslator with model '{self.model}' -> {self.target_language}")

    async def translate_batch(self, items: List[SubtitleItem], cancel_event: Optional[asyncio.Event] = None) -> List[SubtitleItem]:
        if not items:
            return []
        payload = [
            {"id": position, "text_original": item.original}
            for position, item in enumerate(items, start=1)
        ]
        request = ModelRequest(
            model=self.model,
            system_instruction=self.system_instruction,
            turns=(Turn.user(Part.from_text(translation_prompt(self.target_language, payload))),),
            schema=TRANSLATION_SCHEMA,
            label=f"translation of {len(items)} items",
        )
        text = await generate_long_output(
            self.adapter, request, self.policy, self.continuation_attempts, cancel_event
        )
        try:
            records = require_items(text)
        except ModelOutputError as e:
            raise TranslationError(f"Unusable translation output for {len(items)} items: {e}") from e

        translations: Dict[int, str] = {}
        for record in records:
            if not isinstance(record, dict):
                continue
            try:
                key = int(record.get("id"))
            except (TypeError, ValueError):
                continue
            translated = str(record.get("text_translated") or "").strip()
            if translated:
                translations[key] = translated

        missing = [position for position in range(1, len(items) + 1) if position not in translations]
        if missing:
            logger.warning(f"{len(missing)} of {len(items)} translations missing, keeping original text for ids {missing}")
        return [
            replace(item, translated=translations.get(position, item.original))
            for position, item in enumerate(items, start=1)
        ]
