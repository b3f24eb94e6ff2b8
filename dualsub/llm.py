"""Generative model adapters (Gemini)."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional, Tuple

from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from .exceptions import ConfigurationError, TransientServiceError
from .retry import TRANSIENT_STATUS_CODES
from .schemas import SAFETY_SETTINGS
from .usage import UsageReporter

logger = logging.getLogger(__name__)

MAX_OUTPUT_TOKENS = 65536


@dataclass(frozen=True)
class Part:
    """One piece of a conversation turn: text or inline audio."""
    text: Optional[str] = None
    data: Optional[bytes] = field(default=None, repr=False)
    mime_type: str = "audio/wav"

    @classmethod
    def from_text(cls, text: str) -> "Part":
        return cls(text=text)

    @classmethod
    def from_audio(cls, data: bytes, mime_type: str = "audio/wav") -> "Part":
        return cls(data=data, mime_type=mime_type)


@dataclass(frozen=True)
class Turn:
    role: str
    parts: Tuple[Part, ...]

    @classmethod
    def user(cls, *parts: Part) -> "Turn":
        return cls(role="user", parts=tuple(parts))

    @classmethod
    def model(cls, text: str) -> "Turn":
        return cls(role="model", parts=(Part.from_text(text),))


@dataclass(frozen=True)
class ModelRequest:
    """Everything a single generate call needs; extended turn by turn during continuation."""
    model: str
    system_instruction: str
    turns: Tuple[Turn, ...]
    schema: Optional[Dict[str, Any]] = None
    label: str = "model call"

    def with_turns(self, *turns: Turn) -> "ModelRequest":
        return replace(self, turns=self.turns + tuple(turns))


class ModelAdapter(ABC):
    """Abstract base class for generative model backends."""

    @abstractmethod
    async def generate(self, request: ModelRequest) -> str:
        """
        Sends the conversation and returns the raw text of the reply.

        Args:
            request: Model name, system instruction, turns and response schema.

        Returns:
            The response text (possibly empty or truncated).

        Raises:
            Exception: Service errors are propagated so the caller's retry
                       policy can classify them.
        """
        pass


class GeminiModelAdapter(ModelAdapter):
    """ModelAdapter backed by the google-genai async client."""

    def __init__(self, api_key: str, usage: Optional[UsageReporter] = None, client: Optional[Any] = None):
        if client is None:
            if not api_key:
                raise ConfigurationError("A Gemini API key is required (set gemini_api_key or GEMINI_API_KEY).")
            client = genai.Client(api_key=api_key)
        self.client = client
        self.usage = usage
        logger.info("Gemini model adapter initialized.")

    @staticmethod
    def _to_content(turn: Turn) -> types.Content:
        parts = []
        for part in turn.parts:
            if part.data is not None:
                parts.append(types.Part.from_bytes(data=part.data, mime_type=part.mime_type))
            else:
                parts.append(types.Part.from_text(text=part.text or ""))
        return types.Content(role=turn.role, parts=parts)

    async def generate(self, request: ModelRequest) -> str:
        config = types.GenerateContentConfig(
            system_instruction=request.system_instruction,
            response_mime_type="application/json",
            response_schema=request.schema,
            safety_settings=SAFETY_SETTINGS,
            max_output_tokens=MAX_OUTPUT_TOKENS,
        )
        logger.debug(f"{request.label}: calling {request.model} with {len(request.turns)} turn(s)")
        try:
            response = await self.client.aio.models.generate_content(
                model=request.model,
                contents=[self._to_content(turn) for turn in request.turns],
                config=config,
            )
        except genai_errors.ServerError as e:
            if e.code not in TRANSIENT_STATUS_CODES:
                raise
            raise TransientServiceError(f"Gemini server error ({e.code}): {e.message}") from e

        self._record_usage(request.model, response)
        text = getattr(response, "text", None) or ""
        if not text:
            logger.warning(f"{request.label}: {request.model} returned an empty response")
        return text

    def _record_usage(self, model: str, response: Any) -> None:
        meta = getattr(response, "usage_metadata", None)
        if self.usage is None or meta is None:
            return
        self.usage.record(
            model,
            prompt_tokens=getattr(meta, "prompt_token_count", 0) or 0,
            output_tokens=getattr(meta, "candidates_token_count", 0) or 0,
            total_tokens=getattr(meta, "total_token_count", 0) or 0,
        )


def actionable_error_message(error: BaseException) -> Optional[str]:
    """
    Maps authentication, quota and not-found failures to a hint the user can act on.

    Returns None for errors that are transient or not recognised.
    """
    cause = error
    while cause.__cause__ is not None and not _status_of(cause):
        cause = cause.__cause__
    status = _status_of(cause)
    message = str(cause).lower()

    if status == 401 or "api key not valid" in message or "invalid api key" in message or "unauthorized" in message:
        return "The API key was rejected. Check gemini_api_key / openai_api_key in your configuration."
    if "failed_precondition" in message or "enable billing" in message or "free tier" in message:
        return "The Gemini free tier is not available here. Enable billing for the project in Google AI Studio."
    if status == 403 or "permission denied" in message or "permission_denied" in message:
        return "Access denied (403). Check the key's permissions and whether the API is enabled for this region."
    if status == 429 or "quota" in message or "rate limit" in message or "resource_exhausted" in message:
        return "Quota exhausted or rate limited (429). Wait and retry, or lower the concurrency settings."
    if status == 404 or "not_found" in message:
        if "model" in message:
            return "The requested model does not exist (404). Check the model names in your configuration."
        return "The requested resource was not found (404)."
    return None


def _status_of(error: BaseException) -> Optional[int]:
    for attr in ("code", "status_code"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    return None
