"""
Parsing of JSON-array model output and continuation of truncated responses.

Models emitting long JSON arrays regularly stop mid-element. Instead of
treating every parse failure as an exception, ``parse_model_output`` returns
a tagged outcome and ``generate_long_output`` keeps asking the model to
continue until the accumulated text parses or the call budget is spent.
"""

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, List, Optional, Union

from .exceptions import ModelOutputError
from .llm import ModelAdapter, ModelRequest, Part, Turn
from .retry import RetryPolicy, call_with_backoff

logger = logging.getLogger(__name__)

CONTINUE_PROMPT = (
    "The response was truncated. Continue exactly where you left off. "
    "Do not repeat the last complete element and do not restart the array."
)

_FENCE = re.compile(r"```(?:json)?", re.IGNORECASE)


@dataclass(frozen=True)
class Parsed:
    items: List[Any]


@dataclass(frozen=True)
class Truncated:
    text: str


@dataclass(frozen=True)
class Malformed:
    text: str
    reason: str


ParseOutcome = Union[Parsed, Truncated, Malformed]


def strip_code_fences(text: str) -> str:
    return _FENCE.sub("", text or "").strip()


def _scan_array(text: str, start: int) -> Optional[int]:
    """
    Finds the end of the array opening at ``text[start]``.

    Returns the index just past the matching ``]``, or None when the array is
    never closed. Brackets inside strings are ignored.
    """
    depth = 0
    in_string = False
    escape = False
    for i in range(start, len(text)):
        char = text[i]
        if escape:
            escape = False
            continue
        if char == "\\":
            escape = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char == "[":
            depth += 1
        elif char == "]":
            depth -= 1
            if depth == 0:
                return i + 1
    return None


def _unwrap(value: Any) -> Optional[List[Any]]:
    if isinstance(value, list):
        return value
    if isinstance(value, dict):
        for key in ("items", "subtitles"):
            if isinstance(value.get(key), list):
                return value[key]
    return None


def parse_model_output(text: str) -> ParseOutcome:
    """
    Classifies raw model text as a parsed array, a truncated array or garbage.

    Never raises.
    """
    clean = strip_code_fences(text)
    if not clean:
        return Malformed(text=text or "", reason="empty response")

    try:
        items = _unwrap(json.loads(clean))
        if items is not None:
            return Parsed(items=items)
    except ValueError:
        pass

    # Prose around the array may carry its own brackets ("[JSON]:"), so each
    # balanced span is tried in turn.
    reason = "no JSON array found"
    start = clean.find("[")
    while start != -1:
        end = _scan_array(clean, start)
        if end is None:
            return Truncated(text=clean)
        try:
            items = json.loads(clean[start:end])
        except ValueError as e:
            reason = f"balanced array is not valid JSON: {e}"
        else:
            if isinstance(items, list):
                return Parsed(items=items)
        start = clean.find("[", end)
    return Malformed(text=clean, reason=reason)


def require_items(text: str) -> List[Any]:
    """
    Parses model output or raises.

    Raises:
        ModelOutputError: If the text is not a (salvageable) JSON array.
    """
    outcome = parse_model_output(text)
    if isinstance(outcome, Parsed):
        return outcome.items
    if isinstance(outcome, Truncated):
        raise ModelOutputError(f"Model output is truncated ({len(outcome.text)} chars)")
    raise ModelOutputError(f"Model output is malformed: {outcome.reason}")


async def generate_long_output(
    adapter: ModelAdapter,
    request: ModelRequest,
    policy: RetryPolicy,
    max_attempts: int = 3,
    cancel_event: Optional[asyncio.Event] = None,
) -> str:
    """
    Generates a JSON array, continuing the conversation while it is incomplete.

    Any outcome other than ``Parsed`` (including short malformed output) asks
    for a continuation; the new text is appended to the buffer. ``max_attempts``
    counts model calls, initial call included. Once the budget is spent the
    accumulated text is returned as it is and parsing it is left to the caller.

    Raises:
        RetryExhaustedError: If a single call keeps failing transiently.
        OperationCancelledError: If cancellation is requested between calls.
    """
    accumulated = ""
    current = request
    for call_number in range(1, max_attempts + 1):
        text = await call_with_backoff(
            lambda req=current: adapter.generate(req),
            policy,
            cancel_event=cancel_event,
            description=request.label,
        )
        accumulated += text
        outcome = parse_model_output(accumulated)
        if isinstance(outcome, Parsed):
            if call_number > 1:
                logger.info(f"{request.label}: output completed after {call_number - 1} continuation(s)")
            return accumulated
        if call_number == max_attempts:
            break
        kind = "truncated" if isinstance(outcome, Truncated) else "malformed"
        logger.warning(
            f"{request.label}: output {kind} after call {call_number}/{max_attempts} "
            f"({len(accumulated)} chars so far), requesting continuation"
        )
        current = current.with_turns(Turn.model(text), Turn.user(Part.from_text(CONTINUE_PROMPT)))

    logger.error(f"{request.label}: output still incomplete after {max_attempts} model calls")
    return accumulated
