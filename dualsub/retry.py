"""Exponential backoff around calls to external services."""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from .exceptions import OperationCancelledError, RetryExhaustedError, TransientServiceError

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_STATUS_CODES = (429, 500, 503, 504)
# google-genai APIError.status names matching the codes above
TRANSIENT_STATUS_NAMES = ("RESOURCE_EXHAUSTED", "INTERNAL", "UNAVAILABLE", "DEADLINE_EXCEEDED")


def _status_code(error: BaseException) -> Optional[int]:
    # google-genai APIError uses .code, openai APIStatusError uses .status_code
    for attr in ("code", "status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    return None


def _status_name(error: BaseException) -> str:
    value = getattr(error, "status", None)
    return value.upper() if isinstance(value, str) else ""


def is_transient_error(error: BaseException) -> bool:
    """
    Returns True for rate-limit, overload and temporary server errors.

    Errors are classified by status code or status name, never by message
    text. Wrapped errors are classified by their ``__cause__`` chain as well.
    """
    while error is not None:
        if isinstance(error, TransientServiceError):
            return True
        if _status_code(error) in TRANSIENT_STATUS_CODES:
            return True
        if _status_name(error) in TRANSIENT_STATUS_NAMES:
            return True
        error = error.__cause__
    return False


@dataclass(frozen=True)
class RetryPolicy:
    """How often and how patiently a failing service call is retried."""
    max_attempts: int = 3
    base_delay: float = 2.0
    max_jitter: float = 1.0
    is_transient: Callable[[BaseException], bool] = is_transient_error

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt + 1`` (attempt is 0-based)."""
        return self.base_delay * (2 ** attempt) + random.uniform(0, self.max_jitter)


async def _sleep(delay: float, cancel_event: Optional[asyncio.Event]) -> None:
    if cancel_event is None:
        await asyncio.sleep(delay)
        return
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return
    raise OperationCancelledError("Cancelled while waiting to retry")


async def call_with_backoff(
    call: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    cancel_event: Optional[asyncio.Event] = None,
    description: str = "service call",
) -> T:
    """
    Awaits ``call()`` and retries it on transient failures.

    Args:
        call: Zero-argument coroutine factory; invoked once per attempt.
        policy: Attempt count, delays and the transient-error predicate.
        cancel_event: Aborts the backoff sleep and further attempts when set.
        description: Used in log messages only.

    Returns:
        The value of the first successful call.

    Raises:
        RetryExhaustedError: If every attempt failed with a transient error.
        OperationCancelledError: If cancellation was requested between attempts.
        Exception: Any non-transient error raised by ``call``, unchanged.
    """
    last_error: Optional[BaseException] = None
    for attempt in range(policy.max_attempts):
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelledError(f"Cancelled before {description}")
        try:
            return await call()
        except OperationCancelledError:
            raise
        except Exception as e:
            if not policy.is_transient(e):
                raise
            last_error = e
            if attempt + 1 >= policy.max_attempts:
                break
            delay = policy.delay_for(attempt)
            logger.warning(
                f"{description} failed with a transient error "
                f"(attempt {attempt + 1}/{policy.max_attempts}): {e}. Retrying in {delay:.1f}s"
            )
            await _sleep(delay, cancel_event)

    logger.error(f"{description} failed after {policy.max_attempts} attempts: {last_error}")
    raise RetryExhaustedError(
        f"{description} failed after {policy.max_attempts} attempts: {last_error}",
        attempts=policy.max_attempts,
    ) from last_error
