"""Bounded-parallel fan-out / fan-in for asyncio tasks."""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


async def map_in_parallel(
    items: Sequence[T],
    concurrency: int,
    fn: Callable[[T, int], Awaitable[R]],
    cancel_event: Optional[asyncio.Event] = None,
) -> List[Optional[R]]:
    """
    Runs ``fn(item, index)`` for every item with at most ``concurrency`` in flight.

    Results are aligned with ``items`` whatever the completion order. A failing
    task neither cancels its in-flight siblings nor stops the remaining ones;
    once everything has settled the first error raised is re-raised. Items not
    yet started when ``cancel_event`` is set are skipped and yield ``None``.

    Raises:
        ValueError: If ``concurrency`` is not positive.
    """
    if concurrency < 1:
        raise ValueError(f"Concurrency must be positive, got {concurrency}")

    results: List[Optional[R]] = [None] * len(items)
    errors: List[BaseException] = []
    next_index = 0

    async def worker() -> None:
        nonlocal next_index
        while next_index < len(items):
            # single event loop thread: claiming an index needs no lock
            i = next_index
            next_index += 1
            if cancel_event is not None and cancel_event.is_set():
                logger.debug(f"Skipping task {i}: cancellation requested")
                continue
            try:
                results[i] = await fn(items[i], i)
            except Exception as e:
                logger.debug(f"Task {i} failed: {e!r}")
                errors.append(e)

    workers = [worker() for _ in range(min(len(items), concurrency))]
    await asyncio.gather(*workers)

    if errors:
        if len(errors) > 1:
            logger.warning(f"{len(errors)} of {len(items)} tasks failed; raising the first error")
        raise errors[0]
    return results
