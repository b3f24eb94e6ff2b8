"""Partitioning of the subtitle list into batches and merging of selected batches."""

import logging
from typing import Dict, Iterable, List, Optional, Sequence

from .models import Batch, Group, SubtitleItem

logger = logging.getLogger(__name__)


def partition_batches(items: Sequence[SubtitleItem], batch_size: int) -> List[Batch]:
    """Splits the flat list into consecutive batches of ``batch_size`` items."""
    if batch_size < 1:
        raise ValueError(f"Batch size must be positive, got {batch_size}")
    return [
        Batch(index=index, items=list(items[start:start + batch_size]))
        for index, start in enumerate(range(0, len(items), batch_size))
    ]


def _merged_comment(batches: Iterable[Batch], comments: Dict[int, str]) -> str:
    parts = []
    for batch in batches:
        comment = (comments.get(batch.index) or "").strip()
        if comment and batch.items:
            parts.append(f"[IDs {batch.items[0].id}-{batch.items[-1].id}]: {comment}")
    return " | ".join(parts)


def group_batches(
    batches: Sequence[Batch],
    selected: Iterable[int],
    comments: Optional[Dict[int, str]] = None,
) -> List[Group]:
    """
    Merges the selected batches into regeneration groups.

    Indices are sorted and de-duplicated; out-of-range ones are ignored. When
    every batch is selected each batch forms its own group, otherwise runs of
    consecutive indices are merged into one group.

    Args:
        batches: All batches of the current subtitle list.
        selected: 0-based batch indices chosen by the user.
        comments: Optional per-batch instruction, keyed by 0-based index.

    Returns:
        Groups in ascending batch order.
    """
    comments = comments or {}
    indices = sorted({i for i in selected if 0 <= i < len(batches)})
    ignored = set(selected) - set(indices)
    if ignored:
        logger.warning(f"Ignoring out-of-range batch indices: {sorted(ignored)}")
    if not indices:
        return []

    if len(indices) == len(batches):
        runs = [[i] for i in indices]
    else:
        runs = [[indices[0]]]
        for index in indices[1:]:
            if index == runs[-1][-1] + 1:
                runs[-1].append(index)
            else:
                runs.append([index])

    groups = []
    for run in runs:
        members = [batches[i] for i in run]
        groups.append(Group(
            batch_indices=run,
            items=[item for batch in members for item in batch.items],
            comment=_merged_comment(members, comments),
        ))
    return groups
