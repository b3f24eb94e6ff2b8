"""Data models for DualSub."""

from dataclasses import dataclass, replace
from enum import Enum
from typing import List, Optional, Sequence, Union


@dataclass
class Segment:
    """Represents a single timed chunk of text, relative to its audio slice."""
    start_time: float
    end_time: float
    text: str


@dataclass(frozen=True)
class SubtitleItem:
    """One bilingual subtitle line with absolute ``HH:MM:SS,mmm`` timestamps."""
    id: int
    start_time: str
    end_time: str
    original: str
    translated: str = ""
    comment: Optional[str] = None


@dataclass(frozen=True)
class ChunkDescriptor:
    """A fixed-length time window of the source media."""
    index: int
    start_sec: float
    end_sec: float

    @property
    def duration(self) -> float:
        return self.end_sec - self.start_sec


@dataclass(frozen=True)
class Batch:
    """A contiguous, fixed-size slice of the flattened subtitle list."""
    index: int
    items: List[SubtitleItem]


@dataclass(frozen=True)
class Group:
    """One or more consecutive batches merged into a single regeneration request."""
    batch_indices: List[int]
    items: List[SubtitleItem]
    comment: str = ""

    @property
    def first_batch(self) -> int:
        return self.batch_indices[0]

    @property
    def label(self) -> str:
        # 1-based batch numbers, "4" or "4-6"
        first, last = self.batch_indices[0] + 1, self.batch_indices[-1] + 1
        return f"{first}" if first == last else f"{first}-{last}"


class BatchMode(str, Enum):
    PROOFREAD = "proofread"
    FIX_TIMESTAMPS = "fix_timestamps"
    RETRANSLATE = "retranslate"

    @property
    def needs_audio(self) -> bool:
        return self is not BatchMode.RETRANSLATE


class ProgressStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


class Stage(str, Enum):
    TRANSCRIBING = "transcribing"
    REFINING = "refining"
    TRANSLATING = "translating"


@dataclass(frozen=True)
class ProgressUpdate:
    """Fire-and-forget progress notification for one chunk or group."""
    id: Union[int, str]
    total: int
    status: ProgressStatus
    message: str = ""
    stage: Optional[Stage] = None


@dataclass(frozen=True)
class AudioBuffer:
    """Decoded mono 16-bit PCM audio, shared read-only between tasks."""
    pcm: bytes
    sample_rate: int = 16000
    channels: int = 1
    sample_width: int = 2

    @property
    def frame_count(self) -> int:
        return len(self.pcm) // (self.sample_width * self.channels)

    @property
    def duration(self) -> float:
        return self.frame_count / float(self.sample_rate)


def flatten_slots(slots: Sequence[Optional[List[SubtitleItem]]]) -> List[SubtitleItem]:
    """Concatenates result slots in index order, skipping unfilled ones."""
    flat: List[SubtitleItem] = []
    for slot in slots:
        if slot:
            flat.extend(slot)
    return flat


def renumber(items: Sequence[SubtitleItem]) -> List[SubtitleItem]:
    """Returns new items carrying dense ids 1..N in list order."""
    return [replace(item, id=position) for position, item in enumerate(items, start=1)]
