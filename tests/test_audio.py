import io
import wave

import pytest

from dualsub.audio import AudioProcessor, split_into_chunks
from dualsub.exceptions import AudioProcessingError
from dualsub.models import AudioBuffer


def test_split_covers_duration_with_truncated_last_window():
    chunks = split_into_chunks(700, 300)
    assert [(c.index, c.start_sec, c.end_sec) for c in chunks] == [
        (0, 0, 300), (1, 300, 600), (2, 600, 700),
    ]


def test_split_exact_multiple_has_no_empty_tail():
    chunks = split_into_chunks(600, 300)
    assert len(chunks) == 2
    assert chunks[-1].end_sec == 600


def test_split_shorter_than_window():
    chunks = split_into_chunks(42.5, 300)
    assert len(chunks) == 1
    assert chunks[0].duration == pytest.approx(42.5)


def test_split_windows_are_contiguous():
    chunks = split_into_chunks(1234.5, 97)
    for previous, current in zip(chunks, chunks[1:]):
        assert previous.end_sec == current.start_sec
    assert chunks[0].start_sec == 0
    assert chunks[-1].end_sec == 1234.5


def test_split_empty_duration_yields_nothing():
    assert split_into_chunks(0, 300) == []


def test_split_rejects_non_positive_window():
    with pytest.raises(ValueError):
        split_into_chunks(100, 0)


def _buffer(seconds: float, rate: int = 1000) -> AudioBuffer:
    # sample value == frame index (mod 2**15) so slices can be checked
    frames = int(seconds * rate)
    pcm = b"".join((i % 32768).to_bytes(2, "little", signed=True) for i in range(frames))
    return AudioBuffer(pcm=pcm, sample_rate=rate)


def test_slice_encodes_requested_range_as_wav():
    buffer = _buffer(3.0)
    data = AudioProcessor().slice(buffer, 1.0, 2.5)

    with wave.open(io.BytesIO(data), "rb") as wav:
        assert wav.getnchannels() == 1
        assert wav.getsampwidth() == 2
        assert wav.getframerate() == 1000
        assert wav.getnframes() == 1500
        first = int.from_bytes(wav.readframes(1), "little", signed=True)
    assert first == 1000


def test_slice_clamps_to_buffer_bounds():
    buffer = _buffer(2.0)
    data = AudioProcessor().slice(buffer, -1.0, 5.0)
    with wave.open(io.BytesIO(data), "rb") as wav:
        assert wav.getnframes() == 2000


def test_slice_outside_buffer_raises():
    with pytest.raises(AudioProcessingError):
        AudioProcessor().slice(_buffer(1.0), 2.0, 3.0)


def test_decode_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        AudioProcessor().decode(str(tmp_path / "missing.mp4"))
