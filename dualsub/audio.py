"""Audio decoding, slicing and chunking using ffmpeg."""

import io
import logging
import os
import wave
from typing import List, Optional

import ffmpeg

from .exceptions import AudioProcessingError
from .models import AudioBuffer, ChunkDescriptor

logger = logging.getLogger(__name__)

TARGET_SAMPLE_RATE = 16000


def split_into_chunks(duration: float, window: float) -> List[ChunkDescriptor]:
    """
    Splits a total duration into ordered, non-overlapping time windows.

    The last window is truncated to ``duration``; together the windows cover
    ``[0, duration)`` exactly once.

    Raises:
        ValueError: If ``window`` is not positive.
    """
    if window <= 0:
        raise ValueError(f"Chunk window must be positive, got {window}")
    chunks: List[ChunkDescriptor] = []
    index = 0
    cursor = 0.0
    while cursor < duration:
        end = min(cursor + window, duration)
        chunks.append(ChunkDescriptor(index=index, start_sec=cursor, end_sec=end))
        index += 1
        # exact multiples of the window, no accumulated drift
        cursor = index * window
    return chunks


class AudioProcessor:
    """Decodes media into a shared PCM buffer and cuts WAV slices from it."""

    def __init__(self, ffmpeg_path: Optional[str] = None, sample_rate: int = TARGET_SAMPLE_RATE):
        """
        Initializes the AudioProcessor.

        Args:
            ffmpeg_path: Optional path to the ffmpeg executable.
                         If None, assumes ffmpeg is in the system PATH.
            sample_rate: Sample rate of the decoded buffer.
        """
        self.ffmpeg_cmd = ffmpeg_path or 'ffmpeg'
        self.sample_rate = sample_rate
        logger.info(f"Using ffmpeg command: {self.ffmpeg_cmd}")

    def decode(self, media_path: str) -> AudioBuffer:
        """
        Decodes the audio stream of a media file into 16-bit mono PCM.

        Args:
            media_path: Path to the input video or audio file.

        Returns:
            An AudioBuffer holding the whole track in memory.

        Raises:
            FileNotFoundError: If the media file does not exist.
            AudioProcessingError: If ffmpeg fails to decode the audio.
        """
        logger.info(f"Decoding audio from: {media_path}")
        if not os.path.exists(media_path):
            raise FileNotFoundError(f"Input media file not found: {media_path}")

        try:
            # s16le to stdout: no temp file, the buffer is sliced in memory afterwards
            pcm, _ = (
                ffmpeg
                .input(media_path)
                .output('pipe:', format='s16le', acodec='pcm_s16le', ar=self.sample_rate, ac=1)
                .run(cmd=self.ffmpeg_cmd, capture_stdout=True, capture_stderr=True)
            )
        except ffmpeg.Error as e:
            stderr_output = e.stderr.decode('utf-8', errors='replace') if e.stderr else "No stderr output"
            logger.error(f"ffmpeg error while decoding {media_path}: {stderr_output}")
            raise AudioProcessingError(f"ffmpeg failed: {stderr_output}") from e
        except OSError as e:
            logger.error(f"Could not run ffmpeg for {media_path}: {e}", exc_info=True)
            raise AudioProcessingError(f"Could not run ffmpeg: {e}") from e

        if not pcm:
            raise AudioProcessingError(f"No audio stream decoded from {media_path}")

        buffer = AudioBuffer(pcm=pcm, sample_rate=self.sample_rate)
        logger.info(f"Decoded {buffer.duration:.1f}s of audio from {media_path}")
        return buffer

    def slice(self, buffer: AudioBuffer, start_sec: float, end_sec: float) -> bytes:
        """
        Encodes ``[start_sec, end_sec)`` of the buffer as a WAV file.

        Bounds are clamped to the buffer.

        Raises:
            AudioProcessingError: If the clamped range is empty.
        """
        start_sec = max(0.0, start_sec)
        end_sec = min(buffer.duration, end_sec)
        if end_sec <= start_sec:
            raise AudioProcessingError(f"Empty audio slice requested: [{start_sec:.3f}, {end_sec:.3f})")

        frame_size = buffer.sample_width * buffer.channels
        first_frame = int(start_sec * buffer.sample_rate)
        last_frame = int(end_sec * buffer.sample_rate)
        frames = buffer.pcm[first_frame * frame_size:last_frame * frame_size]

        out = io.BytesIO()
        with wave.open(out, 'wb') as wav:
            wav.setnchannels(buffer.channels)
            wav.setsampwidth(buffer.sample_width)
            wav.setframerate(buffer.sample_rate)
            wav.writeframes(frames)
        return out.getvalue()
