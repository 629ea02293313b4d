"""Shared types and dataclasses for cross-module use."""

import io
import wave
from dataclasses import dataclass, field

import numpy as np


@dataclass
class AudioFrame:
    """Analysis window of unsigned samples taken from the live capture stream."""

    samples: np.ndarray
    timestamp: float


@dataclass
class Segment:
    """One bounded span of captured audio treated as a single transcription unit.

    Chunks hold raw little-endian 16-bit PCM exactly as delivered by the
    capture stream, in capture order.
    """

    chunks: list[bytes]
    start_time: float
    max_rms: float
    sample_rate: int = 16000
    channels: int = 1

    @property
    def size(self) -> int:
        """Total buffered PCM bytes."""
        return sum(len(chunk) for chunk in self.chunks)

    @property
    def duration(self) -> float:
        """Audio duration in seconds."""
        bytes_per_second = self.sample_rate * self.channels * 2
        return self.size / bytes_per_second if bytes_per_second else 0.0

    def to_wav(self) -> bytes:
        """Package the chunks into a self-contained WAV container."""
        buffer = io.BytesIO()
        with wave.open(buffer, "wb") as wav_file:
            wav_file.setnchannels(self.channels)
            wav_file.setsampwidth(2)
            wav_file.setframerate(self.sample_rate)
            wav_file.writeframes(b"".join(self.chunks))
        return buffer.getvalue()


@dataclass
class TranscriptionTask:
    """A flushed segment waiting in the transcription queue."""

    segment: Segment
    is_final: bool
    enqueued_at: float
    sequence: int = 0
    session_id: int = 0


@dataclass
class TranscriptResult:
    """Normalized text tied to the task it came from.

    Empty text is a valid no-op result. ``error`` is set when the backend
    call failed.
    """

    task: TranscriptionTask
    text: str
    error: Exception | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass
class TranscriptionSegment:
    """A segment of transcribed text with timing information."""

    text: str
    start: float
    end: float
    confidence: float = 0.0


@dataclass
class TranscriptionResult:
    """Raw result returned by a transcription backend."""

    text: str
    language: str
    confidence: float = 0.0
    segments: list[TranscriptionSegment] = field(default_factory=list)
