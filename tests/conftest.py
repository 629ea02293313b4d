"""Shared fakes for capture, clock and transcription backends."""

import asyncio

import numpy as np
import pytest

from dictation_engine._types import AudioFrame, TranscriptionResult
from dictation_engine.recorder import CaptureError


class FakeClock:
    """Manually advanced monotonic clock (seconds)."""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance_ms(self, ms: float) -> None:
        self.now += ms / 1000.0

    def set_ms(self, ms: float) -> None:
        self.now = ms / 1000.0


class FakeCapture:
    """In-memory capture primitive.

    ``push(nbytes, rms)`` simulates the stream callback delivering one chunk
    and sets the analysis window to a frame with the given RMS.
    """

    def __init__(self, supports_request_data: bool = True):
        self.sample_rate = 16000
        self.channels = 1
        self.supports_request_data = supports_request_data
        self.pending: list[bytes] = []
        self.frame_rms: float | None = None
        self.start_calls = 0
        self.stop_calls = 0
        self.start_error: Exception | None = None
        self.stop_error: Exception | None = None
        self._active = False
        self._counter = 0

    @property
    def is_active(self) -> bool:
        return self._active

    def push(self, nbytes: int = 3200, rms: float | None = None) -> bytes:
        self._counter += 1
        chunk = bytes([self._counter % 256]) * nbytes
        self.pending.append(chunk)
        if rms is not None:
            self.frame_rms = rms
        return chunk

    def start(self) -> None:
        self.start_calls += 1
        if self.start_error is not None:
            raise self.start_error
        self._active = True

    def stop(self) -> list[bytes]:
        self.stop_calls += 1
        if self.stop_error is not None:
            raise self.stop_error
        self._active = False
        return self.drain()

    def drain(self) -> list[bytes]:
        chunks, self.pending = self.pending, []
        return chunks

    def read_frame(self) -> AudioFrame | None:
        if not self._active or self.frame_rms is None:
            return None
        samples = np.full(64, 128 + self.frame_rms, dtype=np.float64)
        return AudioFrame(samples=samples, timestamp=0.0)


class RecordingSink:
    """Collects enqueued transcription tasks."""

    def __init__(self):
        self.tasks = []

    def enqueue(self, task) -> None:
        self.tasks.append(task)


class FakeBackend:
    """Transcription backend returning scripted texts with optional delays."""

    def __init__(self, texts=(), delays=(), error: Exception | None = None):
        self.texts = list(texts)
        self.delays = list(delays)
        self.error = error
        self.calls: list[bytes] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.is_ready = True

    async def transcribe(self, audio: bytes, language: str = "en", timeout: float = 30.0):
        index = len(self.calls)
        self.calls.append(audio)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            delay = self.delays[index] if index < len(self.delays) else 0.0
            await asyncio.sleep(delay)
            if self.error is not None:
                raise self.error
            text = self.texts[index] if index < len(self.texts) else ""
            return TranscriptionResult(text=text, language=language)
        finally:
            self.in_flight -= 1


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def capture():
    return FakeCapture()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def failing_capture():
    fake = FakeCapture()
    fake.start_error = CaptureError("microphone permission denied")
    return fake
