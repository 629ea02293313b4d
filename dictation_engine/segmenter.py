"""Segment accumulation and flush control over a continuous capture stream."""

import asyncio
import logging
import time
from typing import Callable, Protocol

from dictation_engine._types import AudioFrame, Segment, TranscriptionTask
from dictation_engine.config import SegmenterConfig, VadConfig
from dictation_engine.recorder import CaptureInactiveError
from dictation_engine.vad import VoiceActivityDetector
from dictation_engine.volume import calculate_rms

logger = logging.getLogger(__name__)


class CapturePrimitive(Protocol):
    """Contract of the capture device driven by the controller."""

    sample_rate: int
    channels: int
    supports_request_data: bool

    @property
    def is_active(self) -> bool: ...

    def start(self) -> None: ...

    def stop(self) -> list[bytes]: ...

    def drain(self) -> list[bytes]: ...

    def read_frame(self) -> AudioFrame | None: ...


class TaskSink(Protocol):
    def enqueue(self, task: TranscriptionTask) -> None: ...


class SegmentController:
    """Turns the capture stream into bounded segments and enqueues them.

    One polling tick (``process_frame``) drains new PCM chunks into the active
    segment, feeds the current frame's RMS to the voice activity detector, and
    requests a flush when the detector or the safety caps call for one.
    ``is_flushing`` is the only lock: while a flush round trip is in flight,
    further requests are ignored and audio keeps accumulating.
    """

    def __init__(
        self,
        capture: CapturePrimitive,
        sink: TaskSink,
        vad_config: VadConfig | None = None,
        config: SegmenterConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize controller.

        Args:
            capture: Capture primitive (AudioRecorder or compatible)
            sink: Receiver of flushed TranscriptionTasks (the transcription queue)
            vad_config: Detector thresholds
            config: Segment limits and capture mode
            clock: Monotonic clock in seconds
        """
        self.capture = capture
        self.sink = sink
        self.vad_config = vad_config or VadConfig()
        self.config = config or SegmenterConfig()
        self.clock = clock

        self.vad = VoiceActivityDetector(
            speaking_threshold=self.vad_config.speaking_threshold,
            silence_hang_ms=self.vad_config.silence_hang_ms,
        )

        self.is_flushing = False
        self.last_flush_time = 0.0
        self.segment_start_time = 0.0
        self.active = False
        self.session_id = 0

        self._chunks: list[bytes] = []
        self._buffered_bytes = 0
        self._sequence = 0
        self._flush_task: asyncio.Task | None = None

    @property
    def buffered_bytes(self) -> int:
        return self._buffered_bytes

    @property
    def uses_request_data(self) -> bool:
        """Whether flushes hand over the buffer without stopping capture."""
        return self.config.capture_mode == "request" and self.capture.supports_request_data

    def _now_ms(self) -> float:
        return self.clock() * 1000.0

    def start(self) -> None:
        """Start capture and open the first segment.

        Raises:
            CaptureError: If the capture device cannot be started
        """
        self.capture.start()
        now = self._now_ms()
        self.session_id += 1
        self._reset_buffer()
        self.vad.reset()
        self.is_flushing = False
        self.segment_start_time = now
        self.last_flush_time = now
        self.active = True
        logger.info(
            "Segment controller started (mode=%s)",
            "request" if self.uses_request_data else "restart",
        )

    def process_frame(self) -> None:
        """Run one analysis tick on the live capture stream."""
        if not self.active:
            return

        self._append(self.capture.drain())

        frame = self.capture.read_frame()
        if frame is None:
            return

        now = self._now_ms()
        decision = self.vad.update(calculate_rms(frame.samples), now)
        if decision.flush_requested:
            self.request_flush()

        segment_age = now - self.segment_start_time
        if self._chunks and (
            self._buffered_bytes > self.config.max_segment_bytes
            or segment_age > self.config.max_segment_duration_ms
        ):
            logger.debug(
                "Safety flush (%.1f MB, %.0f ms)",
                self._buffered_bytes / 1024 / 1024,
                segment_age,
            )
            self.request_flush(force=True)

    def request_flush(self, force: bool = False) -> bool:
        """Close out the active segment if the flush guards allow it.

        Args:
            force: Safety-valve flush; skips rate limit, minimum duration and
                the speech check

        Returns:
            True if a flush round trip was started
        """
        if not self.active or self.is_flushing:
            return False

        now = self._now_ms()
        if not force:
            if now - self.last_flush_time < self.config.min_flush_interval_ms:
                return False
            if now - self.segment_start_time < self.config.min_segment_duration_ms:
                return False
            if self.vad.max_rms <= self.vad_config.speaking_threshold:
                logger.debug(
                    "Discarding silent segment (%d bytes, max_rms=%.2f)",
                    self._buffered_bytes,
                    self.vad.max_rms,
                )
                self._reset_buffer()
                self.vad.reset()
                self.segment_start_time = now
                self.last_flush_time = now
                return False

        self.is_flushing = True
        self._flush_task = asyncio.create_task(self._flush())
        return True

    async def wait_for_flush(self) -> None:
        """Wait for an in-flight flush round trip to finish."""
        if self._flush_task is not None and not self._flush_task.done():
            await self._flush_task

    async def _flush(self) -> None:
        restart = not self.uses_request_data
        loop = asyncio.get_running_loop()
        try:
            if restart:
                tail = await loop.run_in_executor(None, self.capture.stop)
            else:
                tail = self.capture.drain()
        except CaptureInactiveError as e:
            logger.warning("Flush dropped, capture not active: %s", e)
            self.is_flushing = False
            return
        except Exception as e:
            logger.error("Flush failed: %s", e, exc_info=True)
            self.is_flushing = False
            self.active = False
            return

        # Chunks from the restarted stream belong to the next segment.
        self._append(tail)
        segment = self._take_segment()
        now = self._now_ms()
        self.segment_start_time = now
        self.last_flush_time = now
        self._enqueue(segment, is_final=False)

        if restart and self.active:
            try:
                await loop.run_in_executor(None, self.capture.start)
            except Exception as e:
                logger.error("Capture restart failed: %s", e, exc_info=True)
                self.active = False
        self.is_flushing = False

    async def stop(self) -> TranscriptionTask | None:
        """End the session and enqueue the remaining audio as the final task.

        Returns:
            The final TranscriptionTask, or None when the remainder was too
            small and has been discarded
        """
        self.active = False
        await self.wait_for_flush()

        try:
            loop = asyncio.get_running_loop()
            tail = await loop.run_in_executor(None, self.capture.stop)
        except CaptureInactiveError as e:
            logger.warning("Capture already inactive at stop: %s", e)
            tail = []

        self._append(tail)
        segment = self._take_segment()
        self.is_flushing = False

        if segment.size <= self.config.min_final_bytes:
            logger.info("Discarding final segment (%d bytes)", segment.size)
            return None

        logger.info("User stopped. Processing final segment (%d bytes)", segment.size)
        return self._enqueue(segment, is_final=True)

    def _append(self, chunks: list[bytes]) -> None:
        for chunk in chunks:
            if chunk:
                self._chunks.append(chunk)
                self._buffered_bytes += len(chunk)

    def _take_segment(self) -> Segment:
        segment = Segment(
            chunks=self._chunks,
            start_time=self.segment_start_time,
            max_rms=self.vad.max_rms,
            sample_rate=self.capture.sample_rate,
            channels=self.capture.channels,
        )
        self._reset_buffer()
        self.vad.reset()
        return segment

    def _reset_buffer(self) -> None:
        self._chunks = []
        self._buffered_bytes = 0

    def _enqueue(self, segment: Segment, is_final: bool) -> TranscriptionTask:
        self._sequence += 1
        task = TranscriptionTask(
            segment=segment,
            is_final=is_final,
            enqueued_at=self.clock(),
            sequence=self._sequence,
            session_id=self.session_id,
        )
        logger.info(
            "Flushed segment #%d (%d bytes, max_rms=%.2f, final=%s)",
            task.sequence,
            segment.size,
            segment.max_rms,
            is_final,
        )
        self.sink.enqueue(task)
        return task
