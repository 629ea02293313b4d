"""Dictation session state machine."""

import asyncio
import logging
import time
from enum import Enum
from typing import AsyncIterator, Callable, Protocol

from dictation_engine._types import TranscriptResult
from dictation_engine.config import SessionConfig
from dictation_engine.normalizer import word_count
from dictation_engine.recorder import CaptureError
from dictation_engine.segmenter import SegmentController
from dictation_engine.transcription_queue import TranscriptionQueue

logger = logging.getLogger(__name__)


class SessionState(Enum):
    """Session lifecycle state."""

    IDLE = "idle"
    STARTING = "starting"
    RECORDING = "recording"
    PROCESSING = "processing"
    ERROR = "error"


class PasteSink(Protocol):
    async def paste_text(self, text: str, auto_paste: bool = False) -> None: ...


class DictationSession:
    """Coordinates capture, segmentation, transcription and the paste sink.

    ``toggle()`` is the single entry point for starting and stopping. Results
    arrive from the transcription queue in capture order and are appended to
    the running transcript.
    """

    def __init__(
        self,
        controller: SegmentController,
        queue: TranscriptionQueue,
        sink: PasteSink,
        config: SessionConfig | None = None,
        poll_interval_ms: float = 16.0,
        auto_paste: Callable[[], bool] | None = None,
        can_toggle: Callable[[], bool] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize session.

        Args:
            controller: Segment controller driving the capture device
            queue: Transcription queue; its result handler is bound to this session
            sink: Clipboard/paste collaborator
            config: SessionConfig with debounce and cooldown settings
            poll_interval_ms: Delay between capture analysis ticks
            auto_paste: Accessor for the current auto-paste preference
            can_toggle: Accessor gating toggles (e.g. backend not ready)
            clock: Monotonic clock in seconds
        """
        self.controller = controller
        self.queue = queue
        self.sink = sink
        self.config = config or SessionConfig()
        self.poll_interval = poll_interval_ms / 1000.0
        self.auto_paste = auto_paste or (lambda: False)
        self.can_toggle = can_toggle or (lambda: True)
        self.clock = clock

        self.queue.on_result = self.handle_result

        self._status = SessionState.IDLE
        self._transcript = ""
        self._word_count = 0
        self._last_toggle: float | None = None
        self._recording_started: float | None = None
        self._transition_lock = asyncio.Lock()
        self._capture_task: asyncio.Task | None = None
        self._cooldown_task: asyncio.Task | None = None

        logger.info("DictationSession initialized in IDLE state")

    @property
    def status(self) -> SessionState:
        return self._status

    @property
    def transcript(self) -> str:
        return self._transcript

    @property
    def word_count(self) -> int:
        return self._word_count

    @property
    def duration(self) -> float:
        """Seconds since recording started, 0 when not recording."""
        if self._status != SessionState.RECORDING or self._recording_started is None:
            return 0.0
        return self.clock() - self._recording_started

    def clear_transcript(self) -> None:
        self._transcript = ""
        self._word_count = 0

    def _set_state(self, state: SessionState) -> None:
        if state != self._status:
            logger.info(
                "State transition: %s -> %s", self._status.name, state.name
            )
            self._status = state

    async def toggle(self, at: float | None = None) -> bool:
        """Start or stop dictation.

        Args:
            at: Time the trigger arrived, on the session clock. Defaults to
                now. Debouncing compares arrival times, so a duplicate press
                handled after a slow transition is still absorbed.

        Returns:
            True if the toggle was acted upon, False if it was ignored

        Raises:
            CaptureError: If the capture device fails to start (state returns to IDLE)
        """
        if not self.can_toggle():
            logger.debug("Toggle ignored: not ready")
            return False

        now = self.clock() if at is None else at
        if (
            self._last_toggle is not None
            and (now - self._last_toggle) * 1000.0 < self.config.toggle_debounce_ms
        ):
            logger.debug("Toggle debounced")
            return False

        if self._transition_lock.locked():
            logger.debug("Toggle ignored: transition in progress")
            return False

        self._last_toggle = now

        async with self._transition_lock:
            if self._status == SessionState.IDLE:
                await self._start()
                return True
            if self._status == SessionState.RECORDING:
                await self._stop()
                return True

        logger.debug("Toggle ignored in %s state", self._status.value)
        return False

    async def _start(self) -> None:
        self.clear_transcript()
        self._set_state(SessionState.STARTING)

        try:
            self.controller.start()
        except CaptureError as e:
            logger.error("Failed to start capture: %s", e)
            self._set_state(SessionState.IDLE)
            raise

        self.queue.start()
        self._recording_started = self.clock()
        self._set_state(SessionState.RECORDING)
        self._capture_task = asyncio.create_task(self._capture_loop())

    async def _stop(self) -> None:
        await self._cancel_capture_loop()

        final_task = await self.controller.stop()
        self._recording_started = None

        if final_task is None:
            self._set_state(SessionState.IDLE)
        else:
            self._set_state(SessionState.PROCESSING)

    async def _capture_loop(self) -> None:
        """Poll the capture stream until the controller goes inactive."""
        try:
            while self.controller.active:
                self.controller.process_frame()
                await asyncio.sleep(self.poll_interval)
        except Exception as e:
            logger.error("Capture loop failed: %s", e, exc_info=True)
        if self._status == SessionState.RECORDING:
            logger.warning("Capture ended unexpectedly; toggle to finish the session")

    async def _cancel_capture_loop(self) -> None:
        task = self._capture_task
        self._capture_task = None
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def handle_result(self, result: TranscriptResult) -> None:
        """Apply one transcription result in queue order."""
        task = result.task

        if task.session_id != self.controller.session_id:
            await self._apply_stale_result(result)
            return

        if result.failed:
            if task.is_final:
                logger.error("Final segment transcription failed: %s", result.error)
                self._enter_error()
            else:
                logger.warning(
                    "Dropping segment #%d after backend error: %s", task.sequence, result.error
                )
            return

        text = result.text
        if text:
            self._word_count += word_count(text)
            separator = " " if self._transcript else ""
            self._transcript = f"{self._transcript}{separator}{text}"
            logger.info("Transcript updated: +%d words", word_count(text))
            try:
                await self.sink.paste_text(text + " ", self.auto_paste())
            except Exception as e:
                logger.warning("Paste failed (%s: %s)", type(e).__name__, e)
        else:
            logger.info("Segment #%d produced no text", task.sequence)

        if task.is_final and self._status == SessionState.PROCESSING:
            self._set_state(SessionState.IDLE)

    async def _apply_stale_result(self, result: TranscriptResult) -> None:
        """Paste a late result from an earlier recording without touching the
        current transcript or state."""
        task = result.task
        if result.failed or not result.text:
            logger.info(
                "Late segment #%d from session %d produced no text", task.sequence, task.session_id
            )
            return

        logger.info(
            "Late segment #%d from session %d pasted outside the current transcript",
            task.sequence,
            task.session_id,
        )
        try:
            await self.sink.paste_text(result.text + " ", self.auto_paste())
        except Exception as e:
            logger.warning("Paste failed (%s: %s)", type(e).__name__, e)

    def _enter_error(self) -> None:
        self._set_state(SessionState.ERROR)
        if self._cooldown_task and not self._cooldown_task.done():
            self._cooldown_task.cancel()
        self._cooldown_task = asyncio.create_task(self._error_cooldown())

    async def _error_cooldown(self) -> None:
        logger.warning(
            "Error recovery: waiting %.1fs before IDLE", self.config.error_cooldown
        )
        await asyncio.sleep(self.config.error_cooldown)
        if self._status == SessionState.ERROR:
            self._set_state(SessionState.IDLE)

    async def run(self, triggers: AsyncIterator) -> None:
        """Toggle the session on every trigger event until the iterator ends.

        Triggers are read by a separate task so each one is stamped when it
        arrives, even while a slow start or stop is still being handled.
        Capture start failures are logged and the session stays idle; an
        error raised by the trigger source propagates once earlier triggers
        have been handled.
        """
        logger.info("Session event loop starting")
        pending: asyncio.Queue = asyncio.Queue()
        reader = asyncio.create_task(self._read_triggers(triggers, pending))

        try:
            while True:
                kind, payload = await pending.get()
                if kind == "done":
                    break
                if kind == "error":
                    raise payload
                try:
                    await self.toggle(at=payload)
                except CaptureError as e:
                    logger.error("Could not start dictation: %s", e)
        finally:
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)

    async def _read_triggers(self, triggers: AsyncIterator, pending: asyncio.Queue) -> None:
        try:
            async for event in triggers:
                arrived = getattr(event, "timestamp", None)
                pending.put_nowait(("trigger", self.clock() if arrived is None else arrived))
        except Exception as e:
            pending.put_nowait(("error", e))
        finally:
            pending.put_nowait(("done", None))

    async def shutdown(self) -> None:
        """Stop capture, let queued transcriptions finish, release the device."""
        logger.info("Session shutdown starting")
        await self._cancel_capture_loop()

        if self.controller.active:
            await self.controller.stop()
            self._recording_started = None

        await self.queue.close(timeout=self.config.shutdown_timeout)

        if self._cooldown_task and not self._cooldown_task.done():
            self._cooldown_task.cancel()
            try:
                await self._cooldown_task
            except asyncio.CancelledError:
                pass

        self._set_state(SessionState.IDLE)
        logger.info("Session shutdown complete")
