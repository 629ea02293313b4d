"""Strictly ordered, single-consumer transcription queue."""

import asyncio
import logging
from typing import Awaitable, Callable, Protocol

from dictation_engine._types import TranscriptionResult, TranscriptionTask, TranscriptResult
from dictation_engine.normalizer import TextNormalizer
from dictation_engine.volume import is_silence

logger = logging.getLogger(__name__)

ResultHandler = Callable[[TranscriptResult], Awaitable[None]]


class TranscriptionBackend(Protocol):
    async def transcribe(
        self, audio: bytes, language: str = "en", timeout: float = 30.0
    ) -> TranscriptionResult: ...


class TranscriptionQueue:
    """FIFO of transcription tasks drained by exactly one worker.

    Task N+1 is sent to the backend only after task N has been transcribed,
    normalized, and handed to the result handler. Enqueueing never blocks.
    """

    def __init__(
        self,
        backend: TranscriptionBackend,
        normalizer: TextNormalizer,
        on_result: ResultHandler | None = None,
        language: str = "en",
        timeout: float = 30.0,
        min_volume_rms: float = 0.0,
    ):
        self.backend = backend
        self.normalizer = normalizer
        self.on_result = on_result
        self.language = language
        self.timeout = timeout
        self.min_volume_rms = min_volume_rms

        self._queue: asyncio.Queue[TranscriptionTask] = asyncio.Queue()
        self._worker: asyncio.Task | None = None
        self._pending = 0

    @property
    def pending(self) -> int:
        """Tasks enqueued but not yet fully processed."""
        return self._pending

    def enqueue(self, task: TranscriptionTask) -> None:
        self._queue.put_nowait(task)
        self._pending += 1
        logger.debug(
            "Enqueued task #%d (final=%s, %d bytes, %d pending)",
            task.sequence,
            task.is_final,
            task.segment.size,
            self.pending,
        )

    def start(self) -> None:
        """Spawn the worker task if it is not running."""
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run())
            logger.debug("Transcription worker started")

    async def join(self) -> None:
        """Wait until every enqueued task has been processed."""
        await self._queue.join()

    async def close(self, timeout: float | None = None) -> None:
        """Drain outstanding tasks, then stop the worker.

        Args:
            timeout: Maximum seconds to wait for the drain; remaining tasks
                are abandoned when it expires
        """
        if self._worker is None:
            return

        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Transcription queue not drained after %.1fs, abandoning %d task(s)",
                timeout,
                self.pending,
            )

        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        logger.debug("Transcription worker stopped")

    async def _run(self) -> None:
        while True:
            task = await self._queue.get()
            try:
                result = await self._process(task)
                try:
                    if self.on_result is not None:
                        await self.on_result(result)
                except Exception as e:
                    logger.error(
                        "Result handler failed for task #%d: %s", task.sequence, e, exc_info=True
                    )
            finally:
                self._pending -= 1
                self._queue.task_done()

    async def _process(self, task: TranscriptionTask) -> TranscriptResult:
        segment = task.segment
        if not task.is_final and is_silence(segment.max_rms, self.min_volume_rms):
            logger.info(
                "Skipped low volume segment #%d (max_rms=%.2f)", task.sequence, segment.max_rms
            )
            return TranscriptResult(task=task, text="")

        logger.info(
            "Transcribing task #%d (%d bytes, %.2fs, final=%s)",
            task.sequence,
            segment.size,
            segment.duration,
            task.is_final,
        )
        try:
            raw = await self.backend.transcribe(
                segment.to_wav(), language=self.language, timeout=self.timeout
            )
        except Exception as e:
            logger.warning(
                "Transcription of task #%d failed (%s: %s)", task.sequence, type(e).__name__, e
            )
            return TranscriptResult(task=task, text="", error=e)

        text = self.normalizer.normalize(raw.text)
        logger.debug("Task #%d text: %r -> %r", task.sequence, raw.text, text)
        return TranscriptResult(task=task, text=text)
