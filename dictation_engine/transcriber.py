"""Segment transcription via Faster Whisper."""

import asyncio
import io
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from math import gcd

import numpy as np

from dictation_engine._types import TranscriptionResult, TranscriptionSegment
from dictation_engine.config import Config

logger = logging.getLogger(__name__)

WHISPER_SAMPLE_RATE = 16000


class Transcriber:
    """Encapsulates Faster Whisper model and transcription logic.

    Runs transcription inside a thread pool executor to avoid blocking the event loop.
    Lazy-loads model on first transcription unless warmed up explicitly.
    """

    def __init__(
        self,
        model_name: str = "base",
        device: str = "cpu",
        compute_type: str = "int8",
        model_directory: str | None = None,
        beam_size: int = 5,
        executor: ThreadPoolExecutor | None = None,
    ):
        """Initialize transcriber.

        Args:
            model_name: Faster Whisper model name (tiny, base, small, etc.)
            device: Device to run on (cpu, cuda, auto)
            compute_type: Compute precision (int8, float16, float32)
            model_directory: Custom cache directory for model weights
            beam_size: Beam search width for decoding
            executor: Optional ThreadPoolExecutor for transcription tasks
        """
        self.model_name = model_name
        self.device = device
        self.compute_type = compute_type
        self.model_directory = model_directory
        self.beam_size = beam_size
        self.executor = executor or ThreadPoolExecutor(max_workers=1)
        self._executor_owned = executor is None
        self._model = None
        self._model_lock = asyncio.Lock()
        logger.info(
            "Transcriber initialized: model=%s, device=%s, compute_type=%s, beam_size=%d",
            model_name,
            device,
            compute_type,
            beam_size,
        )

    @property
    def is_ready(self) -> bool:
        return self._model is not None

    async def warmup(self) -> None:
        """Load the model ahead of the first segment."""
        await self._ensure_model_loaded()

    async def _ensure_model_loaded(self) -> None:
        """Lazy-load WhisperModel on first use.

        Uses asyncio.Lock to prevent concurrent load attempts.

        Raises:
            RuntimeError: If model fails to load
        """
        async with self._model_lock:
            if self._model is not None:
                return

            logger.info(
                "Loading Faster Whisper model: %s (device=%s, compute_type=%s)",
                self.model_name,
                self.device,
                self.compute_type,
            )

            try:
                from faster_whisper import WhisperModel

                start_time = time.perf_counter()
                loop = asyncio.get_running_loop()
                self._model = await loop.run_in_executor(
                    self.executor,
                    lambda: WhisperModel(
                        self.model_name,
                        device=self.device,
                        compute_type=self.compute_type,
                        download_root=self.model_directory,
                    ),
                )
                duration = time.perf_counter() - start_time
                logger.info("Model loaded successfully in %.2f seconds", duration)
            except Exception as e:
                logger.error(
                    "Failed to load model %s on device %s: %s",
                    self.model_name,
                    self.device,
                    e,
                )
                raise RuntimeError(
                    f"Failed to load Whisper model '{self.model_name}' on device "
                    f"'{self.device}' with compute_type '{self.compute_type}': {e}"
                ) from e

    async def transcribe(
        self,
        audio: bytes,
        language: str = "en",
        timeout: float = 30.0,
    ) -> TranscriptionResult:
        """Transcribe a WAV container asynchronously.

        Args:
            audio: Self-contained WAV bytes
            language: Language code (e.g., "en", "fr") or "auto" for detection
            timeout: Maximum time in seconds

        Returns:
            TranscriptionResult with text, language, and segments

        Raises:
            RuntimeError: If model loading or transcription fails or times out
        """
        if not audio:
            raise RuntimeError("Cannot transcribe empty audio")

        await self._ensure_model_loaded()

        logger.info("Starting transcription of %d bytes (language=%s)", len(audio), language)

        try:
            loop = asyncio.get_running_loop()
            result = await asyncio.wait_for(
                loop.run_in_executor(
                    self.executor,
                    self._transcribe_sync,
                    audio,
                    language,
                ),
                timeout=timeout,
            )
            logger.info("Transcription completed: %d segments", len(result.segments))
            return result
        except asyncio.TimeoutError as e:
            logger.error("Transcription timed out after %.1f seconds", timeout)
            raise RuntimeError(
                f"Transcription timed out after {timeout} seconds"
            ) from e
        except RuntimeError:
            raise
        except Exception as e:
            logger.error("Transcription failed: %s", e, exc_info=True)
            raise RuntimeError(f"Transcription failed: {e}") from e

    def _transcribe_sync(self, audio: bytes, language: str) -> TranscriptionResult:
        """Synchronous transcription (runs in thread pool).

        Raises:
            RuntimeError: If transcription fails
        """
        try:
            if self._model is None:
                raise RuntimeError("Model not loaded")

            audio_data = self._load_audio(audio)

            segments_iter, info = self._model.transcribe(
                audio_data,
                language=language if language != "auto" else None,
                beam_size=self.beam_size,
            )

            segments = [
                TranscriptionSegment(
                    text=seg.text.strip(),
                    start=seg.start,
                    end=seg.end,
                    confidence=float(np.exp(seg.avg_logprob)),
                )
                for seg in segments_iter
            ]

            text = " ".join(seg.text for seg in segments if seg.text).strip()
            detected_language = getattr(info, "language", None) or language

            return TranscriptionResult(
                text=text,
                language=detected_language,
                confidence=getattr(info, "language_probability", 0.0) or 0.0,
                segments=segments,
            )

        except Exception as e:
            logger.error("Sync transcription failed: %s", e, exc_info=True)
            raise RuntimeError(f"Transcription processing failed: {e}") from e

    def _load_audio(self, audio: bytes) -> np.ndarray:
        """Decode a WAV container into 16 kHz mono float32 samples.

        Raises:
            RuntimeError: If audio cannot be decoded
        """
        try:
            import soundfile

            try:
                audio_data, sample_rate = soundfile.read(io.BytesIO(audio), dtype="float32")
            except Exception:
                import wave

                with wave.open(io.BytesIO(audio), "rb") as wav_file:
                    sample_rate = wav_file.getframerate()
                    channels = wav_file.getnchannels()
                    n_frames = wav_file.getnframes()
                    audio_data = np.frombuffer(
                        wav_file.readframes(n_frames), dtype=np.int16
                    ).astype(np.float32) / 32768.0
                    if channels > 1:
                        audio_data = audio_data.reshape(-1, channels)

            logger.debug("Loaded audio: sample_rate=%d, shape=%s", sample_rate, audio_data.shape)

            if audio_data.ndim > 1:
                logger.debug("Converting stereo to mono")
                audio_data = np.mean(audio_data, axis=1)

            if sample_rate != WHISPER_SAMPLE_RATE:
                from scipy.signal import resample_poly

                logger.debug("Resampling from %d Hz to 16 kHz", sample_rate)
                divisor = gcd(WHISPER_SAMPLE_RATE, int(sample_rate))
                audio_data = resample_poly(
                    audio_data,
                    WHISPER_SAMPLE_RATE // divisor,
                    int(sample_rate) // divisor,
                )

            return np.clip(audio_data, -1.0, 1.0).astype(np.float32)

        except Exception as e:
            logger.error("Failed to decode audio: %s", e)
            raise RuntimeError(f"Failed to decode audio: {e}") from e

    async def shutdown(self) -> None:
        """Release model reference and stop thread pool if owned by this instance."""
        logger.info("Transcriber shutting down")
        self._model = None
        if self._executor_owned and self.executor:
            self.executor.shutdown(wait=True)
            logger.debug("Executor shut down")


def create_transcriber(config: Config):
    """Build the transcription backend selected by ``[model].backend``."""
    if config.model.backend == "deepgram":
        from dictation_engine.transcriber_deepgram import DeepgramTranscriber

        return DeepgramTranscriber(
            api_key=config.deepgram.api_key or "",
            model=config.deepgram.model,
            smart_format=config.deepgram.smart_format,
            punctuate=config.deepgram.punctuate,
            timeout=config.deepgram.timeout,
        )

    return Transcriber(
        model_name=config.model.name,
        device=config.model.device,
        compute_type=config.model.compute_type,
        model_directory=config.model.model_directory,
        beam_size=config.model.beam_size,
    )
