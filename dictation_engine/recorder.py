"""Audio capture primitive backed by sounddevice."""

import logging
import threading
import time
from collections import deque
from enum import Enum

import numpy as np
import sounddevice

from dictation_engine._types import AudioFrame
from dictation_engine.volume import to_unsigned_frame

logger = logging.getLogger(__name__)


class CaptureError(RuntimeError):
    """Capture device could not be opened or started."""

    pass


class CaptureInactiveError(CaptureError):
    """Operation requires an active capture stream."""

    pass


class _RecorderState(Enum):
    """Internal recorder state machine."""

    IDLE = "idle"
    RECORDING = "recording"


class AudioRecorder:
    """Manages continuous audio capture via sounddevice.

    The stream callback buffers raw 16-bit PCM chunks and keeps the latest
    analysis window. Buffered chunks can be drained at any time without
    stopping the stream.
    """

    supports_request_data = True

    def __init__(
        self,
        sample_rate: int = 16000,
        channels: int = 1,
        chunk_size: int = 1600,
        frame_size: int = 2048,
        device: int | str | None = None,
    ):
        """Initialize audio recorder.

        Args:
            sample_rate: Sample rate in Hz
            channels: Number of channels
            chunk_size: Block size delivered by the stream callback
            frame_size: Samples per analysis window
            device: Audio device index or name (None for default)
        """
        if sample_rate <= 0:
            raise ValueError("sample_rate must be positive")
        if channels not in (1, 2):
            raise ValueError("channels must be 1 or 2")
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if frame_size <= 0:
            raise ValueError("frame_size must be positive")

        self.sample_rate = sample_rate
        self.channels = channels
        self.chunk_size = chunk_size
        self.frame_size = frame_size
        self.device = device

        self._state = _RecorderState.IDLE
        self._stream = None
        self._chunks: deque[bytes] = deque()
        self._window: deque[np.ndarray] = deque()
        self._window_samples = 0
        self._window_lock = threading.Lock()
        self._last_frame_time = 0.0

        logger.info(
            "AudioRecorder initialized: %d Hz, %d channels, device=%s",
            sample_rate,
            channels,
            device if device is not None else "default",
        )

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit; ensure cleanup."""
        self.close()
        return False

    @property
    def is_active(self) -> bool:
        return self._state == _RecorderState.RECORDING

    def start(self) -> None:
        """Open the input stream and begin buffering.

        Raises:
            CaptureError: If already recording or the stream cannot be opened
        """
        if self._state != _RecorderState.IDLE:
            raise CaptureError(
                f"Cannot start recording: recorder in {self._state.value} state"
            )

        resolved_device = self._resolve_device_selection()

        try:
            self._chunks.clear()
            with self._window_lock:
                self._window.clear()
                self._window_samples = 0
            self._stream = sounddevice.InputStream(
                device=resolved_device,
                samplerate=self.sample_rate,
                channels=self.channels,
                blocksize=self.chunk_size,
                callback=self._callback,
                dtype="int16",
            )
            self._stream.start()
            self._state = _RecorderState.RECORDING
            logger.info(
                "Audio stream started (sample_rate=%d, channels=%d, device=%s)",
                self.sample_rate,
                self.channels,
                resolved_device if resolved_device is not None else "default",
            )
        except Exception as e:
            self._state = _RecorderState.IDLE
            self._stream = None
            logger.error("Failed to start audio stream: %s", e)
            raise CaptureError(f"Failed to start audio stream: {e}") from e

    def stop(self) -> list[bytes]:
        """Stop the stream and return the chunks buffered since the last drain.

        Raises:
            CaptureInactiveError: If the recorder is not recording
        """
        if self._state != _RecorderState.RECORDING:
            raise CaptureInactiveError(
                f"Cannot stop recording: recorder not recording (state={self._state.value})"
            )

        try:
            if self._stream:
                self._stream.stop()
                self._stream.close()
        except Exception as e:
            logger.warning("Error stopping stream: %s", e)
        finally:
            self._stream = None
            self._state = _RecorderState.IDLE

        chunks = self.drain()
        logger.info("Audio stream stopped (%d chunks pending)", len(chunks))
        return chunks

    def drain(self) -> list[bytes]:
        """Hand over buffered chunks without stopping the stream."""
        chunks = []
        while self._chunks:
            chunks.append(self._chunks.popleft())
        return chunks

    def read_frame(self) -> AudioFrame | None:
        """Return the most recent analysis window, or None when nothing was captured."""
        if self._state != _RecorderState.RECORDING:
            return None

        with self._window_lock:
            if not self._window:
                return None
            samples = np.concatenate(list(self._window))[-self.frame_size :]
            timestamp = self._last_frame_time

        return AudioFrame(samples=to_unsigned_frame(samples), timestamp=timestamp)

    def close(self) -> None:
        """Explicitly close stream and cleanup resources."""
        if self._stream:
            try:
                self._stream.stop()
                self._stream.close()
            except Exception as e:
                logger.warning("Error closing stream: %s", e)
            finally:
                self._stream = None

        self._chunks.clear()
        with self._window_lock:
            self._window.clear()
            self._window_samples = 0
        self._state = _RecorderState.IDLE

    def _callback(self, indata, frames, time_info, status):
        """Stream callback invoked on audio data arrival.

        Args:
            indata: numpy array of int16 audio data
            frames: number of frames
            time_info: timing information
            status: stream status flags
        """
        if status:
            logger.warning("Audio stream status: %s", status)

        self._chunks.append(indata.tobytes())

        block = indata.copy()
        with self._window_lock:
            self._window.append(block)
            self._window_samples += len(block)
            while self._window and self._window_samples - len(self._window[0]) >= self.frame_size:
                self._window_samples -= len(self._window.popleft())
            self._last_frame_time = time.monotonic()

    @staticmethod
    def list_devices() -> dict[int, str]:
        """List available audio capture devices.

        Returns:
            Dict mapping device index to name (e.g., {0: "Default", 2: "USB Audio"})
            Empty dict if no devices found or error occurs
        """
        try:
            devices = sounddevice.query_devices()

            if isinstance(devices, dict):
                devices = [devices]

            result = {}
            for idx, dev_info in enumerate(devices):
                if dev_info.get("max_input_channels", 0) > 0:
                    result[idx] = dev_info.get("name", f"Device {idx}")

            logger.debug("Found %d audio input devices", len(result))
            return result

        except sounddevice.PortAudioError as e:
            logger.warning("PortAudio error querying devices: %s", e)
            return {}
        except Exception as e:
            logger.warning("Error querying audio devices: %s", e)
            return {}

    def _resolve_device_selection(self) -> int | None:
        """Resolve configured device selection to a sounddevice index."""

        if self.device is None or isinstance(self.device, int):
            return self.device

        try:
            device_list = sounddevice.query_devices()
            if isinstance(device_list, dict):
                device_list = [device_list]
        except Exception as e:
            logger.warning(
                "Unable to enumerate audio devices for '%s': %s; using default",
                self.device,
                e,
            )
            return None

        target = self.device.strip().lower()
        partial_matches: list[tuple[int, str]] = []
        available: list[str] = []

        for idx, dev_info in enumerate(device_list):
            if dev_info.get("max_input_channels", 0) <= 0:
                continue

            name = dev_info.get("name", f"Device {idx}")
            normalized = name.strip().lower()
            available.append(f"[{idx}] {name}")

            if normalized == target:
                logger.debug(
                    "Resolved audio device '%s' to index %d (exact match)",
                    self.device,
                    idx,
                )
                return idx

            if target in normalized:
                partial_matches.append((idx, name))

        if partial_matches:
            idx, name = partial_matches[0]
            logger.debug(
                "Resolved audio device '%s' to index %d via partial match (%s)",
                self.device,
                idx,
                name,
            )
            return idx

        logger.warning(
            "Audio device '%s' not found. Using default input. Available devices: %s",
            self.device,
            "; ".join(available) if available else "none",
        )
        return None
