"""Voice activity detection over the per-frame RMS stream."""

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass
class VadDecision:
    """Outcome of feeding one RMS value to the detector."""

    rms: float
    is_speaking: bool
    flush_requested: bool = False


class VoiceActivityDetector:
    """Classifies the RMS stream into speech and silence for the active segment.

    Requests a flush once speech has been followed by more than
    ``silence_hang_ms`` of silence. A segment that never crossed the speaking
    threshold never requests a flush.
    """

    def __init__(self, speaking_threshold: float = 10.0, silence_hang_ms: float = 1000.0):
        if speaking_threshold < 0:
            raise ValueError("speaking_threshold must be non-negative")
        if silence_hang_ms <= 0:
            raise ValueError("silence_hang_ms must be positive")

        self.speaking_threshold = speaking_threshold
        self.silence_hang_ms = silence_hang_ms

        self.is_speaking = False
        self.silence_start: float | None = None
        self.max_rms = 0.0

    def update(self, rms: float, now_ms: float) -> VadDecision:
        """Feed one frame's RMS value observed at ``now_ms``.

        Args:
            rms: RMS amplitude of the frame
            now_ms: Capture time in milliseconds

        Returns:
            VadDecision describing the detector state after this frame
        """
        if rms > self.max_rms:
            self.max_rms = rms

        flush = False
        if rms > self.speaking_threshold:
            if not self.is_speaking:
                logger.debug("Speech started (rms=%.2f)", rms)
            self.is_speaking = True
            self.silence_start = None
        elif self.silence_start is None:
            self.silence_start = now_ms
        elif self.is_speaking and now_ms - self.silence_start > self.silence_hang_ms:
            flush = True

        return VadDecision(rms=rms, is_speaking=self.is_speaking, flush_requested=flush)

    def reset(self) -> None:
        """Clear state for the next segment."""
        self.is_speaking = False
        self.silence_start = None
        self.max_rms = 0.0
