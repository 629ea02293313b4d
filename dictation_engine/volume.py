"""Frame loudness measurement."""

import numpy as np

SILENCE_BASELINE = 128.0


def calculate_rms(samples, baseline: float = SILENCE_BASELINE) -> float:
    """Compute RMS amplitude of a frame of unsigned samples.

    Args:
        samples: Array-like of unsigned samples centered on ``baseline``
        baseline: Sample value that represents silence (128 for 8-bit audio)

    Returns:
        RMS amplitude, 0.0 for an empty frame
    """
    data = np.asarray(samples, dtype=np.float64)
    if data.size == 0:
        return 0.0
    centered = data - baseline
    return float(np.sqrt(np.mean(centered * centered)))


def is_silence(rms: float, threshold: float) -> bool:
    return rms < threshold


def to_unsigned_frame(samples: np.ndarray) -> np.ndarray:
    """Convert signed 16-bit samples to an unsigned 8-bit analysis window.

    Keeps only the high byte of each sample, shifted so that silence sits at 128.
    Multi-channel input is reduced to its first channel.
    """
    data = np.asarray(samples)
    if data.ndim > 1:
        data = data[:, 0]
    return ((data.astype(np.int32) >> 8) + 128).astype(np.uint8)
