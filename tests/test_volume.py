"""Tests for frame loudness measurement."""

import numpy as np
import pytest

from dictation_engine.volume import (
    SILENCE_BASELINE,
    calculate_rms,
    is_silence,
    to_unsigned_frame,
)


class TestCalculateRms:
    """Tests for RMS on unsigned frames."""

    def test_silent_frame_is_zero(self):
        """A frame sitting on the baseline has zero energy."""
        frame = np.full(512, 128, dtype=np.uint8)
        assert calculate_rms(frame) == 0.0

    def test_constant_offset(self):
        """A constant offset from the baseline yields that offset."""
        frame = np.full(512, 128 + 25, dtype=np.uint8)
        assert calculate_rms(frame) == pytest.approx(25.0)

    def test_symmetric_square_wave(self):
        """Alternating +/-10 around the baseline has RMS 10."""
        frame = np.array([118, 138] * 100, dtype=np.uint8)
        assert calculate_rms(frame) == pytest.approx(10.0)

    def test_empty_frame(self):
        """An empty frame is treated as silence."""
        assert calculate_rms(np.array([], dtype=np.uint8)) == 0.0

    def test_custom_baseline(self):
        """Signed samples can be measured with a zero baseline."""
        assert calculate_rms([3, -3, 3, -3], baseline=0.0) == pytest.approx(3.0)

    def test_default_baseline(self):
        assert SILENCE_BASELINE == 128.0


class TestIsSilence:
    def test_below_threshold(self):
        assert is_silence(2.0, 10.0) is True

    def test_at_or_above_threshold(self):
        assert is_silence(10.0, 10.0) is False
        assert is_silence(25.0, 10.0) is False


class TestToUnsignedFrame:
    """Tests for int16 to unsigned 8-bit window conversion."""

    def test_zero_maps_to_baseline(self):
        """Digital silence lands on 128."""
        frame = to_unsigned_frame(np.zeros(16, dtype=np.int16))
        assert frame.dtype == np.uint8
        assert np.all(frame == 128)

    def test_extremes(self):
        """Full-scale samples map to the ends of the unsigned range."""
        frame = to_unsigned_frame(np.array([-32768, 32767], dtype=np.int16))
        assert frame.tolist() == [0, 255]

    def test_high_byte_only(self):
        """Only the high byte survives the conversion."""
        frame = to_unsigned_frame(np.array([255, 256, -256], dtype=np.int16))
        assert frame.tolist() == [128, 129, 127]

    def test_multichannel_uses_first_channel(self):
        """Stereo input is reduced to its first channel."""
        stereo = np.array([[256, -32768], [512, -32768]], dtype=np.int16)
        assert to_unsigned_frame(stereo).tolist() == [129, 130]
