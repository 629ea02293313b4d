"""Tests for the segment controller."""

import asyncio

import pytest

from conftest import FakeCapture
from dictation_engine.config import SegmenterConfig, VadConfig
from dictation_engine.recorder import CaptureInactiveError
from dictation_engine.segmenter import SegmentController

SCENARIO = [2, 2, 2, 25, 25, 3, 3, 3, 3, 3, 3, 3, 3, 3, 3, 3, 3]


def make_controller(capture, sink, clock, **segmenter_overrides):
    return SegmentController(
        capture=capture,
        sink=sink,
        vad_config=VadConfig(speaking_threshold=10, silence_hang_ms=1000),
        config=SegmenterConfig(**segmenter_overrides),
        clock=clock,
    )


def run_ticks(controller, capture, clock, values, nbytes=3200, spacing_ms=100, start_ms=0):
    """Deliver one chunk and one analysis frame per tick."""
    pushed = []
    for i, rms in enumerate(values):
        clock.set_ms(start_ms + i * spacing_ms)
        pushed.append(capture.push(nbytes, rms))
        controller.process_frame()
    return pushed


class TestSegmentControllerStart:
    """Tests for controller start."""

    def test_start_opens_capture(self, capture, sink, clock):
        clock.set_ms(5000)
        controller = make_controller(capture, sink, clock)
        controller.start()

        assert capture.start_calls == 1
        assert controller.active is True
        assert controller.is_flushing is False
        assert controller.segment_start_time == 5000
        assert controller.last_flush_time == 5000

    def test_start_failure_propagates(self, failing_capture, sink, clock):
        from dictation_engine.recorder import CaptureError

        controller = make_controller(failing_capture, sink, clock)
        with pytest.raises(CaptureError):
            controller.start()
        assert controller.active is False

    def test_process_frame_inactive_is_noop(self, capture, sink, clock):
        controller = make_controller(capture, sink, clock)
        capture.push(3200, 25)
        controller.process_frame()
        assert controller.buffered_bytes == 0

    def test_capture_mode_selection(self, sink, clock):
        assert make_controller(FakeCapture(), sink, clock).uses_request_data is True
        assert (
            make_controller(FakeCapture(), sink, clock, capture_mode="restart").uses_request_data
            is False
        )
        assert (
            make_controller(FakeCapture(supports_request_data=False), sink, clock).uses_request_data
            is False
        )


class TestSilenceFlush:
    """Tests for speech-then-silence segmentation."""

    @pytest.mark.asyncio
    async def test_scenario_flushes_once(self, capture, sink, clock):
        """Speech followed by more than the hang time of silence flushes one segment."""
        controller = make_controller(capture, sink, clock)
        controller.start()

        pushed = run_ticks(controller, capture, clock, SCENARIO[:-1])
        assert controller.is_flushing is False
        assert sink.tasks == []

        pushed += run_ticks(controller, capture, clock, SCENARIO[-1:], start_ms=1600)
        assert controller.is_flushing is True
        await controller.wait_for_flush()

        assert len(sink.tasks) == 1
        task = sink.tasks[0]
        assert task.is_final is False
        assert task.sequence == 1
        assert task.segment.max_rms == pytest.approx(25)
        assert task.segment.chunks == pushed
        assert task.segment.size == 3200 * len(SCENARIO)
        assert controller.is_flushing is False
        assert controller.buffered_bytes == 0
        assert controller.segment_start_time == 1600
        assert controller.last_flush_time == 1600
        assert capture.is_active is True

    @pytest.mark.asyncio
    async def test_all_silence_never_flushes(self, capture, sink, clock):
        controller = make_controller(capture, sink, clock)
        controller.start()

        run_ticks(controller, capture, clock, [2] * 40)
        await controller.wait_for_flush()

        assert sink.tasks == []
        assert controller.buffered_bytes == 3200 * 40

    @pytest.mark.asyncio
    async def test_segments_are_contiguous(self, capture, sink, clock):
        """Consecutive segments split the stream with no gap or overlap."""
        controller = make_controller(capture, sink, clock)
        controller.start()

        first = run_ticks(controller, capture, clock, SCENARIO)
        await controller.wait_for_flush()
        second = run_ticks(controller, capture, clock, SCENARIO, start_ms=1700)
        await controller.wait_for_flush()

        assert [t.sequence for t in sink.tasks] == [1, 2]
        assert sink.tasks[0].segment.chunks == first
        assert sink.tasks[1].segment.chunks == second


class TestFlushGuards:
    """Tests for request_flush guards."""

    @pytest.mark.asyncio
    async def test_ignored_while_flushing(self, capture, sink, clock):
        controller = make_controller(capture, sink, clock)
        controller.start()
        run_ticks(controller, capture, clock, [25] * 20)

        assert controller.request_flush() is True
        assert controller.request_flush() is False
        assert controller.request_flush(force=True) is False
        await controller.wait_for_flush()

        assert len(sink.tasks) == 1

    @pytest.mark.asyncio
    async def test_rate_limited(self, capture, sink, clock):
        """A flush within the minimum interval of the last one is refused."""
        controller = make_controller(capture, sink, clock)
        controller.start()
        run_ticks(controller, capture, clock, [25] * 6)

        assert controller.request_flush() is False
        assert controller.buffered_bytes == 3200 * 6
        assert sink.tasks == []

    @pytest.mark.asyncio
    async def test_minimum_segment_duration(self, capture, sink, clock):
        controller = make_controller(capture, sink, clock)
        controller.start()
        controller.last_flush_time = -5000
        run_ticks(controller, capture, clock, [25] * 3)

        assert controller.request_flush() is False
        assert controller.buffered_bytes == 3200 * 3

    @pytest.mark.asyncio
    async def test_silent_segment_discarded(self, capture, sink, clock):
        """A segment whose peak never exceeded the speaking threshold is dropped."""
        controller = make_controller(capture, sink, clock)
        controller.start()
        run_ticks(controller, capture, clock, [2, 5, 10, 4] * 4)

        assert controller.request_flush() is False
        assert sink.tasks == []
        assert controller.buffered_bytes == 0
        assert controller.vad.max_rms == 0.0
        assert controller.segment_start_time == 1500
        assert controller.last_flush_time == 1500

    @pytest.mark.asyncio
    async def test_inactive_controller_refuses(self, capture, sink, clock):
        controller = make_controller(capture, sink, clock)
        assert controller.request_flush(force=True) is False


class TestSafetyFlush:
    """Tests for the byte and duration caps."""

    @pytest.mark.asyncio
    async def test_byte_cap_flushes_without_speech(self, capture, sink, clock):
        controller = make_controller(capture, sink, clock, max_segment_bytes=10000)
        controller.start()

        run_ticks(controller, capture, clock, [2, 2, 2], nbytes=4000)
        await controller.wait_for_flush()

        assert len(sink.tasks) == 1
        assert sink.tasks[0].segment.size == 12000
        assert sink.tasks[0].is_final is False
        assert controller.vad.is_speaking is False

    @pytest.mark.asyncio
    async def test_duration_cap_flushes(self, capture, sink, clock):
        controller = make_controller(capture, sink, clock, max_segment_duration_ms=500)
        controller.start()

        run_ticks(controller, capture, clock, [2] * 7)
        await controller.wait_for_flush()

        assert len(sink.tasks) == 1
        assert sink.tasks[0].segment.size == 3200 * 7

    @pytest.mark.asyncio
    async def test_no_flush_without_audio(self, capture, sink, clock):
        """The caps need at least one captured chunk."""
        controller = make_controller(capture, sink, clock, max_segment_duration_ms=500)
        controller.start()

        run_ticks(controller, capture, clock, [2] * 10, nbytes=0)
        await controller.wait_for_flush()

        assert sink.tasks == []


class TestRestartMode:
    """Tests for stop-and-restart flushes."""

    @pytest.mark.asyncio
    async def test_flush_restarts_capture(self, sink, clock):
        capture = FakeCapture(supports_request_data=False)
        controller = make_controller(capture, sink, clock)
        controller.start()

        run_ticks(controller, capture, clock, SCENARIO)
        await controller.wait_for_flush()

        assert len(sink.tasks) == 1
        assert capture.stop_calls == 1
        assert capture.start_calls == 2
        assert capture.is_active is True

    @pytest.mark.asyncio
    async def test_audio_after_restart_starts_next_segment(self, sink, clock):
        """Chunks from the restarted stream never land inside the flushed segment."""
        capture = FakeCapture(supports_request_data=False)
        plain_start = capture.start

        def start_with_audio():
            plain_start()
            if capture.start_calls > 1:
                capture.push(10)

        capture.start = start_with_audio
        controller = make_controller(capture, sink, clock)
        controller.start()

        pushed = run_ticks(controller, capture, clock, SCENARIO)
        while controller.is_flushing:
            controller.process_frame()
            await asyncio.sleep(0.001)
        controller.process_frame()

        assert len(sink.tasks) == 1
        assert sink.tasks[0].segment.chunks == pushed
        assert controller.buffered_bytes == 10

    @pytest.mark.asyncio
    async def test_inactive_capture_drops_flush(self, sink, clock):
        """A stop on an inactive capture abandons the flush and clears the lock."""
        capture = FakeCapture(supports_request_data=False)
        controller = make_controller(capture, sink, clock)
        controller.start()
        capture.stop_error = CaptureInactiveError("not recording")

        run_ticks(controller, capture, clock, SCENARIO)
        await controller.wait_for_flush()

        assert sink.tasks == []
        assert controller.is_flushing is False
        assert controller.active is True

    @pytest.mark.asyncio
    async def test_capture_failure_deactivates(self, sink, clock):
        capture = FakeCapture(supports_request_data=False)
        controller = make_controller(capture, sink, clock)
        controller.start()
        capture.stop_error = OSError("device unplugged")

        run_ticks(controller, capture, clock, SCENARIO)
        await controller.wait_for_flush()

        assert sink.tasks == []
        assert controller.is_flushing is False
        assert controller.active is False


class TestStop:
    """Tests for the final segment on stop."""

    @pytest.mark.asyncio
    async def test_small_remainder_discarded(self, capture, sink, clock):
        controller = make_controller(capture, sink, clock)
        controller.start()
        run_ticks(controller, capture, clock, [25])

        assert await controller.stop() is None
        assert sink.tasks == []
        assert controller.active is False
        assert capture.is_active is False

    @pytest.mark.asyncio
    async def test_final_segment_includes_tail(self, capture, sink, clock):
        controller = make_controller(capture, sink, clock)
        controller.start()
        pushed = run_ticks(controller, capture, clock, [25, 25])
        pushed.append(capture.push(1600))

        task = await controller.stop()

        assert task is not None
        assert task.is_final is True
        assert sink.tasks == [task]
        assert task.segment.chunks == pushed
        assert task.segment.size == 8000

    @pytest.mark.asyncio
    async def test_stop_waits_for_inflight_flush(self, capture, sink, clock):
        """The in-flight flush is enqueued before the final segment."""
        controller = make_controller(capture, sink, clock)
        controller.start()
        run_ticks(controller, capture, clock, SCENARIO)
        assert controller.is_flushing is True
        drain_and_stop = capture.stop

        def stop_with_tail():
            capture.push(6400)
            return drain_and_stop()

        capture.stop = stop_with_tail

        final = await controller.stop()

        assert [t.is_final for t in sink.tasks] == [False, True]
        assert [t.sequence for t in sink.tasks] == [1, 2]
        assert final is sink.tasks[1]

    @pytest.mark.asyncio
    async def test_stop_with_inactive_capture(self, capture, sink, clock):
        controller = make_controller(capture, sink, clock)
        controller.start()
        run_ticks(controller, capture, clock, [25, 25])
        capture.stop_error = CaptureInactiveError("already stopped")

        task = await controller.stop()

        assert task is not None
        assert task.segment.size == 6400

    @pytest.mark.asyncio
    async def test_tasks_tagged_with_recording(self, capture, sink, clock):
        """Each start opens a new recording id carried by its tasks."""
        controller = make_controller(capture, sink, clock)
        controller.start()
        run_ticks(controller, capture, clock, [25, 25])
        first = await controller.stop()

        controller.start()
        run_ticks(controller, capture, clock, [25, 25], start_ms=5000)
        second = await controller.stop()

        assert first.session_id == 1
        assert second.session_id == 2
        assert controller.session_id == 2
