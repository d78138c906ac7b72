import asyncio
import math

import pytest

from wellness.events import E
from wellness.world.activity import ActivityDetector

THRESHOLD_MS = 300_000


class FakeSource:
    def __init__(self, name="fake", fail=False):
        self.name = name
        self.fail = fail
        self.started = False
        self.stopped = False
        self.on_activity = None

    def start(self, on_activity):
        if self.fail:
            raise RuntimeError("no display")
        self.started = True
        self.on_activity = on_activity

    def stop(self):
        self.stopped = True


@pytest.fixture
def events(bus):
    collected = {"away": [], "return": []}
    bus.on(E.USER_AWAY)(collected["away"].append)
    bus.on(E.USER_RETURN)(collected["return"].append)
    return collected


@pytest.fixture
def detector(bus, error_handler, clock):
    return ActivityDetector(bus, error_handler, away_threshold_minutes=5, poll_interval_ms=10, clock=clock)


class TestPresenceTransitions:
    def test_away_exactly_after_threshold(self, detector, clock, events):
        clock.now = 1_000
        detector.record_activity()

        clock.now = 1_000 + THRESHOLD_MS
        detector.check_user_activity()
        assert events["away"] == []

        clock.now = 1_000 + THRESHOLD_MS + 1
        detector.check_user_activity()
        detector.check_user_activity()
        assert len(events["away"]) == 1
        assert events["away"][0].last_activity == 1_000
        assert not detector.is_user_active()

    def test_return_reports_away_duration(self, detector, clock, events):
        clock.now = 1_000
        detector.record_activity()
        clock.now = 1_000 + THRESHOLD_MS + 1
        detector.check_user_activity()

        clock.now = 500_000
        detector.record_activity("keyboard")
        detector.record_activity("keyboard")

        assert len(events["return"]) == 1
        assert events["return"][0].away_duration == 499_000
        assert events["return"][0].timestamp == 500_000
        assert detector.is_user_active()
        assert detector.get_last_activity_time() == 500_000

    def test_activity_while_present_only_updates_timestamp(self, detector, clock, events):
        clock.now = 10_000
        detector.record_activity()
        assert detector.get_last_activity_time() == 10_000
        assert events == {"away": [], "return": []}

    def test_hidden_window_is_not_away(self, detector, clock, events):
        clock.now = 10_000
        detector.notify_visibility(False)
        assert detector.is_user_active()
        assert detector.get_last_activity_time() == 0

    def test_visible_window_counts_as_return(self, detector, clock, events):
        clock.now = THRESHOLD_MS + 1
        detector.check_user_activity()
        clock.now = THRESHOLD_MS + 5_000
        detector.notify_visibility(True)
        assert len(events["return"]) == 1

    def test_away_duration_query(self, detector, clock):
        clock.now = 42_000
        assert detector.get_away_duration() == 42_000

    def test_failing_listener_is_reported(self, bus, detector, clock, error_handler):
        def broken(event):
            raise RuntimeError("listener broke")

        bus.on(E.USER_AWAY)(broken)
        clock.now = THRESHOLD_MS + 1
        detector.check_user_activity()
        assert [e["source"] for e in error_handler.get_error_log()] == ["activity.poll"]


class TestConfiguration:
    @pytest.mark.parametrize("minutes", [0, -1, math.inf, math.nan, True, "5", None])
    def test_invalid_threshold_rejected(self, detector, minutes):
        assert detector.set_away_threshold(minutes) is False
        assert detector.away_threshold_ms == THRESHOLD_MS

    def test_valid_threshold(self, detector):
        assert detector.set_away_threshold(2)
        assert detector.away_threshold_ms == 120_000
        assert detector.set_away_threshold(0.5)
        assert detector.away_threshold_ms == 30_000

    def test_restored_last_activity_reevaluates_without_events(self, detector, clock, events):
        clock.now = 10_000_000
        assert detector.set_last_activity_time(1_000)
        assert not detector.is_user_active()
        assert events["away"] == []

        assert detector.set_last_activity_time(9_999_000)
        assert detector.is_user_active()
        assert detector.set_last_activity_time(-1) is False

    def test_snapshot(self, detector, clock):
        snapshot = detector.snapshot()
        assert snapshot.away_threshold_ms == THRESHOLD_MS
        assert snapshot.poll_interval_ms == 10
        assert snapshot.is_monitoring is False
        assert snapshot.is_away is False


class TestMonitoring:
    @pytest.mark.asyncio
    async def test_start_and_stop_are_idempotent(self, detector):
        first = detector.start_monitoring()
        second = detector.start_monitoring()
        assert first is second
        assert detector.is_monitoring

        assert await detector.stop_monitoring()
        assert await detector.stop_monitoring() is False
        assert not detector.is_monitoring
        assert first.poll_task is None

    @pytest.mark.asyncio
    async def test_poll_loop_emits_away(self, detector, clock, events, wait_until):
        detector.start_monitoring()
        clock.now = THRESHOLD_MS + 1
        try:
            assert await wait_until(lambda: len(events["away"]) == 1)
        finally:
            await detector.stop_monitoring()

    @pytest.mark.asyncio
    async def test_no_polling_after_stop(self, detector, clock, events):
        detector.start_monitoring()
        await detector.stop_monitoring()
        clock.now = THRESHOLD_MS + 1
        await asyncio.sleep(0.05)
        assert events["away"] == []

    @pytest.mark.asyncio
    async def test_sources_feed_activity_and_are_stopped(self, detector, clock, events):
        source = FakeSource()
        handle = detector.start_monitoring([source])
        assert source.started
        assert handle.sources == [source]

        clock.now = THRESHOLD_MS + 1
        detector.check_user_activity()
        clock.now = THRESHOLD_MS + 2_000
        source.on_activity("mouse_move")
        assert len(events["return"]) == 1

        await detector.stop_monitoring(handle)
        assert source.stopped
        assert handle.sources == []

    @pytest.mark.asyncio
    async def test_failing_source_rolls_back(self, detector, error_handler):
        good = FakeSource("good")
        bad = FakeSource("bad", fail=True)

        assert detector.start_monitoring([good, bad]) is None
        assert good.stopped
        assert not detector.is_monitoring
        assert len(error_handler.get_error_log()) == 1
