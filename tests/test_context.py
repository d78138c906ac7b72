import pytest

from wellness.channels.notifier import LogNotifier
from wellness.config.constants import DAILY_ACTIVITY_KEY
from wellness.core.context import ContextOptions, build_context
from wellness.datamodel import ActivityEvent, TimerPhase
from wellness.errors import ErrorType
from wellness.events import E
from wellness.storage.kv_store import KeyValueStore
from wellness.utils import today_str
from wellness.world.daily_activity import DailyActivityLog


@pytest.fixture
async def context(db_path, clock):
    context = await build_context(
        ContextOptions(db_path=db_path, auto_pause_kinds=("water",)),
        notifier=LogNotifier(),
        clock=clock,
    )
    yield context
    await context.shutdown()


class TestBuildContext:
    @pytest.mark.asyncio
    async def test_components_are_wired(self, context):
        assert context.store.is_available()
        assert set(context.timers) == {"water", "standup"}
        assert context.timers["water"].pause_when_away
        assert not context.timers["standup"].pause_when_away
        assert context.state_manager.initialized

    @pytest.mark.asyncio
    async def test_unknown_timer(self, context):
        with pytest.raises(KeyError):
            context.timer("coffee")

    @pytest.mark.asyncio
    async def test_reported_errors_reach_metrics(self, context):
        context.error_handler.report(ErrorType.STORAGE, "disk full")
        assert context.metrics.error_count == 1
        assert context.metrics.storage_failure_count == 1

    @pytest.mark.asyncio
    async def test_bus_handler_errors_are_reported(self, context, wait_until):
        async def broken(event):
            raise RuntimeError("handler broke")

        context.bus.on(E.USER_AWAY)(broken)
        context.bus.emit(E.USER_AWAY, ActivityEvent("user-away", 0, last_activity=0))
        assert await wait_until(lambda: any(e["source"] == "bus" for e in context.error_handler.get_error_log()))

    @pytest.mark.asyncio
    async def test_activity_events_update_metrics_and_app_state(self, context, clock, wait_until):
        clock.now = 400_000
        context.detector.check_user_activity()
        assert await wait_until(lambda: context.metrics.user_away_count == 1)

        clock.now = 900_000
        context.detector.record_activity("keyboard")
        assert await wait_until(lambda: context.metrics.user_return_count == 1)
        assert await wait_until(lambda: context.state_manager.get_state("app")["last_activity_at"] == 900_000)
        assert context.metrics.total_away_ms == 900_000

    @pytest.mark.asyncio
    async def test_reset_state_stops_timers(self, context):
        await context.timer("water").start()
        assert await context.reset_state()
        assert not context.timer("water").is_ticking
        assert context.state_manager.get_state("water")["is_active"] is False

    @pytest.mark.asyncio
    async def test_status_summary(self, context):
        status = context.get_status()
        assert status["storage_available"] is True
        assert status["activity"]["is_user_active"] is True
        assert set(status["reminders"]) == {"water", "standup"}


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_shutdown_persists_and_restore_resumes(self, db_path, clock):
        context = await build_context(ContextOptions(db_path=db_path), notifier=LogNotifier(), clock=clock)
        await context.timer("standup").start()
        clock.now = 120_000
        context.detector.record_activity()
        await context.shutdown()
        await context.shutdown()
        assert not context.store.is_available()

        clock.now = 150_000
        restored = await build_context(ContextOptions(db_path=db_path), notifier=LogNotifier(), clock=clock)
        try:
            assert restored.state_manager.get_state("app")["last_activity_at"] == 120_000
            await restored.restore()
            assert restored.detector.get_last_activity_time() == 120_000
            assert restored.timer("standup").is_ticking
            assert restored.state_manager.get_state("standup")["next_reminder_at"] == 30 * 60_000
        finally:
            await restored.shutdown()

    @pytest.mark.asyncio
    async def test_unavailable_storage_runs_in_memory(self, tmp_path, clock):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        context = await build_context(
            ContextOptions(max_retry_attempts=1),
            store=KeyValueStore(blocker / "wellness.db"),
            notifier=LogNotifier(),
            clock=clock,
        )
        try:
            assert not context.store.is_available()
            assert await context.timer("water").start()
            storage_errors = [e for e in context.error_handler.get_error_log() if e["type"] == "storage"]
            assert len(storage_errors) == 2
        finally:
            await context.shutdown()

    @pytest.mark.asyncio
    async def test_auto_pause_survives_restart(self, db_path, clock, wait_until):
        options = ContextOptions(db_path=db_path, auto_pause_kinds=("water",))
        context = await build_context(options, notifier=LogNotifier(), clock=clock)
        await context.timer("water").start()
        clock.now = 300_001
        context.detector.check_user_activity()
        assert await wait_until(lambda: context.timer("water").is_auto_paused)
        await context.shutdown()

        clock.now = 400_000
        restored = await build_context(options, notifier=LogNotifier(), clock=clock)
        try:
            await restored.restore()
            water = restored.timer("water")
            assert water.phase is TimerPhase.PAUSED
            assert water.is_auto_paused

            clock.now = 450_000
            restored.detector.record_activity("keyboard")
            assert await wait_until(lambda: water.phase is TimerPhase.RUNNING)
            assert water.is_ticking
            assert restored.state_manager.get_state("water")["next_reminder_at"] == 450_000 + 1_800_000 - 300_001
        finally:
            await restored.shutdown()

    @pytest.mark.asyncio
    async def test_auto_paused_timer_resumes_when_user_is_present(self, db_path, clock):
        options = ContextOptions(db_path=db_path, auto_pause_kinds=("water",))
        context = await build_context(options, notifier=LogNotifier(), clock=clock)
        await context.state_manager.update_state(
            "water", {"is_active": True, "is_paused": True, "auto_paused": True, "time_remaining_ms": 60_000}
        )
        await context.state_manager.update_state("app", {"last_activity_at": 0})
        await context.state_manager.flush_all()
        await context.shutdown()

        clock.now = 10_000
        restored = await build_context(options, notifier=LogNotifier(), clock=clock)
        try:
            await restored.restore()
            assert restored.timer("water").phase is TimerPhase.RUNNING
            assert restored.state_manager.get_state("water")["next_reminder_at"] == 70_000
        finally:
            await restored.shutdown()

    @pytest.mark.asyncio
    async def test_corrupt_daily_row_does_not_block_startup(self, db_path, clock):
        store = KeyValueStore(db_path)
        assert await store.open()
        await store.set(DAILY_ACTIVITY_KEY, {"date": today_str(clock.now), "count": "abc", "history": 5})

        context = await build_context(ContextOptions(), store=store, notifier=LogNotifier(), clock=clock)
        try:
            assert context.daily_log.count == 0
            assert any(e["source"] == "daily.load" for e in context.error_handler.get_error_log())
        finally:
            await context.shutdown()

    @pytest.mark.asyncio
    async def test_failed_assembly_closes_store(self, db_path, clock, monkeypatch):
        async def broken_load(self):
            raise RuntimeError("load exploded")

        monkeypatch.setattr(DailyActivityLog, "load", broken_load)
        store = KeyValueStore(db_path)
        with pytest.raises(RuntimeError):
            await build_context(ContextOptions(), store=store, notifier=LogNotifier(), clock=clock)
        assert not store.is_available()
        assert store.conn is None
