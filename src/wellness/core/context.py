"""应用上下文

把总线、存储、状态管理器、活动检测器、两个提醒计时器等组件装配到一起，
以显式对象的形式传给入口与 Admin API，不使用模块级单例。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable

from wellness.channels.base import Notifier
from wellness.channels.notifier import DesktopNotifier, FallbackNotifier, LogNotifier
from wellness.config.constants import (
    DEFAULT_ACTIVITY_POLL_INTERVAL_MS,
    DEFAULT_AWAY_THRESHOLD_MINUTES,
    DEFAULT_ERROR_LOG_MAX_SIZE,
    DEFAULT_INTERVAL_MINUTES,
    DEFAULT_MAX_RETRY_ATTEMPTS,
    DEFAULT_STANDUP_DAILY_GOAL,
    DEFAULT_STATE_DEBOUNCE_MS,
    REMINDER_KINDS,
    SNOOZE_DURATION_MINUTES,
    UPDATE_INTERVAL_MS,
)
from wellness.core.error_handler import ErrorHandler
from wellness.core.state_manager import StateManager
from wellness.datamodel import ActivityEvent, ErrorInfo
from wellness.errors import StorageError
from wellness.events import Bus, E
from wellness.logger import logger
from wellness.metrics import RuntimeMetrics
from wellness.storage.kv_store import KeyValueStore
from wellness.utils import Clock, now_ms
from wellness.world.activity import ActivityDetector, MonitorHandle
from wellness.world.daily_activity import DailyActivityLog
from wellness.world.input_hooks import InputSource
from wellness.world.reminder import ReminderTimer


@dataclass
class ContextOptions:
    db_path: str = "data/wellness.db"
    interval_minutes: dict[str, float] = field(
        default_factory=lambda: {kind: DEFAULT_INTERVAL_MINUTES for kind in REMINDER_KINDS}
    )
    snooze_minutes: float = SNOOZE_DURATION_MINUTES
    tick_interval_ms: int = UPDATE_INTERVAL_MS
    state_debounce_ms: int = DEFAULT_STATE_DEBOUNCE_MS
    away_threshold_minutes: float = DEFAULT_AWAY_THRESHOLD_MINUTES
    activity_poll_interval_ms: int = DEFAULT_ACTIVITY_POLL_INTERVAL_MS
    auto_pause_kinds: tuple[str, ...] = REMINDER_KINDS
    standup_daily_goal: int = DEFAULT_STANDUP_DAILY_GOAL
    error_log_max_size: int = DEFAULT_ERROR_LOG_MAX_SIZE
    max_retry_attempts: int = DEFAULT_MAX_RETRY_ATTEMPTS
    enable_desktop_notifications: bool = True


@dataclass(eq=False)
class AppContext:
    bus: Bus
    store: KeyValueStore
    error_handler: ErrorHandler
    state_manager: StateManager
    detector: ActivityDetector
    notifier: Notifier
    metrics: RuntimeMetrics
    daily_log: DailyActivityLog
    timers: dict[str, ReminderTimer]
    clock: Clock = now_ms
    monitor_handle: MonitorHandle | None = None
    closed: bool = False

    def timer(self, kind: str) -> ReminderTimer:
        if kind not in self.timers:
            raise KeyError(f"未知的提醒类型: {kind}")
        return self.timers[kind]

    # ----------------- 启动 ----------------
    async def restore(self) -> None:
        """恢复最后活动时间与各计时器的运行状态"""
        last_activity_at = self.state_manager.get_state("app").get("last_activity_at")
        if last_activity_at is not None:
            self.detector.set_last_activity_time(last_activity_at)
        is_away = self.detector.snapshot().is_away
        for timer in self.timers.values():
            await timer.restore()
            # 自动暂停的提醒只等待 user-return；用户已在场或不再跟随活动时直接恢复
            if timer.is_auto_paused and (not is_away or not timer.pause_when_away):
                await timer.resume(auto=True)

    def start_monitoring(self, sources: Iterable[InputSource] = ()) -> MonitorHandle | None:
        self.monitor_handle = self.detector.start_monitoring(sources)
        return self.monitor_handle

    # ----------------- 总线处理 ----------------
    def _wire(self) -> None:
        self.bus.on("error")(self._on_bus_error)
        self.bus.on(E.USER_AWAY)(self._on_user_away)
        self.bus.on(E.USER_RETURN)(self._on_user_return)
        self.error_handler.add_listener(self._on_error_reported)

    def _on_bus_error(self, error: Exception) -> None:
        self.error_handler.report_exception(error, source="bus")

    def _on_error_reported(self, info: ErrorInfo) -> None:
        self.metrics.record_error(info.type)

    async def _on_user_away(self, event: ActivityEvent) -> None:
        self.metrics.record_user_away()
        await self._save_last_activity(event.last_activity)

    async def _on_user_return(self, event: ActivityEvent) -> None:
        self.metrics.record_user_return(event.away_duration)
        await self._save_last_activity(event.timestamp)

    async def _save_last_activity(self, timestamp: int | None) -> None:
        if timestamp is None:
            return
        await self.state_manager.update_state("app", {"last_activity_at": timestamp})

    # ----------------- 状态汇总 ----------------
    def get_status(self) -> dict[str, Any]:
        snapshot = self.detector.snapshot()
        return {
            "storage_available": self.store.is_available(),
            "state": self.state_manager.get_status(),
            "activity": {
                "is_user_active": not snapshot.is_away,
                "last_activity_time": snapshot.last_activity_time,
                "away_threshold_ms": snapshot.away_threshold_ms,
                "poll_interval_ms": snapshot.poll_interval_ms,
                "is_monitoring": snapshot.is_monitoring,
            },
            "reminders": {kind: timer.get_current_status() for kind, timer in self.timers.items()},
        }

    async def reset_state(self) -> bool:
        """停止所有提醒后把全部状态重置为默认值"""
        for timer in self.timers.values():
            await timer.stop()
        return await self.state_manager.reset_to_defaults()

    # ----------------- 关闭 ----------------
    async def shutdown(self) -> None:
        """停止计时与监控，写出最后活动时间，落盘全部状态后关闭存储"""
        if self.closed:
            return
        self.closed = True
        for timer in self.timers.values():
            await timer.close()
        await self.detector.stop_monitoring()
        await self.state_manager.update_state("app", {"last_activity_at": self.detector.get_last_activity_time()})
        await self.state_manager.close()
        await self.store.close()
        self.error_handler.uninstall()
        logger.info("应用上下文已关闭")


def build_notifier(enable_desktop: bool, error_handler: ErrorHandler) -> Notifier:
    if not enable_desktop:
        return LogNotifier()
    return FallbackNotifier(DesktopNotifier(), LogNotifier(), error_handler)


async def build_context(
    options: ContextOptions | None = None,
    *,
    store: KeyValueStore | None = None,
    notifier: Notifier | None = None,
    clock: Clock = now_ms,
) -> AppContext:
    """打开存储、加载状态并装配所有组件。需要在事件循环中调用"""
    options = options or ContextOptions()
    bus = Bus()
    error_handler = ErrorHandler(
        max_log_size=options.error_log_max_size,
        max_retry_attempts=options.max_retry_attempts,
        clock=clock,
    )

    store = store or KeyValueStore(options.db_path)

    async def open_store() -> bool:
        if not await store.open():
            raise StorageError(f"无法打开数据库: {store.db_path}")
        return True

    if not store.is_available():
        opened = await error_handler.run_with_retry(open_store, source="storage.open", base_delay_seconds=0.5)
        if not opened:
            logger.warning("存储不可用，本次会话将仅在内存中运行")

    try:
        context = await _assemble(options, bus, error_handler, store, notifier, clock)
    except BaseException:
        # 装配失败时先关闭已打开的连接再抛出
        await store.close()
        raise
    logger.info("应用上下文已就绪")
    return context


async def _assemble(
    options: ContextOptions,
    bus: Bus,
    error_handler: ErrorHandler,
    store: KeyValueStore,
    notifier: Notifier | None,
    clock: Clock,
) -> AppContext:
    state_manager = StateManager(
        store,
        error_handler,
        debounce_ms=options.state_debounce_ms,
        interval_defaults=options.interval_minutes,
    )
    await state_manager.initialize()

    daily_log = DailyActivityLog(store, error_handler, goal=options.standup_daily_goal, clock=clock)
    await daily_log.load()

    metrics = RuntimeMetrics()
    notifier = notifier or build_notifier(options.enable_desktop_notifications, error_handler)
    detector = ActivityDetector(
        bus,
        error_handler,
        away_threshold_minutes=options.away_threshold_minutes,
        poll_interval_ms=options.activity_poll_interval_ms,
        clock=clock,
    )
    timers = {
        kind: ReminderTimer(
            kind,
            state_manager,
            notifier,
            bus,
            error_handler,
            metrics=metrics,
            daily_log=daily_log,
            tick_interval_ms=options.tick_interval_ms,
            snooze_minutes=options.snooze_minutes,
            pause_when_away=kind in options.auto_pause_kinds,
            clock=clock,
        )
        for kind in REMINDER_KINDS
    }

    context = AppContext(
        bus=bus,
        store=store,
        error_handler=error_handler,
        state_manager=state_manager,
        detector=detector,
        notifier=notifier,
        metrics=metrics,
        daily_log=daily_log,
        timers=timers,
        clock=clock,
    )
    context._wire()
    return context


__all__ = ["AppContext", "ContextOptions", "build_context", "build_notifier"]
