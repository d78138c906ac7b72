"""提醒计时器

每种提醒（water / standup）一个实例，三个阶段：
- Idle:    is_active=False
- Running: is_active=True, is_paused=False，截止时间为 next_reminder_at
- Paused:  is_active=True, is_paused=True，剩余时间冻结在 time_remaining_ms

计时器不持有自己的状态副本，所有读写都经过 StateManager；
同一计时器的操作由 asyncio.Lock 串行化，tick 任务只在 Running 时存在。
触发后从 now 重新计时（不追补错过的次数），逾期过久的恢复状态只补发一次。
自动暂停标记随状态一起持久化，重启后用户返回仍会恢复计时。
"""

from __future__ import annotations

import asyncio
import math
from typing import Any

from wellness.channels.base import Notifier
from wellness.config.constants import NOTIFICATION_MESSAGES, SNOOZE_DURATION_MINUTES, UPDATE_INTERVAL_MS
from wellness.core.error_handler import ErrorHandler
from wellness.core.state_manager import StateManager
from wellness.datamodel import ActivityEvent, TimerPhase
from wellness.errors import TimerDriftError
from wellness.events import Bus, E
from wellness.logger import logger
from wellness.metrics import RuntimeMetrics
from wellness.utils import Clock, format_remaining, minutes_to_ms, now_ms
from wellness.world.daily_activity import DailyActivityLog

_SETTING_KEYS = frozenset({"interval_minutes", "enabled", "sound_enabled"})


class ReminderTimer:
    def __init__(
        self,
        kind: str,
        state_manager: StateManager,
        notifier: Notifier,
        bus: Bus,
        error_handler: ErrorHandler | None = None,
        *,
        metrics: RuntimeMetrics | None = None,
        daily_log: DailyActivityLog | None = None,
        tick_interval_ms: int = UPDATE_INTERVAL_MS,
        snooze_minutes: float = SNOOZE_DURATION_MINUTES,
        pause_when_away: bool = True,
        clock: Clock = now_ms,
    ) -> None:
        self.kind = kind
        self.state_manager = state_manager
        self.notifier = notifier
        self.bus = bus
        self.error_handler = error_handler or state_manager.error_handler
        self.metrics = metrics
        self.daily_log = daily_log
        self.tick_interval_ms = tick_interval_ms
        self.snooze_minutes = snooze_minutes
        self.pause_when_away = pause_when_away
        self._clock = clock

        self._lock = asyncio.Lock()
        self._tick_task: asyncio.Task | None = None
        self._notify_tasks: set[asyncio.Task] = set()
        self._attached = False

        if pause_when_away:
            self.attach()

    # ----------------- 总线订阅 ----------------
    def attach(self) -> None:
        if self._attached:
            return
        self.bus.on(E.USER_AWAY)(self._on_user_away)
        self.bus.on(E.USER_RETURN)(self._on_user_return)
        self._attached = True

    def detach(self) -> None:
        if not self._attached:
            return
        self.bus.off(E.USER_AWAY, self._on_user_away)
        self.bus.off(E.USER_RETURN, self._on_user_return)
        self._attached = False

    async def _on_user_away(self, event: ActivityEvent) -> None:
        try:
            if await self.pause(auto=True):
                logger.info(f"{self.kind} 提醒因用户离开自动暂停")
        except Exception as e:
            self.error_handler.report_exception(e, source=f"{self.kind}.user_away")

    async def _on_user_return(self, event: ActivityEvent) -> None:
        try:
            if await self.resume(auto=True):
                logger.info(f"{self.kind} 提醒因用户返回自动恢复")
            # 离开超过阈值本身就算一次起身活动
            if self.kind == "standup" and self.daily_log is not None and event.away_duration:
                await self.daily_log.record_activity("away-break", event.away_duration)
        except Exception as e:
            self.error_handler.report_exception(e, source=f"{self.kind}.user_return")

    # ----------------- 状态读取 ----------------
    def _state(self) -> dict[str, Any]:
        return self.state_manager.get_state(self.kind)

    def _interval_ms(self, state: dict[str, Any]) -> int:
        return minutes_to_ms(state["settings"]["interval_minutes"])

    @staticmethod
    def _phase(state: dict[str, Any]) -> TimerPhase:
        if not state["is_active"]:
            return TimerPhase.IDLE
        return TimerPhase.PAUSED if state["is_paused"] else TimerPhase.RUNNING

    @property
    def phase(self) -> TimerPhase:
        return self._phase(self._state())

    @property
    def is_auto_paused(self) -> bool:
        return self._state()["auto_paused"]

    def get_current_status(self) -> dict[str, Any]:
        state = self._state()
        phase = self._phase(state)
        if phase is TimerPhase.RUNNING:
            remaining = max(0, state["next_reminder_at"] - self._clock())
        else:
            remaining = state["time_remaining_ms"]
        return {
            "kind": self.kind,
            "phase": phase.value,
            "is_active": state["is_active"],
            "is_paused": state["is_paused"],
            "time_remaining_ms": remaining,
            "time_remaining": format_remaining(remaining),
            "next_reminder_at": state["next_reminder_at"],
            "interval_minutes": state["settings"]["interval_minutes"],
            "enabled": state["settings"]["enabled"],
            "last_reminder_at": state["settings"]["last_reminder_at"],
            "is_auto_paused": state["auto_paused"],
        }

    async def _update(self, updates: dict[str, Any]) -> bool:
        ok = await self.state_manager.update_state(self.kind, updates, immediate=True)
        if not ok:
            logger.warning(f"{self.kind} 状态更新被拒绝: {self.state_manager.last_validation_error}")
        return ok

    # ----------------- 操作 ----------------
    async def start(self) -> bool:
        async with self._lock:
            state = self._state()
            if state["is_active"]:
                logger.debug(f"{self.kind} 提醒已在运行，忽略 start")
                return False
            return await self._begin_countdown(state)

    async def restart(self) -> bool:
        async with self._lock:
            await self._cancel_ticking()
            return await self._begin_countdown(self._state())

    async def _begin_countdown(self, state: dict[str, Any]) -> bool:
        if not state["settings"]["enabled"]:
            logger.warning(f"{self.kind} 提醒已禁用，无法启动")
            return False
        interval_ms = self._interval_ms(state)
        now = self._clock()
        ok = await self._update(
            {
                "is_active": True,
                "is_paused": False,
                "auto_paused": False,
                "time_remaining_ms": interval_ms,
                "next_reminder_at": now + interval_ms,
            }
        )
        if not ok:
            return False
        self._ensure_ticking()
        logger.info(f"{self.kind} 提醒已启动: 间隔 {state['settings']['interval_minutes']} 分钟")
        self.bus.emit(E.REMINDER_STARTED, self.kind)
        return True

    async def pause(self, auto: bool = False) -> bool:
        async with self._lock:
            state = self._state()
            phase = self._phase(state)
            if phase is TimerPhase.PAUSED and not auto and state["auto_paused"]:
                # 用户在离开期间手动暂停，返回时不再自动恢复
                if not await self._update({"auto_paused": False}):
                    return False
                logger.info(f"{self.kind} 提醒由自动暂停转为手动暂停")
                return True
            if phase is not TimerPhase.RUNNING:
                return False
            remaining = max(0, state["next_reminder_at"] - self._clock())
            if not await self._update({"is_paused": True, "auto_paused": auto, "time_remaining_ms": remaining}):
                return False
            await self._cancel_ticking()
            logger.info(f"{self.kind} 提醒已暂停: 剩余 {format_remaining(remaining)}, auto={auto}")
            self.bus.emit(E.REMINDER_PAUSED, self.kind, auto)
            return True

    async def resume(self, auto: bool = False) -> bool:
        async with self._lock:
            state = self._state()
            if self._phase(state) is not TimerPhase.PAUSED:
                return False
            if auto and not state["auto_paused"]:
                # 用户手动暂停的提醒不随返回自动恢复
                return False
            next_at = self._clock() + state["time_remaining_ms"]
            if not await self._update({"is_paused": False, "auto_paused": False, "next_reminder_at": next_at}):
                return False
            self._ensure_ticking()
            logger.info(f"{self.kind} 提醒已恢复: auto={auto}")
            self.bus.emit(E.REMINDER_RESUMED, self.kind, auto)
            return True

    async def stop(self) -> bool:
        async with self._lock:
            await self._cancel_ticking()
            if not self._state()["is_active"]:
                return False
            ok = await self._update(
                {
                    "is_active": False,
                    "is_paused": False,
                    "auto_paused": False,
                    "time_remaining_ms": 0,
                    "next_reminder_at": 0,
                }
            )
            if ok:
                logger.info(f"{self.kind} 提醒已停止")
                self.bus.emit(E.REMINDER_STOPPED, self.kind)
            return ok

    async def snooze(self, minutes: float | None = None) -> bool:
        minutes = self.snooze_minutes if minutes is None else minutes
        if isinstance(minutes, bool) or not isinstance(minutes, (int, float)) or not math.isfinite(minutes) or minutes <= 0:
            logger.warning(f"无效的贪睡时长: {minutes}")
            return False

        async with self._lock:
            state = self._state()
            if not state["is_active"]:
                return False
            delay_ms = minutes_to_ms(minutes)
            ok = await self._update({"next_reminder_at": self._clock() + delay_ms, "time_remaining_ms": delay_ms})
            if not ok:
                return False
            if self.metrics is not None:
                self.metrics.record_snoozed()
            logger.info(f"{self.kind} 提醒已贪睡 {minutes} 分钟")
            self.bus.emit(E.REMINDER_SNOOZED, self.kind, minutes)
            return True

    async def acknowledge(self) -> bool:
        """用户确认已喝水/已起身：记录时间并重新开始倒计时"""
        async with self._lock:
            state = self._state()
            if not state["is_active"]:
                return False
            now = self._clock()
            interval_ms = self._interval_ms(state)
            ok = await self._update(
                {
                    "is_paused": False,
                    "auto_paused": False,
                    "time_remaining_ms": interval_ms,
                    "next_reminder_at": now + interval_ms,
                    "settings": {"last_reminder_at": now},
                }
            )
            if not ok:
                return False
            self._ensure_ticking()

        if self.kind == "standup" and self.daily_log is not None:
            await self.daily_log.record_activity("manual")
        if self.metrics is not None:
            self.metrics.record_acknowledged()
        logger.info(f"{self.kind} 提醒已确认")
        self.bus.emit(E.REMINDER_ACKNOWLEDGED, self.kind, now)
        return True

    async def update_settings(self, **changes: Any) -> bool:
        unknown = set(changes) - _SETTING_KEYS
        if unknown:
            logger.warning(f"未知的提醒设置项: {sorted(unknown)}")
            return False
        if not changes:
            return False

        async with self._lock:
            state = self._state()
            if changes.get("enabled") is False and state["is_active"]:
                # 停用与停止合并为一次更新，任何时刻都不会出现 激活+停用
                await self._cancel_ticking()
                ok = await self._update(
                    {
                        "is_active": False,
                        "is_paused": False,
                        "auto_paused": False,
                        "time_remaining_ms": 0,
                        "next_reminder_at": 0,
                        "settings": changes,
                    }
                )
                if ok:
                    logger.info(f"{self.kind} 提醒已停用并停止")
                    self.bus.emit(E.REMINDER_STOPPED, self.kind)
                elif self._phase(self._state()) is TimerPhase.RUNNING:
                    self._ensure_ticking()
                return ok

            ok = await self._update({"settings": changes})
            if ok:
                logger.info(f"{self.kind} 提醒设置已更新: {changes}")
            return ok

    # ----------------- 计时 ----------------
    async def tick(self) -> bool:
        """检查是否到期，到期则触发一次提醒；返回本次是否触发"""
        try:
            async with self._lock:
                state = self._state()
                if self._phase(state) is not TimerPhase.RUNNING:
                    return False
                now = self._clock()
                next_at = state["next_reminder_at"]
                if now < next_at:
                    return False

                interval_ms = self._interval_ms(state)
                overdue = now - next_at
                if overdue > interval_ms:
                    self.error_handler.report_exception(TimerDriftError(self.kind, overdue), source=f"{self.kind}.tick")

                ok = await self._update(
                    {
                        "next_reminder_at": now + interval_ms,
                        "time_remaining_ms": interval_ms,
                        "settings": {"last_reminder_at": now},
                    }
                )
                if not ok:
                    return False

            self._send_notification()
            logger.info(f"{self.kind} 提醒已触发，下次 {format_remaining(interval_ms)} 后")
            self.bus.emit(E.REMINDER_TRIGGERED, self.kind, now)
            return True
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.error_handler.report_exception(e, source=f"{self.kind}.tick")
            return False

    def _send_notification(self) -> None:
        message = NOTIFICATION_MESSAGES[self.kind]
        title, body = message["title"], message["body"]
        if self.kind == "standup" and self.daily_log is not None:
            extra = self.daily_log.progress_message()
            if extra:
                body = f"{body}\n{extra}"

        task = asyncio.get_running_loop().create_task(self._deliver(title, body), name=f"{self.kind}-notify")
        self._notify_tasks.add(task)
        task.add_done_callback(self._notify_tasks.discard)

    async def _deliver(self, title: str, body: str) -> None:
        try:
            notified = await self.notifier.notify(self.kind, title, body)
        except Exception as e:
            self.error_handler.report_exception(e, source=f"{self.kind}.notify")
            notified = False
        if not notified:
            logger.warning(f"{self.kind} 提醒通知发送失败")
        if self.metrics is not None:
            self.metrics.record_reminder_fired(self.kind, notified)

    async def wait_notifications(self) -> None:
        if self._notify_tasks:
            await asyncio.gather(*list(self._notify_tasks), return_exceptions=True)

    async def _run_ticks(self) -> None:
        while True:
            await asyncio.sleep(self.tick_interval_ms / 1000)
            await self.tick()

    def _ensure_ticking(self) -> None:
        if self._tick_task is None or self._tick_task.done():
            self._tick_task = asyncio.get_running_loop().create_task(self._run_ticks(), name=f"{self.kind}-tick")

    async def _cancel_ticking(self) -> None:
        task = self._tick_task
        self._tick_task = None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    @property
    def is_ticking(self) -> bool:
        return self._tick_task is not None and not self._tick_task.done()

    # ----------------- 生命周期 ----------------
    async def restore(self) -> bool:
        """按持久化状态恢复运行：Running 重新开始 tick，逾期的在下一次 tick 时补发一次"""
        async with self._lock:
            state = self._state()
            phase = self._phase(state)
            if phase is TimerPhase.RUNNING:
                self._ensure_ticking()
                overdue = self._clock() - state["next_reminder_at"]
                if overdue >= 0:
                    logger.info(f"{self.kind} 提醒在关闭期间已到期 {overdue}ms，将立即补发")
            logger.info(f"{self.kind} 提醒已恢复为 {phase.value}")
            return phase is not TimerPhase.IDLE

    async def close(self) -> None:
        """停止 tick 并注销总线订阅，不改变持久化状态"""
        self.detach()
        async with self._lock:
            await self._cancel_ticking()
        await self.wait_notifications()


__all__ = ["ReminderTimer"]
