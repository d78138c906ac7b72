"""用户活动检测

两个状态：在场(Present) / 离开(Away)。
- Present -> Away：周期轮询发现 now - last_activity_time > away_threshold，发出 user-away；
- Away -> Present：任意输入或窗口重新可见时立即发出 user-return，
  away_duration 从最后一次记录的活动算起；
- Present 时的输入只刷新 last_activity_time，不发事件。

窗口被隐藏不算离开（切走标签页不等于离开座位），只有持续的真实无操作才会判定离开。
"""

from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass, field
from typing import Iterable

from wellness.config.constants import DEFAULT_ACTIVITY_POLL_INTERVAL_MS, DEFAULT_AWAY_THRESHOLD_MINUTES
from wellness.core.error_handler import ErrorHandler
from wellness.datamodel import ActivityEvent, ActivitySnapshot
from wellness.events import Bus, E
from wellness.logger import logger
from wellness.utils import Clock, MS_PER_MINUTE, now_ms
from wellness.world.input_hooks import InputSource


@dataclass(eq=False)
class MonitorHandle:
    """一次 start_monitoring 的全部注册项，stop_monitoring 据此完整注销"""
    poll_task: asyncio.Task | None = None
    sources: list[InputSource] = field(default_factory=list)
    active: bool = True


class ActivityDetector:
    def __init__(
        self,
        bus: Bus,
        error_handler: ErrorHandler | None = None,
        *,
        away_threshold_minutes: float = DEFAULT_AWAY_THRESHOLD_MINUTES,
        poll_interval_ms: int = DEFAULT_ACTIVITY_POLL_INTERVAL_MS,
        clock: Clock = now_ms,
    ) -> None:
        if poll_interval_ms <= 0:
            raise ValueError("poll_interval_ms 必须为正整数")
        self.bus = bus
        self.error_handler = error_handler or ErrorHandler(clock=clock)
        self.poll_interval_ms = int(poll_interval_ms)
        self._clock = clock
        self._away_threshold_ms = int(away_threshold_minutes * MS_PER_MINUTE)
        self._last_activity_time = clock()
        self._is_away = False
        self._handle: MonitorHandle | None = None

    # ----------------- 监控生命周期 ----------------
    @property
    def is_monitoring(self) -> bool:
        return self._handle is not None and self._handle.active

    def start_monitoring(self, sources: Iterable[InputSource] = ()) -> MonitorHandle | None:
        """注册输入源与轮询任务；已在监控时直接返回现有句柄。任一输入源启动失败则整体回滚"""
        if self.is_monitoring:
            return self._handle

        handle = MonitorHandle()
        try:
            for source in sources:
                source.start(self.record_activity)
                handle.sources.append(source)
        except Exception as e:
            for started in reversed(handle.sources):
                self._stop_source(started)
            self.error_handler.report_exception(e, source="activity.start_monitoring")
            return None

        handle.poll_task = asyncio.get_running_loop().create_task(self._poll_loop(), name="activity-poll")
        self._handle = handle
        logger.info(
            f"活动监控已启动: threshold={self._away_threshold_ms}ms, poll={self.poll_interval_ms}ms, "
            f"sources={[getattr(s, 'name', type(s).__name__) for s in handle.sources]}"
        )
        return handle

    async def stop_monitoring(self, handle: MonitorHandle | None = None) -> bool:
        """注销全部监听与轮询任务，返回后不会再有回调触发；未在监控时为空操作"""
        handle = handle or self._handle
        if handle is None or not handle.active:
            return False

        handle.active = False
        for source in reversed(handle.sources):
            self._stop_source(source)
        handle.sources.clear()

        task = handle.poll_task
        handle.poll_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        if self._handle is handle:
            self._handle = None
        logger.info("活动监控已停止")
        return True

    def _stop_source(self, source: InputSource) -> None:
        try:
            source.stop()
        except Exception as e:
            self.error_handler.report_exception(e, source="activity.stop_source")

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval_ms / 1000)
            self.check_user_activity()

    # ----------------- 事件处理 ----------------
    def record_activity(self, source: str = "input") -> None:
        """处理一次输入活动（鼠标、键盘、滚动等）"""
        try:
            now = self._clock()
            if self._is_away:
                away_duration = now - self._last_activity_time
                self._is_away = False
                self._last_activity_time = now
                logger.info(f"用户已返回: source={source}, away_duration={away_duration}ms")
                self.bus.emit(E.USER_RETURN, ActivityEvent("user-return", now, away_duration=away_duration))
            else:
                self._last_activity_time = now
        except Exception as e:
            self.error_handler.report_exception(e, source="activity.record_activity")

    def notify_visibility(self, visible: bool) -> None:
        """窗口可见性变化：重新可见视为活动，隐藏不做处理"""
        if visible:
            self.record_activity("visibility")
        else:
            logger.trace("窗口已隐藏，不改变在场状态")

    def check_user_activity(self) -> None:
        """轮询检查：超过阈值无活动则判定离开"""
        try:
            now = self._clock()
            if not self._is_away and now - self._last_activity_time > self._away_threshold_ms:
                self._is_away = True
                logger.info(f"检测到用户离开: last_activity={self._last_activity_time}")
                self.bus.emit(
                    E.USER_AWAY,
                    ActivityEvent("user-away", now, last_activity=self._last_activity_time),
                )
        except Exception as e:
            self.error_handler.report_exception(e, source="activity.poll")

    # ----------------- 查询与配置 ----------------
    def is_user_active(self) -> bool:
        return not self._is_away

    def get_last_activity_time(self) -> int:
        return self._last_activity_time

    def get_away_duration(self) -> int:
        return self._clock() - self._last_activity_time

    @property
    def away_threshold_ms(self) -> int:
        return self._away_threshold_ms

    def set_away_threshold(self, minutes: float) -> bool:
        if isinstance(minutes, bool) or not isinstance(minutes, (int, float)):
            return False
        if not math.isfinite(minutes) or minutes <= 0:
            return False
        self._away_threshold_ms = int(minutes * MS_PER_MINUTE)
        logger.info(f"离开阈值已设置为 {minutes} 分钟")
        return True

    def set_last_activity_time(self, timestamp: int) -> bool:
        """恢复持久化的最后活动时间，按新时间重新计算在场状态，不发事件"""
        if isinstance(timestamp, bool) or not isinstance(timestamp, int) or timestamp < 0:
            return False
        self._last_activity_time = timestamp
        self._is_away = self._clock() - timestamp > self._away_threshold_ms
        logger.debug(f"已恢复最后活动时间: {timestamp}, is_away={self._is_away}")
        return True

    def snapshot(self) -> ActivitySnapshot:
        return ActivitySnapshot(
            last_activity_time=self._last_activity_time,
            is_away=self._is_away,
            away_threshold_ms=self._away_threshold_ms,
            poll_interval_ms=self.poll_interval_ms,
            is_monitoring=self.is_monitoring,
        )


__all__ = ["ActivityDetector", "MonitorHandle"]
