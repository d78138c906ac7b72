"""站立提醒的每日活动记录

记录当天确认起身/离开休息的次数与明细，跨天自动清零。
数据直接存放在 standup-daily-v1 键下，不属于 StateManager 管理的三种状态；
存储结构由 DailyActivityRecord 校验，损坏的记录按新的一天处理。
"""

from __future__ import annotations

from typing import Any

from pydantic import ValidationError

from wellness.config.constants import DAILY_ACTIVITY_KEY, DEFAULT_STANDUP_DAILY_GOAL, STANDUP_DAILY_GOAL_RANGE
from wellness.core.error_handler import ErrorHandler
from wellness.datamodel import DailyActivityRecord
from wellness.errors import ErrorType, StateValidationError
from wellness.logger import logger
from wellness.storage.kv_store import KeyValueStore
from wellness.utils import Clock, now_ms, today_str


class DailyActivityLog:
    def __init__(
        self,
        store: KeyValueStore,
        error_handler: ErrorHandler | None = None,
        goal: int = DEFAULT_STANDUP_DAILY_GOAL,
        clock: Clock = now_ms,
    ) -> None:
        self.store = store
        self.error_handler = error_handler or ErrorHandler()
        self._clock = clock
        self.goal = goal
        self.date = today_str(clock())
        self.count = 0
        self.history: list[dict[str, Any]] = []
        self.last_activity_time: int | None = None
        self._storage_warned = False

    async def load(self) -> None:
        raw = await self.store.get(DAILY_ACTIVITY_KEY, None)
        if raw is None:
            return
        try:
            record = DailyActivityRecord.model_validate(raw)
        except ValidationError as e:
            error = StateValidationError(f"每日活动记录已损坏，从零开始计数: {e.error_count()} 处错误")
            self.error_handler.report_exception(error, source="daily.load")
            return

        self.goal = record.goal
        if record.date != today_str(self._clock()):
            logger.debug("每日活动记录已跨天，重新计数")
            return
        self.count = record.count
        self.history = [entry.model_dump() for entry in record.history]
        self.last_activity_time = record.last_activity_time

    def _roll_day(self) -> None:
        today = today_str(self._clock())
        if today != self.date:
            self.date = today
            self.count = 0
            self.history = []
            self.last_activity_time = None

    async def _save(self) -> bool:
        record = DailyActivityRecord(
            date=self.date,
            goal=self.goal,
            count=self.count,
            history=self.history,
            last_activity_time=self.last_activity_time,
        )
        ok = await self.store.set(DAILY_ACTIVITY_KEY, record.model_dump(mode="json", by_alias=True))
        if ok:
            self._storage_warned = False
        elif not self._storage_warned:
            self._storage_warned = True
            self.error_handler.report(
                ErrorType.STORAGE,
                "保存每日活动记录失败，仅保留在内存中",
                source="daily.save",
            )
        return ok

    async def record_activity(self, activity_type: str = "manual", duration_ms: int = 5 * 60 * 1000) -> dict[str, Any]:
        self._roll_day()
        now = self._clock()
        self.count += 1
        self.last_activity_time = now
        self.history.append({"time": now, "type": activity_type, "duration": int(duration_ms)})
        await self._save()
        logger.info(f"已记录活动: type={activity_type}, 今日第 {self.count} 次 (目标 {self.goal})")
        return self.get_daily_stats()

    async def set_daily_goal(self, goal: int) -> bool:
        low, high = STANDUP_DAILY_GOAL_RANGE
        if isinstance(goal, bool) or not isinstance(goal, int) or not low <= goal <= high:
            logger.warning(f"每日目标应在 {low}-{high} 次之间: {goal}")
            return False
        self.goal = goal
        await self._save()
        return True

    def get_daily_stats(self) -> dict[str, Any]:
        self._roll_day()
        progress = min(self.count / self.goal, 1) if self.goal else 0
        total_activity_ms = sum(item["duration"] for item in self.history)
        return {
            "date": self.date,
            "count": self.count,
            "goal": self.goal,
            "progress": progress,
            "progress_percent": round(progress * 100),
            "is_goal_reached": self.count >= self.goal,
            "total_activity_ms": total_activity_ms,
            "last_activity_time": self.last_activity_time,
            "history": [dict(item) for item in self.history],
        }

    def progress_message(self) -> str | None:
        """附加在站立提醒正文后的进度提示"""
        if self.count <= 0:
            return None
        remaining = max(0, self.goal - self.count)
        if remaining == 0:
            return "Keep up the good activity habits!"
        return f"You've been active {self.count} times today, {remaining} more needed to reach your goal"


__all__ = ["DailyActivityLog"]
