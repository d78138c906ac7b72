"""
简单的运行时指标，统计提醒触发、贪睡、离开/返回、存储与通知失败次数，供 Admin API 展示。
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field


@dataclass
class RuntimeMetrics:
    started_at: float = field(default_factory=time.time)
    reminder_fired_count: dict[str, int] = field(default_factory=dict)
    reminder_snoozed_count: int = 0
    reminder_acknowledged_count: int = 0
    user_away_count: int = 0
    user_return_count: int = 0
    total_away_ms: int = 0
    error_count: int = 0
    storage_failure_count: int = 0
    notification_failure_count: int = 0
    last_fired_at: float | None = None

    def record_reminder_fired(self, kind: str, notified: bool = True) -> None:
        self.reminder_fired_count[kind] = self.reminder_fired_count.get(kind, 0) + 1
        self.last_fired_at = time.time()
        if not notified:
            self.notification_failure_count += 1

    def record_snoozed(self) -> None:
        self.reminder_snoozed_count += 1

    def record_acknowledged(self) -> None:
        self.reminder_acknowledged_count += 1

    def record_user_away(self) -> None:
        self.user_away_count += 1

    def record_user_return(self, away_duration_ms: int | None) -> None:
        self.user_return_count += 1
        self.total_away_ms += max(0, away_duration_ms or 0)

    def record_error(self, error_type: str) -> None:
        self.error_count += 1
        if error_type == "storage":
            self.storage_failure_count += 1

    def snapshot(self) -> dict:
        return {
            "uptime_seconds": round(max(0.0, time.time() - self.started_at), 1),
            "reminder_fired_count": dict(self.reminder_fired_count),
            "reminder_snoozed_count": self.reminder_snoozed_count,
            "reminder_acknowledged_count": self.reminder_acknowledged_count,
            "user_away_count": self.user_away_count,
            "user_return_count": self.user_return_count,
            "total_away_minutes": round(self.total_away_ms / 60000, 1),
            "error_count": self.error_count,
            "storage_failure_count": self.storage_failure_count,
            "notification_failure_count": self.notification_failure_count,
            "last_fired_at_utc": (
                time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(self.last_fired_at))
                if self.last_fired_at is not None
                else None
            ),
        }


__all__ = ["RuntimeMetrics"]
