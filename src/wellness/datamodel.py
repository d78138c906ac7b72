"""数据模型

持久化状态使用 pydantic 校验：Python 侧字段为 snake_case，
序列化到存储时使用 camelCase 别名（isActive / timeRemainingMs ...）。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from wellness.config.constants import DEFAULT_INTERVAL_MINUTES, STANDUP_DAILY_GOAL_RANGE

__all__ = [
    "TimerPhase",
    "ReminderSettings", "ReminderState", "AppState", "STATE_MODELS", "build_default",
    "DailyActivityEntry", "DailyActivityRecord",
    "ActivityEvent", "ActivitySnapshot",
    "ErrorInfo",
]


class TimerPhase(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"


# ----------------- 持久化状态 ----------------
class _StateModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        validate_assignment=True,
    )


class ReminderSettings(_StateModel):
    interval_minutes: float = Field(default=DEFAULT_INTERVAL_MINUTES, gt=0)
    enabled: bool = True
    sound_enabled: bool = True
    last_reminder_at: Optional[int] = Field(default=None, ge=0)


class ReminderState(_StateModel):
    is_active: bool = False
    is_paused: bool = False
    time_remaining_ms: int = Field(default=0, ge=0)
    next_reminder_at: int = Field(default=0, ge=0)  # epoch ms, 未激活时为 0
    auto_paused: bool = False  # 因用户离开而暂停，用户返回时自动恢复
    settings: ReminderSettings = Field(default_factory=ReminderSettings)

    @model_validator(mode="after")
    def _check_flags(self) -> "ReminderState":
        if self.is_paused and not self.is_active:
            raise ValueError("isPaused 要求 isActive")
        if self.auto_paused and not self.is_paused:
            raise ValueError("autoPaused 要求 isPaused")
        if self.is_active and not self.settings.enabled:
            raise ValueError("已禁用的提醒不能处于激活状态")
        return self


class AppState(_StateModel):
    # app 状态不涉及计时，允许任意形状的合并
    model_config = ConfigDict(extra="allow")

    is_first_use: bool = True
    compatibility_checked: bool = False
    notification_prefs: Dict[str, Any] = Field(
        default_factory=lambda: {"desktop_notifications": True, "sound_enabled": True, "style": "standard"}
    )
    last_activity_at: Optional[int] = Field(default=None, ge=0)


STATE_MODELS: dict[str, type[_StateModel]] = {
    "app": AppState,
    "water": ReminderState,
    "standup": ReminderState,
}


def build_default(kind: str, interval_minutes: float | None = None) -> _StateModel:
    """按 schema 构建某种状态的默认值，提醒类状态可覆盖默认间隔"""
    model = STATE_MODELS[kind]()
    if interval_minutes is not None and isinstance(model, ReminderState):
        model.settings.interval_minutes = interval_minutes
    return model


class DailyActivityEntry(_StateModel):
    model_config = ConfigDict(extra="ignore")

    time: int = Field(ge=0)
    type: str
    duration: int = Field(default=0, ge=0)


class DailyActivityRecord(_StateModel):
    """standup-daily-v1 的存储结构，旧版本可能带有多余字段"""

    model_config = ConfigDict(extra="ignore")

    date: str
    goal: int = Field(ge=STANDUP_DAILY_GOAL_RANGE[0], le=STANDUP_DAILY_GOAL_RANGE[1])
    count: int = Field(default=0, ge=0)
    history: list[DailyActivityEntry] = Field(default_factory=list)
    last_activity_time: Optional[int] = Field(default=None, ge=0)


# ----------------- 活动检测 ----------------
@dataclass
class ActivityEvent:
    type: Literal["user-away", "user-return"]
    timestamp: int
    last_activity: Optional[int] = None  # user-away
    away_duration: Optional[int] = None  # user-return, 毫秒


@dataclass
class ActivitySnapshot:
    last_activity_time: int
    is_away: bool
    away_threshold_ms: int
    poll_interval_ms: int
    is_monitoring: bool = False


# ----------------- 错误日志 ----------------
@dataclass
class ErrorInfo:
    type: str
    message: str
    timestamp: int
    error: Optional[BaseException] = None
    source: Optional[str] = None  # 出错的组件，例如 "water.tick"
    context: Dict[str, Any] = field(default_factory=dict)
    recovery: Any = None  # 可选的恢复回调，只在 handle_error 时调用一次

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "message": self.message,
            "timestamp": self.timestamp,
            "source": self.source,
            "error": repr(self.error) if self.error is not None else None,
            "context": self.context,
        }
