"""错误分类

- validation: 状态更新被拒绝，调用方可恢复，缓存不变
- storage: 持久化读写失败，降级为仅内存运行
- permission: 通知权限/后端不可用，改用备用通知渠道
- timer_drift: 恢复出的 nextReminderAt 已远在过去，立即补发一次
- timer: 计时回调内部异常
- unknown: 其它一切，有限次重试后终止上报
"""

from __future__ import annotations

from enum import Enum

__all__ = [
    "ErrorType",
    "WellnessError",
    "StateValidationError",
    "StorageError",
    "NotificationPermissionError",
    "TimerDriftError",
    "StateInitializationError",
]


class ErrorType(str, Enum):
    VALIDATION = "validation"
    STORAGE = "storage"
    PERMISSION = "permission"
    TIMER_DRIFT = "timer_drift"
    TIMER = "timer"
    UNKNOWN = "unknown"


class WellnessError(Exception):
    error_type: ErrorType = ErrorType.UNKNOWN


class StateValidationError(WellnessError):
    error_type = ErrorType.VALIDATION


class StorageError(WellnessError):
    error_type = ErrorType.STORAGE


class NotificationPermissionError(WellnessError):
    error_type = ErrorType.PERMISSION


class TimerDriftError(WellnessError):
    error_type = ErrorType.TIMER_DRIFT

    def __init__(self, kind: str, overdue_ms: int) -> None:
        super().__init__(f"{kind} 提醒已逾期 {overdue_ms}ms")
        self.kind = kind
        self.overdue_ms = overdue_ms


class StateInitializationError(WellnessError):
    """连默认状态都无法构建，唯一的致命错误"""
