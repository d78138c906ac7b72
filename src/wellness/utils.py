import time
from datetime import datetime
from typing import Callable

__all__ = ["Clock", "MS_PER_MINUTE", "now_ms", "ms_to_utc_str", "minutes_to_ms", "format_remaining", "today_str"]

Clock = Callable[[], int]

MS_PER_MINUTE = 60_000


def now_ms() -> int:
    """获取当前 epoch 毫秒时间戳"""
    return int(time.time() * 1000)


def ms_to_utc_str(epoch_ms: int | None) -> str | None:
    """epoch 毫秒 -> 'YYYY-MM-DDTHH:MM:SSZ'，0 或 None 返回 None"""
    if not epoch_ms:
        return None
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(epoch_ms / 1000))


def minutes_to_ms(minutes: float) -> int:
    return int(round(minutes * MS_PER_MINUTE))


def format_remaining(milliseconds: int) -> str:
    """格式化剩余时间为 'M:SS'"""
    milliseconds = max(0, int(milliseconds))
    minutes = milliseconds // MS_PER_MINUTE
    seconds = (milliseconds % MS_PER_MINUTE) // 1000
    return f"{minutes}:{seconds:02d}"


def today_str(epoch_ms: int) -> str:
    """本地日期字符串 'YYYY-MM-DD'，用于按天归档"""
    return datetime.fromtimestamp(epoch_ms / 1000).strftime("%Y-%m-%d")
