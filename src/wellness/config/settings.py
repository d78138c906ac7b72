import math
import os
from dotenv import load_dotenv
from wellness.logger import logger
from wellness.config.constants import *
load_dotenv()

__all__ = [
    "WELLNESS_DB_PATH", "LOG_FILE", "LOG_LEVEL", "CONSOLE_LOG_LEVEL",
    "WATER_INTERVAL_MINUTES", "STANDUP_INTERVAL_MINUTES", "SNOOZE_MINUTES",
    "AWAY_THRESHOLD_MINUTES", "ACTIVITY_POLL_INTERVAL_MS", "TICK_INTERVAL_MS",
    "STATE_DEBOUNCE_MS", "ERROR_LOG_MAX_SIZE", "MAX_RETRY_ATTEMPTS",
    "AUTO_PAUSE_KINDS", "ENABLE_INPUT_HOOKS", "ENABLE_DESKTOP_NOTIFICATIONS",
    "STANDUP_DAILY_GOAL",
    "ENABLE_ADMIN_HTTP", "ADMIN_HTTP_HOST", "ADMIN_HTTP_PORT", "ADMIN_AUTH_TOKEN",
]


def _parse_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on", "y")


def _parse_positive(name: str, default: float, cast=float):
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = cast(raw)
    except ValueError:
        logger.warning(f"{name} 非法: {raw}, 已回退到 {default}")
        return default
    if not math.isfinite(value) or value <= 0:
        logger.warning(f"{name} 必须为正数: {raw}, 已回退到 {default}")
        return default
    return value


# 存储与日志
WELLNESS_DB_PATH = os.getenv("WELLNESS_DB_PATH", "data/wellness.db")
LOG_FILE = os.getenv("LOG_FILE", "logs/wellness.log")
LOG_LEVEL = os.getenv("LOG_LEVEL", "DEBUG").strip().upper()
CONSOLE_LOG_LEVEL = os.getenv("CONSOLE_LOG_LEVEL", "INFO").strip().upper()


# 提醒
WATER_INTERVAL_MINUTES = _parse_positive("WATER_INTERVAL_MINUTES", DEFAULT_INTERVAL_MINUTES)
STANDUP_INTERVAL_MINUTES = _parse_positive("STANDUP_INTERVAL_MINUTES", DEFAULT_INTERVAL_MINUTES)
SNOOZE_MINUTES = _parse_positive("SNOOZE_MINUTES", SNOOZE_DURATION_MINUTES)
TICK_INTERVAL_MS = _parse_positive("TICK_INTERVAL_MS", UPDATE_INTERVAL_MS, int)
STATE_DEBOUNCE_MS = _parse_positive("STATE_DEBOUNCE_MS", DEFAULT_STATE_DEBOUNCE_MS, int)

STANDUP_DAILY_GOAL = int(_parse_positive("STANDUP_DAILY_GOAL", DEFAULT_STANDUP_DAILY_GOAL, int))
if not STANDUP_DAILY_GOAL_RANGE[0] <= STANDUP_DAILY_GOAL <= STANDUP_DAILY_GOAL_RANGE[1]:
    logger.warning(f"STANDUP_DAILY_GOAL 超出范围: {STANDUP_DAILY_GOAL}, 已回退到 {DEFAULT_STANDUP_DAILY_GOAL}")
    STANDUP_DAILY_GOAL = DEFAULT_STANDUP_DAILY_GOAL


# 活动检测
AWAY_THRESHOLD_MINUTES = _parse_positive("AWAY_THRESHOLD_MINUTES", DEFAULT_AWAY_THRESHOLD_MINUTES)
ACTIVITY_POLL_INTERVAL_MS = _parse_positive("ACTIVITY_POLL_INTERVAL_MS", DEFAULT_ACTIVITY_POLL_INTERVAL_MS, int)
ENABLE_INPUT_HOOKS = _parse_bool("ENABLE_INPUT_HOOKS", False)

# 离开时自动暂停的提醒种类，逗号分隔
AUTO_PAUSE_KINDS = tuple(
    k.strip().lower() for k in os.getenv("AUTO_PAUSE_KINDS", "water,standup").split(",") if k.strip()
)
_unknown_kinds = [k for k in AUTO_PAUSE_KINDS if k not in REMINDER_KINDS]
if _unknown_kinds:
    logger.critical(f"AUTO_PAUSE_KINDS 含非法种类: {_unknown_kinds}, 仅支持 {REMINDER_KINDS}")
    exit(0)


# 错误处理
ERROR_LOG_MAX_SIZE = _parse_positive("ERROR_LOG_MAX_SIZE", DEFAULT_ERROR_LOG_MAX_SIZE, int)
MAX_RETRY_ATTEMPTS = _parse_positive("MAX_RETRY_ATTEMPTS", DEFAULT_MAX_RETRY_ATTEMPTS, int)


# 通知
ENABLE_DESKTOP_NOTIFICATIONS = _parse_bool("ENABLE_DESKTOP_NOTIFICATIONS", True)


# Admin API
ENABLE_ADMIN_HTTP = _parse_bool("ENABLE_ADMIN_HTTP", True)
ADMIN_HTTP_HOST = os.getenv("ADMIN_HTTP_HOST", "127.0.0.1")
ADMIN_HTTP_PORT = int(_parse_positive("ADMIN_HTTP_PORT", 18090, int))
ADMIN_AUTH_TOKEN = os.getenv("ADMIN_AUTH_TOKEN", "")
