"""产品常量：默认间隔、通知文案、存储键等"""

REMINDER_KINDS = ("water", "standup")
STATE_KINDS = ("app", *REMINDER_KINDS)

DEFAULT_INTERVAL_MINUTES = 30
SNOOZE_DURATION_MINUTES = 5
UPDATE_INTERVAL_MS = 1000

DEFAULT_AWAY_THRESHOLD_MINUTES = 5
DEFAULT_ACTIVITY_POLL_INTERVAL_MS = 30_000

DEFAULT_STATE_DEBOUNCE_MS = 300
DEFAULT_ERROR_LOG_MAX_SIZE = 50
DEFAULT_MAX_RETRY_ATTEMPTS = 3

DEFAULT_STANDUP_DAILY_GOAL = 8
STANDUP_DAILY_GOAL_RANGE = (1, 20)

# 每种状态独立存储，读写一种无需反序列化其它
STORAGE_KEYS = {
    "app": "app-state-v2",
    "water": "water-state-v2",
    "standup": "standup-state-v2",
}

LEGACY_STORAGE_KEYS = {
    "app": "app-settings-v1",
    "water": "water-reminder-settings",
    "standup": "standup-reminder-settings",
}

DAILY_ACTIVITY_KEY = "standup-daily-v1"

NOTIFICATION_MESSAGES = {
    "water": {
        "title": "💧 Time to Hydrate!",
        "body": "Long work sessions can lead to dehydration, remember to drink water!",
    },
    "standup": {
        "title": "🧘 Time to Stand Up!",
        "body": "Sitting too long is bad for your health, get up and move around!",
    },
}
