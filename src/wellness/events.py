"""事件总线模块，定义了事件总线类 Bus 及事件名集合 E

每个应用上下文持有自己的 Bus 实例（不再使用模块级单例）。
协程处理器由 pyee 调度为任务；处理器抛出的异常通过 "error" 事件交给错误处理器。
"""

from __future__ import annotations
from pyee.asyncio import AsyncIOEventEmitter
from typing import Any, Awaitable, Callable, Union

from wellness.logger import logger

Handler = Callable[..., Union[Awaitable[None], None]]


# 事件名集中定义
class E:
    USER_AWAY = "activity.user_away"
    USER_RETURN = "activity.user_return"

    REMINDER_STARTED = "reminder.started"
    REMINDER_PAUSED = "reminder.paused"
    REMINDER_RESUMED = "reminder.resumed"
    REMINDER_STOPPED = "reminder.stopped"
    REMINDER_TRIGGERED = "reminder.triggered"
    REMINDER_SNOOZED = "reminder.snoozed"
    REMINDER_ACKNOWLEDGED = "reminder.acknowledged"


class Bus(AsyncIOEventEmitter):
    def __init__(self, loop: Any = None) -> None:
        super().__init__(loop=loop)

    def on(self, event: str) -> Callable[[Handler], Handler]:
        """注册事件处理器装饰器"""
        def decorator(handler: Handler) -> Handler:
            logger.debug(f"注册事件处理器: {event} -> {getattr(handler, '__name__', handler)}")
            super(Bus, self).on(event, handler)
            return handler

        return decorator

    def off(self, event: str, handler: Handler) -> None:
        """注销事件处理器，未注册时静默忽略"""
        try:
            self.remove_listener(event, handler)
        except KeyError:
            pass


__all__ = ["Bus", "E", "Handler"]
