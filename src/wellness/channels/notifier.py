"""通知渠道实现

- DesktopNotifier: 通过 plyer 发送系统通知；平台没有可用后端时抛出 NotificationPermissionError；
- LogNotifier: 写日志，永远成功，作为兜底渠道；
- FallbackNotifier: 主渠道失败或无权限时改用兜底渠道，提醒本身永不因通知失败而失败。
"""

from __future__ import annotations

import asyncio

from plyer import notification

from wellness.channels.base import Notifier
from wellness.core.error_handler import ErrorHandler
from wellness.errors import ErrorType, NotificationPermissionError
from wellness.logger import logger

APP_NAME = "Wellness Reminder"


class LogNotifier(Notifier):
    name = "log"

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []

    async def notify(self, kind: str, title: str, body: str) -> bool:
        self.sent.append((kind, title, body))
        logger.info(f"[提醒:{kind}] {title} - {body}")
        return True


class DesktopNotifier(Notifier):
    name = "desktop"

    def __init__(self, timeout_seconds: int = 10) -> None:
        self.timeout_seconds = timeout_seconds

    def _send(self, title: str, body: str) -> None:
        notification.notify(
            title=title,
            message=body,
            app_name=APP_NAME,
            timeout=self.timeout_seconds,
        )

    async def notify(self, kind: str, title: str, body: str) -> bool:
        try:
            await asyncio.to_thread(self._send, title, body)
        except (NotImplementedError, ImportError) as e:
            raise NotificationPermissionError(f"系统通知不可用: {e}") from e
        except Exception as e:
            logger.warning(f"发送系统通知失败: kind={kind}, error={e}")
            return False
        logger.debug(f"已发送系统通知: kind={kind}, title={title}")
        return True


class FallbackNotifier(Notifier):
    name = "fallback"

    def __init__(self, primary: Notifier, fallback: Notifier, error_handler: ErrorHandler | None = None) -> None:
        self.primary = primary
        self.fallback = fallback
        self.error_handler = error_handler or ErrorHandler()
        self._permission_denied = False

    async def notify(self, kind: str, title: str, body: str) -> bool:
        if not self._permission_denied:
            try:
                if await self.primary.notify(kind, title, body):
                    return True
            except NotificationPermissionError as e:
                # 无权限不会自行恢复，之后直接走兜底渠道
                self._permission_denied = True
                self.error_handler.report(ErrorType.PERMISSION, str(e), error=e, source=f"notifier.{self.primary.name}")
            except Exception as e:
                self.error_handler.report_exception(e, source=f"notifier.{self.primary.name}")

        try:
            return await self.fallback.notify(kind, title, body)
        except Exception as e:
            self.error_handler.report_exception(e, source=f"notifier.{self.fallback.name}")
            return False


__all__ = ["LogNotifier", "DesktopNotifier", "FallbackNotifier", "APP_NAME"]
