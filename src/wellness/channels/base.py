from abc import ABC, abstractmethod

__all__ = ["Notifier"]


class Notifier(ABC):
    """提醒触发时的通知渠道，发送失败只返回 False，不阻塞计时器"""

    name: str = "notifier"

    @abstractmethod
    async def notify(self, kind: str, title: str, body: str) -> bool:
        pass
