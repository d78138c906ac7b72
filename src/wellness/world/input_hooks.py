"""系统级输入钩子

pynput 的监听器运行在自己的线程里，回调通过 call_soon_threadsafe 投递回事件循环，
保证 ActivityDetector 只在循环线程内被修改。
"""

from __future__ import annotations

import asyncio
import time
from typing import Callable, Protocol

from wellness.logger import logger

ActivityCallback = Callable[[str], None]


class InputSource(Protocol):
    name: str

    def start(self, on_activity: ActivityCallback) -> None:
        ...

    def stop(self) -> None:
        ...


class PynputInputSource:
    name = "pynput"

    def __init__(self, loop: asyncio.AbstractEventLoop, throttle_ms: int = 1000) -> None:
        self._loop = loop
        self._throttle_s = throttle_ms / 1000
        self._last_dispatch = 0.0
        self._on_activity: ActivityCallback | None = None
        self._keyboard_listener = None
        self._mouse_listener = None

    def start(self, on_activity: ActivityCallback) -> None:
        # 无图形会话时导入 pynput 即失败，由调用方回滚
        from pynput import keyboard, mouse

        self._on_activity = on_activity
        self._keyboard_listener = keyboard.Listener(on_press=lambda key: self._dispatch("keyboard"))
        self._mouse_listener = mouse.Listener(
            on_move=lambda x, y: self._dispatch("mouse_move"),
            on_click=self._on_click,
            on_scroll=lambda x, y, dx, dy: self._dispatch("scroll"),
        )
        self._keyboard_listener.start()
        try:
            self._mouse_listener.start()
        except Exception:
            self._keyboard_listener.stop()
            raise
        logger.info("系统输入钩子已启动")

    def _on_click(self, x, y, button, pressed) -> None:
        if pressed:
            self._dispatch("mouse_click")

    def _dispatch(self, source: str) -> None:
        # 鼠标移动事件极其频繁，节流后再投递
        now = time.monotonic()
        if now - self._last_dispatch < self._throttle_s:
            return
        self._last_dispatch = now
        callback = self._on_activity
        if callback is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(callback, source)

    def stop(self) -> None:
        self._on_activity = None
        for listener in (self._keyboard_listener, self._mouse_listener):
            if listener is not None:
                listener.stop()
        self._keyboard_listener = None
        self._mouse_listener = None
        logger.info("系统输入钩子已停止")


__all__ = ["InputSource", "PynputInputSource", "ActivityCallback"]
