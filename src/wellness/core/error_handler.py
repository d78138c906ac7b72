"""全局错误处理器

所有组件的异常最终汇集到 handle_error：
- 写入有界错误日志（超过 max_log_size 时淘汰最旧的一条）；
- 调用可选的恢复回调（回调异常被捕获并记录）；
- 返回面向用户的错误描述；
- 自身永不抛出异常。

install() 会接管 sys.excepthook、threading.excepthook 与 asyncio 事件循环的异常处理器，
让计时器、存储、输入钩子线程的错误共用同一个排查入口。
统计只基于当前内存中的日志，不做历史持久化。
"""

from __future__ import annotations

import asyncio
import sys
import threading
from collections import Counter, deque
from typing import Any, Awaitable, Callable, TypeVar

from wellness.config.constants import DEFAULT_ERROR_LOG_MAX_SIZE, DEFAULT_MAX_RETRY_ATTEMPTS
from wellness.datamodel import ErrorInfo
from wellness.errors import ErrorType, WellnessError
from wellness.logger import logger
from wellness.utils import Clock, now_ms

T = TypeVar("T")

_HOUR_MS = 60 * 60 * 1000
_DAY_MS = 24 * _HOUR_MS

_FRIENDLY_MESSAGES: dict[str, dict[str, str]] = {
    ErrorType.STORAGE: {
        "title": "存储功能受限",
        "message": "本地存储不可用，您的设置将无法在会话结束后保存",
        "type": "warning",
        "solution": "请检查数据目录是否可写、磁盘空间是否充足",
    },
    ErrorType.PERMISSION: {
        "title": "通知功能受限",
        "message": "系统通知功能不可用，将使用日志通知代替",
        "type": "info",
        "solution": "请检查系统通知权限设置",
    },
    ErrorType.TIMER: {
        "title": "计时器错误",
        "message": "提醒计时器出现问题，已自动重置",
        "type": "warning",
        "solution": "如果问题持续出现，请重启应用",
    },
    ErrorType.TIMER_DRIFT: {
        "title": "提醒已补发",
        "message": "应用关闭期间错过了提醒，已立即补发一次",
        "type": "info",
        "solution": "无需处理",
    },
    ErrorType.VALIDATION: {
        "title": "设置无效",
        "message": "提交的状态或设置未通过校验，已保持原值",
        "type": "warning",
        "solution": "请检查提醒间隔等设置是否为正数",
    },
    ErrorType.UNKNOWN: {
        "title": "应用错误",
        "message": "应用遇到了一个问题",
        "type": "error",
        "solution": "请重启应用重试，如果问题持续出现，请查看错误日志",
    },
}

# 按错误信息中的关键字推断类型
_KEYWORD_TYPES: list[tuple[tuple[str, ...], ErrorType]] = [
    (("sqlite", "database", "storage", "disk"), ErrorType.STORAGE),
    (("notification", "permission"), ErrorType.PERMISSION),
    (("timer", "interval"), ErrorType.TIMER),
]


class ErrorHandler:
    def __init__(
        self,
        max_log_size: int = DEFAULT_ERROR_LOG_MAX_SIZE,
        max_retry_attempts: int = DEFAULT_MAX_RETRY_ATTEMPTS,
        clock: Clock = now_ms,
    ) -> None:
        self.max_log_size = max_log_size
        self.max_retry_attempts = max_retry_attempts
        self._clock = clock
        self._error_log: deque[ErrorInfo] = deque(maxlen=max_log_size)
        self._listeners: list[Callable[[ErrorInfo], None]] = []

        self._installed = False
        self._prev_excepthook = None
        self._prev_threading_excepthook = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._prev_loop_handler = None

    # ----------------- 核心入口 ----------------
    def handle_error(self, info: ErrorInfo) -> dict[str, str]:
        """处理错误，返回面向用户的错误描述，永不抛出"""
        try:
            self._error_log.append(info)
            log = logger.opt(exception=info.error) if info.error is not None else logger
            if info.type in (ErrorType.TIMER_DRIFT, ErrorType.VALIDATION, ErrorType.PERMISSION):
                log.warning(f"[{info.type}] {info.source or '-'}: {info.message}")
            else:
                log.error(f"[{info.type}] {info.source or '-'}: {info.message}")

            for listener in list(self._listeners):
                try:
                    listener(info)
                except Exception as e:
                    logger.warning(f"错误监听器执行失败: {e}")

            if info.recovery is not None:
                try:
                    info.recovery()
                except Exception as e:
                    logger.opt(exception=e).error(f"恢复回调执行失败: source={info.source}")

            return self._friendly(info.type, info.message)
        except Exception as e:  # 错误处理器本身不能成为新的故障源
            logger.critical(f"错误处理器内部异常: {e!r}")
            return dict(_FRIENDLY_MESSAGES[ErrorType.UNKNOWN])

    def report(
        self,
        error_type: ErrorType | str,
        message: str,
        *,
        error: BaseException | None = None,
        source: str | None = None,
        recovery: Callable[[], Any] | None = None,
        **context: Any,
    ) -> dict[str, str]:
        """便捷入口：按当前时钟构建 ErrorInfo 后交给 handle_error"""
        info = ErrorInfo(
            type=str(getattr(error_type, "value", error_type)),
            message=message,
            timestamp=self._clock(),
            error=error,
            source=source,
            context=context,
            recovery=recovery,
        )
        return self.handle_error(info)

    def report_exception(self, error: BaseException, source: str | None = None) -> dict[str, str]:
        if isinstance(error, WellnessError):
            error_type = error.error_type
        else:
            error_type = self.classify(error)
        return self.report(error_type, str(error) or error.__class__.__name__, error=error, source=source)

    def add_listener(self, listener: Callable[[ErrorInfo], None]) -> None:
        self._listeners.append(listener)

    # ----------------- 分类与统计 ----------------
    @staticmethod
    def classify(error: BaseException) -> ErrorType:
        if isinstance(error, WellnessError):
            return error.error_type
        text = f"{error.__class__.__name__} {error}".lower()
        for keywords, error_type in _KEYWORD_TYPES:
            if any(k in text for k in keywords):
                return error_type
        return ErrorType.UNKNOWN

    def get_user_friendly_error(self, error: BaseException) -> dict[str, str]:
        """获取用户友好的错误信息（不写日志）"""
        return self._friendly(self.classify(error), str(error))

    @staticmethod
    def _friendly(error_type: str, detail: str) -> dict[str, str]:
        try:
            key = ErrorType(error_type)
        except ValueError:
            key = ErrorType.UNKNOWN
        result = dict(_FRIENDLY_MESSAGES[key])
        result["detail"] = detail
        return result

    def get_error_log(self) -> list[dict[str, Any]]:
        return [info.to_dict() for info in self._error_log]

    def clear_error_log(self) -> None:
        self._error_log.clear()

    def get_error_stats(self) -> dict[str, Any]:
        now = self._clock()
        by_type = Counter(info.type for info in self._error_log)
        return {
            "total": len(self._error_log),
            "by_type": dict(by_type),
            "last_hour": sum(1 for info in self._error_log if now - info.timestamp <= _HOUR_MS),
            "last_24h": sum(1 for info in self._error_log if now - info.timestamp <= _DAY_MS),
        }

    # ----------------- 重试 ----------------
    async def run_with_retry(
        self,
        factory: Callable[[], Awaitable[T]],
        *,
        source: str,
        max_attempts: int | None = None,
        base_delay_seconds: float = 1.0,
    ) -> T | None:
        """有限次重试执行协程，全部失败后终止上报并返回 None"""
        max_attempts = max_attempts or self.max_retry_attempts
        for attempt in range(1, max_attempts + 1):
            try:
                return await factory()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if attempt >= max_attempts:
                    self.report(
                        self.classify(e),
                        f"超过重试次数仍失败: attempts={max_attempts}, error={e}",
                        error=e,
                        source=source,
                        terminal=True,
                    )
                    return None

                delay_seconds = base_delay_seconds * 2 ** (attempt - 1)
                logger.warning(
                    f"{source} 执行失败，准备重试: attempt={attempt}/{max_attempts}, sleep={delay_seconds}s, error={e}"
                )
                await asyncio.sleep(delay_seconds)
        return None

    # ----------------- 全局捕获 ----------------
    def install(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """接管全局未捕获异常"""
        if self._installed:
            return
        self._prev_excepthook = sys.excepthook
        self._prev_threading_excepthook = threading.excepthook
        sys.excepthook = self._sys_excepthook
        threading.excepthook = self._threading_excepthook

        if loop is not None:
            self._loop = loop
            self._prev_loop_handler = loop.get_exception_handler()
            loop.set_exception_handler(self._loop_exception_handler)

        self._installed = True
        logger.debug("全局错误处理已安装")

    def uninstall(self) -> None:
        if not self._installed:
            return
        sys.excepthook = self._prev_excepthook or sys.__excepthook__
        threading.excepthook = self._prev_threading_excepthook or threading.__excepthook__
        if self._loop is not None:
            self._loop.set_exception_handler(self._prev_loop_handler)
            self._loop = None
        self._installed = False
        logger.debug("全局错误处理已卸载")

    def _sys_excepthook(self, exc_type, exc_value, exc_traceback) -> None:
        if issubclass(exc_type, KeyboardInterrupt):
            (self._prev_excepthook or sys.__excepthook__)(exc_type, exc_value, exc_traceback)
            return
        self.report(self.classify(exc_value), str(exc_value) or exc_type.__name__, error=exc_value, source="runtime")

    def _threading_excepthook(self, args: threading.ExceptHookArgs) -> None:
        if args.exc_value is None:
            return
        thread_name = args.thread.name if args.thread is not None else "?"
        self.report(
            self.classify(args.exc_value),
            str(args.exc_value) or args.exc_type.__name__,
            error=args.exc_value,
            source=f"thread:{thread_name}",
        )

    def _loop_exception_handler(self, loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
        error = context.get("exception")
        message = context.get("message") or "未处理的异步任务错误"
        if error is not None:
            self.report(self.classify(error), f"{message}: {error}", error=error, source="asyncio")
        else:
            self.report(ErrorType.UNKNOWN, message, source="asyncio")


__all__ = ["ErrorHandler"]
