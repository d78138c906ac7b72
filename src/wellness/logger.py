"""日志模块

级别支持: TRACE/DEBUG/INFO/WARNING/ERROR/CRITICAL (兼容别名 FATAL -> CRITICAL)

使用：先调用 setup_logging 配置日志，然后 logger.info(...) 等写日志。
计时器的每秒 tick 等高频事件只写 TRACE，避免刷屏。
pynput 的监听线程也会写日志，文件 sink 统一经队列写出。
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Literal, Union

from loguru import logger

LogLevel = Literal["TRACE", "DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL", "FATAL"]

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | "
    "<level>{level:<8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)

FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | {thread.name} | {name}:{function}:{line} - {message}"

# 文件名后缀 -> (最低级别, 保留时长)；None 表示使用 setup_logging 传入的级别
_FILE_SINKS: dict[str, tuple[str | None, str]] = {
    "": (None, "14 days"),
    "_error": ("ERROR", "60 days"),
}


def _normalize_level(level: Union[str, LogLevel]) -> str:
    level = str(level).strip().upper()
    return "CRITICAL" if level == "FATAL" else level


def _console_handler(level: str) -> dict[str, Any]:
    return {"sink": sys.stderr, "level": level, "format": CONSOLE_FORMAT, "colorize": True}


def _file_handlers(log_file: Path, level: str) -> list[dict[str, Any]]:
    log_file.parent.mkdir(parents=True, exist_ok=True)
    handlers = []
    for suffix, (sink_level, retention) in _FILE_SINKS.items():
        handlers.append(
            {
                "sink": log_file.with_name(f"{log_file.stem}{suffix}{log_file.suffix}"),
                "level": sink_level or level,
                "format": FILE_FORMAT,
                "rotation": "5 MB",
                "retention": retention,
                "compression": "zip",
                "encoding": "utf-8",
                "enqueue": True,
            }
        )
    return handlers


def setup_logging(
    log_level: LogLevel,
    log_file: Union[str, Path, None],
    console_level: LogLevel = "INFO",
) -> None:
    """配置控制台与文件日志；log_file 为空时只输出到控制台"""
    handlers = [_console_handler(_normalize_level(console_level))]
    if log_file:
        handlers.extend(_file_handlers(Path(log_file), _normalize_level(log_level)))
    logger.configure(handlers=handlers)


__all__ = ["setup_logging", "logger", "LogLevel"]
