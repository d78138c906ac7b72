"""统一状态管理器

# 职责
- 持有 app / water / standup 三种状态的内存缓存（唯一可信源）；
- update_state 对局部更新做递归合并（dict 递归合并，列表与标量整体替换），
  再交给 pydantic schema 校验，校验失败直接拒绝：不修改缓存、不写存储、不通知；
- 写存储按种类防抖：同一种类在窗口内的多次更新只写一次最新结果；
  immediate 写会先取消该种类挂起的防抖写；
- 通知订阅者按订阅顺序同步执行，每个订阅者拿到的都是独立副本；
- 存储失败不回滚缓存，本次会话继续以内存状态为准，同一种类只告警一次。

# 关闭
flush_all 是唯一允许阻塞关闭流程的持久化路径，保证在进程退出前写完所有脏状态。
"""

from __future__ import annotations

import asyncio
import copy
from dataclasses import dataclass
from typing import Any, Callable

from pydantic import BaseModel, ValidationError

from wellness.config.constants import LEGACY_STORAGE_KEYS, STATE_KINDS, STORAGE_KEYS, DEFAULT_STATE_DEBOUNCE_MS
from wellness.core.error_handler import ErrorHandler
from wellness.datamodel import STATE_MODELS, build_default
from wellness.errors import ErrorType, StateInitializationError, StateValidationError
from wellness.logger import logger
from wellness.storage.kv_store import KeyValueStore

Subscriber = Callable[[dict[str, Any]], None]


@dataclass(eq=False)
class _Subscription:
    callback: Subscriber


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    result = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _convert_legacy(kind: str, raw: dict[str, Any]) -> dict[str, Any]:
    """把 v1 时代的存储结构转换为当前 schema（camelCase）"""
    if kind == "app":
        converted = {k: v for k, v in raw.items() if k != "notifications"}
        if isinstance(raw.get("notifications"), dict):
            converted["notificationPrefs"] = raw["notifications"]
        return converted

    settings = raw.get("settings") if isinstance(raw.get("settings"), dict) else {}
    is_active = bool(raw.get("isActive", False))
    converted_settings = {
        "enabled": settings.get("enabled", True),
        "soundEnabled": settings.get("sound", settings.get("soundEnabled", True)),
        "lastReminderAt": settings.get("lastReminder", settings.get("lastReminderAt")),
    }
    interval = settings.get("interval", raw.get("interval"))
    if interval is not None:
        converted_settings["intervalMinutes"] = interval
    return {
        "isActive": is_active,
        "isPaused": bool(raw.get("isPaused", False)) and is_active,
        "timeRemainingMs": max(0, int(raw.get("timeRemaining") or 0)),
        "nextReminderAt": max(0, int(raw.get("nextReminderAt") or 0)),
        "settings": converted_settings,
    }


class StateManager:
    def __init__(
        self,
        store: KeyValueStore,
        error_handler: ErrorHandler | None = None,
        *,
        debounce_ms: int = DEFAULT_STATE_DEBOUNCE_MS,
        interval_defaults: dict[str, float] | None = None,
    ) -> None:
        self.store = store
        self.error_handler = error_handler or ErrorHandler()
        self.debounce_ms = debounce_ms
        self.last_validation_error: str | None = None

        try:
            self._defaults: dict[str, BaseModel] = {
                kind: build_default(kind, (interval_defaults or {}).get(kind)) for kind in STATE_KINDS
            }
        except Exception as e:
            logger.critical(f"无法构建默认状态: {e}")
            raise StateInitializationError(f"无法构建默认状态: {e}") from e

        self._cache: dict[str, BaseModel] = dict(self._defaults)
        self._subscribers: dict[str, list[_Subscription]] = {kind: [] for kind in STATE_KINDS}
        self._pending: dict[str, asyncio.TimerHandle] = {}
        self._inflight: set[asyncio.Task] = set()
        self._version: dict[str, int] = {kind: 0 for kind in STATE_KINDS}
        self._persisted_version: dict[str, int] = {kind: 0 for kind in STATE_KINDS}
        self._storage_warned: set[str] = set()
        self.write_counts: dict[str, int] = {kind: 0 for kind in STATE_KINDS}
        self.initialized = False

    # ----------------- 加载 ----------------
    async def initialize(self) -> "StateManager":
        """从存储加载所有状态；缺失或无效时回退为默认值，不会出现部分初始化"""
        loaded: dict[str, BaseModel] = {}
        rewrite: list[str] = []
        for kind in STATE_KINDS:
            model, needs_rewrite = await self._load_kind(kind)
            loaded[kind] = model
            if needs_rewrite:
                rewrite.append(kind)

        self._cache = loaded
        for kind in rewrite:
            self._version[kind] += 1
            await self._persist(kind, immediate=True)

        self.initialized = True
        logger.info(f"状态加载完成: {', '.join(STATE_KINDS)}")
        return self

    async def _load_kind(self, kind: str) -> tuple[BaseModel, bool]:
        model_cls = STATE_MODELS[kind]
        raw = await self.store.get(STORAGE_KEYS[kind], None)
        migrated = False

        if raw is None:
            legacy = await self.store.get(LEGACY_STORAGE_KEYS[kind], None)
            if not isinstance(legacy, dict) or not legacy:
                return self._defaults[kind], False
            try:
                raw = _convert_legacy(kind, legacy)
            except (TypeError, ValueError) as e:
                logger.warning(f"旧版 {kind} 状态无法转换，使用默认值: {e}")
                return self._defaults[kind], True
            migrated = True

        try:
            model = model_cls.model_validate(raw)
        except ValidationError as e:
            error = StateValidationError(f"{kind} 状态已损坏，重置为默认值: {e.error_count()} 处错误")
            self.error_handler.report_exception(error, source="state.load")
            return self._defaults[kind], True

        if migrated:
            logger.info(f"已从旧存储键迁移 {kind} 状态: {LEGACY_STORAGE_KEYS[kind]}")
        return model, migrated

    # ----------------- 读取与订阅 ----------------
    def get_state(self, kind: str) -> dict[str, Any]:
        """返回状态副本，修改返回值不会影响缓存"""
        if kind not in self._cache:
            raise KeyError(f"未知的状态类型: {kind}")
        return self._cache[kind].model_dump()

    def get_default_state(self, kind: str) -> dict[str, Any]:
        return self._defaults[kind].model_dump()

    def subscribe(self, kind: str, callback: Subscriber) -> Callable[[], None]:
        """订阅状态变化：立即以当前状态回调一次，返回幂等的取消函数"""
        if kind not in self._subscribers:
            raise KeyError(f"未知的状态类型: {kind}")
        entry = _Subscription(callback)
        self._subscribers[kind].append(entry)
        self._call_subscriber(kind, entry, self._cache[kind])

        def unsubscribe() -> None:
            entries = self._subscribers.get(kind, [])
            if entry in entries:
                entries.remove(entry)

        return unsubscribe

    def _call_subscriber(self, kind: str, entry: _Subscription, model: BaseModel) -> None:
        try:
            entry.callback(model.model_dump())
        except Exception as e:
            self.error_handler.report_exception(e, source=f"state.subscriber.{kind}")

    def _notify(self, kind: str, model: BaseModel) -> None:
        for entry in list(self._subscribers[kind]):
            self._call_subscriber(kind, entry, model)

    # ----------------- 更新 ----------------
    async def update_state(self, kind: str, updates: dict[str, Any], immediate: bool = False) -> bool:
        """合并并校验局部更新；成功返回 True，校验失败返回 False 且不产生任何副作用"""
        if kind not in self._cache:
            logger.warning(f"未知的状态类型: {kind}")
            return False
        if not isinstance(updates, dict):
            logger.warning(f"状态更新参数必须为 dict: kind={kind}, got={type(updates).__name__}")
            return False

        model_cls = STATE_MODELS[kind]
        merged = _deep_merge(self._cache[kind].model_dump(), updates)
        try:
            model = model_cls.model_validate(merged)
        except ValidationError as e:
            self.last_validation_error = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or kind}: {err['msg']}" for err in e.errors()
            )
            logger.warning(f"{kind} 状态更新被拒绝: {self.last_validation_error}")
            return False

        self._cache[kind] = model
        self._version[kind] += 1

        write_task: asyncio.Task | None = None
        if immediate:
            self._cancel_pending(kind)
            write_task = self._start_write(kind, immediate=True)
        else:
            self._schedule_write(kind)

        self._notify(kind, model)

        if write_task is not None:
            await write_task
        return True

    async def reset_to_defaults(self) -> bool:
        """所有状态重置为默认值，立即持久化并通知订阅者"""
        tasks = []
        for kind in STATE_KINDS:
            self._cancel_pending(kind)
            self._cache[kind] = self._defaults[kind]
            self._version[kind] += 1
            tasks.append(self._start_write(kind, immediate=True))
        for kind in STATE_KINDS:
            self._notify(kind, self._cache[kind])
        results = await asyncio.gather(*tasks)
        logger.info("所有状态已重置为默认值")
        return all(results)

    # ----------------- 持久化 ----------------
    def _schedule_write(self, kind: str) -> None:
        """挂起的防抖写被原子替换而不是排队"""
        self._cancel_pending(kind)
        loop = asyncio.get_running_loop()
        self._pending[kind] = loop.call_later(self.debounce_ms / 1000, self._on_debounce_elapsed, kind)

    def _cancel_pending(self, kind: str) -> None:
        handle = self._pending.pop(kind, None)
        if handle is not None:
            handle.cancel()

    def _on_debounce_elapsed(self, kind: str) -> None:
        self._pending.pop(kind, None)
        self._start_write(kind)

    def _start_write(self, kind: str, immediate: bool = False) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self._persist(kind, immediate=immediate))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    async def _persist(self, kind: str, immediate: bool = False) -> bool:
        model = self._cache[kind]
        version = self._version[kind]
        try:
            payload = model.model_dump(mode="json", by_alias=True)
            ok = await self.store.set(STORAGE_KEYS[kind], payload, immediate=immediate)
        except Exception as e:
            logger.opt(exception=e).error(f"持久化 {kind} 状态时发生异常")
            ok = False

        if not ok:
            self._on_storage_failure(kind)
            return False

        self.write_counts[kind] += 1
        self._persisted_version[kind] = max(self._persisted_version[kind], version)
        self._storage_warned.discard(kind)
        logger.trace(f"{kind} 状态已持久化: version={version}, immediate={immediate}")
        return True

    def _on_storage_failure(self, kind: str) -> None:
        if kind in self._storage_warned:
            return
        self._storage_warned.add(kind)
        self.error_handler.report(
            ErrorType.STORAGE,
            f"{kind} 状态写入失败，本次会话改为仅内存运行",
            source="state.persist",
            kind=kind,
        )

    def is_dirty(self, kind: str) -> bool:
        return self._version[kind] > self._persisted_version[kind]

    async def flush_all(self) -> bool:
        """立即写出所有脏状态并等待进行中的写入完成"""
        for kind in list(self._pending):
            self._cancel_pending(kind)
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

        ok = True
        for kind in STATE_KINDS:
            if self.is_dirty(kind):
                ok = await self._persist(kind, immediate=True) and ok
        logger.debug(f"状态已全部落盘: ok={ok}")
        return ok

    async def close(self) -> None:
        await self.flush_all()
        for entries in self._subscribers.values():
            entries.clear()

    def get_status(self) -> dict[str, Any]:
        return {
            "initialized": self.initialized,
            "storage_available": self.store.is_available(),
            "debounce_ms": self.debounce_ms,
            "pending_writes": sorted(self._pending),
            "dirty": [kind for kind in STATE_KINDS if self.is_dirty(kind)],
            "write_counts": dict(self.write_counts),
        }


__all__ = ["StateManager"]
