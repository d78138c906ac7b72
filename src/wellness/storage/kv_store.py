"""持久化键值存储

基于 aiosqlite 的单表 kv_store，值为 JSON 文本。
约定：任何方法都不向调用方抛出异常；读失败返回默认值，写失败返回 False。
本模块不做任何缓冲，防抖由 StateManager 负责。
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import aiosqlite

from wellness.logger import logger

_SQL_DIR = Path(__file__).with_name("sql")
_SCHEMA_VERSION = 1


class KeyValueStore:
    def __init__(self, db_path: str | Path) -> None:
        self.db_path = str(db_path)
        self.conn: aiosqlite.Connection | None = None
        self._available = False
        self.write_count = 0

    async def open(self) -> bool:
        """打开数据库并执行版本化的建表脚本，失败时保持不可用状态"""
        if self.conn is not None:
            return self._available
        try:
            if self.db_path != ":memory:":
                db_dir = os.path.dirname(self.db_path)
                if db_dir:
                    os.makedirs(db_dir, exist_ok=True)
            self.conn = await aiosqlite.connect(self.db_path)
            await self._migrate()
            self._available = True
            logger.info(f"键值存储已就绪: {self.db_path}")
        except (OSError, aiosqlite.Error) as e:
            logger.warning(f"键值存储不可用，将仅使用内存状态: {e}")
            await self._close_quietly()
            self._available = False
        return self._available

    async def _migrate(self) -> None:
        assert self.conn is not None
        async with self.conn.execute("PRAGMA user_version") as cursor:
            row = await cursor.fetchone()
            user_version = row[0]

        if user_version < 1:
            init_sql = (_SQL_DIR / "kv_init_v1.sql").read_text(encoding="utf-8")
            await self.conn.executescript(init_sql)
            await self.conn.execute(f"PRAGMA user_version = {_SCHEMA_VERSION}")

        # 数据库升级逻辑可以在这里继续添加
        await self.conn.commit()

    def is_available(self) -> bool:
        return self._available and self.conn is not None

    async def get(self, key: str, default: Any = None) -> Any:
        """读取键值，缺失、损坏或存储不可用时返回 default"""
        if not self.is_available():
            return default
        try:
            async with self.conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,)) as cursor:
                row = await cursor.fetchone()
        except aiosqlite.Error as e:
            logger.warning(f"读取存储失败: key={key}, error={e}")
            return default
        if row is None:
            return default
        try:
            return json.loads(row[0])
        except (TypeError, ValueError) as e:
            logger.warning(f"存储数据已损坏，使用默认值: key={key}, error={e}")
            return default

    async def set(self, key: str, value: Any, immediate: bool = False) -> bool:
        """写入键值并立即提交；immediate 仅用于日志区分防抖写与强制写"""
        if not self.is_available():
            return False
        try:
            payload = json.dumps(value, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            logger.error(f"值无法序列化为 JSON: key={key}, error={e}")
            return False
        try:
            await self.conn.execute(
                "INSERT INTO kv_store (key, value, updated_at_utc) VALUES (?, ?, CURRENT_TIMESTAMP) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at_utc = CURRENT_TIMESTAMP",
                (key, payload),
            )
            await self.conn.commit()
        except aiosqlite.Error as e:
            logger.warning(f"写入存储失败: key={key}, error={e}")
            return False
        self.write_count += 1
        logger.trace(f"写入存储: key={key}, immediate={immediate}, bytes={len(payload)}")
        return True

    async def remove(self, key: str) -> bool:
        if not self.is_available():
            return False
        try:
            await self.conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
            await self.conn.commit()
            return True
        except aiosqlite.Error as e:
            logger.warning(f"删除存储键失败: key={key}, error={e}")
            return False

    async def clear(self) -> bool:
        """清除所有数据"""
        if not self.is_available():
            return False
        try:
            await self.conn.execute("DELETE FROM kv_store")
            await self.conn.commit()
            logger.info("已清除所有存储数据")
            return True
        except aiosqlite.Error as e:
            logger.warning(f"清除存储失败: {e}")
            return False

    async def keys(self) -> list[str]:
        if not self.is_available():
            return []
        try:
            async with self.conn.execute("SELECT key FROM kv_store ORDER BY key") as cursor:
                return [row[0] async for row in cursor]
        except aiosqlite.Error as e:
            logger.warning(f"列出存储键失败: {e}")
            return []

    async def close(self) -> None:
        await self._close_quietly()
        self._available = False

    async def _close_quietly(self) -> None:
        if self.conn is None:
            return
        try:
            await self.conn.close()
        except aiosqlite.Error as e:
            logger.warning(f"关闭存储连接失败: {e}")
        finally:
            self.conn = None


__all__ = ["KeyValueStore"]
