import pytest

from wellness.storage.kv_store import KeyValueStore


class TestKeyValueStore:
    @pytest.mark.asyncio
    async def test_set_then_get(self, store):
        assert await store.set("water-state-v2", {"isActive": True, "nested": {"a": [1, 2]}})
        assert await store.get("water-state-v2") == {"isActive": True, "nested": {"a": [1, 2]}}

    @pytest.mark.asyncio
    async def test_missing_key_returns_default(self, store):
        assert await store.get("nope") is None
        assert await store.get("nope", {"x": 1}) == {"x": 1}

    @pytest.mark.asyncio
    async def test_overwrite_counts_writes(self, store):
        await store.set("k", 1)
        await store.set("k", 2, immediate=True)
        assert await store.get("k") == 2
        assert store.write_count == 2

    @pytest.mark.asyncio
    async def test_remove_and_clear(self, store):
        await store.set("a", 1)
        await store.set("b", 2)
        assert await store.keys() == ["a", "b"]

        assert await store.remove("a")
        assert await store.keys() == ["b"]

        assert await store.clear()
        assert await store.keys() == []

    @pytest.mark.asyncio
    async def test_schema_version_recorded(self, store):
        async with store.conn.execute("PRAGMA user_version") as cursor:
            row = await cursor.fetchone()
        assert row[0] == 1

    @pytest.mark.asyncio
    async def test_corrupt_value_returns_default(self, store):
        await store.conn.execute("INSERT INTO kv_store (key, value) VALUES (?, ?)", ("bad", "{not json"))
        await store.conn.commit()
        assert await store.get("bad", "fallback") == "fallback"

    @pytest.mark.asyncio
    async def test_values_survive_reopen(self, db_path):
        first = KeyValueStore(db_path)
        assert await first.open()
        await first.set("standup-state-v2", {"isActive": False})
        await first.close()

        second = KeyValueStore(db_path)
        assert await second.open()
        try:
            assert await second.get("standup-state-v2") == {"isActive": False}
        finally:
            await second.close()


class TestUnavailableStore:
    @pytest.mark.asyncio
    async def test_open_failure_leaves_store_unavailable(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        store = KeyValueStore(blocker / "wellness.db")

        assert await store.open() is False
        assert not store.is_available()
        assert await store.set("k", 1) is False
        assert await store.get("k", "default") == "default"
        assert await store.keys() == []

    @pytest.mark.asyncio
    async def test_closed_store_rejects_writes(self, store):
        await store.close()
        assert not store.is_available()
        assert await store.set("k", 1) is False
