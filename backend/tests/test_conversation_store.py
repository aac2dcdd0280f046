"""Tests for models/database.py -- the conversation continuity store.

Each test uses a throwaway SQLite file under pytest's ``tmp_path``.
"""

import asyncio
from pathlib import Path

import aiosqlite

from models.database import ConversationStore


class _Clock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


# =========================================================================
# Loading
# =========================================================================


class TestLoad:
    async def test_load_is_idempotent(self, store: ConversationStore) -> None:
        await store.load()
        await store.load()
        assert store.loaded is True
        assert len(store) == 0

    async def test_creates_parent_directory(self, tmp_path: Path) -> None:
        store = ConversationStore(str(tmp_path / "nested" / "dir" / "conv.db"))
        await store.load()
        assert (tmp_path / "nested" / "dir" / "conv.db").exists()

    async def test_records_survive_restart(self, db_path: str) -> None:
        first = ConversationStore(db_path)
        handle = await first.get_or_create("usr_alice", "opus")
        await first.update_message_count("usr_alice", 4)

        second = ConversationStore(db_path)
        await second.load()

        record = second.get("usr_alice")
        assert record is not None
        assert record.agent_conversation_id == handle.agent_conversation_id
        assert record.message_count == 4
        assert record.model == "opus"

    async def test_unreadable_database_degrades_to_memory(self, tmp_path: Path) -> None:
        # A directory where the database file should be makes every open fail
        bad_path = tmp_path / "conv.db"
        bad_path.mkdir()
        store = ConversationStore(str(bad_path))

        handle = await store.get_or_create("usr_alice", "sonnet")

        assert store.loaded is True
        assert handle.is_new is True
        assert store.get("usr_alice") is not None


# =========================================================================
# get_or_create
# =========================================================================


class TestGetOrCreate:
    async def test_new_record(self, store: ConversationStore) -> None:
        handle = await store.get_or_create("usr_alice", "sonnet")
        assert handle.is_new is True
        assert handle.message_count == 0
        assert len(handle.agent_conversation_id) == 36

    async def test_existing_record_touches_last_used(self, db_path: str) -> None:
        clock = _Clock()
        store = ConversationStore(db_path, clock=clock)
        first = await store.get_or_create("usr_alice", "sonnet")
        clock.now += 60

        second = await store.get_or_create("usr_alice", "haiku")

        assert second.is_new is False
        assert second.agent_conversation_id == first.agent_conversation_id
        record = store.get("usr_alice")
        assert record.last_used_at == clock.now
        assert record.created_at == clock.now - 60
        assert record.model == "haiku"

    async def test_concurrent_callers_share_one_record(self, store: ConversationStore) -> None:
        handles = await asyncio.gather(
            *(store.get_or_create("usr_alice", "sonnet") for _ in range(10))
        )
        assert len({h.agent_conversation_id for h in handles}) == 1
        assert sum(h.is_new for h in handles) == 1
        assert len(store) == 1


# =========================================================================
# Updates
# =========================================================================


class TestUpdates:
    async def test_update_message_count(self, store: ConversationStore) -> None:
        await store.get_or_create("usr_alice", "sonnet")
        await store.update_message_count("usr_alice", 7)
        assert store.get("usr_alice").message_count == 7

    async def test_update_unknown_is_noop(self, store: ConversationStore) -> None:
        await store.update_message_count("usr_nobody", 3)
        assert store.get("usr_nobody") is None

    async def test_reset_regenerates_id_and_zeroes_count(self, store: ConversationStore) -> None:
        handle = await store.get_or_create("usr_alice", "sonnet")
        await store.update_message_count("usr_alice", 5)

        assert await store.reset("usr_alice") is True

        record = store.get("usr_alice")
        assert record.agent_conversation_id != handle.agent_conversation_id
        assert record.message_count == 0
        assert (await store.get_or_create("usr_alice", "sonnet")).is_new is False

    async def test_reset_unknown(self, store: ConversationStore) -> None:
        assert await store.reset("usr_nobody") is False

    async def test_reset_all(self, store: ConversationStore) -> None:
        await store.get_or_create("usr_alice", "sonnet")
        await store.get_or_create("usr_bob", "sonnet")
        await store.update_message_count("usr_bob", 2)

        assert await store.reset_all() == 2
        assert all(r.message_count == 0 for r in store.list_all())

    async def test_delete_removes_persisted_row(self, db_path: str) -> None:
        store = ConversationStore(db_path)
        await store.get_or_create("usr_alice", "sonnet")

        assert await store.delete("usr_alice") is True
        assert await store.delete("usr_alice") is False

        async with aiosqlite.connect(db_path) as db:
            async with db.execute("SELECT COUNT(*) FROM conversations") as cursor:
                (count,) = await cursor.fetchone()
        assert count == 0

    async def test_get_returns_a_copy(self, store: ConversationStore) -> None:
        await store.get_or_create("usr_alice", "sonnet")
        copy = store.get("usr_alice")
        copy.message_count = 99
        assert store.get("usr_alice").message_count == 0


# =========================================================================
# Eviction
# =========================================================================


class TestEviction:
    async def test_evicts_only_idle_records(self, db_path: str) -> None:
        clock = _Clock()
        store = ConversationStore(db_path, clock=clock)
        await store.get_or_create("usr_old", "sonnet")
        clock.now += 3000
        await store.get_or_create("usr_recent", "sonnet")
        clock.now += 1000

        evicted = await store.evict_expired(ttl_seconds=3600)

        assert evicted == 1
        assert store.get("usr_old") is None
        assert store.get("usr_recent") is not None

        reloaded = ConversationStore(db_path)
        await reloaded.load()
        assert reloaded.get("usr_old") is None

    async def test_excluded_records_are_kept(self, db_path: str) -> None:
        clock = _Clock()
        store = ConversationStore(db_path, clock=clock)
        await store.get_or_create("usr_busy", "sonnet")
        clock.now += 10_000

        evicted = await store.evict_expired(ttl_seconds=3600, exclude={"usr_busy"})

        assert evicted == 0
        assert store.get("usr_busy") is not None
