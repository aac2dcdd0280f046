"""SQLite-backed conversation continuity store using aiosqlite.

The ConversationStore maps a caller-visible conversation identity to the
agent's own conversation identifier and the number of caller messages that
have already been delivered to the agent. The in-memory map is authoritative
for request handling; every mutation is written through to SQLite so a
restart does not silently fork agent conversations.

Tables:
    conversations: One row per external conversation identity.

Usage:
    >>> from models.database import ConversationStore
    >>> store = ConversationStore("./data/conversations.db")
    >>> handle = await store.get_or_create("usr_alice", model="sonnet")
    >>> handle.is_new
    True
    >>> await store.update_message_count("usr_alice", 3)
"""

import asyncio
import time
import uuid
from collections.abc import Callable, Collection
from dataclasses import asdict, dataclass, field
from pathlib import Path

import aiosqlite
import structlog

logger = structlog.get_logger(__name__)


def _new_agent_conversation_id() -> str:
    return str(uuid.uuid4())


@dataclass
class ConversationRecord:
    """Continuity state for one external conversation.

    Attributes:
        external_id: Caller-visible conversation identity (unique).
        agent_conversation_id: Identifier handed to the agent to resume context.
        model: Last requested model family.
        message_count: Caller messages already delivered to the agent.
        created_at: Unix timestamp of creation.
        last_used_at: Unix timestamp of last use; drives eviction.
    """

    external_id: str
    agent_conversation_id: str
    model: str
    message_count: int = 0
    created_at: float = field(default_factory=time.time)
    last_used_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class ConversationHandle:
    """Snapshot returned by ``get_or_create``."""

    agent_conversation_id: str
    message_count: int
    is_new: bool


class ConversationStore:
    """Durable mapping from external identity to agent conversation.

    Loading is lazy and idempotent: every public coroutine awaits ``load()``
    first, and only the first successful call reads the database. Database
    errors are logged and never propagated, so a broken disk degrades the
    store to in-memory operation instead of failing requests.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(
        self,
        db_path: str,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the store.

        Args:
            db_path: Filesystem path to the SQLite database file.
                     Parent directories are created on first load.
            clock: Source of Unix timestamps (overridable in tests).
        """
        self.db_path = db_path
        self._clock = clock
        self._records: dict[str, ConversationRecord] = {}
        self._loaded = False
        self._load_lock = asyncio.Lock()

    @property
    def loaded(self) -> bool:
        return self._loaded

    def __len__(self) -> int:
        return len(self._records)

    async def load(self) -> None:
        """Create the table if needed and read every record into memory.

        A no-op after the first call. A failed read leaves the store empty
        but marked as loaded.
        """
        if self._loaded:
            return
        async with self._load_lock:
            if self._loaded:
                return
            try:
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
                async with aiosqlite.connect(self.db_path) as db:
                    await db.execute("""
                        CREATE TABLE IF NOT EXISTS conversations (
                            external_id TEXT PRIMARY KEY,
                            agent_conversation_id TEXT NOT NULL,
                            model TEXT NOT NULL,
                            message_count INTEGER NOT NULL DEFAULT 0,
                            created_at REAL NOT NULL,
                            last_used_at REAL NOT NULL
                        )
                    """)
                    await db.commit()
                    db.row_factory = aiosqlite.Row
                    cursor = await db.execute(
                        "SELECT * FROM conversations ORDER BY created_at"
                    )
                    rows = await cursor.fetchall()
                for row in rows:
                    record = ConversationRecord(**dict(row))
                    # Records created before the load finished win
                    self._records.setdefault(record.external_id, record)
                logger.info(
                    "conversation_store_loaded",
                    db_path=self.db_path,
                    conversations=len(self._records),
                )
            except Exception as e:
                logger.error(
                    "conversation_store_load_failed",
                    db_path=self.db_path,
                    error=str(e),
                )
            self._loaded = True

    # -----------------------------------------------------------------
    # Write-through helpers
    # -----------------------------------------------------------------

    async def _persist(self, record: ConversationRecord) -> None:
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    INSERT OR REPLACE INTO conversations
                        (external_id, agent_conversation_id, model,
                         message_count, created_at, last_used_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.external_id,
                        record.agent_conversation_id,
                        record.model,
                        record.message_count,
                        record.created_at,
                        record.last_used_at,
                    ),
                )
                await db.commit()
        except Exception as e:
            logger.error(
                "conversation_persist_failed",
                conversation_id=record.external_id,
                error=str(e),
            )

    async def _remove(self, external_ids: list[str]) -> None:
        if not external_ids:
            return
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.executemany(
                    "DELETE FROM conversations WHERE external_id = ?",
                    [(external_id,) for external_id in external_ids],
                )
                await db.commit()
        except Exception as e:
            logger.error(
                "conversation_remove_failed",
                count=len(external_ids),
                error=str(e),
            )

    # -----------------------------------------------------------------
    # Public operations
    # -----------------------------------------------------------------

    async def get_or_create(self, external_id: str, model: str) -> ConversationHandle:
        """Return the record for ``external_id``, creating it if absent.

        The existence check and the insert happen without an intervening
        suspension point, so concurrent callers never create two records
        for the same identity.

        Args:
            external_id: Caller-visible conversation identity.
            model: Requested model family, remembered on the record.

        Returns:
            The agent conversation id, the committed message count, and
            whether the record was created by this call.
        """
        await self.load()
        now = self._clock()
        record = self._records.get(external_id)
        if record is not None:
            record.last_used_at = now
            record.model = model
            await self._persist(record)
            return ConversationHandle(
                agent_conversation_id=record.agent_conversation_id,
                message_count=record.message_count,
                is_new=False,
            )

        record = ConversationRecord(
            external_id=external_id,
            agent_conversation_id=_new_agent_conversation_id(),
            model=model,
            created_at=now,
            last_used_at=now,
        )
        self._records[external_id] = record
        logger.info(
            "conversation_created",
            conversation_id=external_id[:40],
            agent_conversation_id=record.agent_conversation_id,
        )
        await self._persist(record)
        return ConversationHandle(
            agent_conversation_id=record.agent_conversation_id,
            message_count=0,
            is_new=True,
        )

    async def update_message_count(self, external_id: str, count: int) -> None:
        """Commit the number of delivered messages. No-op for unknown ids."""
        await self.load()
        record = self._records.get(external_id)
        if record is None:
            logger.debug("conversation_update_missing", conversation_id=external_id[:40])
            return
        record.message_count = count
        record.last_used_at = self._clock()
        await self._persist(record)

    async def reset(self, external_id: str) -> bool:
        """Start a fresh agent conversation for ``external_id``.

        Regenerates the agent conversation id and zeroes the message count so
        the next request replays the full history.

        Returns:
            False if the identity is unknown.
        """
        await self.load()
        record = self._records.get(external_id)
        if record is None:
            return False
        record.agent_conversation_id = _new_agent_conversation_id()
        record.message_count = 0
        record.last_used_at = self._clock()
        logger.info(
            "conversation_reset",
            conversation_id=external_id[:40],
            agent_conversation_id=record.agent_conversation_id,
        )
        await self._persist(record)
        return True

    async def reset_all(self) -> int:
        """Reset every record. Returns the number of records reset."""
        await self.load()
        external_ids = list(self._records)
        for external_id in external_ids:
            await self.reset(external_id)
        return len(external_ids)

    async def delete(self, external_id: str) -> bool:
        """Remove a record entirely. Returns False if it did not exist."""
        await self.load()
        if self._records.pop(external_id, None) is None:
            return False
        logger.info("conversation_deleted", conversation_id=external_id[:40])
        await self._remove([external_id])
        return True

    def get(self, external_id: str) -> ConversationRecord | None:
        """Return a copy of the record, or None."""
        record = self._records.get(external_id)
        return ConversationRecord(**asdict(record)) if record is not None else None

    def list_all(self) -> list[ConversationRecord]:
        """Return copies of every record (insertion order, not guaranteed)."""
        return [ConversationRecord(**asdict(record)) for record in self._records.values()]

    async def evict_expired(
        self,
        ttl_seconds: float,
        exclude: Collection[str] = (),
    ) -> int:
        """Remove every record unused for longer than ``ttl_seconds``.

        Args:
            ttl_seconds: Maximum inactivity age.
            exclude: Identities that must be kept regardless of age
                (e.g. those with a request in flight).

        Returns:
            Number of records removed.
        """
        await self.load()
        cutoff = self._clock() - ttl_seconds
        expired = [
            external_id
            for external_id, record in self._records.items()
            if record.last_used_at < cutoff and external_id not in exclude
        ]
        for external_id in expired:
            del self._records[external_id]
        if expired:
            logger.info("conversations_evicted", count=len(expired))
            await self._remove(expired)
        return len(expired)
