"""SQLite async database — the relay's conversation and channel store.

Provides:
- Enabled channel configuration (desired connector state)
- Conversations and their messages
- Per-account provider API keys
- Channel lifecycle events
"""

from __future__ import annotations

import asyncio
import json
import secrets
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiosqlite
import structlog

logger = structlog.get_logger()

SCHEMA = """
CREATE TABLE IF NOT EXISTS user_channels (
    account_id TEXT NOT NULL,
    channel_type TEXT NOT NULL,
    connection_mode TEXT NOT NULL DEFAULT 'business',
    config TEXT NOT NULL DEFAULT '{}',
    enabled INTEGER NOT NULL DEFAULT 1,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (account_id, channel_type, connection_mode)
);

CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    account_id TEXT NOT NULL,
    channel_type TEXT NOT NULL,
    channel_peer TEXT NOT NULL,
    title TEXT,
    ai_provider TEXT,
    ai_model TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    conversation_id TEXT NOT NULL,
    role TEXT NOT NULL,
    content TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL,
    FOREIGN KEY (conversation_id) REFERENCES conversations(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS user_api_keys (
    account_id TEXT NOT NULL,
    provider TEXT NOT NULL,
    api_key TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (account_id, provider)
);

CREATE TABLE IF NOT EXISTS channel_events (
    id TEXT PRIMARY KEY,
    account_id TEXT NOT NULL,
    channel_type TEXT NOT NULL,
    event_type TEXT NOT NULL,
    payload TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_conversations_key
    ON conversations(account_id, channel_type, channel_peer, updated_at);
CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id, created_at);
CREATE INDEX IF NOT EXISTS idx_channel_events_account
    ON channel_events(account_id, channel_type, event_type);
"""

_INSERT_MESSAGE = """INSERT INTO messages (conversation_id, role, content, created_at)
                     VALUES (?, ?, ?, ?)"""


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def new_id() -> str:
    """Collision-resistant row id."""
    return "c" + secrets.token_hex(12)


@dataclass
class ChannelRow:
    """One enabled row of ``user_channels``."""

    account_id: str
    channel_type: str
    connection_mode: str
    config: dict[str, Any] = field(default_factory=dict)


@dataclass
class ConversationRow:
    id: str
    provider: str
    model: str | None
    created: bool = False


class _Transaction:
    """Statement executor bound to an open transaction; commits on exit."""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def execute(self, sql: str, params: tuple = ()) -> aiosqlite.Cursor:
        return await self._conn.execute(sql, params)


class Database:
    """Async SQLite database for the relay."""

    def __init__(
        self,
        data_dir: str,
        journal_mode: str = "WAL",
        busy_timeout_ms: int = 5000,
    ) -> None:
        self.data_dir = Path(data_dir)
        self.db_path = self.data_dir / "chatrelay.db"
        self.journal_mode = journal_mode.upper()
        if self.journal_mode not in {"WAL", "DELETE"}:
            raise ValueError(f"Unsupported SQLite journal mode: {journal_mode}")
        self.busy_timeout_ms = int(busy_timeout_ms)
        self._conn: aiosqlite.Connection | None = None
        # One shared connection: writes and transactions must not interleave.
        self._write_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Create the database and run migrations."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(str(self.db_path))
        self._conn.row_factory = aiosqlite.Row

        # WAL is great on local disks, but may fail on network filesystems.
        # Fall back to DELETE mode if WAL is unavailable.
        try:
            await self._conn.execute(f"PRAGMA journal_mode={self.journal_mode}")
        except Exception as exc:
            if self.journal_mode == "WAL":
                logger.warning(
                    "db.wal_unavailable_fallback",
                    path=str(self.db_path),
                    error=str(exc),
                )
                await self._conn.execute("PRAGMA journal_mode=DELETE")
            else:
                raise

        await self._conn.execute(f"PRAGMA busy_timeout={self.busy_timeout_ms}")
        await self._conn.execute("PRAGMA foreign_keys=ON")

        await self._conn.executescript(SCHEMA)
        await self._conn.commit()

        logger.info("db.initialized", path=str(self.db_path))

    async def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None
            logger.info("db.closed")

    async def execute(self, sql: str, params: tuple = ()) -> aiosqlite.Cursor:
        """Execute a SQL statement."""
        assert self._conn, "Database not initialized"
        async with self._write_lock:
            cursor = await self._conn.execute(sql, params)
            await self._conn.commit()
        return cursor

    async def fetch_one(self, sql: str, params: tuple = ()) -> dict[str, Any] | None:
        """Fetch a single row."""
        assert self._conn, "Database not initialized"
        cursor = await self._conn.execute(sql, params)
        row = await cursor.fetchone()
        return dict(row) if row else None

    async def fetch_all(self, sql: str, params: tuple = ()) -> list[dict[str, Any]]:
        """Fetch all rows."""
        assert self._conn, "Database not initialized"
        cursor = await self._conn.execute(sql, params)
        rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[_Transaction]:
        """Run several statements as one unit; rolled back if the block raises."""
        assert self._conn, "Database not initialized"
        async with self._write_lock:
            try:
                yield _Transaction(self._conn)
            except BaseException:
                await self._conn.rollback()
                raise
            await self._conn.commit()

    # ── Channels ────────────────────────────────────────────────────

    async def find_enabled_channels(self) -> list[ChannelRow]:
        """Return every enabled channel row with its config parsed."""
        rows = await self.fetch_all(
            """SELECT account_id, channel_type, connection_mode, config
               FROM user_channels WHERE enabled = 1
               ORDER BY account_id, channel_type, connection_mode"""
        )
        channels: list[ChannelRow] = []
        for row in rows:
            raw = row.get("config") or "{}"
            try:
                config = json.loads(raw) if isinstance(raw, str) else dict(raw)
            except (json.JSONDecodeError, TypeError, ValueError):
                logger.warning(
                    "db.channel_config_invalid",
                    account_id=row["account_id"],
                    channel_type=row["channel_type"],
                )
                config = {}
            if not isinstance(config, dict):
                config = {}
            channels.append(
                ChannelRow(
                    account_id=row["account_id"],
                    channel_type=row["channel_type"],
                    connection_mode=row.get("connection_mode") or "business",
                    config=config,
                )
            )
        return channels

    async def channel_upsert(
        self,
        account_id: str,
        channel_type: str,
        config: dict[str, Any],
        *,
        connection_mode: str = "business",
        enabled: bool = True,
    ) -> None:
        """Insert or replace a channel configuration row."""
        await self.execute(
            """INSERT OR REPLACE INTO user_channels
                    (account_id, channel_type, connection_mode, config, enabled, updated_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (
                account_id,
                channel_type,
                connection_mode,
                json.dumps(config),
                1 if enabled else 0,
                _now_iso(),
            ),
        )

    async def channel_event_add(
        self,
        account_id: str,
        channel_type: str,
        event_type: str,
        payload: dict[str, Any] | str | None = None,
    ) -> None:
        """Record a connector lifecycle or pairing event."""
        if payload is not None and not isinstance(payload, str):
            payload = json.dumps(payload)
        await self.execute(
            """INSERT INTO channel_events
                    (id, account_id, channel_type, event_type, payload, created_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (new_id(), account_id, channel_type, event_type, payload, _now_iso()),
        )

    async def channel_events_list(
        self,
        account_id: str,
        channel_type: str,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        """Most recent events first."""
        return await self.fetch_all(
            """SELECT event_type, payload, created_at FROM channel_events
               WHERE account_id = ? AND channel_type = ?
               ORDER BY created_at DESC LIMIT ?""",
            (account_id, channel_type, int(limit)),
        )

    # ── Conversations ───────────────────────────────────────────────

    async def find_or_create_conversation(
        self,
        account_id: str,
        channel_type: str,
        peer: str,
        *,
        default_provider: str,
        default_model: str | None = None,
        title: str | None = None,
    ) -> ConversationRow:
        """Most recently updated conversation for the key, created if absent.

        Read-then-insert without a lock: two concurrent first messages from
        one peer may both insert. Later lookups converge on the newest row.
        """
        row = await self.fetch_one(
            """SELECT id, ai_provider, ai_model FROM conversations
               WHERE account_id = ? AND channel_type = ? AND channel_peer = ?
               ORDER BY updated_at DESC LIMIT 1""",
            (account_id, channel_type, peer),
        )
        if row:
            return ConversationRow(
                id=row["id"],
                provider=row.get("ai_provider") or default_provider,
                model=row.get("ai_model") or default_model,
            )

        conversation_id = new_id()
        now = _now_iso()
        await self.execute(
            """INSERT INTO conversations
                    (id, account_id, channel_type, channel_peer, title,
                     ai_provider, ai_model, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                conversation_id,
                account_id,
                channel_type,
                peer,
                (title or "")[:50] or None,
                default_provider,
                default_model,
                now,
                now,
            ),
        )
        logger.info(
            "db.conversation.created",
            conversation_id=conversation_id,
            account_id=account_id,
            channel_type=channel_type,
        )
        return ConversationRow(
            id=conversation_id,
            provider=default_provider,
            model=default_model,
            created=True,
        )

    async def conversation_set_model(
        self,
        conversation_id: str,
        provider: str,
        model: str | None,
    ) -> None:
        await self.execute(
            "UPDATE conversations SET ai_provider = ?, ai_model = ? WHERE id = ?",
            (provider, model, conversation_id),
        )

    async def touch_conversation(self, conversation_id: str, at: str | None = None) -> None:
        """Advance a conversation's last-activity time."""
        await self.execute(
            "UPDATE conversations SET updated_at = ? WHERE id = ?",
            (at or _now_iso(), conversation_id),
        )

    async def count_conversations(self, account_id: str, channel_type: str, peer: str) -> int:
        row = await self.fetch_one(
            """SELECT COUNT(*) AS n FROM conversations
               WHERE account_id = ? AND channel_type = ? AND channel_peer = ?""",
            (account_id, channel_type, peer),
        )
        return int(row["n"]) if row else 0

    # ── Messages ────────────────────────────────────────────────────

    async def load_recent_messages(
        self,
        conversation_id: str,
        limit: int,
    ) -> list[dict[str, Any]]:
        """The newest ``limit`` messages, returned oldest first."""
        rows = await self.fetch_all(
            """SELECT role, content, created_at FROM messages
               WHERE conversation_id = ?
               ORDER BY created_at DESC, id DESC LIMIT ?""",
            (conversation_id, max(1, int(limit))),
        )
        rows.reverse()
        return rows

    async def append_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        at: str | None = None,
    ) -> None:
        await self.execute(_INSERT_MESSAGE, (conversation_id, role, content, at or _now_iso()))

    async def store_exchange(
        self,
        conversation_id: str,
        *,
        user_text: str,
        user_at: str,
        reply_text: str,
        reply_at: str,
    ) -> None:
        """Persist one user/assistant pair and touch the conversation atomically."""
        async with self.transaction() as tx:
            await tx.execute(_INSERT_MESSAGE, (conversation_id, "user", user_text, user_at))
            await tx.execute(_INSERT_MESSAGE, (conversation_id, "assistant", reply_text, reply_at))
            await tx.execute(
                "UPDATE conversations SET updated_at = ? WHERE id = ?",
                (reply_at, conversation_id),
            )

    # ── Credentials ─────────────────────────────────────────────────

    async def find_credential(self, account_id: str, provider: str) -> str | None:
        """Stored API key for an account/provider pair, if any."""
        row = await self.fetch_one(
            "SELECT api_key FROM user_api_keys WHERE account_id = ? AND provider = ?",
            (account_id, provider),
        )
        if not row:
            return None
        value = str(row["api_key"] or "").strip()
        return value or None

    async def api_key_set(self, account_id: str, provider: str, api_key: str) -> None:
        await self.execute(
            """INSERT OR REPLACE INTO user_api_keys (account_id, provider, api_key, updated_at)
               VALUES (?, ?, ?, ?)""",
            (account_id, provider, api_key, _now_iso()),
        )

    async def any_credential_exists(self) -> bool:
        row = await self.fetch_one("SELECT 1 AS ok FROM user_api_keys WHERE api_key != '' LIMIT 1")
        return bool(row)
