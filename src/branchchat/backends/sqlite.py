"""SQLite conversation store.

Keeps chats, branches and messages in a single sqlite3 database file.
Message content, search payloads and tool-call records are stored as JSON
text. Each operation opens its own connection and runs in a worker thread so
the event loop is never blocked on disk I/O.
"""

import asyncio
import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from ..core import Branch, Chat, Message, dump_content, load_content
from ..errors import StoreError
from ..store import ConversationStore

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS chats (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL DEFAULT '',
    system_prompt TEXT,
    history_type TEXT NOT NULL DEFAULT 'count',
    history_count INTEGER NOT NULL DEFAULT 5,
    default_provider TEXT NOT NULL DEFAULT '',
    default_model TEXT NOT NULL DEFAULT '',
    created_at TEXT
);
CREATE TABLE IF NOT EXISTS branches (
    id TEXT PRIMARY KEY,
    chat_id TEXT NOT NULL REFERENCES chats(id),
    name TEXT,
    created_at TEXT NOT NULL,
    forked_from_message_id TEXT,
    parent_branch_id TEXT REFERENCES branches(id)
);
CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    chat_id TEXT NOT NULL REFERENCES chats(id),
    branch_id TEXT NOT NULL REFERENCES branches(id),
    role TEXT NOT NULL,
    type TEXT NOT NULL DEFAULT 'text',
    content TEXT NOT NULL,
    reasoning TEXT,
    input_tokens INTEGER,
    output_tokens INTEGER,
    total_tokens INTEGER,
    search_enabled INTEGER NOT NULL DEFAULT 0,
    search_status TEXT NOT NULL DEFAULT 'none',
    search_result TEXT,
    provider_id TEXT NOT NULL DEFAULT '',
    model TEXT NOT NULL DEFAULT '',
    error_type TEXT,
    error_message TEXT,
    tool_calls TEXT NOT NULL DEFAULT '[]',
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_branches_chat ON branches(chat_id);
CREATE INDEX IF NOT EXISTS idx_messages_branch ON messages(branch_id);
"""

MESSAGE_COLUMNS = (
    "id", "chat_id", "branch_id", "role", "type", "content", "reasoning",
    "input_tokens", "output_tokens", "total_tokens", "search_enabled",
    "search_status", "search_result", "provider_id", "model", "error_type",
    "error_message", "tool_calls", "created_at",
)


class SQLiteStore(ConversationStore):
    """Store backed by a sqlite3 database file."""

    name = "sqlite"

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._initialized = False

    # ── Chats ────────────────────────────────────────────────────────

    async def create_chat(self, chat: Chat) -> Chat:
        await self._run(
            "INSERT INTO chats VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                chat.id, chat.title, chat.system_prompt, chat.history_type,
                chat.history_count, chat.default_provider, chat.default_model,
                _ts(chat.created_at),
            ),
        )
        return chat

    async def get_chat(self, chat_id: str) -> Optional[Chat]:
        rows = await self._query("SELECT * FROM chats WHERE id = ?", (chat_id,))
        return _row_to_chat(rows[0]) if rows else None

    async def update_chat(self, chat: Chat) -> Chat:
        count = await self._run(
            """UPDATE chats SET title = ?, system_prompt = ?, history_type = ?,
               history_count = ?, default_provider = ?, default_model = ?
               WHERE id = ?""",
            (
                chat.title, chat.system_prompt, chat.history_type,
                chat.history_count, chat.default_provider, chat.default_model,
                chat.id,
            ),
        )
        if count == 0:
            raise StoreError(f"Chat not found: {chat.id}")
        return chat

    # ── Branches ─────────────────────────────────────────────────────

    async def list_branches(self, chat_id: str) -> list[Branch]:
        rows = await self._query(
            "SELECT * FROM branches WHERE chat_id = ? ORDER BY created_at, rowid",
            (chat_id,),
        )
        return [_row_to_branch(r) for r in rows]

    async def get_branch(self, branch_id: str) -> Optional[Branch]:
        rows = await self._query("SELECT * FROM branches WHERE id = ?", (branch_id,))
        return _row_to_branch(rows[0]) if rows else None

    async def insert_branch(self, branch: Branch, messages: list[Message]) -> Branch:
        await asyncio.to_thread(self._insert_branch_sync, branch, messages)
        return branch

    async def rename_branch(self, branch_id: str, name: Optional[str]) -> Branch:
        count = await self._run("UPDATE branches SET name = ? WHERE id = ?", (name, branch_id))
        if count == 0:
            raise StoreError(f"Branch not found: {branch_id}")
        return await self.get_branch(branch_id)

    # ── Messages ─────────────────────────────────────────────────────

    async def insert_message(self, message: Message) -> Message:
        await self._run(_INSERT_MESSAGE, _message_params(message))
        return message

    async def get_message(self, message_id: str) -> Optional[Message]:
        rows = await self._query("SELECT * FROM messages WHERE id = ?", (message_id,))
        return _row_to_message(rows[0]) if rows else None

    async def list_messages(self, branch_id: str) -> list[Message]:
        rows = await self._query(
            "SELECT * FROM messages WHERE branch_id = ? ORDER BY created_at, rowid",
            (branch_id,),
        )
        return [_row_to_message(r) for r in rows]

    async def update_message_search(
        self,
        message_id: str,
        search_enabled: bool,
        search_status: str,
        search_result: Optional[dict] = None,
    ) -> Message:
        count = await self._run(
            """UPDATE messages SET search_enabled = ?, search_status = ?, search_result = ?
               WHERE id = ?""",
            (
                int(search_enabled),
                search_status,
                json.dumps(search_result) if search_result is not None else None,
                message_id,
            ),
        )
        if count == 0:
            raise StoreError(f"Message not found: {message_id}")
        return await self.get_message(message_id)

    # ── Private helpers ──────────────────────────────────────────────

    def _connect(self) -> sqlite3.Connection:
        if not self._initialized:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        if not self._initialized:
            conn.executescript(SCHEMA)
            self._initialized = True
        return conn

    async def _query(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        return await asyncio.to_thread(self._query_sync, sql, params)

    async def _run(self, sql: str, params: tuple = ()) -> int:
        return await asyncio.to_thread(self._run_sync, sql, params)

    def _query_sync(self, sql: str, params: tuple) -> list[sqlite3.Row]:
        try:
            conn = self._connect()
            try:
                return conn.execute(sql, params).fetchall()
            finally:
                conn.close()
        except (sqlite3.Error, OSError) as e:
            logger.warning("Query failed on %s: %s", self.db_path, e)
            raise StoreError(str(e)) from e

    def _run_sync(self, sql: str, params: tuple) -> int:
        try:
            conn = self._connect()
            try:
                with conn:
                    cur = conn.execute(sql, params)
                return cur.rowcount
            finally:
                conn.close()
        except (sqlite3.Error, OSError) as e:
            logger.warning("Write failed on %s: %s", self.db_path, e)
            raise StoreError(str(e)) from e

    def _insert_branch_sync(self, branch: Branch, messages: list[Message]) -> None:
        try:
            conn = self._connect()
            try:
                # One transaction: the branch and its messages land together or not at all
                with conn:
                    conn.execute(
                        "INSERT INTO branches VALUES (?, ?, ?, ?, ?, ?)",
                        (
                            branch.id, branch.chat_id, branch.name,
                            _ts(branch.created_at), branch.forked_from_message_id,
                            branch.parent_branch_id,
                        ),
                    )
                    conn.executemany(_INSERT_MESSAGE, [_message_params(m) for m in messages])
            finally:
                conn.close()
        except (sqlite3.Error, OSError) as e:
            logger.warning("Failed to insert branch %s: %s", branch.id, e)
            raise StoreError(str(e)) from e


_INSERT_MESSAGE = (
    f"INSERT INTO messages ({', '.join(MESSAGE_COLUMNS)}) "
    f"VALUES ({', '.join('?' for _ in MESSAGE_COLUMNS)})"
)


def _message_params(msg: Message) -> tuple:
    return (
        msg.id, msg.chat_id, msg.branch_id, msg.role, msg.type,
        dump_content(msg.content), msg.reasoning, msg.input_tokens,
        msg.output_tokens, msg.total_tokens, int(msg.search_enabled),
        msg.search_status,
        json.dumps(msg.search_result) if msg.search_result is not None else None,
        msg.provider_id, msg.model, msg.error_type, msg.error_message,
        json.dumps(msg.tool_calls), _ts(msg.created_at),
    )


def _row_to_chat(row: sqlite3.Row) -> Chat:
    return Chat(
        id=row["id"],
        title=row["title"],
        system_prompt=row["system_prompt"],
        history_type=row["history_type"],
        history_count=row["history_count"],
        default_provider=row["default_provider"],
        default_model=row["default_model"],
        created_at=_parse_ts(row["created_at"]),
    )


def _row_to_branch(row: sqlite3.Row) -> Branch:
    return Branch(
        id=row["id"],
        chat_id=row["chat_id"],
        name=row["name"],
        created_at=_parse_ts(row["created_at"]),
        forked_from_message_id=row["forked_from_message_id"],
        parent_branch_id=row["parent_branch_id"],
    )


def _row_to_message(row: sqlite3.Row) -> Message:
    search_result = row["search_result"]
    return Message(
        id=row["id"],
        chat_id=row["chat_id"],
        branch_id=row["branch_id"],
        role=row["role"],
        type=row["type"],
        content=load_content(row["content"]),
        reasoning=row["reasoning"],
        input_tokens=row["input_tokens"],
        output_tokens=row["output_tokens"],
        total_tokens=row["total_tokens"],
        search_enabled=bool(row["search_enabled"]),
        search_status=row["search_status"],
        search_result=json.loads(search_result) if search_result else None,
        provider_id=row["provider_id"],
        model=row["model"],
        error_type=row["error_type"],
        error_message=row["error_message"],
        tool_calls=json.loads(row["tool_calls"] or "[]"),
        created_at=_parse_ts(row["created_at"]),
    )


def _ts(dt: datetime | None) -> str | None:
    """Serialize a datetime as fixed-width UTC ISO text so it sorts lexically."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(raw: str | None) -> datetime | None:
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw)
    except ValueError:
        return None
