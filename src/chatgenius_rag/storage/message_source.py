"""
Message Source Connectors

Read-only access to the chat application's message history.

Two connectors:
- SQLiteMessageSource: the relational message store (messages + container members)
- SlackMessageSource: channels the Slack bot is a member of

Both return messages in stable order (created_at ascending, then id) so
offset/limit pagination is repeatable.
"""

import os
import sqlite3
from datetime import datetime, timezone
from typing import Iterable, Optional, Protocol

from slack_sdk.errors import SlackApiError
from slack_sdk.web.async_client import AsyncWebClient

from ..models import SourceMessage
from ..utils.errors import MessageSourceError
from ..utils.logger import get_logger

logger = get_logger(__name__)


# Schema of the external message store. The service never writes to it;
# it is used to provision local and test stores.
MESSAGE_STORE_SCHEMA = """
    CREATE TABLE IF NOT EXISTS messages (
        id TEXT PRIMARY KEY,
        content TEXT,
        sender_id TEXT,
        channel_id TEXT,
        dm_id TEXT,
        type TEXT NOT NULL DEFAULT 'user',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS container_members (
        container_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        PRIMARY KEY (container_id, user_id)
    );

    CREATE INDEX IF NOT EXISTS idx_messages_created ON messages(created_at);
    CREATE INDEX IF NOT EXISTS idx_members_user ON container_members(user_id);
"""


class MessageSource(Protocol):
    """Interface over the external message store."""

    async def fetch_messages(self, offset: int, limit: int) -> list[SourceMessage]:
        """Page through messages ordered by created_at ascending."""
        ...

    async def get_messages(self, ids: list[str]) -> list[SourceMessage]:
        """Fetch specific messages; unknown ids are skipped."""
        ...

    async def existing_ids(self, ids: Iterable[str]) -> set[str]:
        """Return the subset of ids that still exist."""
        ...

    async def visible_containers(self, user_id: str) -> set[str]:
        """Channels and DMs the user may read."""
        ...


def parse_timestamp(value) -> datetime:
    """Parse an ISO timestamp, assuming UTC when no offset is given."""
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


# ======================
# SQLITE MESSAGE STORE
# ======================

class SQLiteMessageSource:
    """
    Message source backed by the relational message store.

    System messages are excluded; they are never embedded.
    """

    _COLUMNS = "id, content, sender_id, channel_id, dm_id, created_at, updated_at"

    def __init__(self, path: str):
        self.path = path

    def _connect(self) -> sqlite3.Connection:
        if self.path != ":memory:" and not os.path.exists(self.path):
            raise MessageSourceError("connect", f"message store not found at {self.path}")
        try:
            conn = sqlite3.connect(self.path)
        except sqlite3.Error as e:
            raise MessageSourceError("connect", str(e)) from e
        conn.row_factory = sqlite3.Row
        return conn

    def _query(self, sql: str, params: tuple) -> list[sqlite3.Row]:
        conn = self._connect()
        try:
            return conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise MessageSourceError("query", str(e)) from e
        finally:
            conn.close()

    @staticmethod
    def _to_message(row: sqlite3.Row) -> SourceMessage:
        created_at = parse_timestamp(row["created_at"])
        return SourceMessage(
            id=str(row["id"]),
            text=row["content"],
            author_id=row["sender_id"] or "",
            created_at=created_at,
            updated_at=parse_timestamp(row["updated_at"]) if row["updated_at"] else created_at,
            container_id=row["channel_id"] or row["dm_id"] or "",
        )

    async def fetch_messages(self, offset: int, limit: int) -> list[SourceMessage]:
        rows = self._query(
            f"""SELECT {self._COLUMNS} FROM messages
                WHERE type != 'system'
                ORDER BY created_at ASC, id ASC
                LIMIT ? OFFSET ?""",
            (limit, offset),
        )
        return [self._to_message(row) for row in rows]

    async def get_messages(self, ids: list[str]) -> list[SourceMessage]:
        if not ids:
            return []
        placeholders = ",".join("?" for _ in ids)
        rows = self._query(
            f"""SELECT {self._COLUMNS} FROM messages
                WHERE id IN ({placeholders}) AND type != 'system'
                ORDER BY created_at ASC, id ASC""",
            tuple(ids),
        )
        return [self._to_message(row) for row in rows]

    async def existing_ids(self, ids: Iterable[str]) -> set[str]:
        ids = list(ids)
        found: set[str] = set()
        # Stay under SQLite's bound-parameter limit
        for start in range(0, len(ids), 500):
            batch = ids[start:start + 500]
            placeholders = ",".join("?" for _ in batch)
            rows = self._query(
                f"SELECT id FROM messages WHERE id IN ({placeholders})",
                tuple(batch),
            )
            found.update(str(row["id"]) for row in rows)
        return found

    async def visible_containers(self, user_id: str) -> set[str]:
        rows = self._query(
            "SELECT container_id FROM container_members WHERE user_id = ?",
            (user_id,),
        )
        return {row["container_id"] for row in rows}


# ======================
# SLACK
# ======================

def slack_ts_to_datetime(ts: str) -> datetime:
    """Convert a Slack timestamp ("1700000000.000100") to an aware datetime."""
    return datetime.fromtimestamp(float(ts), tz=timezone.utc)


class SlackMessageSource:
    """
    Message source over the channels a Slack bot is a member of.

    Message ids are "<channel_id>_<ts>". An edit moves updated_at to the
    edit timestamp; the content hash picks up the new text.

    The full history is loaded when a scan starts at offset 0 and reused
    for the following pages of the same scan and for the end-of-run
    existence check.
    """

    def __init__(self, web_client: AsyncWebClient, history_limit: int = 200):
        self._client = web_client
        self.history_limit = history_limit
        self._cache: Optional[list[SourceMessage]] = None

    async def _get_channels(self) -> list[dict]:
        channels: list[dict] = []
        cursor = None
        while True:
            kwargs = {"types": "public_channel,private_channel", "limit": 200}
            if cursor:
                kwargs["cursor"] = cursor
            result = await self._client.conversations_list(**kwargs)
            channels.extend(c for c in result.get("channels", []) if c.get("is_member"))
            cursor = (result.get("response_metadata") or {}).get("next_cursor")
            if not cursor:
                return channels

    async def _get_history(self, channel_id: str) -> list[dict]:
        messages: list[dict] = []
        cursor = None
        while True:
            kwargs = {"channel": channel_id, "limit": self.history_limit}
            if cursor:
                kwargs["cursor"] = cursor
            result = await self._client.conversations_history(**kwargs)
            messages.extend(result.get("messages", []))
            cursor = (result.get("response_metadata") or {}).get("next_cursor")
            if not cursor:
                return messages

    @staticmethod
    def _to_message(channel_id: str, msg: dict) -> SourceMessage:
        created_at = slack_ts_to_datetime(msg["ts"])
        edited = msg.get("edited") or {}
        return SourceMessage(
            id=f"{channel_id}_{msg['ts']}",
            text=msg.get("text", ""),
            author_id=msg.get("user", ""),
            created_at=created_at,
            updated_at=slack_ts_to_datetime(edited["ts"]) if edited.get("ts") else created_at,
            container_id=channel_id,
        )

    async def _load(self) -> list[SourceMessage]:
        try:
            channels = await self._get_channels()
            messages = []
            for channel in channels:
                history = await self._get_history(channel["id"])
                messages.extend(
                    self._to_message(channel["id"], m)
                    for m in history
                    # Skip system messages (joins, topic changes, bots)
                    if m.get("type") == "message" and not m.get("subtype") and m.get("user")
                )
        except SlackApiError as e:
            raise MessageSourceError("history", str(e)) from e

        messages.sort(key=lambda m: (m.created_at, m.id))
        logger.debug(f"Loaded {len(messages)} Slack messages from {len(channels)} channels")
        return messages

    async def fetch_messages(self, offset: int, limit: int) -> list[SourceMessage]:
        if offset == 0 or self._cache is None:
            self._cache = await self._load()
        return self._cache[offset:offset + limit]

    async def get_messages(self, ids: list[str]) -> list[SourceMessage]:
        if self._cache is None:
            self._cache = await self._load()
        wanted = set(ids)
        return [m for m in self._cache if m.id in wanted]

    async def existing_ids(self, ids: Iterable[str]) -> set[str]:
        # The scan that started this run already refreshed the cache
        if self._cache is None:
            self._cache = await self._load()
        present = {m.id for m in self._cache}
        return {i for i in ids if i in present}

    async def visible_containers(self, user_id: str) -> set[str]:
        containers: set[str] = set()
        cursor = None
        try:
            while True:
                kwargs = {
                    "user": user_id,
                    "types": "public_channel,private_channel,mpim,im",
                    "limit": 200,
                }
                if cursor:
                    kwargs["cursor"] = cursor
                result = await self._client.users_conversations(**kwargs)
                containers.update(c["id"] for c in result.get("channels", []))
                cursor = (result.get("response_metadata") or {}).get("next_cursor")
                if not cursor:
                    return containers
        except SlackApiError as e:
            raise MessageSourceError("membership", str(e)) from e
