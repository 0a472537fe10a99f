"""
Conversation store: SQLite- or Postgres-backed conversations, message history
and user channels.

conversations: (id, user_id, channel_id, tenant_id, status, created_at, last_message_at)
conversation_messages: (id, conversation_id, tenant_id, direction, content, message_type,
external_message_id, metadata, created_at)
user_channels: (id, user_id, tenant_id, channel_type, channel_identifier UNIQUE, is_verified, created_at)
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from orchestrator.models import Conversation, ConversationMessage, UserChannel, new_id, utc_now
from orchestrator.storage.db import (
    configure_sqlite,
    connect,
    ensure_sqlite_dir,
    from_json,
    from_ts,
    sql,
    to_json,
    to_ts,
)

logger = logging.getLogger("orchestrator")

WHATSAPP_PREFIX = "whatsapp:"


def normalize_identifier(identifier: str) -> str:
    """Strip the channel address prefix so 'whatsapp:+44..' and '+44..' match."""
    identifier = (identifier or "").strip()
    if identifier.startswith(WHATSAPP_PREFIX):
        return identifier[len(WHATSAPP_PREFIX):]
    return identifier


class ConversationStore:
    def init_db(self) -> None:
        ensure_sqlite_dir()
        with connect() as conn:
            configure_sqlite(conn)
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS conversations (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    channel_id TEXT NOT NULL,
                    tenant_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    last_message_at TEXT
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS conversation_messages (
                    id TEXT PRIMARY KEY,
                    conversation_id TEXT NOT NULL,
                    tenant_id TEXT NOT NULL,
                    direction TEXT NOT NULL,
                    content TEXT NOT NULL,
                    message_type TEXT NOT NULL,
                    external_message_id TEXT,
                    metadata TEXT,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (conversation_id) REFERENCES conversations(id)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS user_channels (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    tenant_id TEXT NOT NULL,
                    channel_type TEXT NOT NULL,
                    channel_identifier TEXT NOT NULL,
                    is_verified INTEGER NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS conversation_messages_conversation_idx "
                "ON conversation_messages (conversation_id)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS conversations_user_channel_idx ON conversations (user_id, channel_id)"
            )
            conn.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS user_channels_identifier_unique "
                "ON user_channels (channel_type, channel_identifier)"
            )
            conn.commit()

    # --- conversations ---

    def create_conversation(self, *, user_id: str, channel_id: str, tenant_id: str) -> Conversation:
        self.init_db()
        conversation = Conversation(user_id=user_id, channel_id=channel_id, tenant_id=tenant_id)
        with connect() as conn:
            conn.execute(
                sql(
                    "INSERT INTO conversations (id, user_id, channel_id, tenant_id, status, created_at, "
                    "last_message_at) VALUES (?, ?, ?, ?, ?, ?, ?)"
                ),
                (
                    conversation.id,
                    conversation.user_id,
                    conversation.channel_id,
                    conversation.tenant_id,
                    conversation.status,
                    to_ts(conversation.created_at),
                    None,
                ),
            )
            conn.commit()
        logger.debug("conversation created conversation_id=%s user_id=%s", conversation.id, user_id)
        return conversation

    def get_conversation(self, conversation_id: str, user_id: Optional[str] = None) -> Optional[Conversation]:
        """Return the conversation, or None when missing or owned by someone else."""
        self.init_db()
        query = "SELECT id, user_id, channel_id, tenant_id, status, created_at, last_message_at FROM conversations WHERE id = ?"
        params: List[Any] = [conversation_id]
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        with connect() as conn:
            row = conn.execute(sql(query), tuple(params)).fetchone()
        return _conversation_from_row(row) if row is not None else None

    def get_or_create_conversation(self, *, user_id: str, channel_id: str, tenant_id: str) -> Conversation:
        """Reuse the most recent active conversation for (user, channel), else start one."""
        self.init_db()
        with connect() as conn:
            row = conn.execute(
                sql(
                    "SELECT id, user_id, channel_id, tenant_id, status, created_at, last_message_at "
                    "FROM conversations WHERE user_id = ? AND channel_id = ? AND status = 'active' "
                    "ORDER BY created_at DESC LIMIT 1"
                ),
                (user_id, channel_id),
            ).fetchone()
        if row is not None:
            return _conversation_from_row(row)
        return self.create_conversation(user_id=user_id, channel_id=channel_id, tenant_id=tenant_id)

    def close_conversation(self, conversation_id: str) -> bool:
        self.init_db()
        with connect() as conn:
            cur = conn.execute(
                sql("UPDATE conversations SET status = 'closed' WHERE id = ?"),
                (conversation_id,),
            )
            conn.commit()
            return cur.rowcount > 0

    # --- messages ---

    def create_message(
        self,
        *,
        conversation_id: str,
        direction: str,
        content: str,
        tenant_id: str = "",
        message_type: str = "text",
        external_message_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ConversationMessage:
        """Append one message to history and bump the conversation's last_message_at."""
        message = ConversationMessage(
            conversation_id=conversation_id,
            tenant_id=tenant_id,
            direction=direction,
            content=content,
            message_type=message_type,
            external_message_id=external_message_id,
            metadata=metadata or {},
        )
        return self.create_messages([message])[0]

    def create_messages(self, messages: List[ConversationMessage]) -> List[ConversationMessage]:
        """Append several messages in one transaction.

        Either every row lands and each conversation's last_message_at moves to its
        newest message, or nothing is written.
        """
        self.init_db()
        latest: Dict[str, Any] = {}
        with connect() as conn:
            for message in messages:
                conn.execute(
                    sql(
                        "INSERT INTO conversation_messages (id, conversation_id, tenant_id, direction, content, "
                        "message_type, external_message_id, metadata, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)"
                    ),
                    (
                        message.id,
                        message.conversation_id,
                        message.tenant_id,
                        message.direction,
                        message.content,
                        message.message_type,
                        message.external_message_id,
                        to_json(message.metadata),
                        to_ts(message.created_at),
                    ),
                )
                current = latest.get(message.conversation_id)
                if current is None or message.created_at > current:
                    latest[message.conversation_id] = message.created_at
            for conversation_id, last_message_at in latest.items():
                conn.execute(
                    sql("UPDATE conversations SET last_message_at = ? WHERE id = ?"),
                    (to_ts(last_message_at), conversation_id),
                )
            conn.commit()
        return messages

    def list_messages(self, conversation_id: str, limit: int = 100) -> List[ConversationMessage]:
        """Oldest first."""
        self.init_db()
        with connect() as conn:
            rows = conn.execute(
                sql(
                    "SELECT id, conversation_id, tenant_id, direction, content, message_type, "
                    "external_message_id, metadata, created_at FROM conversation_messages "
                    "WHERE conversation_id = ? ORDER BY created_at, id LIMIT ?"
                ),
                (conversation_id, limit),
            ).fetchall()
        return [_message_from_row(r) for r in rows]

    # --- channels ---

    def register_channel(
        self,
        *,
        user_id: str,
        tenant_id: str,
        channel_identifier: str,
        channel_type: str = "whatsapp",
        is_verified: bool = False,
    ) -> UserChannel:
        self.init_db()
        channel = UserChannel(
            id=new_id(),
            user_id=user_id,
            tenant_id=tenant_id,
            channel_type=channel_type,
            channel_identifier=normalize_identifier(channel_identifier),
            is_verified=is_verified,
            created_at=utc_now(),
        )
        with connect() as conn:
            conn.execute(
                sql(
                    "INSERT INTO user_channels (id, user_id, tenant_id, channel_type, channel_identifier, "
                    "is_verified, created_at) VALUES (?, ?, ?, ?, ?, ?, ?)"
                ),
                (
                    channel.id,
                    channel.user_id,
                    channel.tenant_id,
                    channel.channel_type,
                    channel.channel_identifier,
                    1 if channel.is_verified else 0,
                    to_ts(channel.created_at),
                ),
            )
            conn.commit()
        logger.info("channel registered channel_id=%s user_id=%s type=%s", channel.id, user_id, channel_type)
        return channel

    def verify_channel(self, channel_id: str) -> bool:
        self.init_db()
        with connect() as conn:
            cur = conn.execute(sql("UPDATE user_channels SET is_verified = 1 WHERE id = ?"), (channel_id,))
            conn.commit()
            return cur.rowcount > 0

    def find_channel_by_identifier(self, identifier: str, channel_type: str = "whatsapp") -> Optional[UserChannel]:
        self.init_db()
        with connect() as conn:
            row = conn.execute(
                sql(
                    "SELECT id, user_id, tenant_id, channel_type, channel_identifier, is_verified, created_at "
                    "FROM user_channels WHERE channel_type = ? AND channel_identifier = ?"
                ),
                (channel_type, normalize_identifier(identifier)),
            ).fetchone()
        if row is None:
            return None
        return UserChannel(
            id=row["id"],
            user_id=row["user_id"],
            tenant_id=row["tenant_id"],
            channel_type=row["channel_type"],
            channel_identifier=row["channel_identifier"],
            is_verified=bool(row["is_verified"]),
            created_at=from_ts(row["created_at"]),
        )


def _conversation_from_row(row: Any) -> Conversation:
    return Conversation(
        id=row["id"],
        user_id=row["user_id"],
        channel_id=row["channel_id"],
        tenant_id=row["tenant_id"],
        status=row["status"],
        created_at=from_ts(row["created_at"]),
        last_message_at=from_ts(row["last_message_at"]) if row["last_message_at"] else None,
    )


def _message_from_row(row: Any) -> ConversationMessage:
    return ConversationMessage(
        id=row["id"],
        conversation_id=row["conversation_id"],
        tenant_id=row["tenant_id"],
        direction=row["direction"],
        content=row["content"],
        message_type=row["message_type"],
        external_message_id=row["external_message_id"],
        metadata=from_json(row["metadata"], {}) or {},
        created_at=from_ts(row["created_at"]),
    )
