"""
Context store: SQLite- or Postgres-backed orchestration contexts.

orchestration_contexts: (id, conversation_id UNIQUE, user_id, channel_id, tenant_id,
recent_messages, current_intent, pending_actions, session_data, last_activity,
created_at, updated_at, version)

Saves are compare-and-swap on `version`: a save built from a stale version is
rejected with ContextVersionConflict instead of overwriting the newer row.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, List, Optional

from orchestrator.entities import OrchestrationContext
from orchestrator.errors import ContextVersionConflict
from orchestrator.models import ContextMessage, Intent, PendingAction
from orchestrator.storage.db import (
    configure_sqlite,
    connect,
    ensure_sqlite_dir,
    from_json,
    from_ts,
    integrity_errors,
    sql,
    to_json,
    to_ts,
)

logger = logging.getLogger("orchestrator")

_COLUMNS = (
    "id, conversation_id, user_id, channel_id, tenant_id, recent_messages, current_intent, "
    "pending_actions, session_data, last_activity, created_at, updated_at, version"
)


class ContextStore:
    def init_db(self) -> None:
        """Create the contexts table. Idempotent."""
        ensure_sqlite_dir()
        with connect() as conn:
            configure_sqlite(conn)
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS orchestration_contexts (
                    id TEXT PRIMARY KEY,
                    conversation_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    channel_id TEXT NOT NULL,
                    tenant_id TEXT NOT NULL,
                    recent_messages TEXT NOT NULL,
                    current_intent TEXT,
                    pending_actions TEXT NOT NULL,
                    session_data TEXT NOT NULL,
                    last_activity TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    version INTEGER NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS orchestration_contexts_conversation_unique "
                "ON orchestration_contexts (conversation_id)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS orchestration_contexts_user_idx ON orchestration_contexts (user_id)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS orchestration_contexts_last_activity_idx "
                "ON orchestration_contexts (last_activity)"
            )
            conn.commit()

    def find_by_id(self, context_id: str) -> Optional[OrchestrationContext]:
        self.init_db()
        with connect() as conn:
            row = conn.execute(
                sql(f"SELECT {_COLUMNS} FROM orchestration_contexts WHERE id = ?"),
                (context_id,),
            ).fetchone()
        return _from_row(row) if row is not None else None

    def find_by_conversation_id(self, conversation_id: str) -> Optional[OrchestrationContext]:
        self.init_db()
        with connect() as conn:
            row = conn.execute(
                sql(f"SELECT {_COLUMNS} FROM orchestration_contexts WHERE conversation_id = ?"),
                (conversation_id,),
            ).fetchone()
        return _from_row(row) if row is not None else None

    def find_by_user_id(self, user_id: str, limit: int = 10) -> List[OrchestrationContext]:
        self.init_db()
        with connect() as conn:
            rows = conn.execute(
                sql(
                    f"SELECT {_COLUMNS} FROM orchestration_contexts WHERE user_id = ? "
                    "ORDER BY last_activity DESC LIMIT ?"
                ),
                (user_id, limit),
            ).fetchall()
        return [_from_row(r) for r in rows]

    def find_inactive(self, older_than: datetime) -> List[OrchestrationContext]:
        self.init_db()
        with connect() as conn:
            rows = conn.execute(
                sql(
                    f"SELECT {_COLUMNS} FROM orchestration_contexts WHERE last_activity < ? "
                    "ORDER BY last_activity DESC"
                ),
                (to_ts(older_than),),
            ).fetchall()
        return [_from_row(r) for r in rows]

    def save(self, context: OrchestrationContext) -> OrchestrationContext:
        """
        Insert (version 0) or compare-and-swap update; bumps `context.version` by one.

        Raises ContextVersionConflict when the stored version moved on, or when a
        context for the same conversation was created concurrently.
        """
        self.init_db()
        with connect() as conn:
            if context.version == 0:
                try:
                    conn.execute(
                        sql(
                            f"INSERT INTO orchestration_contexts ({_COLUMNS}) "
                            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)"
                        ),
                        (
                            context.id,
                            context.conversation_id,
                            context.user_id,
                            context.channel_id,
                            context.tenant_id,
                            *_mutable_values(context),
                            to_ts(context.created_at),
                            to_ts(context.updated_at),
                            1,
                        ),
                    )
                except integrity_errors() as exc:
                    raise ContextVersionConflict(
                        context.id,
                        0,
                        f"Context for conversation {context.conversation_id} already exists",
                    ) from exc
                new_version = 1
            else:
                cur = conn.execute(
                    sql(
                        "UPDATE orchestration_contexts SET recent_messages = ?, current_intent = ?, "
                        "pending_actions = ?, session_data = ?, last_activity = ?, updated_at = ?, "
                        "version = version + 1 WHERE id = ? AND version = ?"
                    ),
                    (
                        *_mutable_values(context),
                        to_ts(context.updated_at),
                        context.id,
                        context.version,
                    ),
                )
                if cur.rowcount != 1:
                    raise ContextVersionConflict(context.id, context.version)
                new_version = context.version + 1
            conn.commit()

        context.version = new_version
        logger.debug("context saved context_id=%s version=%d", context.id, new_version)
        return context

    def delete(self, context_id: str) -> bool:
        """Maintenance only; the pipeline never deletes contexts."""
        self.init_db()
        with connect() as conn:
            cur = conn.execute(sql("DELETE FROM orchestration_contexts WHERE id = ?"), (context_id,))
            conn.commit()
            return cur.rowcount > 0

    def delete_inactive(self, older_than: datetime) -> int:
        self.init_db()
        with connect() as conn:
            cur = conn.execute(
                sql("DELETE FROM orchestration_contexts WHERE last_activity < ?"),
                (to_ts(older_than),),
            )
            conn.commit()
            deleted = cur.rowcount
        logger.info("deleted inactive contexts count=%d older_than=%s", deleted, older_than.isoformat())
        return deleted


def _mutable_values(context: OrchestrationContext) -> tuple:
    return (
        to_json([m.model_dump(mode="json") for m in context.recent_messages]),
        to_json(context.current_intent.model_dump(mode="json")) if context.current_intent else None,
        to_json([a.model_dump(mode="json") for a in context.pending_actions]),
        to_json(context.session_data),
        to_ts(context.last_activity),
    )


def _from_row(row: Any) -> OrchestrationContext:
    intent_raw = from_json(row["current_intent"])
    return OrchestrationContext(
        id=row["id"],
        conversation_id=row["conversation_id"],
        user_id=row["user_id"],
        channel_id=row["channel_id"],
        tenant_id=row["tenant_id"],
        recent_messages=[ContextMessage.model_validate(m) for m in from_json(row["recent_messages"], [])],
        current_intent=Intent.model_validate(intent_raw) if intent_raw else None,
        pending_actions=[PendingAction.model_validate(a) for a in from_json(row["pending_actions"], [])],
        session_data=from_json(row["session_data"], {}),
        last_activity=from_ts(row["last_activity"]),
        created_at=from_ts(row["created_at"]),
        updated_at=from_ts(row["updated_at"]),
        version=int(row["version"]),
    )
