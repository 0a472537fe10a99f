"""
Decision store: append-only audit log of AI decisions.

ai_decisions: (id, context_id, conversation_id, tenant_id, intent, decision,
executed_actions, response_text, tokens_used, model_used, processing_time,
permissions_denied, created_at)

There is no update or delete path; saving an existing id raises.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from orchestrator.entities import AIDecision
from orchestrator.models import ActionResult, Decision, Intent
from orchestrator.storage.db import (
    configure_sqlite,
    connect,
    ensure_sqlite_dir,
    from_json,
    from_ts,
    is_postgres,
    sql,
    to_json,
    to_ts,
)

logger = logging.getLogger("orchestrator")

_COLUMNS = (
    "id, context_id, conversation_id, tenant_id, intent, decision, executed_actions, response_text, "
    "tokens_used, model_used, processing_time, permissions_denied, created_at"
)


class DecisionStore:
    def init_db(self) -> None:
        ensure_sqlite_dir()
        real_type = "DOUBLE PRECISION" if is_postgres() else "REAL"
        with connect() as conn:
            configure_sqlite(conn)
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS ai_decisions (
                    id TEXT PRIMARY KEY,
                    context_id TEXT NOT NULL,
                    conversation_id TEXT NOT NULL,
                    tenant_id TEXT NOT NULL,
                    intent TEXT NOT NULL,
                    decision TEXT NOT NULL,
                    executed_actions TEXT NOT NULL,
                    response_text TEXT NOT NULL,
                    tokens_used INTEGER NOT NULL,
                    model_used TEXT NOT NULL,
                    processing_time {real_type} NOT NULL,
                    permissions_denied TEXT,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS ai_decisions_context_idx ON ai_decisions (context_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS ai_decisions_conversation_idx ON ai_decisions (conversation_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS ai_decisions_created_at_idx ON ai_decisions (created_at)")
            conn.execute("CREATE INDEX IF NOT EXISTS ai_decisions_model_idx ON ai_decisions (model_used)")
            conn.commit()

    def save(self, decision: AIDecision) -> AIDecision:
        """Append one decision. A duplicate id surfaces as the driver's IntegrityError."""
        self.init_db()
        with connect() as conn:
            conn.execute(
                sql(f"INSERT INTO ai_decisions ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)"),
                (
                    decision.id,
                    decision.context_id,
                    decision.conversation_id,
                    decision.tenant_id,
                    to_json(decision.intent.model_dump(mode="json")),
                    to_json(decision.decision.model_dump(mode="json")),
                    to_json([a.model_dump(mode="json") for a in decision.executed_actions]),
                    decision.response_text,
                    decision.tokens_used,
                    decision.model_used,
                    decision.processing_time,
                    to_json(list(decision.permissions_denied)),
                    to_ts(decision.created_at),
                ),
            )
            conn.commit()
        return decision

    def find_by_id(self, decision_id: str) -> Optional[AIDecision]:
        self.init_db()
        with connect() as conn:
            row = conn.execute(sql(f"SELECT {_COLUMNS} FROM ai_decisions WHERE id = ?"), (decision_id,)).fetchone()
        return _from_row(row) if row is not None else None

    def find_by_conversation_id(self, conversation_id: str, limit: int = 50) -> List[AIDecision]:
        decisions, _ = self.find_by_filters(conversation_id=conversation_id, limit=limit)
        return decisions

    def find_by_context_id(self, context_id: str) -> List[AIDecision]:
        self.init_db()
        with connect() as conn:
            rows = conn.execute(
                sql(f"SELECT {_COLUMNS} FROM ai_decisions WHERE context_id = ? ORDER BY created_at DESC"),
                (context_id,),
            ).fetchall()
        return [_from_row(r) for r in rows]

    def find_by_filters(
        self,
        *,
        conversation_id: Optional[str] = None,
        context_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        model_used: Optional[str] = None,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[AIDecision], int]:
        """Newest first. Returns (page, total matching rows)."""
        where, params = _where_clause(
            conversation_id=conversation_id,
            context_id=context_id,
            tenant_id=tenant_id,
            model_used=model_used,
            from_date=from_date,
            to_date=to_date,
        )
        self.init_db()
        with connect() as conn:
            total_row = conn.execute(sql(f"SELECT COUNT(*) AS total FROM ai_decisions{where}"), params).fetchone()
            rows = conn.execute(
                sql(f"SELECT {_COLUMNS} FROM ai_decisions{where} ORDER BY created_at DESC LIMIT ? OFFSET ?"),
                (*params, limit, offset),
            ).fetchall()
        return [_from_row(r) for r in rows], int(total_row["total"])

    def token_usage_by_model(
        self, tenant_id: str, from_date: datetime, to_date: datetime
    ) -> List[Dict[str, Any]]:
        where, params = _where_clause(tenant_id=tenant_id, from_date=from_date, to_date=to_date)
        self.init_db()
        with connect() as conn:
            rows = conn.execute(
                sql(
                    "SELECT model_used, SUM(tokens_used) AS total_tokens, COUNT(*) AS total_decisions "
                    f"FROM ai_decisions{where} GROUP BY model_used ORDER BY model_used"
                ),
                params,
            ).fetchall()
        return [
            {
                "model": r["model_used"],
                "total_tokens": int(r["total_tokens"] or 0),
                "total_decisions": int(r["total_decisions"]),
            }
            for r in rows
        ]

    def intent_distribution(
        self, tenant_id: str, from_date: datetime, to_date: datetime
    ) -> List[Dict[str, Any]]:
        # Intent is stored as JSON text; group in Python to stay dialect-neutral.
        where, params = _where_clause(tenant_id=tenant_id, from_date=from_date, to_date=to_date)
        self.init_db()
        with connect() as conn:
            rows = conn.execute(sql(f"SELECT intent FROM ai_decisions{where}"), params).fetchall()

        counts: Dict[Tuple[str, Optional[str]], int] = {}
        for r in rows:
            intent = from_json(r["intent"], {}) or {}
            key = (str(intent.get("type", "unknown")), intent.get("sub_type"))
            counts[key] = counts.get(key, 0) + 1
        return [
            {"intent_type": intent_type, "intent_sub_type": sub_type, "count": count}
            for (intent_type, sub_type), count in sorted(counts.items(), key=lambda kv: (-kv[1], kv[0][0]))
        ]


def _where_clause(
    *,
    conversation_id: Optional[str] = None,
    context_id: Optional[str] = None,
    tenant_id: Optional[str] = None,
    model_used: Optional[str] = None,
    from_date: Optional[datetime] = None,
    to_date: Optional[datetime] = None,
) -> Tuple[str, Tuple[Any, ...]]:
    conditions: List[str] = []
    params: List[Any] = []
    for column, value in (
        ("conversation_id", conversation_id),
        ("context_id", context_id),
        ("tenant_id", tenant_id),
        ("model_used", model_used),
    ):
        if value is not None:
            conditions.append(f"{column} = ?")
            params.append(value)
    if from_date is not None:
        conditions.append("created_at >= ?")
        params.append(to_ts(from_date))
    if to_date is not None:
        conditions.append("created_at <= ?")
        params.append(to_ts(to_date))
    where = (" WHERE " + " AND ".join(conditions)) if conditions else ""
    return where, tuple(params)


def _from_row(row: Any) -> AIDecision:
    return AIDecision(
        id=row["id"],
        context_id=row["context_id"],
        conversation_id=row["conversation_id"],
        tenant_id=row["tenant_id"],
        intent=Intent.model_validate(from_json(row["intent"], {})),
        decision=Decision.model_validate(from_json(row["decision"], {})),
        executed_actions=tuple(ActionResult.model_validate(a) for a in from_json(row["executed_actions"], [])),
        response_text=row["response_text"],
        tokens_used=int(row["tokens_used"]),
        model_used=row["model_used"],
        processing_time=float(row["processing_time"]),
        permissions_denied=tuple(from_json(row["permissions_denied"], []) or []),
        created_at=from_ts(row["created_at"]),
    )
