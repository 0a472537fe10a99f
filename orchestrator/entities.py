"""
Orchestration entities: the mutable per-conversation context and the
immutable decision record written once per completed pipeline run.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from .models import ActionResult, ContextMessage, Decision, Intent, PendingAction, new_id, utc_now

ACTIVE_WINDOW = timedelta(minutes=5)


class OrchestrationContext(BaseModel):
    """
    Bounded, mutable conversation state.

    `version` is the last persisted version (0 until the first save). Stores
    compare it on save and bump it by one; mutations only refresh timestamps.
    """

    id: str = Field(default_factory=new_id, frozen=True)
    conversation_id: str = Field(frozen=True)
    user_id: str = Field(frozen=True)
    channel_id: str = Field(frozen=True)
    tenant_id: str = Field(frozen=True)
    recent_messages: List[ContextMessage] = Field(default_factory=list)
    current_intent: Optional[Intent] = None
    pending_actions: List[PendingAction] = Field(default_factory=list)
    session_data: Dict[str, Any] = Field(default_factory=dict)
    last_activity: datetime = Field(default_factory=utc_now)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    version: int = 0

    @classmethod
    def create(cls, *, conversation_id: str, user_id: str, channel_id: str, tenant_id: str) -> "OrchestrationContext":
        now = utc_now()
        return cls(
            conversation_id=conversation_id,
            user_id=user_id,
            channel_id=channel_id,
            tenant_id=tenant_id,
            last_activity=now,
            created_at=now,
            updated_at=now,
        )

    @property
    def is_active(self) -> bool:
        return utc_now() - self.last_activity < ACTIVE_WINDOW

    @property
    def message_count(self) -> int:
        return len(self.recent_messages)

    def _touch(self) -> None:
        self.updated_at = utc_now()

    def add_message(self, message: ContextMessage, max_messages: int = 20) -> None:
        """Append to the sliding window, dropping the oldest entries beyond max_messages."""
        messages = self.recent_messages + [message]
        if max_messages > 0 and len(messages) > max_messages:
            messages = messages[-max_messages:]
        self.recent_messages = messages
        self.last_activity = utc_now()
        self._touch()

    def set_intent(self, intent: Intent) -> None:
        self.current_intent = intent
        self._touch()

    def clear_intent(self) -> None:
        self.current_intent = None
        self._touch()

    def add_pending_action(self, action: PendingAction) -> None:
        self.pending_actions = self.pending_actions + [action]
        self._touch()

    def remove_pending_action(self, action_id: str) -> None:
        self.pending_actions = [a for a in self.pending_actions if a.id != action_id]
        self._touch()

    def clear_pending_actions(self) -> None:
        self.pending_actions = []
        self._touch()

    def update_session_data(self, data: Dict[str, Any]) -> None:
        """Shallow, key-wise merge: nested dicts are replaced, not merged."""
        self.session_data = {**self.session_data, **data}
        self._touch()

    def clear_session_data(self) -> None:
        self.session_data = {}
        self._touch()

    def update_activity(self) -> None:
        self.last_activity = utc_now()
        self._touch()

    def prune_messages_older_than(self, older_than: datetime) -> None:
        self.recent_messages = [m for m in self.recent_messages if m.timestamp > older_than]
        self._touch()

    def messages_since(self, since: datetime) -> List[ContextMessage]:
        return [m for m in self.recent_messages if m.timestamp > since]

    def last_user_message(self) -> Optional[ContextMessage]:
        for message in reversed(self.recent_messages):
            if message.direction == "inbound":
                return message
        return None

    def last_assistant_message(self) -> Optional[ContextMessage]:
        for message in reversed(self.recent_messages):
            if message.direction == "outbound":
                return message
        return None

    def snapshot(self) -> Dict[str, Any]:
        """JSON-safe deep copy handed to collaborators; edits to it never reach the entity."""
        return self.model_dump(mode="json")


class AIDecision(BaseModel):
    """Audit record of one pipeline run. Frozen: never mutated after creation."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    context_id: str
    conversation_id: str
    tenant_id: str = ""
    intent: Intent
    decision: Decision
    executed_actions: Tuple[ActionResult, ...] = ()
    response_text: str
    tokens_used: int = 0
    model_used: str = ""
    processing_time: float = 0.0
    permissions_denied: Tuple[str, ...] = ()
    created_at: datetime = Field(default_factory=utc_now)

    @classmethod
    def create(
        cls,
        *,
        context_id: str,
        conversation_id: str,
        intent: Intent,
        decision: Decision,
        executed_actions: List[ActionResult],
        response_text: str,
        tokens_used: int,
        model_used: str,
        processing_time: float,
        permissions_denied: Optional[List[str]] = None,
        tenant_id: str = "",
    ) -> "AIDecision":
        return cls(
            context_id=context_id,
            conversation_id=conversation_id,
            tenant_id=tenant_id,
            intent=intent,
            decision=decision,
            executed_actions=tuple(executed_actions),
            response_text=response_text,
            tokens_used=tokens_used,
            model_used=model_used,
            processing_time=processing_time,
            permissions_denied=tuple(permissions_denied or ()),
        )

    @property
    def was_successful(self) -> bool:
        return all(action.success for action in self.executed_actions)

    @property
    def had_permission_issues(self) -> bool:
        return bool(self.permissions_denied)

    @property
    def total_execution_time(self) -> float:
        return sum(action.execution_time for action in self.executed_actions)

    def successful_actions(self) -> List[ActionResult]:
        return [a for a in self.executed_actions if a.success]

    def failed_actions(self) -> List[ActionResult]:
        return [a for a in self.executed_actions if not a.success]

    def action_by_name(self, function_name: str) -> Optional[ActionResult]:
        for action in self.executed_actions:
            if action.function_name == function_name:
                return action
        return None

    def to_analytics(self) -> Dict[str, Any]:
        return {
            "decision_id": self.id,
            "intent_type": self.intent.type,
            "intent_sub_type": self.intent.sub_type,
            "intent_confidence": self.intent.confidence,
            "decision_action": self.decision.action,
            "decision_confidence": self.decision.confidence,
            "tokens_used": self.tokens_used,
            "model_used": self.model_used,
            "processing_time": self.processing_time,
            "total_execution_time": self.total_execution_time,
            "successful_actions": len(self.successful_actions()),
            "failed_actions": len(self.failed_actions()),
            "had_permission_issues": self.had_permission_issues,
            "timestamp": self.created_at.isoformat(),
        }
