"""
Data models for the orchestration runtime.

Defines intents, decisions, action results, permission sets, channel
requests/responses and the conversation records the pipeline works with.
Do not duplicate these definitions elsewhere.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

INTENT_TYPES = ("question", "document_submission", "command", "clarification", "greeting", "unknown")
INTENT_SUB_TYPES = (
    "vat_query",
    "transaction_query",
    "receipt_status",
    "deadline_query",
    "receipt_upload",
    "invoice_upload",
    "statement_upload",
    "generate_report",
    "export_data",
    "reconcile",
)
DECISION_ACTIONS = ("respond", "request_info", "execute_function", "escalate", "clarify")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class IntentEntity(BaseModel):
    """Entity extracted by the classifier (date, amount, document type, ...)."""

    model_config = ConfigDict(frozen=True)

    type: str
    value: str
    confidence: float = 0.0
    metadata: Optional[Dict[str, Any]] = None


class Intent(BaseModel):
    """Classifier output. Known types live in INTENT_TYPES; unknown strings are accepted."""

    model_config = ConfigDict(frozen=True)

    type: str
    sub_type: Optional[str] = None
    confidence: float = Field(default=0.0, ge=0, le=1)
    entities: List[IntentEntity] = Field(default_factory=list)
    raw_text: str = ""


class FunctionCall(BaseModel):
    """A single function the decision-maker wants invoked."""

    model_config = ConfigDict(frozen=True)

    name: str
    parameters: Dict[str, Any] = Field(default_factory=dict)


class Decision(BaseModel):
    model_config = ConfigDict(frozen=True)

    action: str
    reasoning: str = ""
    confidence: float = 0.0
    suggested_response: Optional[str] = None
    required_data: Optional[List[str]] = None
    functions: Optional[List[FunctionCall]] = None

    def function_names(self) -> List[str]:
        return [call.name for call in self.functions or []]


class ActionResult(BaseModel):
    """Outcome of one attempted function; failures are recorded, never omitted."""

    model_config = ConfigDict(frozen=True)

    function_name: str
    success: bool
    result: Any = None
    error: Optional[str] = None
    execution_time: float = 0.0  # milliseconds


class ContextMessage(BaseModel):
    id: str = Field(default_factory=new_id)
    content: Optional[str] = None
    direction: Literal["inbound", "outbound"]
    timestamp: datetime = Field(default_factory=utc_now)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PendingAction(BaseModel):
    id: str = Field(default_factory=new_id)
    type: str
    data: Dict[str, Any] = Field(default_factory=dict)
    scheduled_for: Optional[datetime] = None
    attempts: int = 0


class PermissionRestriction(BaseModel):
    resource: str
    action: str
    reason: str


class PermissionSet(BaseModel):
    """Structured permission view returned by the permission authority."""

    can_view_transactions: bool = False
    can_view_vat_reports: bool = False
    can_view_receipts: bool = False
    can_upload_documents: bool = False
    can_generate_reports: bool = False
    can_modify_data: bool = False
    # Permission names with no dedicated flag (e.g. view:accounts).
    additional_permissions: List[str] = Field(default_factory=list)
    specific_resource_ids: Optional[List[str]] = None
    restrictions: List[PermissionRestriction] = Field(default_factory=list)


class InboundMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    content: Optional[str] = None
    media_urls: List[str] = Field(default_factory=list)
    message_id: str = Field(default_factory=new_id)
    from_: str = Field(default="", alias="from")


class OrchestrationRequest(BaseModel):
    message: InboundMessage
    source: Literal["whatsapp", "api", "slack", "internal"] = "api"
    user_id: str = ""
    tenant_id: str = ""
    channel_id: str = ""
    conversation_id: Optional[str] = None
    mode: Literal["async", "sync"] = "sync"


class ExecutedAction(BaseModel):
    action: str
    success: bool
    result: Any = None
    error: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)


class ResponseMetadata(BaseModel):
    intent: str
    sub_type: Optional[str] = None
    confidence: float = 0.0
    processing_time: float = 0.0  # milliseconds
    tokens_used: int = 0
    model_used: Optional[str] = None
    permissions: Optional[PermissionSet] = None


class OrchestrationResponse(BaseModel):
    conversation_id: str
    response_text: str
    actions: List[ExecutedAction] = Field(default_factory=list)
    metadata: ResponseMetadata


class OrchestrationJobData(BaseModel):
    """Queued job as handed over by the external job runner."""

    type: Literal["process_message", "execute_followup"]
    payload: Dict[str, Any] = Field(default_factory=dict)
    retry_count: int = 0


class UserChannel(BaseModel):
    id: str = Field(default_factory=new_id)
    user_id: str
    tenant_id: str
    channel_type: str = "whatsapp"
    channel_identifier: str
    is_verified: bool = False
    created_at: datetime = Field(default_factory=utc_now)


class Conversation(BaseModel):
    id: str = Field(default_factory=new_id)
    user_id: str
    channel_id: str
    tenant_id: str
    status: Literal["active", "closed"] = "active"
    created_at: datetime = Field(default_factory=utc_now)
    last_message_at: Optional[datetime] = None


class ConversationMessage(BaseModel):
    id: str = Field(default_factory=new_id)
    conversation_id: str
    tenant_id: str = ""
    direction: Literal["inbound", "outbound"]
    content: str = ""
    message_type: str = "text"
    external_message_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
