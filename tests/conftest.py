import os
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from orchestrator.engine import OrchestrationPipeline
from orchestrator.function_registry import FunctionRegistry, build_registry
from orchestrator.messaging import SendResult
from orchestrator.models import Decision, Intent, PermissionSet
from orchestrator.permissions import PermissionResolver, StaticPermissionAuthority
from orchestrator.providers import record_usage
from orchestrator.storage.context_store import ContextStore
from orchestrator.storage.conversation_store import ConversationStore
from orchestrator.storage.decision_store import DecisionStore


@contextmanager
def env_vars(env: Dict[str, str]):
    """
    Temporarily set environment variables for a test.

    Restores previous values afterwards, even if the test fails.
    """
    old_values: Dict[str, Any] = {}
    for key, value in env.items():
        old_values[key] = os.environ.get(key)
        os.environ[key] = value
    try:
        yield
    finally:
        for key, old in old_values.items():
            if old is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = old


@pytest.fixture(autouse=True)
def db_path(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> str:
    """Temporary SQLite database per test; never touch a configured Postgres."""
    path = str(tmp_path / "orchestrator.db")
    monkeypatch.setenv("DB_PATH", path)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("SUPABASE_DATABASE_URL", raising=False)
    for key in ("AUTH_TOKEN", "CLERK_JWKS_URL", "CLERK_JWT_KEY", "PROVIDER", "MESSAGING_PROVIDER"):
        monkeypatch.delenv(key, raising=False)
    return path


class FakeAI:
    """Scripted classifier/decision-maker/responder that records what it was given."""

    def __init__(
        self,
        *,
        intent: Optional[Intent] = None,
        decision: Optional[Decision] = None,
        response_text: str = "Here is what I found.",
        fail_on: Optional[str] = None,
    ) -> None:
        self.intent = intent or Intent(type="question", confidence=0.8)
        self.decision = decision or Decision(action="respond", reasoning="conversational", confidence=0.9)
        self.response_text = response_text
        self.fail_on = fail_on
        self.classified: List[str] = []
        self.decision_kwargs: Optional[Dict[str, Any]] = None
        self.response_kwargs: Optional[Dict[str, Any]] = None

    async def classify_intent(self, text: str, context: Dict[str, Any]) -> Intent:
        self.classified.append(text)
        if self.fail_on == "classify":
            raise RuntimeError("classifier unavailable")
        record_usage(10, "fake-model")
        return self.intent

    async def make_decision(self, *, intent, context, permissions, allowed_functions) -> Decision:
        self.decision_kwargs = {
            "intent": intent,
            "context": context,
            "permissions": permissions,
            "allowed_functions": allowed_functions,
        }
        if self.fail_on == "decide":
            raise RuntimeError("decision-maker unavailable")
        return self.decision

    async def generate_response(self, *, decision, action_results, context, denied_actions) -> str:
        self.response_kwargs = {
            "decision": decision,
            "action_results": action_results,
            "context": context,
            "denied_actions": denied_actions,
        }
        if self.fail_on == "respond":
            raise RuntimeError("responder unavailable")
        record_usage(5, "fake-model")
        return self.response_text


class RecordingMessaging:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.sent: List[Dict[str, Any]] = []
        self.registration_prompts: List[str] = []

    async def send_message(self, to: str, text: str, media_url: Optional[str] = None) -> SendResult:
        if self.fail:
            raise ConnectionError("channel down")
        self.sent.append({"to": to, "text": text})
        return SendResult(message_id=f"msg-{len(self.sent)}", status="sent", to=to)

    async def send_registration_prompt(self, to: str) -> SendResult:
        self.registration_prompts.append(to)
        return SendResult(message_id="reg", status="sent", to=to)


class FailingDecisionStore(DecisionStore):
    def save(self, decision):
        raise RuntimeError("audit database unavailable")


class FailingAuthority:
    async def check_permissions(self, user_id: str, tenant_id: str, required: List[str]) -> PermissionSet:
        raise TimeoutError("permission service timed out")


@pytest.fixture
def fake_ai() -> FakeAI:
    return FakeAI()


@pytest.fixture
def messaging() -> RecordingMessaging:
    return RecordingMessaging()


@pytest.fixture
def make_pipeline(fake_ai: FakeAI, messaging: RecordingMessaging):
    """Factory for pipelines on the per-test database with swappable collaborators."""

    def _make(
        *,
        ai: Any = None,
        registry: Optional[FunctionRegistry] = None,
        granted: Optional[List[str]] = None,
        authority: Any = None,
        contexts: Optional[ContextStore] = None,
        decisions: Optional[DecisionStore] = None,
        messaging_service: Any = None,
    ) -> OrchestrationPipeline:
        if registry is None:
            registry = build_registry()
        if authority is None:
            authority = StaticPermissionAuthority(
                granted if granted is not None else ["view:transactions", "view:vat_reports"]
            )
        return OrchestrationPipeline(
            contexts=contexts or ContextStore(),
            decisions=decisions or DecisionStore(),
            registry=registry,
            permissions=PermissionResolver(authority, registry),
            ai=ai or fake_ai,
            conversations=ConversationStore(),
            messaging=messaging_service or messaging,
        )

    return _make

