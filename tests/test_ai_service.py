import json
from typing import Any, Dict, List

import pytest

from orchestrator.ai_service import DECISION_SCHEMA, INTENT_SCHEMA, ProviderAIService
from orchestrator.models import Decision, Intent, PermissionSet
from orchestrator.providers import BaseProvider, ProviderResult, StubProvider, build_provider, metered

from conftest import env_vars


class ScriptedProvider(BaseProvider):
    """Returns queued outputs in order and records each prompt."""

    def __init__(self, outputs: List[Dict[str, Any]], tokens: int = 7, model: str = "scripted-model"):
        self.outputs = list(outputs)
        self.prompts: List[str] = []
        self.tokens = tokens
        self.model = model

    def complete_json(self, prompt, *, schema, system=None):
        self.prompts.append(prompt)
        parsed = self.outputs.pop(0)
        return ProviderResult(parsed_json=parsed, raw_text=json.dumps(parsed), tokens_used=self.tokens, model=self.model)


@pytest.mark.asyncio
async def test_stub_provider_round_trip():
    ai = ProviderAIService(StubProvider())

    intent = await ai.classify_intent("Hello", {"recent_messages": []})
    decision = await ai.make_decision(intent=intent, context={}, permissions=PermissionSet(), allowed_functions=[])
    reply = await ai.generate_response(decision=decision, action_results=[], context={}, denied_actions=[])

    assert intent.type == "question"
    assert intent.sub_type is None
    assert intent.confidence == 0.5
    assert intent.raw_text == "Hello"
    assert decision.action == "respond"
    assert decision.reasoning == "stub reasoning"
    assert decision.functions is None
    assert reply == "Thanks, I've received your message."


@pytest.mark.asyncio
async def test_classification_parses_entities_and_sub_type():
    provider = ScriptedProvider(
        [
            {
                "type": "question",
                "sub_type": "vat_query",
                "confidence": 0.92,
                "entities": [{"type": "date", "value": "2024-03-31", "confidence": 0.8}],
            }
        ]
    )
    ai = ProviderAIService(provider)

    intent = await ai.classify_intent(
        "When is my VAT due for Q1?",
        {"recent_messages": [{"direction": "inbound", "content": "hi"}]},
    )

    assert intent.sub_type == "vat_query"
    assert intent.entities[0].value == "2024-03-31"
    assert "inbound: hi" in provider.prompts[0]
    assert "When is my VAT due for Q1?" in provider.prompts[0]


@pytest.mark.asyncio
async def test_decision_lists_only_offered_functions_and_parses_calls():
    provider = ScriptedProvider(
        [
            {
                "action": "execute_function",
                "reasoning": "needs the deadline",
                "confidence": 0.9,
                "functions": [{"name": "getVATDeadline"}],
            }
        ]
    )
    ai = ProviderAIService(provider)
    offered = [{"name": "getVATDeadline", "description": "d", "parameters": {"type": "object"}}]

    decision = await ai.make_decision(
        intent=Intent(type="question", sub_type="vat_query"),
        context={},
        permissions=PermissionSet(can_view_vat_reports=True),
        allowed_functions=offered,
    )

    assert decision.function_names() == ["getVATDeadline"]
    assert decision.functions[0].parameters == {}
    assert '"getVATDeadline"' in provider.prompts[0]
    assert '"can_view_vat_reports": true' in provider.prompts[0]


@pytest.mark.asyncio
async def test_invalid_output_gets_one_repair_attempt():
    provider = ScriptedProvider(
        [
            {"type": "not-a-type", "confidence": 3},
            {"type": "greeting", "confidence": 0.99},
        ]
    )
    ai = ProviderAIService(provider)

    intent = await ai.classify_intent("hiya", {})

    assert intent.type == "greeting"
    assert len(provider.prompts) == 2
    assert "did not validate" in provider.prompts[1]
    assert json.dumps(INTENT_SCHEMA, indent=2, sort_keys=True) in provider.prompts[1]


@pytest.mark.asyncio
async def test_still_invalid_after_repair_raises():
    provider = ScriptedProvider([{"action": "dance"}, {"action": "dance"}])
    ai = ProviderAIService(provider)

    with pytest.raises(ValueError, match="make_decision output did not validate"):
        await ai.make_decision(intent=Intent(type="unknown"), context={}, permissions=PermissionSet(), allowed_functions=[])

    assert len(provider.prompts) == 2


@pytest.mark.asyncio
async def test_denied_actions_are_mentioned_to_the_responder():
    provider = ScriptedProvider([{"response_text": "Sorry, you can't view transactions."}])
    ai = ProviderAIService(provider)

    reply = await ai.generate_response(
        decision=Decision(action="respond"),
        action_results=[None],
        context={},
        denied_actions=["searchTransactions"],
    )

    assert reply == "Sorry, you can't view transactions."
    assert "denied due to permissions: searchTransactions" in provider.prompts[0]
    assert "British English" in provider.prompts[0]


@pytest.mark.asyncio
async def test_usage_is_metered_per_run():
    provider = ScriptedProvider(
        [{"type": "greeting", "confidence": 0.9}, {"response_text": "Hello!"}],
        tokens=11,
    )
    ai = ProviderAIService(provider)

    with metered() as usage:
        await ai.classify_intent("hello", {})
        await ai.generate_response(decision=Decision(action="respond"), action_results=[], context={}, denied_actions=[])

    assert usage.tokens_used == 22
    assert usage.model == "scripted-model"

    # Outside a metered block usage is simply dropped.
    provider.outputs.append({"type": "greeting", "confidence": 0.9})
    await ai.classify_intent("hello again", {})


def test_schemas_are_draft7_valid():
    from jsonschema import Draft7Validator

    Draft7Validator.check_schema(INTENT_SCHEMA)
    Draft7Validator.check_schema(DECISION_SCHEMA)


def test_build_provider_falls_back_to_stub_without_key():
    with env_vars({"PROVIDER": "openrouter", "OPENROUTER_API_KEY": ""}):
        assert isinstance(build_provider(), StubProvider)
    with env_vars({"PROVIDER": "openrouter", "OPENROUTER_API_KEY": "sk-test", "MODEL_NAME": "anthropic/claude-3.5-sonnet"}):
        provider = build_provider()
        assert provider.model == "anthropic/claude-3.5-sonnet"
