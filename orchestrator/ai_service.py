"""
LLM-backed classifier, decision-maker and responder.

Every call asks the provider for JSON matching a Draft-07 schema. Output that
does not validate gets one repair attempt; if the repaired output is still
invalid a ValueError is raised and the pipeline wraps it into the matching
upstream error.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, List, Mapping, Optional, Protocol

from jsonschema import Draft7Validator

from .models import INTENT_TYPES, DECISION_ACTIONS, Decision, FunctionCall, Intent, IntentEntity, PermissionSet
from .providers import BaseProvider, ProviderResult, record_usage

logger = logging.getLogger("orchestrator")

SYSTEM_PROMPT = "You are an AI assistant for a financial management system."

INTENT_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "type": {"type": "string", "enum": list(INTENT_TYPES)},
        "sub_type": {"type": ["string", "null"]},
        "confidence": {"type": "number", "minimum": 0, "maximum": 1},
        "entities": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "type": {"type": "string"},
                    "value": {"type": "string"},
                    "confidence": {"type": "number", "minimum": 0, "maximum": 1},
                },
                "required": ["type", "value"],
            },
        },
    },
    "required": ["type", "confidence"],
}

DECISION_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "action": {"type": "string", "enum": list(DECISION_ACTIONS)},
        "reasoning": {"type": "string", "title": "Reasoning"},
        "confidence": {"type": "number", "minimum": 0, "maximum": 1},
        "suggested_response": {"type": ["string", "null"]},
        "required_data": {"type": ["array", "null"], "items": {"type": "string"}},
        "functions": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "name": {"type": "string"},
                    "parameters": {"type": "object"},
                },
                "required": ["name"],
            },
        },
    },
    "required": ["action", "reasoning", "confidence"],
}

RESPONSE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "response_text": {"type": "string", "title": "Reply text", "minLength": 1},
    },
    "required": ["response_text"],
}

CLASSIFY_INSTRUCTIONS = """Classify the user's message and extract entities (dates, amounts, document types).

Intent types: question, document_submission, command, clarification, greeting, unknown.
Sub-types for questions: vat_query, transaction_query, receipt_status, deadline_query.
Sub-types for documents: receipt_upload, invoice_upload, statement_upload.
Sub-types for commands: generate_report, export_data, reconcile.
Use null for sub_type when none applies."""

DECISION_INSTRUCTIONS = """Decide what to do next for this user.

Actions:
- respond: provide information or an answer
- request_info: ask for more information
- execute_function: call one or more of the available functions
- escalate: hand over to a human
- clarify: ask the user to clarify

Only call functions listed under Available functions. Consider the user's permissions."""

RESPONSE_INSTRUCTIONS = """Write the reply to send to the user.

- Be concise and clear
- Use British English
- Be professional but friendly
- If actions were denied due to permissions, explain politely
- Format numbers and dates appropriately"""


class AIService(Protocol):
    async def classify_intent(self, text: str, context: Mapping[str, Any]) -> Intent:  # pragma: no cover
        ...

    async def make_decision(
        self,
        *,
        intent: Intent,
        context: Mapping[str, Any],
        permissions: PermissionSet,
        allowed_functions: List[Dict[str, Any]],
    ) -> Decision:  # pragma: no cover
        ...

    async def generate_response(
        self,
        *,
        decision: Decision,
        action_results: List[Any],
        context: Mapping[str, Any],
        denied_actions: List[str],
    ) -> str:  # pragma: no cover
        ...


def _validate_with_schema(instance: Any, schema: Dict[str, Any]) -> List[Dict[str, Any]]:
    validator = Draft7Validator(schema)
    errors: List[Dict[str, Any]] = []
    for err in validator.iter_errors(instance):
        errors.append(
            {
                "path": list(err.path),
                "message": err.message,
            }
        )
    return errors


def _recent_messages_text(context: Mapping[str, Any], limit: int = 3) -> str:
    lines = []
    for message in list(context.get("recent_messages") or [])[-limit:]:
        lines.append(f"{message.get('direction')}: {message.get('content') or ''}")
    return "\n".join(lines) if lines else "(none)"


class ProviderAIService:
    """AIService on top of a JSON-completion provider."""

    def __init__(self, provider: BaseProvider):
        self._provider = provider

    async def _complete(self, prompt: str, schema: Dict[str, Any]) -> ProviderResult:
        result = await asyncio.to_thread(self._provider.complete_json, prompt, schema=schema, system=SYSTEM_PROMPT)
        record_usage(result.tokens_used, result.model)
        return result

    async def _complete_valid(self, prompt: str, schema: Dict[str, Any], task: str) -> Dict[str, Any]:
        """Validate provider output, performing at most one repair attempt."""
        result = await self._complete(prompt, schema)
        errors = _validate_with_schema(result.parsed_json, schema)
        if not errors:
            return result.parsed_json

        logger.warning("provider output invalid task=%s errors=%d; attempting repair", task, len(errors))
        error_summary = "; ".join(err["message"] for err in errors)
        repair_prompt = (
            "The previous JSON output did not validate against the required schema.\n"
            f"Validation errors: {error_summary}\n\n"
            "Previous raw output:\n"
            f"{result.raw_text}\n\n"
            "Please respond again with ONLY a valid JSON object that matches the following schema:\n"
            f"{json.dumps(schema, indent=2, sort_keys=True)}"
        )
        repaired = await self._complete(repair_prompt, schema)
        repair_errors = _validate_with_schema(repaired.parsed_json, schema)
        if repair_errors:
            raise ValueError(
                f"{task} output did not validate after one repair attempt: "
                + "; ".join(err["message"] for err in repair_errors)
            )
        return repaired.parsed_json

    async def classify_intent(self, text: str, context: Mapping[str, Any]) -> Intent:
        prompt = "\n".join(
            [
                CLASSIFY_INSTRUCTIONS,
                "",
                "# Recent context:",
                _recent_messages_text(context),
                "",
                f"# Current message:\n{text}",
                "",
                "Respond ONLY with a single JSON object.",
            ]
        )
        data = await self._complete_valid(prompt, INTENT_SCHEMA, "classify_intent")
        return Intent(
            type=data["type"],
            sub_type=data.get("sub_type") or None,
            confidence=float(data["confidence"]),
            entities=[
                IntentEntity(type=e["type"], value=str(e["value"]), confidence=float(e.get("confidence", 0.0)))
                for e in data.get("entities") or []
            ],
            raw_text=text,
        )

    async def make_decision(
        self,
        *,
        intent: Intent,
        context: Mapping[str, Any],
        permissions: PermissionSet,
        allowed_functions: List[Dict[str, Any]],
    ) -> Decision:
        prompt = "\n".join(
            [
                DECISION_INSTRUCTIONS,
                "",
                f"# User permissions:\n{json.dumps(permissions.model_dump(mode='json'), indent=2)}",
                "",
                f"# Available functions:\n{json.dumps(allowed_functions, indent=2)}",
                "",
                f"# Intent:\n{json.dumps(intent.model_dump(mode='json'))}",
                "",
                "# Recent messages:",
                _recent_messages_text(context),
                "",
                "Respond ONLY with a single JSON object.",
            ]
        )
        data = await self._complete_valid(prompt, DECISION_SCHEMA, "make_decision")
        functions = data.get("functions")
        return Decision(
            action=data["action"],
            reasoning=data.get("reasoning") or "",
            confidence=float(data["confidence"]),
            suggested_response=data.get("suggested_response"),
            required_data=data.get("required_data"),
            functions=[FunctionCall(name=f["name"], parameters=f.get("parameters") or {}) for f in functions]
            if functions
            else None,
        )

    async def generate_response(
        self,
        *,
        decision: Decision,
        action_results: List[Any],
        context: Mapping[str, Any],
        denied_actions: List[str],
    ) -> str:
        parts = [
            RESPONSE_INSTRUCTIONS,
            "",
            f"# Decision:\n{json.dumps(decision.model_dump(mode='json'))}",
            "",
            f"# Action results:\n{json.dumps(action_results, default=str)}",
        ]
        if denied_actions:
            parts += ["", f"Note: the following actions were denied due to permissions: {', '.join(denied_actions)}"]
        parts += ["", "Respond ONLY with a single JSON object."]
        data = await self._complete_valid("\n".join(parts), RESPONSE_SCHEMA, "generate_response")
        return str(data["response_text"])
