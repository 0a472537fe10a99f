from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Dict, List, Optional

from .ai_service import AIService
from .config import Settings, get_settings
from .entities import AIDecision, OrchestrationContext
from .errors import (
    ClassificationError,
    ContextNotFoundError,
    DecisionError,
    OrchestrationError,
    PermissionResolutionError,
    PersistenceError,
    ResponseGenerationError,
)
from .function_registry import FunctionRegistry, Principal
from .messaging import VERIFICATION_REMINDER, MessagingService, strip_channel_prefix
from .models import (
    ActionResult,
    ContextMessage,
    ConversationMessage,
    Decision,
    ExecutedAction,
    Intent,
    OrchestrationJobData,
    OrchestrationRequest,
    OrchestrationResponse,
    ResponseMetadata,
)
from .permissions import PermissionResolver
from .post_commit import PostCommitScheduler
from .providers import metered
from .storage.context_store import ContextStore
from .storage.conversation_store import ConversationStore
from .storage.decision_store import DecisionStore

logger = logging.getLogger("orchestrator")


def _elapsed_ms(start: float) -> float:
    return (time.monotonic() - start) * 1000.0


class OrchestrationPipeline:
    """
    Turns one inbound message into permission-checked actions and a reply.

    Collaborators are injected so tests can swap any of them. Upstream failures
    (classifier, permission authority, decision-maker, responder, context save)
    abort the run; per-function failures are recorded as failed ActionResults;
    decision recording is best-effort.
    """

    def __init__(
        self,
        *,
        contexts: ContextStore,
        decisions: DecisionStore,
        registry: FunctionRegistry,
        permissions: PermissionResolver,
        ai: AIService,
        conversations: ConversationStore,
        messaging: MessagingService,
        settings: Optional[Settings] = None,
    ) -> None:
        self.contexts = contexts
        self.decisions = decisions
        self.registry = registry
        self.permissions = permissions
        self.ai = ai
        self.conversations = conversations
        self.messaging = messaging
        self._settings = settings

    @property
    def settings(self) -> Settings:
        return self._settings or get_settings()

    async def process_message(self, request: OrchestrationRequest) -> OrchestrationResponse:
        start = time.monotonic()
        settings = self.settings
        scheduler = PostCommitScheduler()
        conversation_id = request.conversation_id or ""

        with metered() as usage:
            try:
                # 1) Resolve or create the context.
                context = self._resolve_context(request)
                conversation_id = context.conversation_id

                # 2) Inbound message into the bounded window.
                content = request.message.content
                if content:
                    context.add_message(
                        ContextMessage(
                            id=request.message.message_id,
                            content=content,
                            direction="inbound",
                            metadata={"source": request.source},
                        ),
                        settings.max_context_messages,
                    )

                # 3) Classify.
                try:
                    intent = await self.ai.classify_intent(content or "", context.snapshot())
                except ClassificationError:
                    raise
                except Exception as exc:
                    raise ClassificationError(f"Intent classification failed: {exc}") from exc
                context.set_intent(intent)

                # 4) Permissions and the functions they unlock.
                required = self.permissions.required_permissions(intent)
                try:
                    permission_set = await self.permissions.granted_permissions(
                        request.user_id, request.tenant_id, required
                    )
                except PermissionResolutionError:
                    raise
                except Exception as exc:
                    raise PermissionResolutionError(f"Permission lookup failed: {exc}") from exc
                granted = PermissionResolver.flatten(permission_set)
                allowed = self.permissions.allowed_functions(granted)

                # 5) Decide, offering only the allowed functions.
                try:
                    decision = await self.ai.make_decision(
                        intent=intent,
                        context=context.snapshot(),
                        permissions=permission_set,
                        allowed_functions=self.registry.definitions(allowed),
                    )
                except DecisionError:
                    raise
                except Exception as exc:
                    raise DecisionError(f"Decision making failed: {exc}") from exc

                # 6) Execute every proposed function; failures stay local.
                principal = Principal(user_id=context.user_id, tenant_id=context.tenant_id, permissions=granted)
                action_results = await self._execute_actions(decision, principal)
                denied = self.permissions.denied_function_names(decision, granted)

                # 7) Compose the reply.
                try:
                    response_text = await self.ai.generate_response(
                        decision=decision,
                        action_results=[r.result for r in action_results],
                        context=context.snapshot(),
                        denied_actions=denied,
                    )
                except ResponseGenerationError:
                    raise
                except Exception as exc:
                    raise ResponseGenerationError(f"Response generation failed: {exc}") from exc

                # 8) Outbound message into the window.
                context.add_message(
                    ContextMessage(
                        content=response_text,
                        direction="outbound",
                        metadata={"intent": intent.type, "decision": decision.action},
                    ),
                    settings.max_context_messages,
                )

                # 9) Persist the context; no reply without it.
                self._save_context(context)

                # 10) Record the decision after the save.
                processing_time = _elapsed_ms(start)
                tokens_used = usage.tokens_used
                model_used = usage.model or settings.model_name

                async def _record() -> None:
                    await self.record_decision(
                        context_id=context.id,
                        conversation_id=request.conversation_id or context.conversation_id,
                        tenant_id=context.tenant_id,
                        intent=intent,
                        decision=decision,
                        executed_actions=action_results,
                        response_text=response_text,
                        tokens_used=tokens_used,
                        model_used=model_used,
                        processing_time=processing_time,
                        permissions_denied=denied,
                    )

                scheduler.schedule(_record)
                await scheduler.run()
            except OrchestrationError:
                logger.exception(
                    "orchestrate conversation_id=%s status=failed latency_ms=%.2f",
                    conversation_id,
                    _elapsed_ms(start),
                )
                raise

        _log_run(
            conversation_id=context.conversation_id,
            intent=intent,
            decision=decision,
            actions=action_results,
            latency_ms=processing_time,
        )

        # 11) Response.
        return OrchestrationResponse(
            conversation_id=context.conversation_id,
            response_text=response_text,
            actions=[
                ExecutedAction(action=r.function_name, success=r.success, result=r.result, error=r.error)
                for r in action_results
            ],
            metadata=ResponseMetadata(
                intent=intent.type,
                sub_type=intent.sub_type,
                confidence=intent.confidence,
                processing_time=processing_time,
                tokens_used=tokens_used,
                model_used=model_used,
                permissions=permission_set,
            ),
        )

    async def process_sync(self, request: OrchestrationRequest) -> OrchestrationResponse:
        """
        Caller-is-waiting entry point.

        Creates a conversation when none was supplied and writes both messages
        to conversation history before returning; a failed write fails the call.
        """
        if not request.conversation_id:
            try:
                conversation = self.conversations.create_conversation(
                    user_id=request.user_id,
                    channel_id=request.channel_id,
                    tenant_id=request.tenant_id,
                )
            except Exception as exc:
                raise PersistenceError(f"Could not create conversation: {exc}") from exc
            request = request.model_copy(update={"conversation_id": conversation.id})

        response = await self.process_message(request)
        self._append_history(request, response)
        return response

    async def process_async(self, job: OrchestrationJobData) -> None:
        """
        Queued, channel-delivered entry point.

        Unknown senders get a registration prompt and unverified channels a
        verification reminder; neither creates a context. A delivery failure
        propagates so the job runner can retry the job.
        """
        if job.type != "process_message":
            logger.warning("orchestration job ignored type=%s retry_count=%d", job.type, job.retry_count)
            return

        request = OrchestrationRequest.model_validate(job.payload)
        sender = request.message.from_
        logger.info(
            "orchestration job received from=%s source=%s has_content=%s",
            sender,
            request.source,
            bool(request.message.content),
        )

        channel = self.conversations.find_channel_by_identifier(sender)
        if channel is None:
            logger.warning(
                "message from unknown sender from=%s prefixed=%s",
                sender,
                sender.startswith("whatsapp:"),
            )
            await self.messaging.send_registration_prompt(strip_channel_prefix(sender))
            return

        if not channel.is_verified:
            logger.info("channel not verified channel_id=%s", channel.id)
            try:
                await self.messaging.send_message(strip_channel_prefix(channel.channel_identifier), VERIFICATION_REMINDER)
            except Exception:
                logger.exception("failed to send verification reminder channel_id=%s", channel.id)
            return

        conversation = None
        if request.conversation_id and request.conversation_id.strip():
            conversation = self.conversations.get_conversation(request.conversation_id, channel.user_id)
            if conversation is None:
                logger.warning("conversation not found conversation_id=%s; resolving latest", request.conversation_id)
        if conversation is None:
            conversation = self.conversations.get_or_create_conversation(
                user_id=channel.user_id, channel_id=channel.id, tenant_id=channel.tenant_id
            )

        full_request = request.model_copy(
            update={
                "user_id": channel.user_id,
                "tenant_id": channel.tenant_id,
                "channel_id": channel.id,
                "conversation_id": conversation.id,
            }
        )
        response = await self.process_message(full_request)

        destination = strip_channel_prefix(channel.channel_identifier)
        try:
            await self.messaging.send_message(destination, response.response_text)
        except Exception:
            logger.error(
                "failed to deliver orchestration response to=%s conversation_id=%s",
                destination,
                conversation.id,
                exc_info=True,
            )
            raise
        logger.info("orchestration response sent to=%s chars=%d", destination, len(response.response_text))

        self._append_history(full_request, response)

    def get_or_create_context(self, conversation_id: str, user_id: str, channel_id: str, tenant_id: str = "") -> str:
        request = OrchestrationRequest.model_validate(
            {
                "message": {},
                "conversation_id": conversation_id or None,
                "user_id": user_id,
                "channel_id": channel_id,
                "tenant_id": tenant_id,
            }
        )
        return self._resolve_context(request).id

    def update_context(
        self,
        context_id: str,
        *,
        session_data: Optional[Dict[str, Any]] = None,
        intent: Optional[Intent] = None,
    ) -> OrchestrationContext:
        context = self.contexts.find_by_id(context_id)
        if context is None:
            raise ContextNotFoundError(f"Context not found: {context_id}")
        if session_data:
            context.update_session_data(session_data)
        if intent is not None:
            context.set_intent(intent)
        self._save_context(context)
        return context

    async def record_decision(
        self,
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
    ) -> AIDecision:
        record = AIDecision.create(
            context_id=context_id,
            conversation_id=conversation_id,
            tenant_id=tenant_id,
            intent=intent,
            decision=decision,
            executed_actions=executed_actions,
            response_text=response_text,
            tokens_used=tokens_used,
            model_used=model_used,
            processing_time=processing_time,
            permissions_denied=permissions_denied,
        )
        self.decisions.save(record)
        logger.info(
            "decision recorded decision_id=%s intent=%s action=%s denied=%d",
            record.id,
            intent.type,
            decision.action,
            len(record.permissions_denied),
        )
        return record

    async def _execute_actions(self, decision: Decision, principal: Principal) -> List[ActionResult]:
        """One ActionResult per proposed function, in order; a failure never stops the rest."""
        results: List[ActionResult] = []
        for call in decision.functions or []:
            start = time.monotonic()
            try:
                result = await self.registry.execute(call.name, call.parameters, principal)
            except Exception as exc:
                elapsed = _elapsed_ms(start)
                logger.warning(
                    "function failed name=%s error=%s execution_ms=%.2f",
                    call.name,
                    exc,
                    elapsed,
                )
                results.append(
                    ActionResult(function_name=call.name, success=False, error=str(exc), execution_time=elapsed)
                )
            else:
                results.append(
                    ActionResult(function_name=call.name, success=True, result=result, execution_time=_elapsed_ms(start))
                )
        return results

    def _resolve_context(self, request: OrchestrationRequest) -> OrchestrationContext:
        conversation_id = (request.conversation_id or "").strip()
        try:
            if conversation_id:
                existing = self.contexts.find_by_conversation_id(conversation_id)
                if existing is not None:
                    return existing
            context = OrchestrationContext.create(
                conversation_id=conversation_id or f"temp_{uuid.uuid4().hex}",
                user_id=request.user_id,
                channel_id=request.channel_id,
                tenant_id=request.tenant_id,
            )
            self.contexts.save(context)
        except PersistenceError:
            raise
        except Exception as exc:
            raise PersistenceError(f"Could not load or create context: {exc}") from exc
        return context

    def _save_context(self, context: OrchestrationContext) -> None:
        try:
            self.contexts.save(context)
        except PersistenceError:
            raise
        except Exception as exc:
            raise PersistenceError(f"Could not save context {context.id}: {exc}") from exc

    def _append_history(self, request: OrchestrationRequest, response: OrchestrationResponse) -> None:
        conversation_id = request.conversation_id or response.conversation_id
        inbound = ConversationMessage(
            conversation_id=conversation_id,
            tenant_id=request.tenant_id,
            direction="inbound",
            content=request.message.content or "",
            external_message_id=request.message.message_id,
            metadata={"source": request.source},
        )
        outbound = ConversationMessage(
            conversation_id=conversation_id,
            tenant_id=request.tenant_id,
            direction="outbound",
            content=response.response_text,
            metadata=response.metadata.model_dump(mode="json"),
        )
        try:
            self.conversations.create_messages([inbound, outbound])
        except Exception as exc:
            raise PersistenceError(f"Could not write conversation history for {conversation_id}: {exc}") from exc


def _log_run(
    *,
    conversation_id: str,
    intent: Intent,
    decision: Decision,
    actions: List[ActionResult],
    latency_ms: float,
) -> None:
    logger.info(
        "orchestrate conversation_id=%s intent=%s action=%s actions=%d failed=%d status=ok latency_ms=%.2f",
        conversation_id,
        intent.type,
        decision.action,
        len(actions),
        sum(1 for a in actions if not a.success),
        latency_ms,
    )
