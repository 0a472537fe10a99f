"""
Orchestration API.

POST /orchestration/messages            -> process one message synchronously
POST /orchestration/classify            -> debug view: intent and confidence for one message
GET  /orchestration/contexts/{conv_id}  -> context snapshot or 404
GET  /orchestration/decisions           -> paged decision records for the caller's tenant
GET  /orchestration/analytics           -> token usage and intent distribution
POST /orchestration/jobs                -> 202; queued-job processing in the background (service callers only)
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from orchestrator.config import get_settings
from orchestrator.dependencies import Caller, get_pipeline, require_caller
from orchestrator.engine import OrchestrationPipeline
from orchestrator.envelope import build_success_envelope, error_response, new_request_id
from orchestrator.models import InboundMessage, OrchestrationJobData, OrchestrationRequest, utc_now
from orchestrator.rate_limit import MESSAGES_RULE, message_limiter

logger = logging.getLogger("orchestrator")

router = APIRouter(prefix="/orchestration", tags=["orchestration"])

ANALYTICS_DEFAULT_WINDOW = timedelta(days=30)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class MessageBody(BaseModel):
    conversation_id: Optional[str] = None
    message: str = Field(min_length=1)
    attachments: List[str] = Field(default_factory=list)


@router.post("/messages")
async def post_message(
    body: MessageBody,
    caller: Caller = Depends(require_caller),
    pipeline: OrchestrationPipeline = Depends(get_pipeline),
) -> JSONResponse:
    request_id = new_request_id()
    start = time.monotonic()

    limiter = message_limiter(get_settings().messages_per_minute)
    if not await limiter.allow(MESSAGES_RULE, caller.user_id):
        return error_response(429, "RATE_LIMITED", "Too many messages; try again in a minute")

    if body.conversation_id and pipeline.conversations.get_conversation(body.conversation_id, caller.user_id) is None:
        return error_response(404, "NOT_FOUND", f"Conversation not found: {body.conversation_id}")

    request = OrchestrationRequest(
        message=InboundMessage(content=body.message, media_urls=body.attachments, from_=caller.user_id),
        source="api",
        user_id=caller.user_id,
        tenant_id=caller.tenant_id,
        channel_id=caller.channel_id,
        conversation_id=body.conversation_id,
        mode="sync",
    )
    response = await pipeline.process_sync(request)
    envelope = build_success_envelope(
        response.model_dump(mode="json"),
        request_id=request_id,
        latency_ms=(time.monotonic() - start) * 1000.0,
    )
    return JSONResponse(status_code=200, content=envelope)


class ClassifyBody(BaseModel):
    message: str = Field(min_length=1)
    include_context: bool = False


@router.post("/classify")
async def classify_message(
    body: ClassifyBody,
    caller: Caller = Depends(require_caller),
    pipeline: OrchestrationPipeline = Depends(get_pipeline),
) -> JSONResponse:
    """Run one message through the pipeline in a fresh conversation and report how it was read."""
    request_id = new_request_id()
    start = time.monotonic()

    limiter = message_limiter(get_settings().messages_per_minute)
    if not await limiter.allow(MESSAGES_RULE, caller.user_id):
        return error_response(429, "RATE_LIMITED", "Too many messages; try again in a minute")

    request = OrchestrationRequest(
        message=InboundMessage(content=body.message, from_=caller.user_id),
        source="api",
        user_id=caller.user_id,
        tenant_id=caller.tenant_id,
        channel_id="api",
        mode="sync",
    )
    response = await pipeline.process_sync(request)
    output = {
        "conversation_id": response.conversation_id,
        "intent": response.metadata.intent,
        "sub_type": response.metadata.sub_type,
        "confidence": response.metadata.confidence,
        "response_text": response.response_text,
    }
    if body.include_context:
        context = pipeline.contexts.find_by_conversation_id(response.conversation_id)
        output["context"] = context.snapshot() if context is not None else None
    envelope = build_success_envelope(
        output,
        request_id=request_id,
        latency_ms=(time.monotonic() - start) * 1000.0,
    )
    return JSONResponse(status_code=200, content=envelope)


@router.get("/contexts/{conversation_id}")
async def get_context(
    conversation_id: str,
    caller: Caller = Depends(require_caller),
    pipeline: OrchestrationPipeline = Depends(get_pipeline),
) -> JSONResponse:
    context = pipeline.contexts.find_by_conversation_id(conversation_id)
    # Contexts of other tenants are reported as missing.
    if context is None or context.tenant_id != caller.tenant_id:
        return error_response(404, "NOT_FOUND", f"Context not found for conversation: {conversation_id}")
    return JSONResponse(status_code=200, content=build_success_envelope(context.snapshot(), request_id=new_request_id()))


@router.get("/decisions")
async def list_decisions(
    conversation_id: Optional[str] = None,
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    caller: Caller = Depends(require_caller),
    pipeline: OrchestrationPipeline = Depends(get_pipeline),
) -> JSONResponse:
    decisions, total = pipeline.decisions.find_by_filters(
        tenant_id=caller.tenant_id,
        conversation_id=conversation_id,
        limit=limit,
        offset=offset,
    )
    output = {
        "decisions": [d.model_dump(mode="json") for d in decisions],
        "total": total,
        "limit": limit,
        "offset": offset,
    }
    return JSONResponse(status_code=200, content=build_success_envelope(output, request_id=new_request_id()))


@router.get("/analytics")
async def get_analytics(
    from_date: Optional[datetime] = None,
    to_date: Optional[datetime] = None,
    caller: Caller = Depends(require_caller),
    pipeline: OrchestrationPipeline = Depends(get_pipeline),
) -> JSONResponse:
    to_date = _aware(to_date) if to_date else utc_now()
    from_date = _aware(from_date) if from_date else to_date - ANALYTICS_DEFAULT_WINDOW
    if from_date > to_date:
        return error_response(422, "INPUT_VALIDATION_ERROR", "from_date must not be after to_date")

    output = {
        "from_date": from_date.isoformat(),
        "to_date": to_date.isoformat(),
        "token_usage": pipeline.decisions.token_usage_by_model(caller.tenant_id, from_date, to_date),
        "intent_distribution": pipeline.decisions.intent_distribution(caller.tenant_id, from_date, to_date),
    }
    return JSONResponse(status_code=200, content=build_success_envelope(output, request_id=new_request_id()))


async def _run_job(pipeline: OrchestrationPipeline, job: OrchestrationJobData) -> None:
    # Background tasks have no caller to propagate to; retries belong to the job runner.
    try:
        await pipeline.process_async(job)
    except Exception:
        logger.exception("orchestration job failed type=%s retry_count=%d", job.type, job.retry_count)


@router.post("/jobs", status_code=202)
async def post_job(
    job: OrchestrationJobData,
    background_tasks: BackgroundTasks,
    caller: Caller = Depends(require_caller),
    pipeline: OrchestrationPipeline = Depends(get_pipeline),
) -> JSONResponse:
    # Jobs run as whoever owns the sender's channel; only service callers may enqueue them.
    if not caller.service:
        logger.warning(
            "orchestration job refused type=%s submitted_by=%s tenant_id=%s", job.type, caller.user_id, caller.tenant_id
        )
        return error_response(403, "FORBIDDEN", "Jobs can only be submitted with service credentials")
    background_tasks.add_task(_run_job, pipeline, job)
    logger.info("orchestration job accepted type=%s submitted_by=%s", job.type, caller.user_id)
    output = {"accepted": True, "type": job.type}
    return JSONResponse(
        status_code=202,
        content=build_success_envelope(output, request_id=new_request_id()),
        background=background_tasks,
    )
