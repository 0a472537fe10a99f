"""
Standard response envelopes shared by every HTTP route.

Success: {"output": ..., "meta": {request_id, service, version, latency_ms?}}
Error:   {"error": {code, message, details}, "meta": {request_id, service, version}}
"""

from __future__ import annotations

import uuid
from typing import Any, Dict, Optional, Tuple

from fastapi.responses import JSONResponse

from .config import get_settings
from .errors import (
    ClassificationError,
    ContextNotFoundError,
    ContextVersionConflict,
    DecisionError,
    OrchestrationError,
    PermissionResolutionError,
    PersistenceError,
    ResponseGenerationError,
)

# Most specific first.
_ERROR_STATUS: Tuple[Tuple[type, int, str], ...] = (
    (ContextVersionConflict, 409, "CONTEXT_CONFLICT"),
    (ContextNotFoundError, 404, "NOT_FOUND"),
    (PersistenceError, 500, "PERSISTENCE_ERROR"),
    (ClassificationError, 502, "UPSTREAM_ERROR"),
    (DecisionError, 502, "UPSTREAM_ERROR"),
    (ResponseGenerationError, 502, "UPSTREAM_ERROR"),
    (PermissionResolutionError, 502, "UPSTREAM_ERROR"),
)


def new_request_id() -> str:
    return str(uuid.uuid4())


def _meta(request_id: str) -> Dict[str, Any]:
    settings = get_settings()
    return {
        "request_id": request_id,
        "service": settings.service_name,
        "version": settings.service_version,
    }


def build_success_envelope(
    output: Any,
    *,
    request_id: str,
    latency_ms: Optional[float] = None,
) -> Dict[str, Any]:
    meta = _meta(request_id)
    if latency_ms is not None:
        meta["latency_ms"] = latency_ms
    return {"output": output, "meta": meta}


def build_error_envelope(
    *,
    request_id: str,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> Tuple[int, Dict[str, Any]]:
    body = {
        "error": {
            "code": code,
            "message": message,
            "details": details,
        },
        "meta": _meta(request_id),
    }
    return status_code, body


def error_response(status_code: int, code: str, message: str, details: Any = None) -> JSONResponse:
    status_code, body = build_error_envelope(
        request_id=new_request_id(),
        status_code=status_code,
        code=code,
        message=message,
        details=details,
    )
    return JSONResponse(status_code=status_code, content=body)


def status_for_error(exc: OrchestrationError) -> Tuple[int, str]:
    for error_cls, status_code, code in _ERROR_STATUS:
        if isinstance(exc, error_cls):
            return status_code, code
    return 500, "INTERNAL_ERROR"
