from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import get_settings
from .dependencies import AuthError, get_function_registry
from .envelope import build_error_envelope, error_response, new_request_id, status_for_error
from .errors import CatalogLoadError, OrchestrationError
from .routers import orchestration as orchestration_router
from .storage.context_store import ContextStore
from .storage.conversation_store import ConversationStore
from .storage.decision_store import DecisionStore


logger = logging.getLogger("orchestrator")


def configure_logging() -> None:
    level = get_settings().log_level
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    logger.setLevel(level)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Configure logging, create tables and load the function catalog."""
    configure_logging()
    ContextStore().init_db()
    DecisionStore().init_db()
    ConversationStore().init_db()
    get_function_registry()
    yield


settings = get_settings()
app = FastAPI(title="Conversation Orchestrator", version=settings.service_version, lifespan=lifespan)


# CORS: controlled by env CORS_ORIGINS (e.g. * or http://localhost:3000)
_cors_origins_list = [o.strip() for o in settings.cors_origins.strip().split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(orchestration_router.router)


@app.exception_handler(AuthError)
async def handle_auth_error(request: Request, exc: AuthError) -> JSONResponse:
    return error_response(401, "UNAUTHORIZED", str(exc))


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [{"path": list(err.get("loc", ())), "message": err.get("msg", "")} for err in exc.errors()]
    if any(err.get("type") == "json_invalid" for err in exc.errors()):
        return error_response(400, "MALFORMED_REQUEST", "Request body must be valid JSON", details=errors)
    return error_response(422, "INPUT_VALIDATION_ERROR", "Request failed validation", details=errors)


@app.exception_handler(OrchestrationError)
async def handle_orchestration_error(request: Request, exc: OrchestrationError) -> JSONResponse:
    status_code, code = status_for_error(exc)
    status_code, body = build_error_envelope(
        request_id=new_request_id(),
        status_code=status_code,
        code=code,
        message=str(exc),
        details={"type": type(exc).__name__},
    )
    return JSONResponse(status_code=status_code, content=body)


@app.get("/")
async def root() -> Dict[str, Any]:
    """
    Service metadata endpoint.
    """
    current = get_settings()
    return {
        "service": current.service_name,
        "version": current.service_version,
        "docs": "/docs",
        "health": "/health",
        "orchestration": "/orchestration",
    }


@app.get("/health")
async def health() -> JSONResponse:
    """
    Simple health check. Returns 200 when the function catalog loads.
    """
    current = get_settings()
    try:
        registry = get_function_registry()
    except CatalogLoadError as exc:
        return error_response(500, "INTERNAL_ERROR", str(exc))

    payload = {
        "status": "ok",
        "service": current.service_name,
        "version": current.service_version,
        "provider": current.provider_name,
        "functions": len(registry),
    }
    return JSONResponse(status_code=200, content=payload)


def get_app() -> FastAPI:
    """Convenience accessor for external runners."""
    return app
