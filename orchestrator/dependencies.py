from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, Optional

from fastapi import Request
import jwt
from jwt import PyJWKClient

from .ai_service import AIService, ProviderAIService
from .config import Settings, get_settings
from .engine import OrchestrationPipeline
from .function_registry import FunctionRegistry, build_registry
from .messaging import MessagingService, build_messaging_service
from .permissions import PermissionResolver, StaticPermissionAuthority
from .providers import build_provider
from .storage.context_store import ContextStore
from .storage.conversation_store import ConversationStore
from .storage.decision_store import DecisionStore


class AuthError(RuntimeError):
    """Raised when authentication fails."""


@dataclass(frozen=True)
class Caller:
    """Authenticated principal of an HTTP request."""

    user_id: str
    tenant_id: str
    channel_id: str = "api"
    # True only for holders of the shared AUTH_TOKEN, never for end-user sessions.
    service: bool = False


@lru_cache(maxsize=1)
def get_function_registry() -> FunctionRegistry:
    """The catalog is read once per process and shared by every pipeline."""
    return build_registry()


def build_pipeline(
    *,
    settings: Optional[Settings] = None,
    registry: Optional[FunctionRegistry] = None,
    ai: Optional[AIService] = None,
    messaging: Optional[MessagingService] = None,
) -> OrchestrationPipeline:
    settings = settings or get_settings()
    if registry is None:
        registry = get_function_registry()
    return OrchestrationPipeline(
        contexts=ContextStore(),
        decisions=DecisionStore(),
        registry=registry,
        permissions=PermissionResolver(StaticPermissionAuthority(settings.default_permissions), registry),
        ai=ai or ProviderAIService(build_provider()),
        conversations=ConversationStore(),
        messaging=messaging or build_messaging_service(settings),
        settings=settings,
    )


def get_pipeline() -> OrchestrationPipeline:
    """
    Dependency returning the pipeline for one request.

    Tests override this via FastAPI's dependency_overrides to inject fakes.
    """

    return build_pipeline()


def _get_bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        token = auth_header.split(" ", 1)[1].strip()
        return token or None
    return None


def _get_session_cookie(request: Request) -> Optional[str]:
    cookie_token = request.cookies.get("__session")
    return cookie_token or None


_jwks_clients: Dict[str, PyJWKClient] = {}


def _get_cached_jwks_client(jwks_url: str) -> PyJWKClient:
    # PyJWKClient internally caches keys by kid; keep instance-level cache by URL.
    if not jwks_url:
        raise AuthError("Clerk JWKS URL is not configured")
    client = _jwks_clients.get(jwks_url)
    if client is None:
        client = PyJWKClient(jwks_url)
        _jwks_clients[jwks_url] = client
    return client


def _verify_clerk_token(token: str) -> Dict[str, Any]:
    settings = get_settings()
    clerk_jwt_key = settings.clerk_jwt_key
    clerk_jwks_url = settings.clerk_jwks_url
    clerk_issuer = settings.clerk_issuer
    clerk_audience = settings.clerk_audience
    authorized_parties = settings.clerk_authorized_parties

    if not clerk_jwt_key and not clerk_jwks_url:
        raise AuthError("Clerk auth is not configured")

    try:
        unverified_header = jwt.get_unverified_header(token)
    except jwt.PyJWTError as exc:
        raise AuthError("Invalid session token") from exc

    if unverified_header.get("alg") != "RS256":
        raise AuthError("Unsupported token algorithm")

    options = {"verify_aud": bool(clerk_audience)}
    decode_kwargs: Dict[str, Any] = {
        "algorithms": ["RS256"],
        "options": options,
    }
    if clerk_issuer:
        decode_kwargs["issuer"] = clerk_issuer
    if clerk_audience:
        decode_kwargs["audience"] = clerk_audience

    try:
        if clerk_jwt_key:
            claims = jwt.decode(token, clerk_jwt_key, **decode_kwargs)
        else:
            jwks_client = _get_cached_jwks_client(clerk_jwks_url or "")
            signing_key = jwks_client.get_signing_key_from_jwt(token).key
            claims = jwt.decode(token, signing_key, **decode_kwargs)
    except jwt.PyJWTError as exc:
        raise AuthError("Invalid or expired session token") from exc

    if authorized_parties:
        azp = claims.get("azp")
        if not azp or azp not in authorized_parties:
            raise AuthError("Unauthorized token issuer")

    return claims


def require_caller(request: Request) -> Caller:
    """
    Authenticate the request and return who is calling.

    Priority:
    - If AUTH_TOKEN is set, accept only that bearer token; identity comes from
      the X-User-Id / X-Tenant-Id headers and the caller counts as a service.
    - Otherwise, if Clerk is configured, require a valid session token; the user
      is the `sub` claim and the tenant the `org_id` claim (or X-Tenant-Id).
    - If neither is configured, identity is taken from the headers (dev/tests).
    """
    settings = get_settings()
    user_id = request.headers.get("X-User-Id")
    tenant_id = request.headers.get("X-Tenant-Id")
    service = False

    if settings.auth_token:
        supplied = _get_bearer_token(request)
        if not supplied:
            raise AuthError("Missing or invalid Authorization header")
        if supplied != settings.auth_token:
            raise AuthError("Invalid bearer token")
        service = True
    elif settings.clerk_jwt_key or settings.clerk_jwks_url:
        token = _get_bearer_token(request) or _get_session_cookie(request)
        if not token:
            raise AuthError("Missing session token")
        claims = _verify_clerk_token(token)
        user_id = claims.get("sub")
        if not user_id:
            raise AuthError("Missing user id in token")
        tenant_id = claims.get("org_id") or tenant_id

    if not user_id:
        raise AuthError("Missing user id")
    if not tenant_id:
        raise AuthError("Missing tenant id")
    return Caller(
        user_id=str(user_id),
        tenant_id=str(tenant_id),
        channel_id=request.headers.get("X-Channel-Id") or "api",
        service=service,
    )
