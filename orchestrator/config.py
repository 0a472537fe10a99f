import os
from functools import lru_cache
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

# Load .env from current directory so PROVIDER, Twilio and API keys are set automatically.
load_dotenv()

DEFAULT_PERMISSIONS = "view:transactions,view:vat_reports,view:receipts,upload:documents"


class Settings(BaseModel):
    """Runtime configuration loaded from environment variables."""

    provider_name: str
    model_name: str
    auth_token: Optional[str]
    clerk_jwks_url: Optional[str]
    clerk_jwt_key: Optional[str]
    clerk_issuer: Optional[str]
    clerk_audience: Optional[str]
    clerk_authorized_parties: List[str]
    db_path: str = "./data/orchestrator.db"
    cors_origins: str = "*"

    max_context_messages: int = Field(default=20, ge=1)
    default_permissions: List[str] = Field(default_factory=list)

    messaging_provider: str = "log"
    twilio_account_sid: Optional[str] = None
    twilio_auth_token: Optional[str] = None
    twilio_whatsapp_number: Optional[str] = None

    messages_per_minute: int = Field(default=30, ge=1)
    log_level: str = "INFO"

    service_name: str = "conversation-orchestrator"
    service_version: str = "0.1.0"
    http_port: int = 4280


@lru_cache(maxsize=1)
def _base_settings() -> Settings:
    """
    Base settings lookup.

    NOTE: environment values are *not* cached here; `get_settings` below
    re-creates Settings each time from the current environment. This helper
    only stores defaults.
    """

    return Settings(
        provider_name="stub",
        model_name="stub",
        auth_token=None,
        clerk_jwks_url=None,
        clerk_jwt_key=None,
        clerk_issuer=None,
        clerk_audience=None,
        clerk_authorized_parties=[],
        db_path="./data/orchestrator.db",
        cors_origins="*",
        default_permissions=_split_csv(DEFAULT_PERMISSIONS),
    )


def _split_csv(raw: str) -> List[str]:
    return [part.strip() for part in raw.split(",") if part.strip()]


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def get_settings() -> Settings:
    """
    Return Settings built from the *current* environment.

    Tests mutate os.environ at runtime, so we read directly from the
    environment on each call instead of caching.
    """

    base = _base_settings()
    provider_name = (os.getenv("PROVIDER") or base.provider_name).lower()
    model_name = os.getenv("MODEL_NAME") or os.getenv("OPENROUTER_MODEL") or base.model_name

    default_permissions_raw = os.getenv("DEFAULT_PERMISSIONS")
    if default_permissions_raw is None:
        default_permissions = list(base.default_permissions)
    else:
        default_permissions = _split_csv(default_permissions_raw)

    return Settings(
        provider_name=provider_name,
        model_name=model_name,
        auth_token=os.getenv("AUTH_TOKEN") or None,
        clerk_jwks_url=os.getenv("CLERK_JWKS_URL") or None,
        clerk_jwt_key=os.getenv("CLERK_JWT_KEY") or None,
        clerk_issuer=os.getenv("CLERK_ISSUER") or None,
        clerk_audience=os.getenv("CLERK_AUDIENCE") or None,
        clerk_authorized_parties=_split_csv(os.getenv("CLERK_AUTHORIZED_PARTIES") or ""),
        db_path=os.getenv("DB_PATH") or base.db_path,
        cors_origins=os.getenv("CORS_ORIGINS") or base.cors_origins,
        max_context_messages=max(1, _int_env("MAX_CONTEXT_MESSAGES", base.max_context_messages)),
        default_permissions=default_permissions,
        messaging_provider=(os.getenv("MESSAGING_PROVIDER") or base.messaging_provider).lower(),
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID") or None,
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN") or None,
        twilio_whatsapp_number=os.getenv("TWILIO_WHATSAPP_NUMBER") or None,
        messages_per_minute=max(1, _int_env("MESSAGES_PER_MINUTE", base.messages_per_minute)),
        log_level=(os.getenv("LOG_LEVEL") or base.log_level).upper(),
        service_name=base.service_name,
        service_version=base.service_version,
        http_port=_int_env("PORT", base.http_port),
    )
