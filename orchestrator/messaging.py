"""
Outbound channel delivery.

LoggingMessagingService is the default and keeps an in-memory outbox;
TwilioMessagingService posts to the Twilio Messages API for WhatsApp.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

import httpx

from .config import Settings, get_settings
from .models import new_id

logger = logging.getLogger("orchestrator")

REGISTRATION_PROMPT = (
    "Hello! I'm Kibly, your document assistant. 👋\n\n"
    "To get started, please reply with your email address so I can link your account."
)
VERIFICATION_REMINDER = "Please verify your phone number first."

TWILIO_API_URL = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"

_E164 = re.compile(r"^\+[1-9]\d{1,14}$")


@dataclass(frozen=True)
class SendResult:
    message_id: str
    status: str
    to: str
    error: Optional[str] = None


class MessagingService(Protocol):
    async def send_message(self, to: str, text: str, media_url: Optional[str] = None) -> SendResult:  # pragma: no cover
        ...

    async def send_registration_prompt(self, to: str) -> SendResult:  # pragma: no cover
        ...


def strip_channel_prefix(address: str) -> str:
    return address[len("whatsapp:"):] if address.startswith("whatsapp:") else address


def format_phone_number(phone_number: str, default_country_code: str = "+44") -> Optional[str]:
    """Normalize a phone number to E.164, or None when it cannot be."""
    cleaned = re.sub(r"[^\d+]", "", strip_channel_prefix(phone_number or ""))
    if not cleaned.strip("+"):
        return None
    if cleaned.startswith("+"):
        candidate = cleaned
    elif cleaned.startswith("00"):
        candidate = "+" + cleaned[2:]
    elif cleaned.startswith("0"):
        candidate = default_country_code + cleaned[1:]
    else:
        candidate = default_country_code + cleaned
    return candidate if _E164.match(candidate) else None


@dataclass
class LoggingMessagingService:
    """Delivery that only logs; sent messages are kept in `outbox`."""

    outbox: List[Dict[str, Any]] = field(default_factory=list)

    async def send_message(self, to: str, text: str, media_url: Optional[str] = None) -> SendResult:
        to = strip_channel_prefix(to)
        result = SendResult(message_id=new_id(), status="logged", to=to)
        self.outbox.append({"to": to, "text": text, "media_url": media_url, "message_id": result.message_id})
        logger.info("message logged to=%s chars=%d", to, len(text))
        return result

    async def send_registration_prompt(self, to: str) -> SendResult:
        return await self.send_message(to, REGISTRATION_PROMPT)


class TwilioMessagingService:
    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        *,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 15.0,
    ) -> None:
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = strip_channel_prefix(from_number)
        self._client = client
        self._timeout = timeout

    async def send_message(self, to: str, text: str, media_url: Optional[str] = None) -> SendResult:
        """Send one WhatsApp message. HTTP failures raise httpx.HTTPStatusError."""
        number = format_phone_number(to) or strip_channel_prefix(to)
        data: Dict[str, str] = {
            "From": f"whatsapp:{self.from_number}",
            "To": f"whatsapp:{number}",
            "Body": text,
        }
        if media_url:
            data["MediaUrl"] = media_url

        url = TWILIO_API_URL.format(sid=self.account_sid)
        auth = (self.account_sid, self.auth_token)
        if self._client is not None:
            resp = await self._client.post(url, data=data, auth=auth, timeout=self._timeout)
        else:
            async with httpx.AsyncClient() as client:
                resp = await client.post(url, data=data, auth=auth, timeout=self._timeout)
        resp.raise_for_status()
        payload = resp.json()
        logger.info("twilio message sent to=%s sid=%s status=%s", number, payload.get("sid"), payload.get("status"))
        return SendResult(message_id=str(payload.get("sid") or ""), status=str(payload.get("status") or "queued"), to=number)

    async def send_registration_prompt(self, to: str) -> SendResult:
        return await self.send_message(to, REGISTRATION_PROMPT)


def build_messaging_service(settings: Optional[Settings] = None) -> MessagingService:
    settings = settings or get_settings()
    if settings.messaging_provider == "twilio":
        if settings.twilio_account_sid and settings.twilio_auth_token and settings.twilio_whatsapp_number:
            return TwilioMessagingService(
                settings.twilio_account_sid,
                settings.twilio_auth_token,
                settings.twilio_whatsapp_number,
            )
        logger.warning("MESSAGING_PROVIDER=twilio but TWILIO_* settings are incomplete; using log delivery")
    return LoggingMessagingService()
