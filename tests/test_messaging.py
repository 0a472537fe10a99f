from urllib.parse import parse_qs

import httpx
import pytest

from orchestrator.config import get_settings
from orchestrator.messaging import (
    REGISTRATION_PROMPT,
    LoggingMessagingService,
    TwilioMessagingService,
    build_messaging_service,
    format_phone_number,
    strip_channel_prefix,
)

from conftest import env_vars


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("+447700900123", "+447700900123"),
        ("whatsapp:+447700900123", "+447700900123"),
        ("07700 900123", "+447700900123"),
        ("00447700900123", "+447700900123"),
        ("(0)20-7946-0958", "+442079460958"),
        ("not a number", None),
        ("", None),
    ],
)
def test_format_phone_number(raw, expected):
    assert format_phone_number(raw) == expected


def test_format_phone_number_other_country():
    assert format_phone_number("0612345678", default_country_code="+31") == "+31612345678"


def test_strip_channel_prefix():
    assert strip_channel_prefix("whatsapp:+447700900123") == "+447700900123"
    assert strip_channel_prefix("+447700900123") == "+447700900123"


@pytest.mark.asyncio
async def test_logging_service_keeps_outbox():
    service = LoggingMessagingService()

    result = await service.send_message("whatsapp:+447700900123", "Your VAT is due on 7 May.")
    await service.send_registration_prompt("+447700900999")

    assert result.status == "logged"
    assert [m["to"] for m in service.outbox] == ["+447700900123", "+447700900999"]
    assert service.outbox[1]["text"] == REGISTRATION_PROMPT


@pytest.mark.asyncio
async def test_twilio_posts_form_to_messages_api():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["form"] = parse_qs(request.content.decode())
        captured["auth"] = request.headers.get("Authorization")
        return httpx.Response(201, json={"sid": "SM123", "status": "queued"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        service = TwilioMessagingService("AC123", "secret", "whatsapp:+14155238886", client=client)
        result = await service.send_message("07700 900123", "Hello", media_url="https://example.com/r.pdf")

    assert captured["url"] == "https://api.twilio.com/2010-04-01/Accounts/AC123/Messages.json"
    assert captured["form"] == {
        "From": ["whatsapp:+14155238886"],
        "To": ["whatsapp:+447700900123"],
        "Body": ["Hello"],
        "MediaUrl": ["https://example.com/r.pdf"],
    }
    assert captured["auth"].startswith("Basic ")
    assert result.message_id == "SM123"
    assert result.status == "queued"
    assert result.to == "+447700900123"


@pytest.mark.asyncio
async def test_twilio_http_error_propagates():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"message": "invalid To"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        service = TwilioMessagingService("AC123", "secret", "+14155238886", client=client)
        with pytest.raises(httpx.HTTPStatusError):
            await service.send_message("+447700900123", "Hello")


def test_build_messaging_service_selects_provider():
    assert isinstance(build_messaging_service(get_settings()), LoggingMessagingService)

    with env_vars({"MESSAGING_PROVIDER": "twilio"}):
        # Incomplete Twilio settings fall back to log delivery.
        assert isinstance(build_messaging_service(), LoggingMessagingService)

    with env_vars(
        {
            "MESSAGING_PROVIDER": "twilio",
            "TWILIO_ACCOUNT_SID": "AC123",
            "TWILIO_AUTH_TOKEN": "secret",
            "TWILIO_WHATSAPP_NUMBER": "+14155238886",
        }
    ):
        assert isinstance(build_messaging_service(), TwilioMessagingService)
