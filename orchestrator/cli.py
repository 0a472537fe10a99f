"""CLI entry point for the conversation-orchestrator package."""

from __future__ import annotations

import argparse
import asyncio
import os
import platform
import shutil
import subprocess
import sys
from typing import List, Optional

# OpenRouter: one API key for many models (OpenAI, Claude, Gemini, etc.)
OPENROUTER_KEYS_URL = "https://openrouter.ai/keys"
MIN_PYTHON = (3, 10)


def _print_setup_banner(
    provider: str,
    messaging: str,
    port: int,
    *,
    for_startup: bool = True,
) -> None:
    """Print setup/LLM instructions. If for_startup, show 'orchestrator started' line; else show 'Setup' header."""
    provider_note = "no API key required" if provider == "stub" else "API key from .env"
    base = f"http://localhost:{port}"
    print()
    if for_startup:
        print("✅ Conversation orchestrator started")
    else:
        print("Conversation Orchestrator — Setup")
    print("Provider: {} ({})  |  Messaging: {}".format(provider, provider_note, messaging))
    print()
    print("Docs:     {}/docs".format(base))
    print("Health:   {}/health".format(base))
    print("Messages: POST {}/orchestration/messages".format(base))
    print()
    print("────────────────────────────────────────────")
    print("Get an API key from OpenRouter (one key for many models):")
    print("   {}".format(OPENROUTER_KEYS_URL))
    print()
    print("Copy the block below into .env and replace YOUR_KEY_HERE with your key.")
    print()
    print("   PROVIDER=openrouter")
    print("   OPENROUTER_API_KEY=YOUR_KEY_HERE")
    print("   OPENROUTER_MODEL=openai/gpt-4o-mini")
    print()
    print("WhatsApp delivery through Twilio (optional):")
    print()
    print("   MESSAGING_PROVIDER=twilio")
    print("   TWILIO_ACCOUNT_SID=ACxxxxxxxx")
    print("   TWILIO_AUTH_TOKEN=YOUR_TOKEN_HERE")
    print("   TWILIO_WHATSAPP_NUMBER=+14155238886")
    print()
    print("Then restart: stop the server (Ctrl+C) and run orchestrator again.")
    print()


def _python_version_str() -> str:
    return ".".join(str(part) for part in sys.version_info[:3])


def _print_help() -> None:
    print("Conversation Orchestrator CLI")
    print()
    print("Usage:")
    print("  orchestrator                Start the HTTP server")
    print("  orchestrator setup          Print setup/env guidance")
    print("  orchestrator doctor         Print install/environment diagnostics")
    print("  orchestrator send <text> [--user U] [--tenant T] [--conversation C]")
    print("                              Process one message locally and print the reply")
    print()


def _print_doctor() -> None:
    from .config import get_settings
    from .storage.db import get_db_info

    settings = get_settings()
    db = get_db_info()

    print("Conversation Orchestrator Doctor")
    print()
    print(f"Platform: {platform.platform()}")
    print(f"Python:   {_python_version_str()}")
    print(f"Exe:      {sys.executable}")
    print(f"In venv:  {'yes' if sys.prefix != sys.base_prefix else 'no'}")
    print(f"PATH bin: {shutil.which('orchestrator') or 'not found'}")

    try:
        pip_version = subprocess.check_output(
            [sys.executable, "-m", "pip", "--version"],
            text=True,
            stderr=subprocess.STDOUT,
        ).strip()
    except Exception as exc:  # pragma: no cover - diagnostics fallback
        pip_version = f"unavailable ({exc})"
    print(f"Pip:      {pip_version}")
    print(f"Database: {db.dialect} ({db.db_path if db.dialect == 'sqlite' else 'DATABASE_URL'})")
    print(f"Provider: {settings.provider_name}  model={settings.model_name}")
    print(f"Messaging: {settings.messaging_provider}")
    if sys.version_info < MIN_PYTHON:
        print(
            f"Issue: Python is below required minimum {MIN_PYTHON[0]}.{MIN_PYTHON[1]}."
        )
    print()
    print("Recommended install flow:")
    print("  python3 -m venv .venv")
    if os.name == "nt":
        print(r"  .\.venv\Scripts\activate")
    else:
        print("  source .venv/bin/activate")
    print("  python -m pip install -U pip")
    print("  python -m pip install conversation-orchestrator")


def _run_send(argv: List[str]) -> int:
    """Run one process_sync round-trip against the local database and print the reply."""
    from .dependencies import build_pipeline
    from .models import InboundMessage, OrchestrationRequest

    parser = argparse.ArgumentParser(prog="orchestrator send")
    parser.add_argument("text")
    parser.add_argument("--user", default="cli-user")
    parser.add_argument("--tenant", default="cli-tenant")
    parser.add_argument("--channel", default="cli")
    parser.add_argument("--conversation", default=None)
    args = parser.parse_args(argv)

    request = OrchestrationRequest(
        message=InboundMessage(content=args.text, from_=args.user),
        source="internal",
        user_id=args.user,
        tenant_id=args.tenant,
        channel_id=args.channel,
        conversation_id=args.conversation,
        mode="sync",
    )
    response = asyncio.run(build_pipeline().process_sync(request))
    print(response.response_text)
    print()
    print(
        "conversation={} intent={} actions={} tokens={}".format(
            response.conversation_id,
            response.metadata.intent,
            len(response.actions),
            response.metadata.tokens_used,
        )
    )
    return 0


def main(argv: Optional[List[str]] = None) -> None:
    """Run the orchestrator server or handle setup/doctor/send commands."""
    from .config import get_settings

    argv = sys.argv[1:] if argv is None else argv
    settings = get_settings()
    port = settings.http_port
    host = os.environ.get("HOST", "0.0.0.0")

    if argv:
        subcommand = argv[0].strip().lower()
        if subcommand in {"-h", "--help", "help"}:
            _print_help()
            sys.exit(0)
        if subcommand == "setup":
            _print_setup_banner(
                provider=settings.provider_name,
                messaging=settings.messaging_provider,
                port=port,
                for_startup=False,
            )
            sys.exit(0)
        if subcommand == "doctor":
            _print_doctor()
            sys.exit(0)
        if subcommand == "send":
            sys.exit(_run_send(argv[1:]))
        print(f"Unknown command: {subcommand}", file=sys.stderr)
        _print_help()
        sys.exit(2)

    import uvicorn

    _print_setup_banner(
        provider=settings.provider_name,
        messaging=settings.messaging_provider,
        port=port,
        for_startup=True,
    )

    uvicorn.run(
        "orchestrator.main:app",
        host=host,
        port=port,
        factory=False,
    )


if __name__ == "__main__":
    main()
    sys.exit(0)
