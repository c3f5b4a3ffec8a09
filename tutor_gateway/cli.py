"""CLI entry point for the tutor-gateway package."""

from __future__ import annotations

import os
import platform
import shutil
import sys
from pathlib import Path
from typing import Optional

GEMINI_KEYS_URL = "https://aistudio.google.com/app/apikey"
OPENROUTER_KEYS_URL = "https://openrouter.ai/keys"
MIN_PYTHON = (3, 10)


def _print_setup_banner(
    provider: str,
    port: int,
    agent_count: int,
    *,
    for_startup: bool = True,
) -> None:
    """Print setup/LLM instructions. If for_startup, show 'gateway started' line; else show 'Setup' header."""
    provider_note = "no API key required" if provider == "stub" else "API key from .env"
    base = f"http://localhost:{port}"
    print()
    if for_startup:
        print("Tutor gateway started with {} agents".format(agent_count))
    else:
        print("Tutor Gateway: Setup")
    print("Provider: {} ({})".format(provider, provider_note))
    print()
    print("Docs:   {}/docs".format(base))
    print("Chat:   POST {}/chat".format(base))
    print("Agents: {}/agents".format(base))
    print()
    print("--------------------------------------------")
    print("Get a Gemini API key:")
    print("   {}".format(GEMINI_KEYS_URL))
    print("or an OpenRouter key (one key for many models):")
    print("   {}".format(OPENROUTER_KEYS_URL))
    print()
    print("Create a .env file in this folder and add one of these blocks:")
    print()
    print("   PROVIDER=gemini")
    print("   GEMINI_API_KEY=YOUR_KEY_HERE")
    print()
    print("   PROVIDER=openrouter")
    print("   OPENROUTER_API_KEY=YOUR_KEY_HERE")
    print("   OPENROUTER_MODEL=google/gemini-2.5-flash")
    print()
    print("Then restart: stop the server (Ctrl+C) and run tutor-gateway again.")
    print()


def _python_version_str() -> str:
    return ".".join(str(part) for part in sys.version_info[:3])


def _print_help() -> None:
    print("Tutor Gateway CLI")
    print()
    print("Usage:")
    print("  tutor-gateway               Start the gateway server")
    print("  tutor-gateway setup         Print setup/env guidance")
    print("  tutor-gateway doctor        Print install/environment diagnostics")
    print("  tutor-gateway agents        List the configured agents")
    print()


def _print_doctor() -> None:
    from .config import get_settings
    from .storage.db import get_db_info

    settings = get_settings()
    db = get_db_info()
    print("Tutor Gateway Doctor")
    print()
    print(f"Platform: {platform.platform()}")
    print(f"Python:   {_python_version_str()}")
    print(f"Exe:      {sys.executable}")
    print(f"In venv:  {'yes' if sys.prefix != sys.base_prefix else 'no'}")
    print(f"PATH bin: {shutil.which('tutor-gateway') or 'not found'}")
    print(f"Provider: {settings.provider_name}")
    print(f"Gemini:   {'key set' if settings.gemini_api_key else 'no key'}")
    print(f"OpenRouter: {'key set' if settings.openrouter_api_key else 'no key'}")
    print(f"Store:    {db.dialect} ({db.location})")
    if sys.version_info < MIN_PYTHON:
        print(f"Issue: Python is below required minimum {MIN_PYTHON[0]}.{MIN_PYTHON[1]}.")
    if settings.provider_name == "gemini" and not settings.gemini_api_key:
        print("Issue: PROVIDER=gemini but GEMINI_API_KEY is not set; the stub provider will be used.")
    if settings.provider_name == "openrouter" and not settings.openrouter_api_key:
        print("Issue: PROVIDER=openrouter but OPENROUTER_API_KEY is not set; the stub provider will be used.")


def _print_agents() -> int:
    from .agents.config_loader import load_all_agent_configs
    from .config import get_settings
    from .errors import AgentConfigError

    settings = get_settings()
    config_dir = Path(settings.agent_config_dir) if settings.agent_config_dir else None
    try:
        configs = load_all_agent_configs(config_dir)
    except AgentConfigError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    for config in configs.values():
        print(
            "{:<20} {:<14} {:<10} {}".format(
                config.id,
                config.tier.value,
                config.default_model.value,
                config.display_name,
            )
        )
    return 0


def _count_agents(config_dir: Optional[str] = None) -> int:
    from .agents.config_loader import list_agent_config_ids

    return len(list_agent_config_ids(Path(config_dir) if config_dir else None))


def main() -> None:
    """Run the tutor gateway or handle setup/doctor/agents commands."""
    from .config import get_settings

    host = os.environ.get("HOST", "0.0.0.0")
    settings = get_settings()
    port = settings.http_port

    if len(sys.argv) > 1:
        subcommand = sys.argv[1].strip().lower()
        if subcommand in {"-h", "--help", "help"}:
            _print_help()
            sys.exit(0)
        if subcommand == "setup":
            _print_setup_banner(
                provider=settings.provider_name,
                port=port,
                agent_count=_count_agents(settings.agent_config_dir),
                for_startup=False,
            )
            sys.exit(0)
        if subcommand == "doctor":
            _print_doctor()
            sys.exit(0)
        if subcommand == "agents":
            sys.exit(_print_agents())
        print(f"Unknown command: {subcommand}", file=sys.stderr)
        _print_help()
        sys.exit(2)

    import uvicorn

    _print_setup_banner(
        provider=settings.provider_name,
        port=port,
        agent_count=_count_agents(settings.agent_config_dir),
        for_startup=True,
    )

    uvicorn.run(
        "tutor_gateway.main:app",
        host=host,
        port=port,
        factory=False,
    )


if __name__ == "__main__":
    main()
    sys.exit(0)
