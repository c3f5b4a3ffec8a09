import os
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel

# Load .env from current directory so PROVIDER and API keys are set automatically.
load_dotenv()


class Settings(BaseModel):
    """Runtime configuration loaded from environment variables."""

    provider_name: str
    gemini_api_key: Optional[str]
    openrouter_api_key: Optional[str]
    openrouter_model: Optional[str]
    auth_token: Optional[str]
    database_url: Optional[str] = None

    model_cheap: str = "gemini-2.0-flash-exp"
    model_balanced: str = "gemini-2.5-flash"
    model_capable: str = "gemini-2.5-pro"

    db_path: str = "./data/tutor.db"
    cors_origins: str = "*"
    agent_config_dir: Optional[str] = None

    request_timeout_seconds: float = 90.0
    provider_timeout_seconds: float = 60.0
    retry_max_retries: int = 3
    retry_initial_delay: float = 1.0
    retry_max_delay: float = 30.0
    retry_backoff_factor: float = 2.0
    max_input_chars: int = 4000
    max_context_tokens: int = 30000

    service_name: str = "tutor-gateway"
    http_port: int = 4280


@lru_cache(maxsize=1)
def _base_settings() -> Settings:
    """
    Base settings lookup.

    Only defaults live here; `get_settings` re-reads the environment on
    every call.
    """

    return Settings(
        provider_name="stub",
        gemini_api_key=None,
        openrouter_api_key=None,
        openrouter_model=None,
        auth_token=None,
    )


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
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

    Tests mutate os.environ at runtime via the `env_vars` helper, so we must
    read directly from the environment on each call instead of caching.
    """

    base = _base_settings()
    return Settings(
        provider_name=(os.getenv("PROVIDER") or base.provider_name).lower(),
        gemini_api_key=os.getenv("GEMINI_API_KEY") or None,
        openrouter_api_key=os.getenv("OPENROUTER_API_KEY") or None,
        openrouter_model=os.getenv("OPENROUTER_MODEL") or None,
        auth_token=os.getenv("AUTH_TOKEN") or None,
        database_url=os.getenv("DATABASE_URL") or None,
        model_cheap=os.getenv("MODEL_CHEAP") or base.model_cheap,
        model_balanced=os.getenv("MODEL_BALANCED") or base.model_balanced,
        model_capable=os.getenv("MODEL_CAPABLE") or base.model_capable,
        db_path=os.getenv("DB_PATH") or base.db_path,
        cors_origins=os.getenv("CORS_ORIGINS") or base.cors_origins,
        agent_config_dir=os.getenv("AGENT_CONFIG_DIR") or None,
        request_timeout_seconds=_env_float("REQUEST_TIMEOUT_SECONDS", base.request_timeout_seconds),
        provider_timeout_seconds=_env_float("PROVIDER_TIMEOUT_SECONDS", base.provider_timeout_seconds),
        retry_max_retries=_env_int("RETRY_MAX_RETRIES", base.retry_max_retries),
        retry_initial_delay=_env_float("RETRY_INITIAL_DELAY", base.retry_initial_delay),
        retry_max_delay=_env_float("RETRY_MAX_DELAY", base.retry_max_delay),
        retry_backoff_factor=_env_float("RETRY_BACKOFF_FACTOR", base.retry_backoff_factor),
        max_input_chars=_env_int("MAX_INPUT_CHARS", base.max_input_chars),
        max_context_tokens=_env_int("MAX_CONTEXT_TOKENS", base.max_context_tokens),
        service_name=base.service_name,
        http_port=_env_int("PORT", base.http_port),
    )
