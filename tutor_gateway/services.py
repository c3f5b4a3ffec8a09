"""
Process-wide services with an explicit lifecycle.

`init_services` runs once at startup (FastAPI lifespan) and the returned
container is passed to whoever needs it; `shutdown_services` releases the
provider's HTTP client and empties the registry.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from .agents import AGENT_CLASSES, PromptAgent
from .agents.config_loader import load_all_agent_configs
from .config import Settings, get_settings
from .context import ContextManager, MemoryStore
from .errors import AgentConfigError
from .models import AgentConfig
from .orchestrator import MAESTRO_ID, MaestroAgent
from .providers import BaseProvider, build_provider
from .registry import AgentRegistry
from .retry import RetryPolicy

logger = logging.getLogger("tutor-gateway")


@dataclass
class Services:
    settings: Settings
    provider: BaseProvider
    context_manager: ContextManager
    registry: AgentRegistry
    maestro: MaestroAgent
    configs: Dict[str, AgentConfig]


def retry_policy_from_settings(settings: Settings) -> RetryPolicy:
    return RetryPolicy(
        max_retries=settings.retry_max_retries,
        initial_delay=settings.retry_initial_delay,
        max_delay=settings.retry_max_delay,
        backoff_factor=settings.retry_backoff_factor,
    )


def init_services(
    settings: Optional[Settings] = None,
    *,
    provider: Optional[BaseProvider] = None,
    memory_store: Optional[MemoryStore] = None,
    configs: Optional[Dict[str, AgentConfig]] = None,
) -> Services:
    settings = settings or get_settings()
    if configs is None:
        config_dir = Path(settings.agent_config_dir) if settings.agent_config_dir else None
        configs = load_all_agent_configs(config_dir)
    if MAESTRO_ID not in configs:
        raise AgentConfigError("No configuration found for the maestro agent")

    provider = provider or build_provider(settings)
    context_manager = ContextManager(store=memory_store)
    registry = AgentRegistry()

    maestro = MaestroAgent(
        configs[MAESTRO_ID],
        provider,
        context_manager,
        registry,
        retry_policy=retry_policy_from_settings(settings),
        request_timeout=settings.request_timeout_seconds,
        max_input_chars=settings.max_input_chars,
        max_context_tokens=settings.max_context_tokens,
    )
    registry.register(maestro)

    for agent_id, config in configs.items():
        if agent_id == MAESTRO_ID:
            continue
        agent_cls = AGENT_CLASSES.get(agent_id, PromptAgent)
        registry.register(agent_cls(config, provider, context_manager))

    logger.info(
        "services_ready provider=%s agents=%s",
        getattr(provider, "name", type(provider).__name__),
        ",".join(registry.ids()),
    )
    return Services(
        settings=settings,
        provider=provider,
        context_manager=context_manager,
        registry=registry,
        maestro=maestro,
        configs=configs,
    )


async def shutdown_services(services: Services) -> None:
    services.registry.clear()
    await services.provider.aclose()
    logger.info("services_stopped")
