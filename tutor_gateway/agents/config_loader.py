from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from jsonschema import Draft7Validator
from pydantic import ValidationError

from ..cost import ModelTier
from ..errors import AgentConfigError
from ..models import AgentConfig, AgentTier, Capability
from ..tools import DECLARATIONS

logger = logging.getLogger("tutor-gateway")

# Agent YAML files live next to this module (tutor_gateway/agents/configs/*.yaml).
CONFIGS_DIR = Path(__file__).parent / "configs"

AGENT_CONFIG_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "id": {"type": "string", "pattern": "^[a-z][a-z0-9-]*$"},
        "display_name": {"type": "string", "minLength": 1},
        "localized_name": {"type": "string", "minLength": 1},
        "description": {"type": "string"},
        "tier": {"type": "string", "enum": [t.value for t in AgentTier]},
        "default_model": {"type": "string", "enum": [m.value for m in ModelTier]},
        "allowed_models": {
            "type": "array",
            "items": {"type": "string", "enum": [m.value for m in ModelTier]},
        },
        "system_prompt": {"type": "string", "minLength": 1},
        "capabilities": {
            "type": "array",
            "items": {"type": "string", "enum": [c.value for c in Capability]},
        },
        "temperature": {"type": "number", "minimum": 0, "maximum": 2},
        "max_tokens": {"type": "integer", "minimum": 1},
        "max_requests_per_minute": {"type": "integer", "minimum": 1},
        "conversation_memory_size": {"type": "integer", "minimum": 1},
        "cache_system_prompt": {"type": "boolean"},
        "tools": {"type": "array", "items": {"type": "string", "enum": sorted(DECLARATIONS)}},
    },
    "required": ["id", "display_name", "localized_name", "tier", "default_model", "system_prompt"],
    "additionalProperties": False,
}


def _read_config_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise AgentConfigError(f"Agent config file not found: {path}")

    with path.open("r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise AgentConfigError(f"Agent config {path.name} is not valid YAML: {exc}") from exc

    if not isinstance(data, dict):
        raise AgentConfigError(f"Agent config {path.name} must deserialize to a mapping")

    return data


def parse_agent_config(raw: Dict[str, Any], *, source: str = "<inline>") -> AgentConfig:
    """Validate a raw mapping against the config schema and build an AgentConfig."""
    errors = sorted(Draft7Validator(AGENT_CONFIG_SCHEMA).iter_errors(raw), key=lambda e: list(e.path))
    if errors:
        first = errors[0]
        location = ".".join(str(p) for p in first.path) or "<root>"
        raise AgentConfigError(f"Invalid agent config {source}: {location}: {first.message}")

    try:
        return AgentConfig(**raw)
    except ValidationError as exc:
        raise AgentConfigError(f"Invalid agent config {source}: {exc}") from exc


def load_agent_config(agent_id: str, config_dir: Optional[Path] = None) -> AgentConfig:
    """Load and validate one agent config by id."""
    directory = config_dir or CONFIGS_DIR
    path = directory / f"{agent_id}.yaml"
    config = parse_agent_config(_read_config_yaml(path), source=path.name)
    if config.id != agent_id:
        raise AgentConfigError(f"Agent config {path.name} declares id '{config.id}'")
    return config


def list_agent_config_ids(config_dir: Optional[Path] = None) -> List[str]:
    """Discover agent ids from configs/*.yaml (filename stem = id). Returns sorted list."""
    directory = config_dir or CONFIGS_DIR
    if not directory.exists():
        return []
    return sorted(p.stem for p in directory.glob("*.yaml") if p.is_file())


def load_all_agent_configs(config_dir: Optional[Path] = None) -> Dict[str, AgentConfig]:
    configs = {agent_id: load_agent_config(agent_id, config_dir) for agent_id in list_agent_config_ids(config_dir)}
    logger.info("agent_configs_loaded count=%s ids=%s", len(configs), ",".join(configs))
    return configs
