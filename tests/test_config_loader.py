import pytest

from tutor_gateway.agents.config_loader import (
    list_agent_config_ids,
    load_agent_config,
    load_all_agent_configs,
    parse_agent_config,
)
from tutor_gateway.cost import ModelTier
from tutor_gateway.errors import AgentConfigError
from tutor_gateway.models import AgentTier, Capability


VALID_YAML = """
id: helper
display_name: Helper
localized_name: المساعد
tier: support
default_model: flash-lite
allowed_models: [flash-lite, flash]
capabilities: [well_being]
system_prompt: |
  أنت مساعد.
"""


def test_bundled_configs_load():
    configs = load_all_agent_configs()

    assert {"maestro", "visualizer", "narrator", "problem-decomposer", "socratic", "wellbeing"} <= set(configs)
    maestro = configs["maestro"]
    assert maestro.tier == AgentTier.ORCHESTRATION
    assert "handoff_to_agent" in maestro.tools
    assert Capability.VISUALIZATION in configs["visualizer"].capabilities


def test_load_from_custom_dir(tmp_path):
    (tmp_path / "helper.yaml").write_text(VALID_YAML, encoding="utf-8")

    config = load_agent_config("helper", tmp_path)

    assert config.default_model == ModelTier.CHEAP
    assert config.allows(ModelTier.BALANCED)
    assert not config.allows(ModelTier.CAPABLE)
    assert list_agent_config_ids(tmp_path) == ["helper"]


def test_missing_file_raises(tmp_path):
    with pytest.raises(AgentConfigError, match="not found"):
        load_agent_config("ghost", tmp_path)


def test_id_must_match_filename(tmp_path):
    (tmp_path / "other.yaml").write_text(VALID_YAML, encoding="utf-8")
    with pytest.raises(AgentConfigError, match="declares id"):
        load_agent_config("other", tmp_path)


def test_invalid_yaml_raises(tmp_path):
    (tmp_path / "broken.yaml").write_text("id: [unclosed", encoding="utf-8")
    with pytest.raises(AgentConfigError, match="not valid YAML"):
        load_agent_config("broken", tmp_path)


def test_schema_violation_names_field():
    raw = {
        "id": "helper",
        "display_name": "Helper",
        "localized_name": "المساعد",
        "tier": "support",
        "default_model": "gpt-9",
        "system_prompt": "x",
    }
    with pytest.raises(AgentConfigError, match="default_model"):
        parse_agent_config(raw)


def test_unknown_keys_are_rejected():
    raw = {
        "id": "helper",
        "display_name": "Helper",
        "localized_name": "المساعد",
        "tier": "support",
        "default_model": "flash",
        "system_prompt": "x",
        "colour": "blue",
    }
    with pytest.raises(AgentConfigError):
        parse_agent_config(raw)


def test_missing_directory_lists_nothing(tmp_path):
    assert list_agent_config_ids(tmp_path / "nope") == []
