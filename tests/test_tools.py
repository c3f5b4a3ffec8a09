import pytest

from tutor_gateway.tools import (
    ASK_SOCRATIC_QUESTION,
    HANDOFF_TO_AGENT,
    ToolCallInvalid,
    get_declarations,
    validate_call,
)


def test_valid_handoff_is_returned_as_plain_dict():
    args = validate_call(
        "handoff_to_agent",
        {"agent_id": "visualizer", "reason": "plot", "confidence": 0.9},
        known_agent_ids={"visualizer", "narrator"},
    )
    assert args == {"agent_id": "visualizer", "reason": "plot", "confidence": 0.9}


def test_handoff_missing_reason_is_rejected():
    with pytest.raises(ToolCallInvalid) as excinfo:
        validate_call("handoff_to_agent", {"agent_id": "visualizer"})
    assert excinfo.value.details
    assert "reason" in excinfo.value.details[0]["message"]


def test_handoff_confidence_out_of_range_is_rejected():
    with pytest.raises(ToolCallInvalid):
        validate_call("handoff_to_agent", {"agent_id": "visualizer", "reason": "r", "confidence": 1.5})


def test_handoff_to_unknown_agent_is_rejected():
    with pytest.raises(ToolCallInvalid) as excinfo:
        validate_call(
            "handoff_to_agent",
            {"agent_id": "visualizer", "reason": "r", "additional_agent_ids": ["simulator"]},
            known_agent_ids={"visualizer"},
        )
    assert excinfo.value.details == [{"path": ["agent_id"], "message": "unknown agent id: simulator"}]


def test_unknown_function_is_rejected():
    with pytest.raises(ToolCallInvalid, match="Unknown function"):
        validate_call("launch_rocket", {})


def test_non_mapping_arguments_are_rejected():
    with pytest.raises(ToolCallInvalid):
        validate_call("ask_socratic_question", ["not", "an", "object"])


def test_socratic_purpose_enum():
    assert validate_call("ask_socratic_question", {"question": "لماذا؟", "purpose": "probe"})["purpose"] == "probe"
    with pytest.raises(ToolCallInvalid):
        validate_call("ask_socratic_question", {"question": "لماذا؟", "purpose": "lecture"})


def test_get_declarations_preserves_order_and_rejects_unknown():
    assert get_declarations(["ask_socratic_question", "handoff_to_agent"]) == [ASK_SOCRATIC_QUESTION, HANDOFF_TO_AGENT]
    with pytest.raises(KeyError):
        get_declarations(["nope"])


def test_declaration_to_dict():
    data = HANDOFF_TO_AGENT.to_dict()
    assert data["name"] == "handoff_to_agent"
    assert data["parameters"]["required"] == ["agent_id", "reason"]
