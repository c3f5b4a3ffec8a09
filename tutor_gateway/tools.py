"""
Function-calling contracts shared with the remote model.

Arguments returned by the model are untyped JSON; `validate_call` checks them
against the declaration schema (Draft-07) before any agent acts on them.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Collection, Dict, List, Mapping, Optional

from jsonschema import Draft7Validator


@dataclass(frozen=True)
class FunctionDeclaration:
    name: str
    description: str
    parameters: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "description": self.description, "parameters": self.parameters}


HANDOFF_TO_AGENT = FunctionDeclaration(
    name="handoff_to_agent",
    description="Transfer the request to one or more specialized agents when their expertise is needed",
    parameters={
        "type": "object",
        "properties": {
            "agent_id": {"type": "string", "minLength": 1},
            "reason": {"type": "string"},
            "confidence": {"type": "number", "minimum": 0, "maximum": 1},
            "additional_agent_ids": {"type": "array", "items": {"type": "string", "minLength": 1}},
            "strategy": {"type": "string", "enum": ["single", "sequential", "parallel"]},
        },
        "required": ["agent_id", "reason"],
    },
)

GENERATE_VISUALIZATION = FunctionDeclaration(
    name="generate_visualization",
    description="Create an interactive visualization (code, math plot, chart, 3D scene or molecule) for a concept",
    parameters={
        "type": "object",
        "properties": {
            "type": {"type": "string", "enum": ["code", "math", "chart", "3d", "molecule"]},
            "title": {"type": "string"},
            "description": {"type": "string"},
            "code": {"type": "string"},
            "data": {},
            "config": {"type": "object"},
        },
        "required": ["type", "title"],
    },
)

ASK_SOCRATIC_QUESTION = FunctionDeclaration(
    name="ask_socratic_question",
    description="Ask a guiding question that helps the student discover the answer themselves",
    parameters={
        "type": "object",
        "properties": {
            "question": {"type": "string"},
            "purpose": {"type": "string", "enum": ["probe", "clarify", "challenge", "connect", "reflect"]},
            "expected_insight": {"type": "string"},
            "hints": {"type": "array", "items": {"type": "string"}},
        },
        "required": ["question"],
    },
)

SEARCH_KNOWLEDGE_BASE = FunctionDeclaration(
    name="search_knowledge_base",
    description="Search the knowledge base for relevant information",
    parameters={
        "type": "object",
        "properties": {
            "query": {"type": "string"},
            "subject": {"type": "string"},
            "limit": {"type": "integer", "minimum": 1, "maximum": 20},
        },
        "required": ["query"],
    },
)

DECLARATIONS: Dict[str, FunctionDeclaration] = {
    d.name: d
    for d in (HANDOFF_TO_AGENT, GENERATE_VISUALIZATION, ASK_SOCRATIC_QUESTION, SEARCH_KNOWLEDGE_BASE)
}


class ToolCallInvalid(ValueError):
    """Raised when a model-produced call does not satisfy its contract."""

    def __init__(self, message: str, details: Optional[List[Dict[str, Any]]] = None) -> None:
        self.details = details or []
        super().__init__(message)


def get_declarations(names: Collection[str]) -> List[FunctionDeclaration]:
    try:
        return [DECLARATIONS[name] for name in names]
    except KeyError as exc:
        raise KeyError(f"Unknown tool declaration: {exc.args[0]}") from exc


def _schema_errors(instance: Any, schema: Dict[str, Any]) -> List[Dict[str, Any]]:
    validator = Draft7Validator(schema)
    errors: List[Dict[str, Any]] = []
    for err in validator.iter_errors(instance):
        errors.append({"path": list(err.path), "message": err.message})
    return errors


def validate_call(
    name: str,
    args: Any,
    *,
    known_agent_ids: Optional[Collection[str]] = None,
) -> Dict[str, Any]:
    """
    Validate one function call and return its arguments as a plain dict.

    Handoff targets must be in `known_agent_ids` when that set is given.
    """
    declaration = DECLARATIONS.get(name)
    if declaration is None:
        raise ToolCallInvalid(f"Unknown function: {name}")
    if not isinstance(args, Mapping):
        raise ToolCallInvalid(f"Arguments for {name} must be an object")

    payload = dict(args)
    errors = _schema_errors(payload, declaration.parameters)
    if errors:
        raise ToolCallInvalid(f"Arguments for {name} do not match schema", details=errors)

    if name == HANDOFF_TO_AGENT.name and known_agent_ids is not None:
        targets = [payload["agent_id"], *payload.get("additional_agent_ids", [])]
        unknown = [t for t in targets if t not in known_agent_ids]
        if unknown:
            raise ToolCallInvalid(
                "Handoff names unknown agent(s)",
                details=[{"path": ["agent_id"], "message": f"unknown agent id: {t}"} for t in unknown],
            )
    return payload
