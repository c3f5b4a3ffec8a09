from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class AgentErrorKind(str, Enum):
    INVALID_INPUT = "invalid_input"
    MODEL_ERROR = "model_error"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    CONTEXT_TOO_LARGE = "context_too_large"
    VALIDATION_FAILED = "validation_failed"
    UNKNOWN = "unknown"


# Kinds that will fail the same way on every attempt.
NON_RETRIABLE_KINDS = frozenset(
    {
        AgentErrorKind.INVALID_INPUT,
        AgentErrorKind.CONTEXT_TOO_LARGE,
        AgentErrorKind.VALIDATION_FAILED,
    }
)

# HTTP status used by the error envelope for each kind.
STATUS_BY_KIND: Dict[AgentErrorKind, int] = {
    AgentErrorKind.INVALID_INPUT: 422,
    AgentErrorKind.VALIDATION_FAILED: 422,
    AgentErrorKind.CONTEXT_TOO_LARGE: 413,
    AgentErrorKind.RATE_LIMIT: 429,
    AgentErrorKind.MODEL_ERROR: 502,
    AgentErrorKind.TIMEOUT: 504,
    AgentErrorKind.UNKNOWN: 500,
}


class AgentError(RuntimeError):
    """Typed failure raised by an agent pipeline or the orchestrator."""

    def __init__(
        self,
        message: str,
        *,
        agent_id: str,
        kind: AgentErrorKind = AgentErrorKind.UNKNOWN,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.agent_id = agent_id
        self.kind = AgentErrorKind(kind)
        self.details = details
        super().__init__(message)

    @property
    def code(self) -> str:
        return self.kind.value.upper()

    @property
    def status_code(self) -> int:
        return STATUS_BY_KIND[self.kind]

    @property
    def retriable(self) -> bool:
        return self.kind not in NON_RETRIABLE_KINDS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "kind": self.kind.value,
            "message": self.message,
            "details": self.details,
        }


class ProviderError(RuntimeError):
    """Raised when the remote text-generation call fails."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class ProviderTimeout(ProviderError):
    """Raised when the remote text-generation call times out."""


class AgentConfigError(RuntimeError):
    """Raised when an agent configuration file cannot be loaded or validated."""


class AgentAlreadyRegistered(RuntimeError):
    """Raised when registering a second agent under an existing id."""
