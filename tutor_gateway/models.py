"""
Data models for the tutoring runtime.

Messages, contexts and responses are frozen: a transformation always
returns a new value via `model_copy(update=...)`. Do not duplicate these
definitions elsewhere.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .cost import ModelTier


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    USER = "user"
    AGENT = "agent"
    SYSTEM = "system"


class Dialect(str, Enum):
    MSA = "MSA"
    EGYPTIAN = "Egyptian"
    GULF = "Gulf"
    LEVANTINE = "Levantine"
    MAGHREBI = "Maghrebi"


class LearningStyle(str, Enum):
    VISUAL = "visual"
    AUDITORY = "auditory"
    KINESTHETIC = "kinesthetic"
    READING = "reading"


class AgentTier(str, Enum):
    ORCHESTRATION = "orchestration"
    CONTENT = "content"
    LEARNING = "learning"
    SUPPORT = "support"


class Capability(str, Enum):
    VISUALIZATION = "visualization"
    CODE_EXECUTION = "code_execution"
    QUESTION_GENERATION = "question_generation"
    ASSESSMENT = "assessment"
    MEMORY_MANAGEMENT = "memory_management"
    RESEARCH = "research"
    LANGUAGE_COACHING = "language_coaching"
    WELL_BEING = "well_being"
    ORCHESTRATION = "orchestration"


class Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Role
    content: str
    timestamp: datetime = Field(default_factory=utcnow)
    producing_agent_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class StudentProfile(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    display_name: Optional[str] = None
    preferred_dialect: Optional[Dialect] = None
    learning_style: Optional[LearningStyle] = None
    grade_level: Optional[int] = Field(default=None, ge=1, le=12)
    subjects: Tuple[str, ...] = ()


class AgentContext(BaseModel):
    """Per-request conversation state. History is append-only and chronological."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    session_id: str
    student_profile: Optional[StudentProfile] = None
    preferred_dialect: Optional[Dialect] = None
    conversation_history: Tuple[Message, ...] = ()
    current_topic: Optional[str] = None
    mastery_levels: Dict[str, float] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("mastery_levels")
    @classmethod
    def _mastery_in_unit_range(cls, value: Dict[str, float]) -> Dict[str, float]:
        for kc_id, level in value.items():
            if not 0.0 <= level <= 1.0:
                raise ValueError(f"mastery for {kc_id!r} must be in [0, 1], got {level}")
        return value

    def with_message(self, message: Message) -> "AgentContext":
        return self.model_copy(update={"conversation_history": self.conversation_history + (message,)})

    def last_user_message(self) -> Optional[Message]:
        for message in reversed(self.conversation_history):
            if message.role == Role.USER:
                return message
        return None


class TokenUsage(BaseModel):
    model_config = ConfigDict(frozen=True)

    input: int = Field(default=0, ge=0)
    output: int = Field(default=0, ge=0)
    cached: int = Field(default=0, ge=0)

    @property
    def total(self) -> int:
        return self.input + self.output + self.cached

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            input=self.input + other.input,
            output=self.output + other.output,
            cached=self.cached + other.cached,
        )


class VisualizationSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str = "code"
    title: str = ""
    description: Optional[str] = None
    code: Optional[str] = None
    data: Optional[Any] = None
    config: Dict[str, Any] = Field(default_factory=dict)


class SocraticQuestion(BaseModel):
    model_config = ConfigDict(frozen=True)

    question: str
    purpose: str = "probe"
    expected_insight: Optional[str] = None
    hints: Tuple[str, ...] = ()


class Handoff(BaseModel):
    model_config = ConfigDict(frozen=True)

    target_agent_id: str
    reason: str


class AgentResponse(BaseModel):
    # Token counts and cost are never negative once constructed.
    model_config = ConfigDict(frozen=True, protected_namespaces=())

    content: str
    agent_id: str
    agent_name: str
    model_tier: ModelTier
    tokens_used: TokenUsage = Field(default_factory=TokenUsage)
    cost_usd: float = Field(default=0.0, ge=0.0)
    duration_ms: float = 0.0
    timestamp: datetime = Field(default_factory=utcnow)
    visualizations: Optional[Tuple[VisualizationSpec, ...]] = None
    structured_questions: Optional[Tuple[SocraticQuestion, ...]] = None
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    validation_issues: Optional[Tuple[str, ...]] = None
    handoff: Optional[Handoff] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class AgentConfig(BaseModel):
    """Static agent definition, loaded once at process start."""

    model_config = ConfigDict(frozen=True)

    id: str
    display_name: str
    localized_name: str
    description: str = ""
    tier: AgentTier
    default_model: ModelTier
    allowed_models: FrozenSet[ModelTier] = frozenset()
    system_prompt: str
    capabilities: FrozenSet[Capability] = frozenset()
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=2048, gt=0)
    max_requests_per_minute: Optional[int] = Field(default=None, gt=0)
    conversation_memory_size: Optional[int] = Field(default=None, gt=0)
    cache_system_prompt: bool = False
    tools: Tuple[str, ...] = ()

    def allows(self, tier: ModelTier) -> bool:
        return tier == self.default_model or tier in self.allowed_models


class ExecutionOptions(BaseModel):
    model_config = ConfigDict(frozen=True, protected_namespaces=())

    model_tier: Optional[ModelTier] = None
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(default=None, gt=0)
    enable_self_reflection: bool = True
    update_memory: bool = True
    timeout_seconds: Optional[float] = Field(default=None, gt=0)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class MemoryEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    agent_id: str
    key: str
    value: Any = None
    timestamp: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or utcnow())


class ValidationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_valid: bool
    confidence: float = Field(ge=0.0, le=1.0)
    issues: Tuple[str, ...] = ()


def confidence_from_issues(issues: List[str], *, penalty: float = 0.2) -> ValidationResult:
    return ValidationResult(
        is_valid=not issues,
        confidence=max(0.0, 1.0 - penalty * len(issues)),
        issues=tuple(issues),
    )


# --- HTTP request bodies ---------------------------------------------------


class HistoryItem(BaseModel):
    role: Role
    content: str
    producing_agent_id: Optional[str] = None

    def to_message(self) -> Message:
        return Message(role=self.role, content=self.content, producing_agent_id=self.producing_agent_id)


class ChatRequest(BaseModel):
    message: str
    user_id: str = Field(min_length=1)
    session_id: Optional[str] = None
    dialect: Optional[Dialect] = None
    history: List[HistoryItem] = Field(default_factory=list)
    profile: Optional[StudentProfile] = None
    options: Optional[ExecutionOptions] = None


class InvokeAgentRequest(BaseModel):
    input: str
    user_id: str = Field(min_length=1)
    session_id: Optional[str] = None
    dialect: Optional[Dialect] = None
    history: List[HistoryItem] = Field(default_factory=list)
    options: Optional[ExecutionOptions] = None
