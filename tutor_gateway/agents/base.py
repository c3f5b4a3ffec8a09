from __future__ import annotations

import abc
import logging
import time
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from ..context import ContextManager
from ..cost import ModelTier, calculate_cost, estimate_tokens
from ..errors import AgentError, AgentErrorKind, ProviderError, ProviderTimeout
from ..models import (
    AgentConfig,
    AgentContext,
    AgentResponse,
    Capability,
    ExecutionOptions,
    Handoff,
    Role,
    TokenUsage,
    ValidationResult,
)
from ..providers import BaseProvider, FunctionCall, GenerationResult
from ..rate_limit import SlidingWindowRateLimiter, per_minute
from ..tools import HANDOFF_TO_AGENT, FunctionDeclaration, ToolCallInvalid, get_declarations, validate_call

logger = logging.getLogger("tutor-gateway")

DEFAULT_MEMORY_SIZE = 10


class BaseAgent(abc.ABC):
    """
    One specialist agent.

    Subclasses implement `execute` and may override the validation and
    memory hooks. Callers never invoke `execute` directly; they go through
    `agents.pipeline.execute_with_pipeline`.
    """

    def __init__(
        self,
        config: AgentConfig,
        provider: BaseProvider,
        context_manager: ContextManager,
        *,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
    ) -> None:
        self.config = config
        self.provider = provider
        self.context_manager = context_manager
        if rate_limiter is None and config.max_requests_per_minute:
            rate_limiter = per_minute(config.id, config.max_requests_per_minute)
        self.rate_limiter = rate_limiter

    @property
    def id(self) -> str:
        return self.config.id

    @property
    def name(self) -> str:
        return self.config.display_name

    @property
    def capabilities(self):
        return self.config.capabilities

    def has_capability(self, capability: Capability) -> bool:
        return capability in self.config.capabilities

    @abc.abstractmethod
    async def execute(
        self,
        input: str,
        context: AgentContext,
        options: ExecutionOptions,
    ) -> AgentResponse:
        """Produce a response for already-sanitized input."""

    async def custom_validation(self, response: AgentResponse, context: AgentContext) -> Optional[ValidationResult]:
        return None

    async def custom_memory_update(self, context: AgentContext, response: AgentResponse) -> None:
        return None

    # -- helpers for subclasses -----------------------------------------------

    def select_model(self, options: ExecutionOptions) -> ModelTier:
        requested = options.model_tier
        if requested is not None and self.config.allows(requested):
            return requested
        return self.config.default_model

    def tool_declarations(self) -> List[FunctionDeclaration]:
        return get_declarations(self.config.tools)

    def build_prompt(self, input: str, context: AgentContext) -> str:
        parts: List[str] = []

        prefix = self.context_manager.build_prompt_prefix(context)
        if prefix:
            parts.append(prefix)

        history = list(context.conversation_history)
        if history and history[-1].role == Role.USER and history[-1].content.strip() == input.strip():
            history = history[:-1]
        if history:
            size = self.config.conversation_memory_size or DEFAULT_MEMORY_SIZE
            trimmed = self.context_manager.trim_history(history, size)
            parts.append("### المحادثة السابقة:\n" + self.context_manager.format_history(trimmed))

        parts.append("### السؤال الحالي:\n" + input)
        return "\n\n".join(parts)

    def _normalize_usage(self, tokens: TokenUsage) -> TokenUsage:
        if not self.config.cache_system_prompt or tokens.cached:
            return tokens
        cached = estimate_tokens(self.config.system_prompt)
        return TokenUsage(input=max(0, tokens.input - cached), output=tokens.output, cached=cached)

    async def generate_content(self, prompt: str, options: ExecutionOptions) -> GenerationResult:
        tier = self.select_model(options)
        try:
            result = await self.provider.generate(
                prompt,
                model=tier,
                system_instruction=self.config.system_prompt,
                temperature=self._temperature(options),
                max_tokens=options.max_tokens or self.config.max_tokens,
            )
        except ProviderTimeout as exc:
            raise self.wrap_error(exc, AgentErrorKind.TIMEOUT) from exc
        except ProviderError as exc:
            raise self.wrap_error(exc, AgentErrorKind.MODEL_ERROR) from exc
        result.tokens_used = self._normalize_usage(result.tokens_used)
        return result

    async def generate_with_functions(
        self,
        prompt: str,
        options: ExecutionOptions,
        tools: Optional[Sequence[FunctionDeclaration]] = None,
    ) -> GenerationResult:
        tier = self.select_model(options)
        try:
            result = await self.provider.generate_with_functions(
                prompt,
                tools=list(tools if tools is not None else self.tool_declarations()),
                model=tier,
                system_instruction=self.config.system_prompt,
                temperature=self._temperature(options),
                max_tokens=options.max_tokens or self.config.max_tokens,
            )
        except ProviderTimeout as exc:
            raise self.wrap_error(exc, AgentErrorKind.TIMEOUT) from exc
        except ProviderError as exc:
            raise self.wrap_error(exc, AgentErrorKind.MODEL_ERROR) from exc
        result.tokens_used = self._normalize_usage(result.tokens_used)
        return result

    async def stream_content(
        self,
        input: str,
        context: AgentContext,
        options: Optional[ExecutionOptions] = None,
    ) -> AsyncIterator[str]:
        """Token-streaming variant; bypasses parsing and self-reflection."""
        options = options or ExecutionOptions()
        prompt = self.build_prompt(input, context)
        try:
            async for chunk in self.provider.stream(
                prompt,
                model=self.select_model(options),
                system_instruction=self.config.system_prompt,
                temperature=self._temperature(options),
                max_tokens=options.max_tokens or self.config.max_tokens,
            ):
                yield chunk
        except ProviderTimeout as exc:
            raise self.wrap_error(exc, AgentErrorKind.TIMEOUT) from exc
        except ProviderError as exc:
            raise self.wrap_error(exc, AgentErrorKind.MODEL_ERROR) from exc

    def _temperature(self, options: ExecutionOptions) -> float:
        return options.temperature if options.temperature is not None else self.config.temperature

    def parse_handoff(self, calls: Sequence[FunctionCall]) -> Optional[Handoff]:
        for call in calls:
            if call.name != HANDOFF_TO_AGENT.name:
                continue
            try:
                args = validate_call(call.name, call.args)
            except ToolCallInvalid as exc:
                logger.warning("handoff_ignored agent=%s reason=%s", self.id, exc)
                continue
            return Handoff(target_agent_id=args["agent_id"], reason=args["reason"])
        return None

    def build_response(
        self,
        content: str,
        tokens: TokenUsage,
        duration_ms: float,
        tier: ModelTier,
        **extra: Any,
    ) -> AgentResponse:
        metadata: Dict[str, Any] = dict(extra.pop("metadata", None) or {})
        return AgentResponse(
            content=content,
            agent_id=self.id,
            agent_name=self.name,
            model_tier=tier,
            tokens_used=tokens,
            cost_usd=calculate_cost(tier, tokens.input, tokens.output, tokens.cached),
            duration_ms=duration_ms,
            metadata=metadata,
            **extra,
        )

    def wrap_error(self, exc: BaseException, kind: AgentErrorKind = AgentErrorKind.UNKNOWN) -> AgentError:
        if isinstance(exc, AgentError):
            return exc
        return AgentError(
            f"[{self.id}] {exc}",
            agent_id=self.id,
            kind=kind,
            details={"error_type": type(exc).__name__},
        )

    def describe(self) -> Dict[str, Any]:
        config = self.config
        return {
            "id": config.id,
            "name": config.display_name,
            "localized_name": config.localized_name,
            "description": config.description,
            "tier": config.tier.value,
            "default_model": config.default_model.value,
            "capabilities": sorted(c.value for c in config.capabilities),
            "max_requests_per_minute": config.max_requests_per_minute,
        }


def elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000.0


class PromptAgent(BaseAgent):
    """Plain text-generation agent driven entirely by its configuration."""

    async def execute(self, input: str, context: AgentContext, options: ExecutionOptions) -> AgentResponse:
        started = time.perf_counter()
        result = await self.generate_content(self.build_prompt(input, context), options)
        return self.build_response(
            result.content,
            result.tokens_used,
            elapsed_ms(started),
            self.select_model(options),
            metadata={"model": result.model},
        )
