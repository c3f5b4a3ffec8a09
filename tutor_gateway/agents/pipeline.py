"""
The shared execution pipeline every agent call goes through.

sanitize -> context budget -> rate limit -> execute (with retry) ->
self-reflection -> memory update. Agents customise behaviour only through
`execute` and the two hooks on BaseAgent; the pipeline itself is a plain
function and is not overridable.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import timedelta
from typing import List, Optional, Tuple

from ..errors import AgentError, AgentErrorKind, ProviderError, ProviderTimeout
from ..models import (
    AgentContext,
    AgentResponse,
    ExecutionOptions,
    MemoryEntry,
    Role,
    ValidationResult,
    confidence_from_issues,
    utcnow,
)
from ..retry import RetryPolicy, retry_with_backoff
from .base import BaseAgent, elapsed_ms
from .text import MAX_INPUT_CHARS, sanitize_input

logger = logging.getLogger("tutor-gateway")

LAST_INTERACTION_KEY = "last_interaction"
LAST_INTERACTION_TTL = timedelta(days=30)
DEFAULT_PIPELINE_RETRY = RetryPolicy()


def structural_validation(response: AgentResponse) -> ValidationResult:
    issues: List[str] = []
    if not response.content or not response.content.strip():
        issues.append("Empty response content")
    if not response.agent_id:
        issues.append("Missing agent id")
    if not response.agent_name:
        issues.append("Missing agent name")
    tokens = response.tokens_used
    if tokens.input < 0 or tokens.output < 0 or tokens.cached < 0:
        issues.append("Negative token count")
    if response.cost_usd < 0:
        issues.append("Negative cost")
    if response.duration_ms < 0:
        issues.append("Negative duration")
    return confidence_from_issues(issues)


async def self_reflect(agent: BaseAgent, response: AgentResponse, context: AgentContext) -> AgentResponse:
    """Annotate confidence and issues; never fails the call."""
    structural = structural_validation(response)
    issues = list(structural.issues)
    confidence = structural.confidence

    try:
        custom = await agent.custom_validation(response, context)
    except Exception as exc:
        logger.exception("custom_validation_failed agent=%s", agent.id)
        custom = ValidationResult(is_valid=False, confidence=0.5, issues=(f"custom validation error: {exc}",))

    if custom is not None:
        issues.extend(i for i in custom.issues if i not in issues)
        confidence = min(confidence, custom.confidence)

    if issues:
        logger.info(
            "self_reflection agent=%s confidence=%.2f issues=%s",
            agent.id,
            confidence,
            len(issues),
        )
    return response.model_copy(
        update={"confidence": confidence, "validation_issues": tuple(issues) if issues else None}
    )


async def update_memory(agent: BaseAgent, input: str, context: AgentContext, response: AgentResponse) -> None:
    now = utcnow()
    entry = MemoryEntry(
        user_id=context.user_id,
        agent_id=agent.id,
        key=LAST_INTERACTION_KEY,
        value={
            "input": input,
            "output": response.content,
            "timestamp": now.isoformat(),
            "tokens_used": response.tokens_used.total,
            "session_id": context.session_id,
        },
        timestamp=now,
        expires_at=now + LAST_INTERACTION_TTL,
    )
    await agent.context_manager.store_memory(entry)
    try:
        await agent.custom_memory_update(context, response)
    except Exception:
        logger.exception("custom_memory_update_failed agent=%s user=%s", agent.id, context.user_id)


def _as_agent_error(agent: BaseAgent, exc: Exception) -> AgentError:
    if isinstance(exc, AgentError):
        return exc
    if isinstance(exc, ProviderTimeout):
        return agent.wrap_error(exc, AgentErrorKind.TIMEOUT)
    if isinstance(exc, ProviderError):
        return agent.wrap_error(exc, AgentErrorKind.MODEL_ERROR)
    if isinstance(exc, asyncio.TimeoutError):
        return agent.wrap_error(exc, AgentErrorKind.TIMEOUT)
    return agent.wrap_error(exc, AgentErrorKind.UNKNOWN)


def prepare_call(
    agent: BaseAgent,
    input: str,
    context: AgentContext,
    *,
    max_input_chars: int = MAX_INPUT_CHARS,
    max_context_tokens: int = 30000,
) -> Tuple[str, AgentContext]:
    """
    Sanitize the input and fit the context to the token budget.

    Shared by the pipeline and the streaming route. Raises `invalid_input`
    for empty input and `context_too_large` when summarising older turns
    is not enough.
    """
    clean = sanitize_input(input, max_input_chars)
    if not clean:
        raise AgentError("Input is empty", agent_id=agent.id, kind=AgentErrorKind.INVALID_INPUT)

    history = context.conversation_history
    if clean != input and history and history[-1].role == Role.USER and history[-1].content == input:
        # the context carries the raw message; keep only the sanitized one
        last = history[-1].model_copy(update={"content": clean})
        context = context.model_copy(update={"conversation_history": history[:-1] + (last,)})

    cm = agent.context_manager
    if cm.is_context_too_large(context, max_context_tokens):
        context = cm.fit_context(context, max_context_tokens)
        if cm.is_context_too_large(context, max_context_tokens):
            raise AgentError(
                "Conversation context exceeds the token budget",
                agent_id=agent.id,
                kind=AgentErrorKind.CONTEXT_TOO_LARGE,
                details={"estimated_tokens": cm.estimate_context_tokens(context), "max_tokens": max_context_tokens},
            )
    return clean, context


async def admit(agent: BaseAgent) -> float:
    """Wait for the agent's rate limiter, if any; returns seconds waited."""
    if agent.rate_limiter is None:
        return 0.0
    return await agent.rate_limiter.acquire()


async def execute_with_pipeline(
    agent: BaseAgent,
    input: str,
    context: AgentContext,
    options: Optional[ExecutionOptions] = None,
    *,
    retry_policy: Optional[RetryPolicy] = None,
    max_input_chars: int = MAX_INPUT_CHARS,
    max_context_tokens: int = 30000,
) -> AgentResponse:
    options = options or ExecutionOptions()
    policy = retry_policy or DEFAULT_PIPELINE_RETRY
    started = time.perf_counter()

    clean, context = prepare_call(
        agent,
        input,
        context,
        max_input_chars=max_input_chars,
        max_context_tokens=max_context_tokens,
    )
    waited = await admit(agent)

    attempts = 0

    async def attempt() -> AgentResponse:
        nonlocal attempts
        attempts += 1
        call = agent.execute(clean, context, options)
        if options.timeout_seconds:
            return await asyncio.wait_for(call, timeout=options.timeout_seconds)
        return await call

    logger.info(
        "agent_start agent=%s user=%s session=%s input_chars=%s",
        agent.id,
        context.user_id,
        context.session_id,
        len(clean),
    )
    try:
        response = await retry_with_backoff(attempt, policy, label=agent.id)
    except Exception as exc:
        error = _as_agent_error(agent, exc)
        logger.warning(
            "agent_failed agent=%s kind=%s attempts=%s duration_ms=%.2f error=%s",
            agent.id,
            error.kind.value,
            attempts,
            elapsed_ms(started),
            error.message,
        )
        if error is exc:
            raise
        raise error from exc

    if options.enable_self_reflection:
        response = await self_reflect(agent, response, context)

    if options.update_memory:
        await update_memory(agent, clean, context, response)

    metadata = dict(response.metadata)
    metadata["pipeline"] = {
        "attempts": attempts,
        "rate_limit_wait_s": round(waited, 3),
        "input_truncated": len(clean) < len(" ".join(input.split())),
    }
    response = response.model_copy(update={"metadata": metadata})

    logger.info(
        "agent_done agent=%s tier=%s tokens_in=%s tokens_out=%s tokens_cached=%s cost_usd=%.6f "
        "duration_ms=%.2f attempts=%s",
        agent.id,
        response.model_tier.value,
        response.tokens_used.input,
        response.tokens_used.output,
        response.tokens_used.cached,
        response.cost_usd,
        elapsed_ms(started),
        attempts,
    )
    return response
