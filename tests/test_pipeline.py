import asyncio

import pytest

from tutor_gateway.agents import PromptAgent, execute_with_pipeline
from tutor_gateway.agents.pipeline import DEFAULT_PIPELINE_RETRY, LAST_INTERACTION_KEY, LAST_INTERACTION_TTL
from tutor_gateway.cost import ModelTier, calculate_cost
from tutor_gateway.errors import AgentError, AgentErrorKind, ProviderError
from tutor_gateway.models import ExecutionOptions, Message, Role
from tutor_gateway.rate_limit import RateRule, SlidingWindowRateLimiter
from tutor_gateway.retry import RetryPolicy

NO_WAIT = RetryPolicy(max_retries=2, initial_delay=0.0)


def _agent(make_config, provider, context_manager, **overrides):
    return PromptAgent(make_config("tutor", **overrides), provider, context_manager)


def test_successful_call_annotates_response(make_config, provider_cls, context_manager):
    provider = provider_cls({"system:tutor": "الكسر جزء من كل"})
    agent = _agent(make_config, provider, context_manager)
    ctx = context_manager.build_context("u1", "ما هو الكسر؟")

    response = asyncio.run(execute_with_pipeline(agent, "ما هو الكسر؟", ctx, retry_policy=NO_WAIT))

    assert response.content == "الكسر جزء من كل"
    assert response.agent_id == "tutor"
    assert response.model_tier == ModelTier.BALANCED
    assert response.cost_usd == pytest.approx(calculate_cost(ModelTier.BALANCED, 100, 50))
    assert response.confidence == 1.0
    assert response.validation_issues is None
    assert response.metadata["pipeline"] == {"attempts": 1, "rate_limit_wait_s": 0.0, "input_truncated": False}
    assert provider.calls[0]["system_instruction"] == "system:tutor"
    assert "### السؤال الحالي:\nما هو الكسر؟" in provider.calls[0]["prompt"]


@pytest.mark.parametrize("raw", ["", "   ", "\n\t"])
def test_empty_input_is_rejected_without_calling_provider(raw, make_config, provider_cls, context_manager):
    provider = provider_cls()
    agent = _agent(make_config, provider, context_manager)
    ctx = context_manager.build_context("u1", "x")

    with pytest.raises(AgentError) as excinfo:
        asyncio.run(execute_with_pipeline(agent, raw, ctx, retry_policy=NO_WAIT))

    assert excinfo.value.kind == AgentErrorKind.INVALID_INPUT
    assert excinfo.value.agent_id == "tutor"
    assert provider.calls == []


def test_transient_failure_is_retried(make_config, provider_cls, context_manager):
    provider = provider_cls({"system:tutor": [ProviderError("overloaded", status_code=503), "second try"]})
    agent = _agent(make_config, provider, context_manager)
    ctx = context_manager.build_context("u1", "سؤال")

    response = asyncio.run(execute_with_pipeline(agent, "سؤال", ctx, retry_policy=NO_WAIT))

    assert response.content == "second try"
    assert response.metadata["pipeline"]["attempts"] == 2
    assert len(provider.calls) == 2


def test_exhausted_retries_raise_model_error(make_config, raising_provider_cls, context_manager):
    provider = raising_provider_cls()
    agent = _agent(make_config, provider, context_manager)
    ctx = context_manager.build_context("u1", "سؤال")

    with pytest.raises(AgentError) as excinfo:
        asyncio.run(execute_with_pipeline(agent, "سؤال", ctx, retry_policy=NO_WAIT))

    assert excinfo.value.kind == AgentErrorKind.MODEL_ERROR
    assert len(provider.calls) == 3


def test_default_retry_count_rides_out_three_failures(make_config, provider_cls, context_manager):
    failure = ProviderError("overloaded", status_code=503)
    provider = provider_cls({"system:tutor": [failure, failure, failure, "finally"]})
    agent = _agent(make_config, provider, context_manager)
    ctx = context_manager.build_context("u1", "سؤال")
    default_count = RetryPolicy(initial_delay=0.0)

    response = asyncio.run(execute_with_pipeline(agent, "سؤال", ctx, retry_policy=default_count))

    assert DEFAULT_PIPELINE_RETRY.max_retries == default_count.max_retries == 3
    assert response.content == "finally"
    assert response.metadata["pipeline"]["attempts"] == 4
    assert len(provider.calls) == 4


def test_call_timeout_becomes_timeout_error(make_config, provider_cls, context_manager):
    provider = provider_cls(delay=0.5)
    agent = _agent(make_config, provider, context_manager)
    ctx = context_manager.build_context("u1", "سؤال")

    with pytest.raises(AgentError) as excinfo:
        asyncio.run(
            execute_with_pipeline(
                agent,
                "سؤال",
                ctx,
                ExecutionOptions(timeout_seconds=0.05),
                retry_policy=RetryPolicy(max_retries=0),
            )
        )

    assert excinfo.value.kind == AgentErrorKind.TIMEOUT


def test_self_reflection_flags_empty_content(make_config, provider_cls, context_manager):
    provider = provider_cls({"system:tutor": ""})
    agent = _agent(make_config, provider, context_manager)
    ctx = context_manager.build_context("u1", "سؤال")

    reflected = asyncio.run(execute_with_pipeline(agent, "سؤال", ctx, retry_policy=NO_WAIT))
    raw = asyncio.run(
        execute_with_pipeline(
            agent, "سؤال", ctx, ExecutionOptions(enable_self_reflection=False), retry_policy=NO_WAIT
        )
    )

    assert reflected.validation_issues == ("Empty response content",)
    assert reflected.confidence == pytest.approx(0.8)
    assert raw.confidence is None
    assert raw.validation_issues is None


def test_memory_records_last_interaction(make_config, provider_cls, context_manager):
    provider = provider_cls({"system:tutor": "جواب"})
    agent = _agent(make_config, provider, context_manager)
    ctx = context_manager.build_context("u1", "سؤال")

    asyncio.run(execute_with_pipeline(agent, "  سؤال  ", ctx, retry_policy=NO_WAIT))
    entries = asyncio.run(context_manager.get_memory("u1", "tutor", key=LAST_INTERACTION_KEY))

    assert len(entries) == 1
    value = entries[0].value
    assert value["input"] == "سؤال"
    assert value["output"] == "جواب"
    assert value["tokens_used"] == 150
    assert value["session_id"] == ctx.session_id
    assert entries[0].expires_at - entries[0].timestamp == LAST_INTERACTION_TTL


def test_memory_update_can_be_disabled(make_config, provider_cls, context_manager):
    agent = _agent(make_config, provider_cls(), context_manager)
    ctx = context_manager.build_context("u1", "سؤال")

    asyncio.run(
        execute_with_pipeline(agent, "سؤال", ctx, ExecutionOptions(update_memory=False), retry_policy=NO_WAIT)
    )

    assert asyncio.run(context_manager.get_memory("u1", "tutor")) == []


def test_oversized_context_that_cannot_be_summarized_is_rejected(make_config, provider_cls, context_manager):
    provider = provider_cls()
    agent = _agent(make_config, provider, context_manager)
    huge = "كلمة " * 1000
    ctx = context_manager.build_context("u1", huge)

    with pytest.raises(AgentError) as excinfo:
        asyncio.run(execute_with_pipeline(agent, "سؤال", ctx, retry_policy=NO_WAIT, max_context_tokens=100))

    assert excinfo.value.kind == AgentErrorKind.CONTEXT_TOO_LARGE
    assert excinfo.value.details["max_tokens"] == 100
    assert provider.calls == []


def test_oversized_history_is_summarized_before_running(make_config, provider_cls, context_manager):
    provider = provider_cls({"system:tutor": "ok"})
    agent = _agent(make_config, provider, context_manager)
    history = [Message(role=Role.USER, content="نص " * 100) for _ in range(30)]
    ctx = context_manager.build_context("u1", "سؤال", history=history)

    response = asyncio.run(execute_with_pipeline(agent, "سؤال", ctx, retry_policy=NO_WAIT, max_context_tokens=1000))

    assert response.content == "ok"


def test_input_is_truncated_to_limit(make_config, provider_cls, context_manager):
    provider = provider_cls()
    agent = _agent(make_config, provider, context_manager)
    ctx = context_manager.build_context("u1", "x")

    response = asyncio.run(
        execute_with_pipeline(agent, "abcdefghijklmnop", ctx, retry_policy=NO_WAIT, max_input_chars=5)
    )

    assert response.metadata["pipeline"]["input_truncated"] is True
    assert provider.calls[0]["prompt"].endswith("abcde")


def test_requested_tier_must_be_allowed(make_config, provider_cls, context_manager):
    provider = provider_cls()
    strict = _agent(make_config, provider, context_manager)
    flexible = PromptAgent(
        make_config("flex", allowed_models=["flash", "pro"]),
        provider,
        context_manager,
    )
    ctx = context_manager.build_context("u1", "سؤال")
    options = ExecutionOptions(model_tier=ModelTier.CAPABLE)

    denied = asyncio.run(execute_with_pipeline(strict, "سؤال", ctx, options, retry_policy=NO_WAIT))
    granted = asyncio.run(execute_with_pipeline(flexible, "سؤال", ctx, options, retry_policy=NO_WAIT))

    assert denied.model_tier == ModelTier.BALANCED
    assert granted.model_tier == ModelTier.CAPABLE
    assert [c["model"] for c in provider.calls] == [ModelTier.BALANCED, ModelTier.CAPABLE]


def test_rate_limit_wait_is_reported(make_config, provider_cls, context_manager):
    clock = {"now": 0.0}

    async def fake_sleep(seconds):
        clock["now"] += seconds

    limiter = SlidingWindowRateLimiter(RateRule("tutor", 1, 60.0), clock=lambda: clock["now"], sleep=fake_sleep)
    agent = PromptAgent(make_config("tutor"), provider_cls(), context_manager, rate_limiter=limiter)
    ctx = context_manager.build_context("u1", "سؤال")

    async def run():
        await execute_with_pipeline(agent, "سؤال", ctx, retry_policy=NO_WAIT)
        return await execute_with_pipeline(agent, "سؤال", ctx, retry_policy=NO_WAIT)

    second = asyncio.run(run())

    assert second.metadata["pipeline"]["rate_limit_wait_s"] == pytest.approx(60.0)


def test_cached_system_prompt_shifts_tokens_to_cached(make_config, provider_cls, context_manager):
    agent = _agent(make_config, provider_cls(), context_manager, cache_system_prompt=True)
    ctx = context_manager.build_context("u1", "سؤال")

    response = asyncio.run(execute_with_pipeline(agent, "سؤال", ctx, retry_policy=NO_WAIT))

    # "system:tutor" is 12 characters, three estimated tokens
    assert response.tokens_used.cached == 3
    assert response.tokens_used.input == 97
    assert response.tokens_used.output == 50
