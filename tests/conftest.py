import asyncio
import os
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

import pytest

from tutor_gateway.context import ContextManager
from tutor_gateway.cost import ModelTier
from tutor_gateway.errors import ProviderError
from tutor_gateway.models import AgentConfig, TokenUsage
from tutor_gateway.providers import BaseProvider, FunctionCall, GenerationResult


@contextmanager
def env_vars(env: Dict[str, str]):
    """
    Temporarily set environment variables for a test.

    Restores previous values afterwards, even if the test fails.
    """
    old_values: Dict[str, Any] = {}
    for key, value in env.items():
        old_values[key] = os.environ.get(key)
        os.environ[key] = value
    try:
        yield
    finally:
        for key, old in old_values.items():
            if old is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = old


class RecordingProvider(BaseProvider):
    """
    Provider double keyed by system instruction.

    `replies` maps a system instruction to a reply: a string, an exception to
    raise, or a list consumed one item per call. `tool_calls` maps a tool name
    to the arguments returned when that tool is offered.
    """

    name = "recording"

    def __init__(
        self,
        replies: Optional[Dict[str, Any]] = None,
        *,
        tool_calls: Optional[Dict[str, Dict[str, Any]]] = None,
        usage: Optional[TokenUsage] = None,
        delay: float = 0.0,
        default: str = "generic reply",
    ) -> None:
        super().__init__({tier: f"model-{tier.value}" for tier in ModelTier})
        self.replies = dict(replies or {})
        self.tool_calls = dict(tool_calls or {})
        self.usage = usage or TokenUsage(input=100, output=50)
        self.delay = delay
        self.default = default
        self.calls: List[Dict[str, Any]] = []

    def _next_reply(self, system_instruction: Optional[str]) -> str:
        reply = self.replies.get(system_instruction or "", self.default)
        if isinstance(reply, list):
            reply = reply.pop(0) if len(reply) > 1 else reply[0]
        if isinstance(reply, BaseException):
            raise reply
        return reply

    async def generate(self, prompt, *, model, system_instruction=None, temperature=0.7, max_tokens=None):
        self.calls.append(
            {"kind": "text", "prompt": prompt, "model": model, "system_instruction": system_instruction}
        )
        if self.delay:
            await asyncio.sleep(self.delay)
        content = self._next_reply(system_instruction)
        return GenerationResult(content=content, tokens_used=self.usage, model=self.resolve_model(model))

    async def generate_with_functions(
        self, prompt, *, tools, model, system_instruction=None, temperature=0.7, max_tokens=None
    ):
        self.calls.append(
            {
                "kind": "functions",
                "prompt": prompt,
                "model": model,
                "system_instruction": system_instruction,
                "tools": [t.name for t in tools],
            }
        )
        if self.delay:
            await asyncio.sleep(self.delay)
        content = self._next_reply(system_instruction)
        calls = [FunctionCall(name=t.name, args=dict(self.tool_calls[t.name])) for t in tools if t.name in self.tool_calls]
        return GenerationResult(
            content=content,
            tokens_used=self.usage,
            function_calls=calls,
            model=self.resolve_model(model),
        )

    async def stream(self, prompt, *, model, system_instruction=None, temperature=0.7, max_tokens=None):
        self.calls.append({"kind": "stream", "prompt": prompt, "model": model, "system_instruction": system_instruction})
        content = self._next_reply(system_instruction)
        for word in content.split(" "):
            yield word + " "


class RaisingProvider(RecordingProvider):
    """Provider whose every call fails with a ProviderError."""

    def _next_reply(self, system_instruction: Optional[str]) -> str:
        raise ProviderError("provider failure for testing", status_code=503)


def build_config(agent_id: str, **overrides: Any) -> AgentConfig:
    """Minimal config whose system prompt identifies the agent to RecordingProvider."""
    data: Dict[str, Any] = {
        "id": agent_id,
        "display_name": agent_id.title(),
        "localized_name": agent_id,
        "tier": "content",
        "default_model": "flash",
        "system_prompt": f"system:{agent_id}",
    }
    data.update(overrides)
    return AgentConfig(**data)


@pytest.fixture
def env():
    return env_vars


@pytest.fixture
def make_config():
    return build_config


@pytest.fixture
def provider_cls():
    return RecordingProvider


@pytest.fixture
def raising_provider_cls():
    return RaisingProvider


@pytest.fixture
def context_manager() -> ContextManager:
    return ContextManager()


@pytest.fixture
def db_env(tmp_path):
    """Point the store at a fresh SQLite file for the duration of a test."""
    with env_vars({"DB_PATH": str(tmp_path / "tutor.db"), "DATABASE_URL": ""}):
        yield str(tmp_path / "tutor.db")
