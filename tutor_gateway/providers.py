from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Sequence

import httpx

from .config import Settings, get_settings
from .cost import ModelTier, estimate_tokens
from .errors import ProviderError, ProviderTimeout
from .models import TokenUsage
from .tools import FunctionDeclaration

logger = logging.getLogger("tutor-gateway")


@dataclass
class FunctionCall:
    name: str
    args: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GenerationResult:
    """Normalized result from a provider."""

    content: str
    tokens_used: TokenUsage
    function_calls: List[FunctionCall] = field(default_factory=list)
    model: str = ""


def model_names_from_settings(settings: Settings) -> Dict[ModelTier, str]:
    return {
        ModelTier.CHEAP: settings.model_cheap,
        ModelTier.BALANCED: settings.model_balanced,
        ModelTier.CAPABLE: settings.model_capable,
    }


class BaseProvider:
    """
    Remote text-generation interface.

    All calls are async and may raise ProviderError / ProviderTimeout.
    """

    name = "base"

    def __init__(self, model_names: Optional[Mapping[ModelTier, str]] = None) -> None:
        self.model_names: Dict[ModelTier, str] = dict(model_names or model_names_from_settings(get_settings()))

    def resolve_model(self, tier: ModelTier) -> str:
        return self.model_names[ModelTier(tier)]

    async def generate(
        self,
        prompt: str,
        *,
        model: ModelTier,
        system_instruction: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
    ) -> GenerationResult:  # pragma: no cover - interface only
        raise NotImplementedError

    async def generate_with_functions(
        self,
        prompt: str,
        *,
        tools: Sequence[FunctionDeclaration],
        model: ModelTier,
        system_instruction: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
    ) -> GenerationResult:  # pragma: no cover - interface only
        raise NotImplementedError

    def stream(
        self,
        prompt: str,
        *,
        model: ModelTier,
        system_instruction: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
    ) -> AsyncIterator[str]:  # pragma: no cover - interface only
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class StubProvider(BaseProvider):
    """
    Deterministic offline provider.

    Text calls echo a short digest of the prompt; function calls invoke the
    first declared tool with arguments fabricated from its JSON schema.
    """

    name = "stub"

    def _usage(self, prompt: str, system_instruction: Optional[str], content: str) -> TokenUsage:
        return TokenUsage(
            input=estimate_tokens(prompt) + estimate_tokens(system_instruction or ""),
            output=estimate_tokens(content),
        )

    @staticmethod
    def _content_for(prompt: str) -> str:
        last_line = prompt.strip().splitlines()[-1] if prompt.strip() else ""
        return f"stub response: {last_line[:200]}"

    async def generate(
        self,
        prompt: str,
        *,
        model: ModelTier,
        system_instruction: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
    ) -> GenerationResult:
        content = self._content_for(prompt)
        return GenerationResult(
            content=content,
            tokens_used=self._usage(prompt, system_instruction, content),
            model=self.resolve_model(model),
        )

    async def generate_with_functions(
        self,
        prompt: str,
        *,
        tools: Sequence[FunctionDeclaration],
        model: ModelTier,
        system_instruction: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
    ) -> GenerationResult:
        result = await self.generate(
            prompt,
            model=model,
            system_instruction=system_instruction,
            temperature=temperature,
            max_tokens=max_tokens,
        )
        if tools:
            first = tools[0]
            result.function_calls.append(
                FunctionCall(name=first.name, args=_generate_from_schema(first.parameters))
            )
        return result

    async def stream(
        self,
        prompt: str,
        *,
        model: ModelTier,
        system_instruction: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
    ) -> AsyncIterator[str]:
        content = self._content_for(prompt)
        for word in content.split(" "):
            yield word + " "


def _generate_from_schema(schema: Mapping[str, Any]) -> Any:
    """Very small deterministic JSON generator for Draft-07-style schemas."""
    if "enum" in schema and schema["enum"]:
        return schema["enum"][0]

    schema_type = schema.get("type")

    if schema_type == "object":
        props = schema.get("properties", {}) or {}
        result: Dict[str, Any] = {}
        for name, sub in props.items():
            result[name] = _generate_from_schema(sub)
        # Fill required keys if they are not part of properties.
        for name in schema.get("required", []) or []:
            if name not in result:
                result[name] = None
        return result

    if schema_type == "array":
        items_schema = schema.get("items", {}) or {}
        # Always emit a single element to keep payloads small but non-empty.
        return [_generate_from_schema(items_schema)]

    if schema_type == "string":
        return "stub"

    if schema_type == "number":
        # Try to return a value in [0, 1] when that is the intended range.
        if schema.get("minimum") == 0 and schema.get("maximum") == 1:
            return 0.5
        return 1.0

    if schema_type == "integer":
        return 1

    if schema_type == "boolean":
        return False

    # Fallback for schemas without explicit type: generate an object.
    if "properties" in schema:
        return _generate_from_schema({"type": "object", **schema})

    return None


GEMINI_API_URL = "https://generativelanguage.googleapis.com/v1beta/models"


class GeminiProvider(BaseProvider):
    """Google Gemini over the public REST API."""

    name = "gemini"

    def __init__(
        self,
        api_key: str,
        *,
        model_names: Optional[Mapping[ModelTier, str]] = None,
        timeout: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__(model_names)
        self.api_key = api_key
        self._client = client or httpx.AsyncClient(timeout=timeout)

    def _body(
        self,
        prompt: str,
        system_instruction: Optional[str],
        temperature: float,
        max_tokens: Optional[int],
        tools: Sequence[FunctionDeclaration] = (),
    ) -> Dict[str, Any]:
        generation_config: Dict[str, Any] = {"temperature": temperature}
        if max_tokens:
            generation_config["maxOutputTokens"] = max_tokens
        body: Dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": generation_config,
        }
        if system_instruction:
            body["systemInstruction"] = {"parts": [{"text": system_instruction}]}
        if tools:
            body["tools"] = [{"functionDeclarations": [t.to_dict() for t in tools]}]
        return body

    async def _post(self, url: str, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            resp = await self._client.post(url, params={"key": self.api_key}, json=body)
        except httpx.TimeoutException as exc:
            raise ProviderTimeout(f"Gemini request timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise ProviderError(f"Gemini request failed: {exc}") from exc
        if resp.status_code >= 400:
            raise ProviderError(
                f"Gemini returned HTTP {resp.status_code}: {resp.text[:300]}",
                status_code=resp.status_code,
            )
        return resp.json()

    @staticmethod
    def _parse(data: Mapping[str, Any], model: str) -> GenerationResult:
        texts: List[str] = []
        calls: List[FunctionCall] = []
        candidates = data.get("candidates") or []
        if candidates:
            for part in (candidates[0].get("content") or {}).get("parts") or []:
                if "text" in part:
                    texts.append(part["text"])
                elif "functionCall" in part:
                    call = part["functionCall"]
                    calls.append(FunctionCall(name=call.get("name", ""), args=call.get("args") or {}))
        usage = data.get("usageMetadata") or {}
        tokens = TokenUsage(
            input=int(usage.get("promptTokenCount", 0)),
            output=int(usage.get("candidatesTokenCount", 0)),
            cached=int(usage.get("cachedContentTokenCount", 0)),
        )
        return GenerationResult(content="".join(texts), tokens_used=tokens, function_calls=calls, model=model)

    async def generate(
        self,
        prompt: str,
        *,
        model: ModelTier,
        system_instruction: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
    ) -> GenerationResult:
        name = self.resolve_model(model)
        data = await self._post(
            f"{GEMINI_API_URL}/{name}:generateContent",
            self._body(prompt, system_instruction, temperature, max_tokens),
        )
        return self._parse(data, name)

    async def generate_with_functions(
        self,
        prompt: str,
        *,
        tools: Sequence[FunctionDeclaration],
        model: ModelTier,
        system_instruction: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
    ) -> GenerationResult:
        name = self.resolve_model(model)
        data = await self._post(
            f"{GEMINI_API_URL}/{name}:generateContent",
            self._body(prompt, system_instruction, temperature, max_tokens, tools),
        )
        return self._parse(data, name)

    async def stream(
        self,
        prompt: str,
        *,
        model: ModelTier,
        system_instruction: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
    ) -> AsyncIterator[str]:
        name = self.resolve_model(model)
        url = f"{GEMINI_API_URL}/{name}:streamGenerateContent"
        body = self._body(prompt, system_instruction, temperature, max_tokens)
        try:
            async with self._client.stream(
                "POST", url, params={"key": self.api_key, "alt": "sse"}, json=body
            ) as resp:
                if resp.status_code >= 400:
                    raise ProviderError(f"Gemini returned HTTP {resp.status_code}", status_code=resp.status_code)
                async for payload in _iter_sse_json(resp):
                    chunk = self._parse(payload, name).content
                    if chunk:
                        yield chunk
        except httpx.TimeoutException as exc:
            raise ProviderTimeout(f"Gemini stream timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise ProviderError(f"Gemini stream failed: {exc}") from exc

    async def aclose(self) -> None:
        await self._client.aclose()


OPENROUTER_API_URL = "https://openrouter.ai/api/v1/chat/completions"


class OpenRouterProvider(BaseProvider):
    """
    OpenRouter provider: one API key, many models (OpenAI, Claude, Gemini, etc.).

    When OPENROUTER_MODEL is set every tier uses that model.
    """

    name = "openrouter"

    def __init__(
        self,
        api_key: str,
        *,
        model: Optional[str] = None,
        model_names: Optional[Mapping[ModelTier, str]] = None,
        timeout: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if model:
            model_names = {tier: model for tier in ModelTier}
        super().__init__(model_names)
        self.api_key = api_key
        self._client = client or httpx.AsyncClient(timeout=timeout)

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _body(
        self,
        prompt: str,
        model: ModelTier,
        system_instruction: Optional[str],
        temperature: float,
        max_tokens: Optional[int],
        tools: Sequence[FunctionDeclaration] = (),
        stream: bool = False,
    ) -> Dict[str, Any]:
        messages = []
        if system_instruction:
            messages.append({"role": "system", "content": system_instruction})
        messages.append({"role": "user", "content": prompt})
        body: Dict[str, Any] = {
            "model": self.resolve_model(model),
            "messages": messages,
            "temperature": temperature,
        }
        if max_tokens:
            body["max_tokens"] = max_tokens
        if tools:
            body["tools"] = [{"type": "function", "function": t.to_dict()} for t in tools]
        if stream:
            body["stream"] = True
        return body

    @staticmethod
    def _parse(data: Mapping[str, Any], model: str) -> GenerationResult:
        choices = data.get("choices") or []
        message = (choices[0].get("message") or {}) if choices else {}
        calls: List[FunctionCall] = []
        for tool_call in message.get("tool_calls") or []:
            fn = tool_call.get("function") or {}
            raw_args = fn.get("arguments") or "{}"
            try:
                args = json.loads(raw_args) if isinstance(raw_args, str) else dict(raw_args)
            except json.JSONDecodeError:
                logger.warning("openrouter_bad_tool_args name=%s", fn.get("name"))
                args = {}
            calls.append(FunctionCall(name=fn.get("name", ""), args=args))
        usage = data.get("usage") or {}
        cached = (usage.get("prompt_tokens_details") or {}).get("cached_tokens", 0)
        tokens = TokenUsage(
            input=int(usage.get("prompt_tokens", 0)),
            output=int(usage.get("completion_tokens", 0)),
            cached=int(cached or 0),
        )
        return GenerationResult(
            content=message.get("content") or "",
            tokens_used=tokens,
            function_calls=calls,
            model=str(data.get("model") or model),
        )

    async def _post(self, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            resp = await self._client.post(OPENROUTER_API_URL, headers=self._headers(), json=body)
        except httpx.TimeoutException as exc:
            raise ProviderTimeout(f"OpenRouter request timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise ProviderError(f"OpenRouter request failed: {exc}") from exc
        if resp.status_code >= 400:
            raise ProviderError(
                f"OpenRouter returned HTTP {resp.status_code}: {resp.text[:300]}",
                status_code=resp.status_code,
            )
        return resp.json()

    async def generate(
        self,
        prompt: str,
        *,
        model: ModelTier,
        system_instruction: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
    ) -> GenerationResult:
        data = await self._post(self._body(prompt, model, system_instruction, temperature, max_tokens))
        return self._parse(data, self.resolve_model(model))

    async def generate_with_functions(
        self,
        prompt: str,
        *,
        tools: Sequence[FunctionDeclaration],
        model: ModelTier,
        system_instruction: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
    ) -> GenerationResult:
        data = await self._post(self._body(prompt, model, system_instruction, temperature, max_tokens, tools))
        return self._parse(data, self.resolve_model(model))

    async def stream(
        self,
        prompt: str,
        *,
        model: ModelTier,
        system_instruction: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
    ) -> AsyncIterator[str]:
        body = self._body(prompt, model, system_instruction, temperature, max_tokens, stream=True)
        try:
            async with self._client.stream("POST", OPENROUTER_API_URL, headers=self._headers(), json=body) as resp:
                if resp.status_code >= 400:
                    raise ProviderError(f"OpenRouter returned HTTP {resp.status_code}", status_code=resp.status_code)
                async for payload in _iter_sse_json(resp):
                    for choice in payload.get("choices") or []:
                        chunk = (choice.get("delta") or {}).get("content")
                        if chunk:
                            yield chunk
        except httpx.TimeoutException as exc:
            raise ProviderTimeout(f"OpenRouter stream timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise ProviderError(f"OpenRouter stream failed: {exc}") from exc

    async def aclose(self) -> None:
        await self._client.aclose()


async def _iter_sse_json(resp: httpx.Response) -> AsyncIterator[Dict[str, Any]]:
    """Yield decoded JSON payloads from a `data:` server-sent-events body."""
    async for line in resp.aiter_lines():
        if not line.startswith("data:"):
            continue
        data = line[len("data:"):].strip()
        if not data or data == "[DONE]":
            continue
        try:
            yield json.loads(data)
        except json.JSONDecodeError:
            logger.warning("sse_bad_payload payload=%s", data[:120])


def build_provider(settings: Optional[Settings] = None) -> BaseProvider:
    """Factory that chooses the concrete provider implementation."""
    settings = settings or get_settings()
    model_names = model_names_from_settings(settings)
    timeout = settings.provider_timeout_seconds

    if settings.provider_name == "gemini":
        if not settings.gemini_api_key:
            logger.warning("provider_fallback provider=gemini reason=missing_api_key")
            return StubProvider(model_names)
        return GeminiProvider(settings.gemini_api_key, model_names=model_names, timeout=timeout)
    if settings.provider_name == "openrouter":
        if not settings.openrouter_api_key:
            logger.warning("provider_fallback provider=openrouter reason=missing_api_key")
            return StubProvider(model_names)
        return OpenRouterProvider(
            settings.openrouter_api_key,
            model=settings.openrouter_model,
            model_names=model_names,
            timeout=timeout,
        )

    return StubProvider(model_names)
