from __future__ import annotations

import json
import logging
import time
import uuid
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple, Type, TypeVar

from fastapi import Request
from pydantic import BaseModel, ValidationError

from . import __version__
from .agents.base import BaseAgent
from .agents.pipeline import admit, execute_with_pipeline, prepare_call
from .dependencies import AuthError, enforce_auth
from .errors import AgentError
from .models import (
    AgentContext,
    AgentResponse,
    ChatRequest,
    ExecutionOptions,
    InvokeAgentRequest,
    StudentProfile,
)
from .services import Services
from .storage import session_store

logger = logging.getLogger("tutor-gateway")

BodyT = TypeVar("BodyT", bound=BaseModel)


class ErrorEnvelope(Exception):
    """
    Custom exception used internally to simplify control flow.

    Handlers in `tutor_gateway.main` and the routers convert this into the
    standardized error envelope.
    """

    def __init__(self, status_code: int, code: str, message: str, details: Any = None):
        self.status_code = status_code
        self.code = code
        self.message = message
        self.details = details
        super().__init__(message)

    @classmethod
    def from_agent_error(cls, exc: AgentError) -> "ErrorEnvelope":
        return cls(exc.status_code, exc.code, exc.message, exc.to_dict())


def new_request_id() -> str:
    return str(uuid.uuid4())


def build_success_envelope(
    output: Dict[str, Any],
    *,
    request_id: str,
    agent_id: str,
    latency_ms: float,
    session_id: Optional[str] = None,
) -> Dict[str, Any]:
    meta: Dict[str, Any] = {
        "request_id": request_id,
        "agent": agent_id,
        "version": __version__,
        "latency_ms": latency_ms,
    }
    if session_id is not None:
        meta["session_id"] = session_id
    return {"output": output, "meta": meta}


def build_error_envelope(
    *,
    request_id: str,
    agent_id: Optional[str],
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> Tuple[int, Dict[str, Any]]:
    meta = {
        "request_id": request_id,
        "agent": agent_id or "unknown",
        "version": __version__,
    }
    body = {
        "error": {
            "code": code,
            "message": message,
            "details": details,
        },
        "meta": meta,
    }
    return status_code, body


# --- request parsing ---------------------------------------------------------


async def read_json_body(request: Request) -> Any:
    try:
        body_bytes = await request.body()
    except Exception as exc:
        raise ErrorEnvelope(
            status_code=400,
            code="MALFORMED_REQUEST",
            message="Failed to read request body",
        ) from exc

    try:
        return json.loads(body_bytes.decode("utf-8") or "null")
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ErrorEnvelope(
            status_code=400,
            code="MALFORMED_REQUEST",
            message="Request body must be valid JSON",
            details={"message": str(exc)},
        ) from exc


def parse_body(model: Type[BodyT], payload: Any) -> BodyT:
    if not isinstance(payload, dict):
        raise ErrorEnvelope(
            status_code=422,
            code="INPUT_VALIDATION_ERROR",
            message="Request body must be a JSON object",
            details=[{"path": [], "message": "Expected an object"}],
        )
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise ErrorEnvelope(
            status_code=422,
            code="INPUT_VALIDATION_ERROR",
            message="Request body failed validation",
            details=[{"path": list(err["loc"]), "message": err["msg"]} for err in exc.errors()],
        ) from exc


def enforce_request_auth(request: Request) -> None:
    try:
        enforce_auth(request)
    except AuthError as exc:
        raise ErrorEnvelope(status_code=401, code="UNAUTHORIZED", message=str(exc)) from exc


# --- store read-through (never fails the request) -----------------------------


def _load_profile(user_id: str, supplied: Optional[StudentProfile]) -> Optional[StudentProfile]:
    try:
        if supplied is not None:
            session_store.upsert_student_profile(supplied)
            return supplied
        return session_store.get_student_profile(user_id)
    except Exception as exc:
        logger.warning("profile_store_failed user=%s error=%s", user_id, exc)
        return supplied


def _load_mastery(user_id: str) -> Dict[str, float]:
    try:
        return session_store.get_mastery_levels(user_id)
    except Exception as exc:
        logger.warning("mastery_store_failed user=%s error=%s", user_id, exc)
        return {}


def _log_session(user_id: str, input: str, response: AgentResponse, session_id: str) -> None:
    try:
        session_store.log_agent_session(
            user_id,
            {
                "agent_id": response.agent_id,
                "input": input,
                "output": response.content,
                "tokens_used": response.tokens_used.total,
                "cost_usd": response.cost_usd,
                "duration_ms": response.duration_ms,
                "model_tier": response.model_tier.value,
                "session_id": session_id,
            },
        )
    except Exception as exc:
        logger.warning("log_agent_session failed user=%s session_id=%s: %s", user_id, session_id, exc)


# --- response shaping ----------------------------------------------------------


def usage_summary(response: AgentResponse) -> Dict[str, Any]:
    return {
        "input_tokens": response.tokens_used.input,
        "output_tokens": response.tokens_used.output,
        "cached_tokens": response.tokens_used.cached,
        "total_tokens": response.tokens_used.total,
        "cost_usd": response.cost_usd,
        "duration_ms": response.duration_ms,
        "model_tier": response.model_tier.value,
    }


def chat_response_body(response: AgentResponse, context: AgentContext) -> Dict[str, Any]:
    dumped = response.model_dump(mode="json")
    return {
        "message": response.content,
        "visualizations": dumped["visualizations"] or [],
        "questions": dumped["structured_questions"] or [],
        "conversation_history": [m.model_dump(mode="json") for m in context.conversation_history],
        "session_id": context.session_id,
        "usage": usage_summary(response),
        "confidence": response.confidence,
        "validation_issues": list(response.validation_issues or ()),
        "orchestration": dumped["metadata"].get("orchestration"),
    }


# --- pipelines -------------------------------------------------------------------


async def process_chat_request(*, request: Request, services: Services) -> Dict[str, Any]:
    """
    Core /chat processing: build the context, let the maestro route it,
    log the session and shape the reply.
    """
    request_id = new_request_id()
    start = time.monotonic()
    try:
        enforce_request_auth(request)
        body = parse_body(ChatRequest, await read_json_body(request))

        profile = _load_profile(body.user_id, body.profile)
        context = services.context_manager.build_context(
            body.user_id,
            body.message,
            profile=profile,
            history=[item.to_message() for item in body.history],
            session_id=body.session_id,
            dialect=body.dialect,
            mastery_levels=_load_mastery(body.user_id),
        )
        try:
            response = await services.maestro.orchestrate(body.message, context, body.options)
        except AgentError as exc:
            raise ErrorEnvelope.from_agent_error(exc) from exc

        updated = services.context_manager.update_context(context, response.content, response.agent_id)
        _log_session(body.user_id, body.message, response, context.session_id)

        latency_ms = (time.monotonic() - start) * 1000.0
        payload = chat_response_body(response, updated)
        payload["meta"] = {
            "request_id": request_id,
            "agent": services.maestro.id,
            "version": __version__,
            "latency_ms": latency_ms,
        }
        _log_request("chat", request_id, services.maestro.id, 200, latency_ms)
        return {"status_code": 200, "body": payload}

    except ErrorEnvelope as exc:
        return _error_result(exc, request_id, services.maestro.id, start, "chat")


def _resolve_agent(services: Services, agent_id: str) -> BaseAgent:
    agent = services.registry.get(agent_id)
    if agent is None:
        raise ErrorEnvelope(
            status_code=404,
            code="AGENT_NOT_FOUND",
            message=f"Agent not found: {agent_id}",
            details={"agent_id": agent_id, "available": services.registry.ids()},
        )
    return agent


def _invoke_context(services: Services, body: InvokeAgentRequest) -> AgentContext:
    return services.context_manager.build_context(
        body.user_id,
        body.input,
        profile=_load_profile(body.user_id, None),
        history=[item.to_message() for item in body.history],
        session_id=body.session_id,
        dialect=body.dialect,
        mastery_levels=_load_mastery(body.user_id),
    )


async def process_agent_invoke(*, request: Request, services: Services, agent_id: str) -> Dict[str, Any]:
    """Run one named agent through the execution pipeline."""
    request_id = new_request_id()
    start = time.monotonic()
    try:
        enforce_request_auth(request)
        agent = _resolve_agent(services, agent_id)
        body = parse_body(InvokeAgentRequest, await read_json_body(request))
        context = _invoke_context(services, body)
        settings = services.settings
        try:
            response = await execute_with_pipeline(
                agent,
                body.input,
                context,
                body.options,
                retry_policy=services.maestro.retry_policy,
                max_input_chars=settings.max_input_chars,
                max_context_tokens=settings.max_context_tokens,
            )
        except AgentError as exc:
            raise ErrorEnvelope.from_agent_error(exc) from exc

        _log_session(body.user_id, body.input, response, context.session_id)
        latency_ms = (time.monotonic() - start) * 1000.0
        envelope = build_success_envelope(
            response.model_dump(mode="json"),
            request_id=request_id,
            agent_id=agent.id,
            latency_ms=latency_ms,
            session_id=context.session_id,
        )
        _log_request("invoke", request_id, agent.id, 200, latency_ms)
        return {"status_code": 200, "body": envelope}

    except ErrorEnvelope as exc:
        return _error_result(exc, request_id, agent_id, start, "invoke")


async def prepare_agent_stream(
    *, request: Request, services: Services, agent_id: str
) -> Tuple[BaseAgent, str, AgentContext, ExecutionOptions]:
    """
    Validate a streaming request; raises ErrorEnvelope before any bytes are sent.

    The input and context go through the same guard as the pipeline, and the
    agent's rate limiter admits the call before the stream opens.
    """
    enforce_request_auth(request)
    agent = _resolve_agent(services, agent_id)
    body = parse_body(InvokeAgentRequest, await read_json_body(request))
    settings = services.settings
    try:
        clean, context = prepare_call(
            agent,
            body.input,
            _invoke_context(services, body),
            max_input_chars=settings.max_input_chars,
            max_context_tokens=settings.max_context_tokens,
        )
    except AgentError as exc:
        raise ErrorEnvelope.from_agent_error(exc) from exc
    waited = await admit(agent)
    if waited:
        logger.info("stream_rate_limited agent=%s waited_s=%.3f", agent.id, waited)
    return agent, clean, context, body.options or ExecutionOptions()


def _sse(data: Dict[str, Any], event: Optional[str] = None) -> str:
    prefix = f"event: {event}\n" if event else ""
    return f"{prefix}data: {json.dumps(data, ensure_ascii=False)}\n\n"


async def stream_agent_events(
    agent: BaseAgent,
    input: str,
    context: AgentContext,
    options: ExecutionOptions,
    *,
    request_id: str,
) -> AsyncIterator[str]:
    """Server-Sent Events: one `data:` frame per chunk, then `done` or `error`."""
    start = time.monotonic()
    chunks = 0
    try:
        async for chunk in agent.stream_content(input, context, options):
            chunks += 1
            yield _sse({"text": chunk})
    except AgentError as exc:
        _, body = build_error_envelope(
            request_id=request_id,
            agent_id=agent.id,
            status_code=exc.status_code,
            code=exc.code,
            message=exc.message,
            details=exc.to_dict(),
        )
        logger.warning("stream_failed request_id=%s agent=%s kind=%s", request_id, agent.id, exc.kind.value)
        yield _sse(body, event="error")
        return
    latency_ms = (time.monotonic() - start) * 1000.0
    logger.info("stream_done request_id=%s agent=%s chunks=%s latency_ms=%.2f", request_id, agent.id, chunks, latency_ms)
    yield _sse({"request_id": request_id, "agent": agent.id, "chunks": chunks, "session_id": context.session_id}, event="done")


# --- helpers ------------------------------------------------------------------------


def _error_result(exc: ErrorEnvelope, request_id: str, agent_id: str, start: float, route: str) -> Dict[str, Any]:
    latency_ms = (time.monotonic() - start) * 1000.0
    status_code, body = build_error_envelope(
        request_id=request_id,
        agent_id=agent_id,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
    )
    _log_request(route, request_id, agent_id, status_code, latency_ms)
    return {"status_code": status_code, "body": body}


def _log_request(route: str, request_id: str, agent_id: str, status_code: int, latency_ms: float) -> None:
    logger.info(
        "%s request_id=%s agent=%s status=%s latency_ms=%.2f",
        route,
        request_id,
        agent_id,
        status_code,
        latency_ms,
    )


def error_details(errors: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Normalize FastAPI/pydantic validation errors into {path, message} items."""
    return [{"path": list(err.get("loc", ())), "message": err.get("msg", "")} for err in errors]
