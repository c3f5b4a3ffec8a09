"""
Agent API.

Discovery of the registered agents, single-agent invocation through the
execution pipeline, and token streaming over Server-Sent Events.
Uses build_error_envelope and the request_id pattern like /chat.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, StreamingResponse

from tutor_gateway.dependencies import get_services
from tutor_gateway.engine import (
    ErrorEnvelope,
    build_error_envelope,
    new_request_id,
    prepare_agent_stream,
    process_agent_invoke,
    stream_agent_events,
)
from tutor_gateway.models import AgentTier, Capability
from tutor_gateway.services import Services

logger = logging.getLogger("tutor-gateway")

router = APIRouter(prefix="/agents", tags=["agents"])


def _agents_error(
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
    *,
    agent_id: Optional[str] = None,
    request_id: Optional[str] = None,
) -> JSONResponse:
    _, body = build_error_envelope(
        request_id=request_id or new_request_id(),
        agent_id=agent_id,
        status_code=status_code,
        code=code,
        message=message,
        details=details,
    )
    return JSONResponse(status_code=status_code, content=body)


@router.get("")
async def get_agents(
    tier: Optional[str] = None,
    capability: Optional[str] = None,
    services: Services = Depends(get_services),
) -> JSONResponse:
    """
    List registered agents, optionally filtered by tier or capability.
    Returns 200 with { "agents": [ ... ], "count": N }.
    """
    agents = services.registry.get_all()
    if tier is not None:
        try:
            agents = services.registry.get_by_tier(AgentTier(tier))
        except ValueError:
            return _agents_error(
                422,
                "INPUT_VALIDATION_ERROR",
                f"Unknown tier: {tier}",
                details={"allowed": [t.value for t in AgentTier]},
            )
    if capability is not None:
        try:
            wanted = Capability(capability)
        except ValueError:
            return _agents_error(
                422,
                "INPUT_VALIDATION_ERROR",
                f"Unknown capability: {capability}",
                details={"allowed": [c.value for c in Capability]},
            )
        agents = [a for a in agents if a.has_capability(wanted)]

    listing = [agent.describe() for agent in agents]
    return JSONResponse(status_code=200, content={"agents": listing, "count": len(listing)})


@router.get("/{agent_id}")
async def get_agents_id(agent_id: str, services: Services = Depends(get_services)) -> JSONResponse:
    """
    Get one agent by id. Returns 200 with full details or 404 with AGENT_NOT_FOUND envelope.
    """
    agent = services.registry.get(agent_id)
    if agent is None:
        return _agents_error(404, "AGENT_NOT_FOUND", f"Agent not found: {agent_id}", agent_id=agent_id)

    config = agent.config
    body: Dict[str, Any] = agent.describe()
    body.update(
        {
            "allowed_models": sorted(m.value for m in config.allowed_models),
            "temperature": config.temperature,
            "max_tokens": config.max_tokens,
            "conversation_memory_size": config.conversation_memory_size,
            "cache_system_prompt": config.cache_system_prompt,
            "tools": [d.name for d in agent.tool_declarations()],
        }
    )
    return JSONResponse(status_code=200, content=body)


@router.post("/{agent_id}")
async def invoke_agent(
    agent_id: str,
    request: Request,
    services: Services = Depends(get_services),
) -> JSONResponse:
    """
    Run one agent through the execution pipeline (validation, retry,
    self-reflection, memory update).
    """
    result = await process_agent_invoke(request=request, services=services, agent_id=agent_id)
    return JSONResponse(status_code=result["status_code"], content=result["body"])


@router.post("/{agent_id}/stream", response_model=None)
async def stream_agent(
    agent_id: str,
    request: Request,
    services: Services = Depends(get_services),
):
    """
    Token-streaming variant of invocation. Request errors are returned as a
    regular JSON envelope; failures after the first byte arrive as an
    `error` event.
    """
    request_id = new_request_id()
    try:
        agent, input, context, options = await prepare_agent_stream(
            request=request, services=services, agent_id=agent_id
        )
    except ErrorEnvelope as exc:
        return _agents_error(
            exc.status_code,
            exc.code,
            exc.message,
            exc.details,
            agent_id=agent_id,
            request_id=request_id,
        )

    logger.info("stream_start request_id=%s agent=%s user=%s", request_id, agent.id, context.user_id)
    return StreamingResponse(
        stream_agent_events(agent, input, context, options, request_id=request_id),
        media_type="text/event-stream",
    )
