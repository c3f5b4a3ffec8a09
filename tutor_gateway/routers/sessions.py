"""
Per-user history API: GET /users/{user_id}/sessions,
GET /users/{user_id}/memory/{agent_id}, DELETE /users/{user_id}/memory/{agent_id}.

Contract: 200 + { sessions } ; 200 + { entries } ; 200 + { ok, cleared }.
Error responses use the build_error_envelope body (401/404/422/500).
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from tutor_gateway.dependencies import AuthError, enforce_auth, get_services
from tutor_gateway.engine import build_error_envelope, new_request_id
from tutor_gateway.services import Services
from tutor_gateway.storage import session_store

logger = logging.getLogger("tutor-gateway")

router = APIRouter(prefix="/users", tags=["users"])

MAX_SESSIONS_LIMIT = 200


def _users_error(status_code: int, code: str, message: str, details: Any = None, agent_id: Optional[str] = None) -> JSONResponse:
    _, body = build_error_envelope(
        request_id=new_request_id(),
        agent_id=agent_id,
        status_code=status_code,
        code=code,
        message=message,
        details=details,
    )
    return JSONResponse(status_code=status_code, content=body)


@router.get("/{user_id}/sessions")
async def get_user_sessions(user_id: str, limit: int = 50) -> JSONResponse:
    """
    Most recent agent interactions for a user, newest first.
    """
    if limit < 1 or limit > MAX_SESSIONS_LIMIT:
        return _users_error(
            422,
            "INPUT_VALIDATION_ERROR",
            f"limit must be between 1 and {MAX_SESSIONS_LIMIT}",
            details={"limit": limit},
        )
    try:
        sessions = session_store.get_recent_agent_sessions(user_id, limit=limit)
    except Exception as exc:
        logger.exception("get_recent_agent_sessions failed user=%s", user_id)
        return _users_error(500, "STORE_ERROR", "Failed to read sessions", details={"message": str(exc)})
    return JSONResponse(status_code=200, content={"user_id": user_id, "sessions": sessions})


@router.get("/{user_id}/memory/{agent_id}")
async def get_user_memory(
    user_id: str,
    agent_id: str,
    key: Optional[str] = None,
    services: Services = Depends(get_services),
) -> JSONResponse:
    if not services.registry.has(agent_id):
        return _users_error(404, "AGENT_NOT_FOUND", f"Agent not found: {agent_id}", agent_id=agent_id)
    entries = await services.context_manager.get_memory(user_id, agent_id, key)
    return JSONResponse(
        status_code=200,
        content={
            "user_id": user_id,
            "agent_id": agent_id,
            "entries": [e.model_dump(mode="json") for e in entries],
        },
    )


@router.delete("/{user_id}/memory/{agent_id}")
async def delete_user_memory(
    user_id: str,
    agent_id: str,
    request: Request,
    services: Services = Depends(get_services),
) -> JSONResponse:
    try:
        enforce_auth(request)
    except AuthError as exc:
        return _users_error(401, "UNAUTHORIZED", str(exc), agent_id=agent_id)

    if not services.registry.has(agent_id):
        return _users_error(404, "AGENT_NOT_FOUND", f"Agent not found: {agent_id}", agent_id=agent_id)
    await services.context_manager.clear_memory(user_id, agent_id)
    logger.info("memory_cleared user=%s agent=%s", user_id, agent_id)
    return JSONResponse(status_code=200, content={"ok": True, "user_id": user_id, "agent_id": agent_id, "cleared": True})
