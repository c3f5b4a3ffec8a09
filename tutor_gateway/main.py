from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .config import get_settings
from .dependencies import get_services
from .engine import ErrorEnvelope, build_error_envelope, error_details, new_request_id
from .errors import AgentError
from .routers import agents as agents_router
from .routers import chat as chat_router
from .routers import sessions as sessions_router
from .services import Services, init_services, shutdown_services
from .storage import session_store


logger = logging.getLogger("tutor-gateway")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize the store and services; release them on shutdown."""
    session_store.init_db()
    services = init_services(memory_store=session_store)
    app.state.services = services
    try:
        yield
    finally:
        await shutdown_services(services)
        app.state.services = None


app = FastAPI(title="Arabic Tutoring Agent Gateway", version=__version__, lifespan=lifespan)


# CORS: controlled by env CORS_ORIGINS (e.g. * or http://localhost:3000)
_cors_origins_list = [o.strip() for o in get_settings().cors_origins.strip().split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(chat_router.router)
app.include_router(agents_router.router)
app.include_router(sessions_router.router)


def _envelope_response(status_code: int, code: str, message: str, details: Any = None) -> JSONResponse:
    status_code, body = build_error_envelope(
        request_id=new_request_id(),
        agent_id=None,
        status_code=status_code,
        code=code,
        message=message,
        details=details,
    )
    return JSONResponse(status_code=status_code, content=body)


@app.exception_handler(ErrorEnvelope)
async def _handle_envelope(request: Request, exc: ErrorEnvelope) -> JSONResponse:
    return _envelope_response(exc.status_code, exc.code, exc.message, exc.details)


@app.exception_handler(AgentError)
async def _handle_agent_error(request: Request, exc: AgentError) -> JSONResponse:
    return _envelope_response(exc.status_code, exc.code, exc.message, exc.to_dict())


@app.exception_handler(RequestValidationError)
async def _handle_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _envelope_response(422, "INPUT_VALIDATION_ERROR", "Request failed validation", error_details(exc.errors()))


@app.exception_handler(Exception)
async def _handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_error path=%s", request.url.path)
    return _envelope_response(500, "INTERNAL_ERROR", "Internal server error", {"error_type": type(exc).__name__})


@app.get("/")
async def root() -> Dict[str, Any]:
    """
    Service metadata endpoint.
    """
    return {
        "service": "tutor-gateway",
        "version": __version__,
        "docs": "/docs",
        "chat": "/chat",
        "agents": "/agents",
        "health": "/health",
    }


@app.get("/health")
async def health(services: Services = Depends(get_services)) -> JSONResponse:
    """
    Simple health check. Returns 200 when services are up and the maestro is registered.
    """
    payload = {
        "status": "ok" if services.registry.has(services.maestro.id) else "degraded",
        "version": __version__,
        "provider": services.settings.provider_name,
        "agents": services.registry.count(),
    }
    return JSONResponse(status_code=200, content=payload)


def get_app() -> FastAPI:
    """Convenience accessor for external runners."""
    return app
