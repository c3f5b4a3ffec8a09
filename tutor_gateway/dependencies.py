from __future__ import annotations

from typing import Optional

from fastapi import Request

from .config import get_settings
from .services import Services


def get_services(request: Request) -> Services:
    """
    Dependency returning the process-wide services built by the lifespan.

    Tests rely on this function name to swap in services wired to a
    RecordingProvider/RaisingProvider via FastAPI's dependency_overrides.
    """

    services = getattr(request.app.state, "services", None)
    if services is None:
        raise RuntimeError("Services are not initialized; is the app lifespan running?")
    return services


def _get_bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        token = auth_header.split(" ", 1)[1].strip()
        return token or None
    return None


def enforce_auth(request: Request) -> None:
    """
    Auth guard used by mutating endpoints.

    If AUTH_TOKEN is set, accept only that bearer token; otherwise
    authentication is disabled (dev/tests).
    """
    settings = get_settings()
    if not settings.auth_token:
        return
    if request.headers.get("Authorization") is None:
        raise AuthError("Missing or invalid Authorization header")
    supplied = _get_bearer_token(request)
    if supplied is None:
        raise AuthError("Missing or invalid Authorization header")
    if supplied != settings.auth_token:
        raise AuthError("Invalid bearer token")


class AuthError(RuntimeError):
    """Raised when authentication fails."""
