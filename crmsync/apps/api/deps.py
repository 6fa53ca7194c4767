from __future__ import annotations

from fastapi import Header, HTTPException, Request, status

from crmsync.services.sync.factory import build_orchestrator
from crmsync.services.sync.orchestrator import TenantSyncOrchestrator


def _auth_error(message: str) -> HTTPException:
    # Normalize auth errors for clients without leaking internal details.
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def require_bearer_token(authorization: str | None = Header(default=None)) -> str:
    # The token is forwarded to the wrapper API as-is; it is not validated here.
    if not authorization:
        raise _auth_error("Missing or invalid bearer token")
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _auth_error("Missing or invalid bearer token")
    return parts[1]


def get_orchestrator(request: Request) -> TenantSyncOrchestrator:
    # Build the production graph on first use unless the app factory injected one.
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        orchestrator = build_orchestrator()
        request.app.state.orchestrator = orchestrator
    return orchestrator
