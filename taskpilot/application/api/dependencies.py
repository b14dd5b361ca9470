# app lifetime dependencies used by the routes
from typing import Optional
from uuid import uuid4

from fastapi import Header, HTTPException, Request, status

from taskpilot.application.api.services import ServiceContainer
from taskpilot.domain.models.errors import CredentialMissing
from taskpilot.domain.orchestration.core.main_agent import TaskPilotOrchestrator
from taskpilot.infrastructure.security.credential_relay import extract_bearer


def get_services(request: Request) -> ServiceContainer:
    """
    FastAPI dependency to get the shared services from the application state.
    """
    return request.app.state.services


def get_orchestrator(request: Request) -> TaskPilotOrchestrator:
    return request.app.state.services.orchestrator


def get_request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or str(uuid4())


def get_credential(authorization: Optional[str] = Header(default=None)) -> str:
    """Bearer credential of the caller, 401 when absent or malformed"""

    try:
        return extract_bearer(authorization)
    except CredentialMissing as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(e),
            headers={"WWW-Authenticate": "Bearer"},
        )
