"""FastAPI dependency injection for auth and the pipeline services."""

from __future__ import annotations

import hmac

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from omnicrm.auth import decode_token
from omnicrm.config import get_settings
from omnicrm.runner import JobRunner
from omnicrm.services.enqueue import JobQueue
from omnicrm.services.ingestion import IngestionService
from omnicrm.services.job_store import JobStore
from omnicrm.services.search import SearchService

_bearer_scheme = HTTPBearer(auto_error=False)


def _bearer_token(credentials: HTTPAuthorizationCredentials | None) -> str:
    if credentials is None or not credentials.credentials:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return credentials.credentials


def get_current_user_id(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> str:
    """Extract and validate the JWT access token from the Authorization header.

    Returns the user id (sub claim). Raises HTTPException 401 if the token is
    missing, expired, or invalid.
    """
    payload = decode_token(_bearer_token(credentials), "access")
    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token payload")
    return user_id


def require_cron_secret(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> None:
    """Guard for the scheduler endpoint.

    An unset CRON_SECRET rejects every call rather than leaving the route open.
    """
    expected = get_settings().cron_secret
    token = _bearer_token(credentials)
    if not expected or not hmac.compare_digest(token.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Unauthorized")


def _state(request: Request, name: str, label: str):
    svc = getattr(request.app.state, name, None)
    if svc is None:
        raise HTTPException(status_code=503, detail=f"{label} unavailable")
    return svc


def get_job_store(request: Request) -> JobStore:
    return _state(request, "job_store", "Job store")


def get_job_queue(request: Request) -> JobQueue:
    return _state(request, "job_queue", "Job queue")


def get_runner(request: Request) -> JobRunner:
    return _state(request, "runner", "Job runner")


def get_ingestion_service(request: Request) -> IngestionService:
    return _state(request, "ingestion_service", "Ingestion service")


def get_search_service(request: Request) -> SearchService:
    """Inject the SearchService initialized at startup."""
    return _state(request, "search_service", "Search service")
