from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, text

from omnicrm.db import get_session

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["health"])


@router.get("/health")
async def health(request: Request, session: Session = Depends(get_session)):
    db_status = "ok"
    try:
        session.exec(text("SELECT 1"))
    except SQLAlchemyError as exc:
        db_status = f"error: {exc}"

    jobs_status: dict | str = "unavailable"
    store = getattr(request.app.state, "job_store", None)
    if store is not None and db_status == "ok":
        try:
            by_status, by_type = store.count_by_status_and_type()
            jobs_status = {
                "by_status": by_status,
                "by_type": by_type,
                "recent_failures": [
                    {"id": j.id, "job_type": j.job_type, "last_error": j.last_error}
                    for j in store.recent_failures(limit=5)
                ],
            }
        except SQLAlchemyError:
            logger.warning("Could not read job stats", exc_info=True)
            jobs_status = "error"

    return {
        "status": "healthy" if db_status == "ok" else "unhealthy",
        "service": "omnicrm-pipeline",
        "version": "0.1.0",
        "checks": {
            "database": db_status,
            "jobs": jobs_status,
            "vector_backend": getattr(request.app.state, "vector_backend", "unknown"),
        },
    }


@router.get("/health/ready")
async def readiness(session: Session = Depends(get_session)):
    try:
        session.exec(text("SELECT 1"))
    except SQLAlchemyError as exc:
        return JSONResponse(
            status_code=503,
            content={
                "status": "not ready",
                "service": "omnicrm-pipeline",
                "error": str(exc),
            },
        )

    return {
        "status": "ready",
        "service": "omnicrm-pipeline",
    }
