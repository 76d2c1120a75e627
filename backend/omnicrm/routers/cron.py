"""Scheduler entry point: one call runs one processing pass."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from omnicrm.dependencies import get_runner, require_cron_secret
from omnicrm.runner import JobRunner
from omnicrm.services.job_store import JobStoreUnavailableError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["cron"])


class ProcessJobsResponse(BaseModel):
    processed: int
    failed: int


@router.post("/process-jobs", response_model=ProcessJobsResponse)
async def process_jobs(
    _auth: None = Depends(require_cron_secret),
    runner: JobRunner = Depends(get_runner),
) -> ProcessJobsResponse:
    try:
        summary = await runner.run_once()
    except JobStoreUnavailableError as exc:
        logger.exception("Job pass aborted: job store unavailable")
        raise HTTPException(status_code=503, detail=f"Job store unavailable: {exc}")
    return ProcessJobsResponse(processed=summary.processed, failed=summary.failed)
