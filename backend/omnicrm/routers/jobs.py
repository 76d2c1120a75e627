"""Read-only job views for the practitioner's dashboard."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from omnicrm.dependencies import get_current_user_id, get_job_store
from omnicrm.models.job import JobRead, JobStatus, JobType
from omnicrm.services.job_store import JobStore

router = APIRouter(prefix="/api/jobs", tags=["jobs"])


class JobStatsResponse(BaseModel):
    by_status: dict[str, int]
    by_type: dict[str, int]
    total: int


class BatchStatusResponse(JobStatsResponse):
    batch_id: str
    pending: int


def _stats(by_status: dict[str, int], by_type: dict[str, int]) -> dict:
    for status in JobStatus:
        by_status.setdefault(status.value, 0)
    return {"by_status": by_status, "by_type": by_type, "total": sum(by_type.values())}


@router.get("", response_model=list[JobRead])
async def list_jobs(
    status: list[JobStatus] | None = Query(None),
    job_type: list[JobType] | None = Query(None),
    batch_id: str | None = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(get_current_user_id),
    store: JobStore = Depends(get_job_store),
) -> list[JobRead]:
    jobs = store.list_jobs(
        user_id,
        statuses=[s.value for s in status] if status else None,
        job_types=[t.value for t in job_type] if job_type else None,
        batch_id=batch_id,
        limit=limit,
        offset=offset,
    )
    return [JobRead.from_job(j) for j in jobs]


@router.get("/stats", response_model=JobStatsResponse)
async def job_stats(
    user_id: str = Depends(get_current_user_id),
    store: JobStore = Depends(get_job_store),
) -> JobStatsResponse:
    by_status, by_type = store.count_by_status_and_type(user_id=user_id)
    return JobStatsResponse(**_stats(by_status, by_type))


@router.get("/batches/{batch_id}", response_model=BatchStatusResponse)
async def batch_status(
    batch_id: str,
    user_id: str = Depends(get_current_user_id),
    store: JobStore = Depends(get_job_store),
) -> BatchStatusResponse:
    """Per-status counts for the jobs tagged with one batch id.

    A batch has no state of its own; ``pending`` is how many of its jobs
    are still queued or processing right now.
    """
    by_status, by_type = store.count_by_status_and_type(user_id=user_id, batch_id=batch_id)
    if not by_type:
        raise HTTPException(status_code=404, detail="Batch not found")
    stats = _stats(by_status, by_type)
    pending = by_status[JobStatus.QUEUED.value] + by_status[JobStatus.PROCESSING.value]
    return BatchStatusResponse(batch_id=batch_id, pending=pending, **stats)


@router.get("/{job_id}", response_model=JobRead)
async def get_job(
    job_id: str,
    user_id: str = Depends(get_current_user_id),
    store: JobStore = Depends(get_job_store),
) -> JobRead:
    job = store.get(job_id, user_id=user_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return JobRead.from_job(job)
