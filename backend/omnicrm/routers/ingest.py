"""Ingest router — accept a page of provider records from an importer."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from omnicrm.dependencies import get_current_user_id, get_ingestion_service
from omnicrm.models.job import Provider
from omnicrm.services.enqueue import JobValidationError
from omnicrm.services.ingestion import MAX_BATCH_ITEMS, IngestionError, IngestionService
from omnicrm.services.job_store import JobStoreUnavailableError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/ingest", tags=["ingest"])


class IngestBatchRequest(BaseModel):
    provider: Provider
    items: list[dict] = Field(..., max_length=MAX_BATCH_ITEMS)
    batch_id: str | None = Field(None, min_length=1, max_length=100)


class IngestBatchResponse(BaseModel):
    batch_id: str
    inserted: int
    skipped: int
    job_id: str


@router.post("/batches", response_model=IngestBatchResponse, status_code=202)
async def ingest_batch(
    body: IngestBatchRequest,
    user_id: str = Depends(get_current_user_id),
    ingestion: IngestionService = Depends(get_ingestion_service),
) -> IngestBatchResponse:
    try:
        result = ingestion.record_batch(user_id, body.provider, body.items, body.batch_id)
    except (IngestionError, JobValidationError) as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except JobStoreUnavailableError as exc:
        logger.exception("Batch recorded but normalize job not queued")
        raise HTTPException(status_code=503, detail=str(exc))
    return IngestBatchResponse(
        batch_id=result.batch_id,
        inserted=result.inserted,
        skipped=result.skipped,
        job_id=result.job_id,
    )
