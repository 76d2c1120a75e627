"""Search router — semantic search over embedded interactions and contacts."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from omnicrm.dependencies import get_current_user_id, get_search_service
from omnicrm.services.embedding import EmbeddingError
from omnicrm.services.search import DEFAULT_LIMIT, MAX_LIMIT, SearchHit, SearchService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/search", tags=["search"])


class SearchHitResponse(BaseModel):
    """Single search result."""
    owner_type: str
    owner_id: str
    chunk_index: int
    title: str | None
    meta: dict
    similarity: float


class SearchResponse(BaseModel):
    hits: list[SearchHitResponse]
    total: int


def _response(hits: list[SearchHit]) -> SearchResponse:
    return SearchResponse(
        hits=[
            SearchHitResponse(
                owner_type=hit.entity.owner_type,
                owner_id=hit.entity.owner_id,
                chunk_index=hit.entity.chunk_index,
                title=hit.entity.title,
                meta=hit.entity.meta,
                similarity=round(hit.similarity, 4),
            )
            for hit in hits
        ],
        total=len(hits),
    )


@router.get("", response_model=SearchResponse)
async def search(
    q: str = Query(..., min_length=1, max_length=500, description="Search query"),
    limit: int = Query(DEFAULT_LIMIT, ge=1, le=MAX_LIMIT),
    owner_type: list[str] | None = Query(None, description="Restrict to these owner types"),
    user_id: str = Depends(get_current_user_id),
    search_service: SearchService = Depends(get_search_service),
) -> SearchResponse:
    try:
        hits = await search_service.search(user_id, q, limit=limit, owner_types=owner_type)
    except EmbeddingError as exc:
        logger.warning("Query embedding failed: %s", exc)
        raise HTTPException(status_code=503, detail="Embedding provider unavailable")
    return _response(hits)


@router.get("/related/{owner_type}/{owner_id}", response_model=SearchResponse)
async def related(
    owner_type: str,
    owner_id: str,
    limit: int = Query(DEFAULT_LIMIT, ge=1, le=MAX_LIMIT),
    user_id: str = Depends(get_current_user_id),
    search_service: SearchService = Depends(get_search_service),
) -> SearchResponse:
    hits = await search_service.related(user_id, owner_type, owner_id, limit=limit)
    if hits is None:
        raise HTTPException(status_code=404, detail="No embedding for this entity")
    return _response(hits)
