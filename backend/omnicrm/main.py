from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

import omnicrm.models  # noqa: F401 — register SQLModel tables

from omnicrm.config import Settings, get_settings
from omnicrm.db import create_db_and_tables, engine as db_engine
from omnicrm.handlers import JobContext, default_registry
from omnicrm.routers import cron, health, ingest, jobs, search
from omnicrm.runner import JobRunner
from omnicrm.services.embedding import EmbeddingProvider
from omnicrm.services.embedding_store import EmbeddingStore
from omnicrm.services.enqueue import JobQueue
from omnicrm.services.ingestion import IngestionService
from omnicrm.services.job_store import JobStore
from omnicrm.services.search import SearchService

logger = logging.getLogger(__name__)


def init_pipeline(
    state,
    engine,
    settings: Settings,
    provider: EmbeddingProvider | None = None,
    index=None,
) -> None:
    """Build the pipeline services over ``engine`` and attach them to ``state``."""
    if provider is None:
        provider = EmbeddingProvider(
            ollama_url=settings.ollama_url,
            model=settings.embedding_model,
            fallback_url=settings.fallback_llm_url,
            fallback_api_keys=settings.fallback_api_keys,
            fallback_embedding_model=settings.fallback_embedding_model,
            timeout=settings.embedding_timeout_seconds,
        )
    store = JobStore(engine, settings)
    queue = JobQueue(store, settings)
    embeddings = EmbeddingStore(engine, settings, index=index)
    context = JobContext(
        engine=engine,
        settings=settings,
        queue=queue,
        provider=provider,
        embeddings=embeddings,
    )

    state.job_store = store
    state.job_queue = queue
    state.embedding_provider = provider
    state.embedding_store = embeddings
    state.ingestion_service = IngestionService(engine, queue)
    state.search_service = SearchService(provider, embeddings, engine)
    state.runner = JobRunner(store, default_registry(), context, settings)
    state.vector_backend = "qdrant" if index is not None else "sql"


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logging.getLogger("omnicrm").setLevel(settings.log_level.upper())
    create_db_and_tables()

    index = None
    qdrant_client = None
    if settings.vector_backend == "qdrant":
        from qdrant_client import QdrantClient
        from omnicrm.services.vector_index import QdrantIndex

        try:
            qdrant_client = QdrantClient(url=settings.qdrant_url)
            index = QdrantIndex(
                qdrant_client, settings.qdrant_collection, settings.embedding_dimensions
            )
            index.ensure_collection()
        except Exception:
            logger.warning(
                "Failed to initialize Qdrant — falling back to exact SQL search",
                exc_info=True,
            )
            index = None

    init_pipeline(app.state, db_engine, settings, index=index)
    if index is not None:
        # Rows stored while the index was off or unreachable
        try:
            app.state.embedding_store.mirror_pending()
        except Exception:
            logger.warning(
                "Qdrant backfill incomplete — unmirrored rows are retried on next startup",
                exc_info=True,
            )
    logger.info("Pipeline ready (vector backend: %s)", app.state.vector_backend)

    yield

    if qdrant_client is not None:
        qdrant_client.close()


app = FastAPI(
    title="OmniCRM Pipeline",
    description="Ingestion job pipeline for the practitioner CRM",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://localhost:5173",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router)
app.include_router(cron.router)
app.include_router(jobs.router)
app.include_router(ingest.router)
app.include_router(search.router)
