"""Ingestion handoff — store imported provider records and seed the pipeline.

Importers (Gmail/Calendar sync) hand a page of provider records to
``record_batch``. The records are written as immutable RawEvents under one
batch id, then a single ``normalize`` job is queued for that batch.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from uuid import uuid4

from sqlmodel import Session, col, select

from omnicrm.models.job import JobType, Provider
from omnicrm.models.raw_event import RawEvent
from omnicrm.services.enqueue import JobQueue

logger = logging.getLogger(__name__)

MAX_BATCH_ITEMS = 500


class IngestionError(ValueError):
    """Raised when a batch cannot be accepted."""


@dataclass(frozen=True, slots=True)
class IngestBatchResult:
    batch_id: str
    inserted: int
    skipped: int
    job_id: str


def _occurred_at(provider: Provider, item: dict) -> datetime:
    now = datetime.now(timezone.utc)
    try:
        if provider is Provider.GMAIL and item.get("internalDate"):
            return datetime.fromtimestamp(int(item["internalDate"]) / 1000, tz=timezone.utc)
        if provider is Provider.GOOGLE_CALENDAR:
            start = item.get("start") or {}
            value = start.get("dateTime") or start.get("date")
            if value:
                parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
                return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    except (TypeError, ValueError):
        logger.debug("Unparseable timestamp on %s item %s", provider.value, item.get("id"))
    return now


class IngestionService:
    __slots__ = ("engine", "queue")

    def __init__(self, engine, queue: JobQueue) -> None:
        self.engine = engine
        self.queue = queue

    def record_batch(
        self,
        user_id: str,
        provider: str | Provider,
        items: list[dict],
        batch_id: str | None = None,
    ) -> IngestBatchResult:
        try:
            provider = Provider(provider)
        except ValueError:
            raise IngestionError(f"Unknown provider: {provider}") from None
        if len(items) > MAX_BATCH_ITEMS:
            raise IngestionError(f"Batch of {len(items)} exceeds {MAX_BATCH_ITEMS} items")
        for item in items:
            if not isinstance(item, dict) or not item.get("id"):
                raise IngestionError("Every item needs a provider id")

        batch_id = batch_id or str(uuid4())
        # Validate before any write so a bad request leaves no rows behind
        self.queue.validate(
            JobType.NORMALIZE, {"batch_id": batch_id, "provider": provider.value}, user_id
        )

        inserted = skipped = 0
        with Session(self.engine) as session:
            source_ids = [str(item["id"]) for item in items]
            known = set(
                session.exec(
                    select(RawEvent.source_id)
                    .where(RawEvent.user_id == user_id)
                    .where(RawEvent.provider == provider.value)
                    .where(col(RawEvent.source_id).in_(source_ids))
                ).all()
            ) if source_ids else set()

            for item in items:
                source_id = str(item["id"])
                if source_id in known:
                    skipped += 1
                    continue
                known.add(source_id)
                session.add(
                    RawEvent(
                        user_id=user_id,
                        provider=provider.value,
                        payload_json=json.dumps(item),
                        source_id=source_id,
                        batch_id=batch_id,
                        occurred_at=_occurred_at(provider, item),
                    )
                )
                inserted += 1
            session.commit()

        job = self.queue.enqueue(
            JobType.NORMALIZE,
            {"batch_id": batch_id, "provider": provider.value},
            user_id,
            batch_id,
        )
        logger.info(
            "Recorded %s batch %s: %d new raw events, %d already known",
            provider.value, batch_id, inserted, skipped,
        )
        return IngestBatchResult(batch_id=batch_id, inserted=inserted, skipped=skipped, job_id=job.id)
