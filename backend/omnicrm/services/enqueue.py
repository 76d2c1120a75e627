"""Enqueue API — the only way new jobs enter the queue.

Ingestion services call ``enqueue`` after writing raw records; handlers call
``enqueue_once`` to seed the next pipeline stage for their batch.
"""

from __future__ import annotations

import json
import logging

from pydantic import ValidationError

from omnicrm.config import Settings
from omnicrm.models.job import PAYLOAD_MODELS, Job, JobStatus, JobType
from omnicrm.services.job_store import JobStore

logger = logging.getLogger(__name__)

MAX_PAYLOAD_BYTES = 1024 * 1024
MAX_PAYLOAD_DEPTH = 10


class JobValidationError(ValueError):
    """Raised when a job is rejected before it reaches the queue."""


class UnknownJobTypeError(JobValidationError):
    pass


class InvalidPayloadError(JobValidationError):
    pass


def _depth(value, level: int = 0) -> int:
    if isinstance(value, dict):
        return max((_depth(v, level + 1) for v in value.values()), default=level + 1)
    if isinstance(value, list):
        return max((_depth(v, level + 1) for v in value), default=level + 1)
    return level


class JobQueue:
    """Validate and append job rows. Never runs them."""

    __slots__ = ("_store", "_settings")

    def __init__(self, store: JobStore, settings: Settings) -> None:
        self._store = store
        self._settings = settings

    def validate(self, job_type: str | JobType, payload: dict, user_id: str) -> tuple[JobType, dict]:
        try:
            jt = JobType(job_type)
        except ValueError:
            raise UnknownJobTypeError(f"Unknown job type: {job_type}") from None

        if not user_id or not user_id.strip():
            raise InvalidPayloadError("user_id is required")
        if not isinstance(payload, dict):
            raise InvalidPayloadError("Payload must be an object")

        try:
            encoded = json.dumps(payload)
        except (TypeError, ValueError) as exc:
            raise InvalidPayloadError(f"Payload is not JSON-serializable: {exc}") from exc
        size = len(encoded.encode("utf-8"))
        if size > MAX_PAYLOAD_BYTES:
            raise InvalidPayloadError(
                f"Payload size {size // 1024}KB exceeds limit of {MAX_PAYLOAD_BYTES // 1024}KB"
            )
        depth = _depth(payload)
        if depth > MAX_PAYLOAD_DEPTH:
            raise InvalidPayloadError(
                f"Payload nesting depth {depth} exceeds limit of {MAX_PAYLOAD_DEPTH}"
            )

        try:
            model = PAYLOAD_MODELS[jt].model_validate(payload)
        except ValidationError as exc:
            raise InvalidPayloadError(f"Invalid {jt.value} payload: {exc}") from exc
        return jt, model.model_dump(mode="json", exclude_none=True)

    def enqueue(
        self,
        job_type: str | JobType,
        payload: dict,
        user_id: str,
        batch_id: str | None = None,
    ) -> Job:
        jt, clean = self.validate(job_type, payload, user_id)
        job = Job(
            job_type=jt.value,
            payload_json=json.dumps(clean),
            user_id=user_id,
            batch_id=batch_id,
            status=JobStatus.QUEUED.value,
            attempts=0,
            max_attempts=self._settings.job_max_attempts,
        )
        self._store.insert(job)
        logger.info(
            "Enqueued %s job %s (user=%s, batch=%s)", jt.value, job.id, user_id, batch_id
        )
        return job

    def enqueue_once(
        self,
        job_type: str | JobType,
        payload: dict,
        user_id: str,
        batch_id: str,
    ) -> Job | None:
        """Enqueue unless a job of this type is already waiting for the batch.

        Only ``queued`` jobs count: a queued job reads the batch when it runs,
        so it covers rows added since. A running or finished job may have
        read the batch before those rows existed.
        """
        jt, _ = self.validate(job_type, payload, user_id)
        if self._store.exists(user_id, jt.value, batch_id, [JobStatus.QUEUED.value]):
            logger.debug("Skipping duplicate %s job for batch %s", jt.value, batch_id)
            return None
        return self.enqueue(jt, payload, user_id, batch_id)
