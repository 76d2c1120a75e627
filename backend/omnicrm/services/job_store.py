"""Durable job queue backed by the ``jobs`` table.

The table is the only source of truth for queue state. Every status change
goes through this class: ``claim_batch`` moves rows from ``queued`` to
``processing`` with a conditional UPDATE per row, so two runners that select
the same candidates can never both win the same job. ``mark_done`` and
``mark_failed`` only touch rows that are currently ``processing``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from omnicrm.config import Settings
from omnicrm.models.job import Job, JobStatus

logger = logging.getLogger(__name__)

ERROR_MESSAGE_MAX = 2000
ERROR_TRACEBACK_MAX = 4000


class JobStoreUnavailableError(Exception):
    """Raised when the job table cannot be read or written."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStore:
    """Claim, complete and fail jobs atomically."""

    __slots__ = ("_engine", "_settings")

    def __init__(self, engine, settings: Settings) -> None:
        self._engine = engine
        self._settings = settings

    # ── Writes ───────────────────────────────────────────────────────

    def insert(self, job: Job) -> str:
        try:
            with Session(self._engine) as session:
                session.add(job)
                session.commit()
                session.refresh(job)
                return job.id
        except SQLAlchemyError as exc:
            raise JobStoreUnavailableError(f"Failed to insert job: {exc}") from exc

    def claim_batch(self, limit: int) -> list[Job]:
        """Claim up to ``limit`` eligible queued jobs, oldest first.

        Rows lost to a concurrent claimer are silently skipped.
        """
        if limit <= 0:
            return []
        now = _utcnow()
        claimed_ids: list[str] = []
        try:
            with Session(self._engine) as session:
                candidate_ids = session.exec(
                    select(Job.id)
                    .where(Job.status == JobStatus.QUEUED.value)
                    .where(
                        or_(
                            col(Job.next_eligible_at).is_(None),
                            col(Job.next_eligible_at) <= now,
                        )
                    )
                    .order_by(col(Job.created_at), col(Job.id))
                    .limit(limit)
                ).all()

                for job_id in candidate_ids:
                    result = session.execute(
                        update(Job)
                        .where(col(Job.id) == job_id)
                        .where(col(Job.status) == JobStatus.QUEUED.value)
                        .values(
                            status=JobStatus.PROCESSING.value,
                            claimed_at=now,
                            updated_at=now,
                        )
                    )
                    # Commit each claim on its own so a row is either fully
                    # claimed by this caller or not at all.
                    session.commit()
                    if result.rowcount == 1:
                        claimed_ids.append(job_id)

                if not claimed_ids:
                    return []

                jobs = session.exec(
                    select(Job).where(col(Job.id).in_(claimed_ids))
                ).all()
                by_id = {j.id: j for j in jobs}
                for j in jobs:
                    session.expunge(j)
                return [by_id[i] for i in claimed_ids if i in by_id]
        except SQLAlchemyError as exc:
            if claimed_ids:
                self._release(claimed_ids)
            raise JobStoreUnavailableError(f"Failed to claim jobs: {exc}") from exc

    def _release(self, job_ids: list[str]) -> None:
        """Put jobs claimed by an aborted pass back to ``queued``.

        If this fails too, the rows are recovered by ``requeue_stale``.
        """
        try:
            with Session(self._engine) as session:
                session.execute(
                    update(Job)
                    .where(col(Job.id).in_(job_ids))
                    .where(col(Job.status) == JobStatus.PROCESSING.value)
                    .values(
                        status=JobStatus.QUEUED.value,
                        claimed_at=None,
                        updated_at=_utcnow(),
                    )
                )
                session.commit()
        except SQLAlchemyError:
            logger.exception("Could not release %d claimed job(s)", len(job_ids))
            return
        logger.warning("Released %d claimed job(s) after a failed claim", len(job_ids))

    def mark_done(self, job_id: str) -> None:
        now = _utcnow()
        try:
            with Session(self._engine) as session:
                result = session.execute(
                    update(Job)
                    .where(col(Job.id) == job_id)
                    .where(col(Job.status) == JobStatus.PROCESSING.value)
                    .values(
                        status=JobStatus.DONE.value,
                        completed_at=now,
                        updated_at=now,
                    )
                )
                session.commit()
        except SQLAlchemyError as exc:
            raise JobStoreUnavailableError(f"Failed to complete job {job_id}: {exc}") from exc
        if result.rowcount != 1:
            logger.warning("mark_done ignored for job %s: not processing", job_id)

    def mark_failed(
        self,
        job_id: str,
        error: str,
        error_traceback: str | None = None,
    ) -> JobStatus | None:
        """Record a failed attempt.

        Returns the resulting status (``queued`` when attempts remain,
        ``error`` once the cap is reached), or None if the job was not in
        ``processing``.
        """
        now = _utcnow()
        try:
            with Session(self._engine) as session:
                job = session.get(Job, job_id)
                if job is None or job.status != JobStatus.PROCESSING.value:
                    logger.warning("mark_failed ignored for job %s: not processing", job_id)
                    return None

                attempts = min(job.attempts + 1, job.max_attempts)
                values: dict = {
                    "attempts": attempts,
                    "last_error": (error or "unknown error")[:ERROR_MESSAGE_MAX],
                    "last_error_traceback": (
                        error_traceback[:ERROR_TRACEBACK_MAX] if error_traceback else None
                    ),
                    "updated_at": now,
                }
                if attempts >= job.max_attempts:
                    values["status"] = JobStatus.ERROR.value
                    values["completed_at"] = now
                    values["next_eligible_at"] = None
                    new_status = JobStatus.ERROR
                else:
                    values["status"] = JobStatus.QUEUED.value
                    values["next_eligible_at"] = now + self.retry_delay(attempts)
                    new_status = JobStatus.QUEUED

                result = session.execute(
                    update(Job)
                    .where(col(Job.id) == job_id)
                    .where(col(Job.status) == JobStatus.PROCESSING.value)
                    .where(col(Job.attempts) == job.attempts)
                    .values(**values)
                )
                session.commit()
                if result.rowcount != 1:
                    logger.warning("mark_failed lost a race for job %s", job_id)
                    return None
                return new_status
        except SQLAlchemyError as exc:
            raise JobStoreUnavailableError(f"Failed to fail job {job_id}: {exc}") from exc

    def retry_delay(self, attempts: int) -> timedelta:
        """Backoff before the next claim: min(base * 2^(attempts-1), max_delay)."""
        base = self._settings.job_retry_base_delay_seconds
        if base <= 0:
            return timedelta(0)
        max_delay = self._settings.job_retry_max_delay_seconds
        delay = min(base * (2 ** max(attempts - 1, 0)), max_delay)
        return timedelta(seconds=delay)

    def requeue_stale(self, older_than: timedelta | None = None) -> int:
        """Fail jobs left in ``processing`` by a runner that never came back."""
        if older_than is None:
            older_than = timedelta(seconds=self._settings.job_stale_after_seconds)
        cutoff = _utcnow() - older_than
        try:
            with Session(self._engine) as session:
                stale_ids = session.exec(
                    select(Job.id)
                    .where(Job.status == JobStatus.PROCESSING.value)
                    .where(col(Job.claimed_at) < cutoff)
                ).all()
        except SQLAlchemyError as exc:
            raise JobStoreUnavailableError(f"Failed to scan stale jobs: {exc}") from exc

        for job_id in stale_ids:
            self.mark_failed(job_id, "Worker lost: job exceeded processing window")
        if stale_ids:
            logger.info("Recovered %d stale processing job(s)", len(stale_ids))
        return len(stale_ids)

    # ── Reads ────────────────────────────────────────────────────────

    def get(self, job_id: str, user_id: str | None = None) -> Job | None:
        with Session(self._engine) as session:
            job = session.get(Job, job_id)
            if job is None or (user_id is not None and job.user_id != user_id):
                return None
            session.expunge(job)
            return job

    def exists(
        self,
        user_id: str,
        job_type: str,
        batch_id: str | None,
        statuses: list[str] | None = None,
    ) -> bool:
        with Session(self._engine) as session:
            stmt = (
                select(Job.id)
                .where(Job.user_id == user_id)
                .where(Job.job_type == job_type)
            )
            if statuses:
                stmt = stmt.where(col(Job.status).in_(statuses))
            if batch_id is None:
                stmt = stmt.where(col(Job.batch_id).is_(None))
            else:
                stmt = stmt.where(Job.batch_id == batch_id)
            return session.exec(stmt.limit(1)).first() is not None

    def list_jobs(
        self,
        user_id: str,
        statuses: list[str] | None = None,
        job_types: list[str] | None = None,
        batch_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Job]:
        with Session(self._engine) as session:
            stmt = select(Job).where(Job.user_id == user_id)
            if statuses:
                stmt = stmt.where(col(Job.status).in_(statuses))
            if job_types:
                stmt = stmt.where(col(Job.job_type).in_(job_types))
            if batch_id:
                stmt = stmt.where(Job.batch_id == batch_id)
            stmt = stmt.order_by(col(Job.updated_at).desc()).limit(limit).offset(offset)
            jobs = session.exec(stmt).all()
            for j in jobs:
                session.expunge(j)
            return list(jobs)

    def count_by_status_and_type(
        self,
        user_id: str | None = None,
        batch_id: str | None = None,
    ) -> tuple[dict[str, int], dict[str, int]]:
        """Aggregate job counts: ({status: n}, {job_type: n})."""
        with Session(self._engine) as session:
            stmt = select(Job.status, Job.job_type, func.count()).group_by(
                Job.status, Job.job_type
            )
            if user_id is not None:
                stmt = stmt.where(Job.user_id == user_id)
            if batch_id is not None:
                stmt = stmt.where(Job.batch_id == batch_id)
            rows = session.exec(stmt).all()

        status_counts: dict[str, int] = {}
        type_counts: dict[str, int] = {}
        for status, job_type, n in rows:
            status_counts[status] = status_counts.get(status, 0) + int(n)
            type_counts[job_type] = type_counts.get(job_type, 0) + int(n)
        return status_counts, type_counts

    def recent_failures(self, limit: int = 10) -> list[Job]:
        with Session(self._engine) as session:
            jobs = session.exec(
                select(Job)
                .where(Job.status == JobStatus.ERROR.value)
                .order_by(col(Job.updated_at).desc())
                .limit(limit)
            ).all()
            for j in jobs:
                session.expunge(j)
            return list(jobs)
