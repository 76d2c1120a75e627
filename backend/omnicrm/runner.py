"""Job runner for the ingestion pipeline.

One call to ``run_once`` is one processing pass: claim a bounded batch of
queued jobs, dispatch each to the handler registered for its type, record
the outcome, return counts. Nothing runs between passes; an external
scheduler (``POST /cron/process-jobs``) decides how often passes happen, so
a failed job that goes back to ``queued`` is retried on a later pass.

A handler failure only affects its own job. A job store failure while
claiming aborts the whole pass before any handler runs.

Handlers run their blocking database work in worker threads
(``asyncio.to_thread``), so the per-job timeout and the concurrency limit
apply to it. A timed-out thread is abandoned, not killed, and may still
finish its writes after the job is marked failed.
"""

from __future__ import annotations

import asyncio
import logging
import time
import traceback
from dataclasses import dataclass, field

from omnicrm.config import Settings
from omnicrm.handlers.base import HandlerRegistry, JobContext
from omnicrm.models.job import Job, JobStatus
from omnicrm.services.job_store import JobStore, JobStoreUnavailableError

logger = logging.getLogger(__name__)


@dataclass
class RunSummary:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)


class JobRunner:
    """Drive one pass over the job queue."""

    __slots__ = ("_store", "_handlers", "_context", "_settings")

    def __init__(
        self,
        store: JobStore,
        handlers: HandlerRegistry,
        context: JobContext,
        settings: Settings | None = None,
    ) -> None:
        self._store = store
        self._handlers = handlers
        self._context = context
        if settings is None:
            settings = context.settings
        self._settings = settings

    async def run_once(self, limit: int | None = None) -> RunSummary:
        """Claim and process one batch.

        Raises JobStoreUnavailableError if the queue cannot be read; in that
        case no job has been touched.
        """
        batch_size = limit if limit is not None else self._settings.runner_batch_size

        self._store.requeue_stale()
        jobs = self._store.claim_batch(batch_size)
        if not jobs:
            logger.info("No queued jobs found (batch_size=%d)", batch_size)
            return RunSummary()

        logger.info("Starting batch of %d job(s)", len(jobs))

        semaphore = asyncio.Semaphore(max(1, self._settings.runner_concurrency))

        async def _guarded(job: Job) -> str | None:
            async with semaphore:
                return await self._process_job(job)

        results = await asyncio.gather(*(_guarded(j) for j in jobs))

        summary = RunSummary(processed=len(jobs))
        for job, error in zip(jobs, results):
            if error is None:
                summary.succeeded += 1
            else:
                summary.failed += 1
                summary.errors.append(f"Job {job.id}: {error}")

        logger.info(
            "Batch complete: %d processed, %d succeeded, %d failed",
            summary.processed, summary.succeeded, summary.failed,
        )
        return summary

    async def _process_job(self, job: Job) -> str | None:
        """Run one claimed job. Returns None on success, else the error message."""
        started = time.monotonic()
        timeout = self._settings.job_timeout_seconds
        logger.info(
            "Starting %s job %s (user=%s, batch=%s, attempts=%d)",
            job.job_type, job.id, job.user_id, job.batch_id, job.attempts,
        )

        try:
            handler = self._handlers.get(job.job_type)
            outcome = await asyncio.wait_for(handler(self._context, job), timeout=timeout)
        except Exception as exc:
            tb = traceback.format_exc()
            if isinstance(exc, asyncio.TimeoutError):
                err_msg = f"Job timeout after {timeout}s"
            else:
                err_msg = str(exc) or exc.__class__.__name__

            logger.exception("Failed to process %s job %s", job.job_type, job.id)

            try:
                status = self._store.mark_failed(job.id, err_msg, tb)
            except JobStoreUnavailableError:
                logger.exception("Could not record failure of job %s", job.id)
                return err_msg

            if status == JobStatus.QUEUED:
                logger.info(
                    "Job %s requeued for retry (attempt %d/%d failed)",
                    job.id, job.attempts + 1, job.max_attempts,
                )
            elif status == JobStatus.ERROR:
                logger.error(
                    "Job %s failed permanently after %d attempts: %s",
                    job.id, job.max_attempts, err_msg,
                )
            return err_msg

        try:
            self._store.mark_done(job.id)
        except JobStoreUnavailableError as exc:
            logger.exception("Could not record completion of job %s", job.id)
            return f"Completion not recorded: {exc}"

        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Job %s (%s) done in %dms %s",
            job.id, job.job_type, duration_ms, outcome.stats,
        )
        return None
