"""Shared handler types and the job-type dispatch table."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from omnicrm.config import Settings
from omnicrm.models.job import Job, JobType
from omnicrm.services.embedding import EmbeddingProvider
from omnicrm.services.embedding_store import EmbeddingStore
from omnicrm.services.enqueue import JobQueue


class HandlerError(Exception):
    """A handler could not complete; the job attempt counts as failed."""


@dataclass
class JobContext:
    """Collaborators every handler may use, built once per runner."""

    engine: object
    settings: Settings
    queue: JobQueue
    provider: EmbeddingProvider
    embeddings: EmbeddingStore


@dataclass
class HandlerOutcome:
    """Counters a handler reports back for logging."""

    stats: dict[str, int] = field(default_factory=dict)
    next_job_id: str | None = None


Handler = Callable[[JobContext, Job], Awaitable[HandlerOutcome]]


class HandlerRegistry:
    """Closed mapping of job types to handler coroutines."""

    __slots__ = ("_handlers",)

    def __init__(self, handlers: dict[JobType, Handler] | None = None) -> None:
        self._handlers: dict[JobType, Handler] = dict(handlers or {})

    def register(self, job_type: JobType, handler: Handler) -> None:
        self._handlers[job_type] = handler

    def get(self, job_type: str) -> Handler:
        try:
            return self._handlers[JobType(job_type)]
        except (KeyError, ValueError):
            raise HandlerError(f"No handler registered for job type {job_type!r}") from None

    def __contains__(self, job_type: object) -> bool:
        try:
            return JobType(job_type) in self._handlers
        except ValueError:
            return False
