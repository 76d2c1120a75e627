from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, conint
from sqlmodel import Field, SQLModel


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    DONE = "done"
    ERROR = "error"


class JobType(str, Enum):
    NORMALIZE = "normalize"  # raw provider records -> interactions
    EXTRACT_CONTACTS = "extract_contacts"  # interactions -> contacts/identities
    EMBED = "embed"  # interactions -> embedding rows


class Provider(str, Enum):
    GMAIL = "gmail"
    GOOGLE_CALENDAR = "google_calendar"


class Job(SQLModel, table=True):
    __tablename__ = "jobs"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), index=True)
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    job_type: str = Field(index=True)
    payload_json: str  # JSON-serialized, shape depends on job_type
    user_id: str = Field(index=True)
    batch_id: str | None = Field(default=None, index=True)
    status: str = Field(default=JobStatus.QUEUED.value, index=True)
    attempts: int = Field(default=0)
    max_attempts: int = Field(default=3)
    last_error: str | None = Field(default=None)
    last_error_traceback: str | None = Field(default=None)
    next_eligible_at: datetime | None = Field(default=None)
    claimed_at: datetime | None = Field(default=None)
    completed_at: datetime | None = Field(default=None)

    @property
    def payload(self) -> dict:
        return json.loads(self.payload_json) if self.payload_json else {}


class JobRead(BaseModel):
    id: str
    created_at: datetime
    updated_at: datetime
    job_type: str
    payload: dict
    user_id: str
    batch_id: str | None
    status: str
    attempts: int
    max_attempts: int
    last_error: str | None
    next_eligible_at: datetime | None
    completed_at: datetime | None

    @classmethod
    def from_job(cls, job: Job) -> JobRead:
        return cls(
            id=job.id,
            created_at=job.created_at,
            updated_at=job.updated_at,
            job_type=job.job_type,
            payload=job.payload,
            user_id=job.user_id,
            batch_id=job.batch_id,
            status=job.status,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            last_error=job.last_error,
            next_eligible_at=job.next_eligible_at,
            completed_at=job.completed_at,
        )


# ── Payloads ─────────────────────────────────────────────────────────


class _Payload(BaseModel):
    model_config = ConfigDict(extra="forbid")


class NormalizePayload(_Payload):
    batch_id: str
    provider: Provider


class ExtractContactsPayload(_Payload):
    batch_id: str
    max_items: conint(ge=1, le=500) | None = None


class EmbedPayload(_Payload):
    batch_id: str
    owner_type: Literal["interaction"] = "interaction"


PAYLOAD_MODELS: dict[JobType, type[_Payload]] = {
    JobType.NORMALIZE: NormalizePayload,
    JobType.EXTRACT_CONTACTS: ExtractContactsPayload,
    JobType.EMBED: EmbedPayload,
}
