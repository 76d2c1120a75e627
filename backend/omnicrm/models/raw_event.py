from __future__ import annotations

import json
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel


class RawEvent(SQLModel, table=True):
    """One provider record exactly as it was imported. Never mutated."""

    __tablename__ = "raw_events"
    __table_args__ = (
        UniqueConstraint("user_id", "provider", "source_id", name="uq_raw_events_source"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    user_id: str = Field(index=True)
    provider: str  # "gmail" or "google_calendar"
    payload_json: str  # provider-native JSON
    source_id: str
    batch_id: str | None = Field(default=None, index=True)
    occurred_at: datetime

    @property
    def payload(self) -> dict:
        return json.loads(self.payload_json)
