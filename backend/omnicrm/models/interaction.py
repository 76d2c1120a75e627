from __future__ import annotations

import json
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel


class Interaction(SQLModel, table=True):
    """Canonical, provider-independent record derived from a RawEvent."""

    __tablename__ = "interactions"
    __table_args__ = (
        UniqueConstraint("user_id", "source", "source_id", name="uq_interactions_source"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    user_id: str = Field(index=True)
    contact_id: str | None = Field(default=None, foreign_key="contacts.id", index=True)
    source: str
    source_id: str
    batch_id: str | None = Field(default=None, index=True)
    interaction_type: str  # "email" or "calendar_event"
    subject: str | None = Field(default=None)
    body_text: str | None = Field(default=None)
    source_meta_json: str | None = Field(default=None)  # normalized participants
    occurred_at: datetime

    @property
    def source_meta(self) -> dict:
        return json.loads(self.source_meta_json) if self.source_meta_json else {}

    def embedding_text(self) -> str:
        parts = [p.strip() for p in (self.subject, self.body_text) if p and p.strip()]
        return "\n\n".join(parts)
