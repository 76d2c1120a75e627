from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel


class Contact(SQLModel, table=True):
    __tablename__ = "contacts"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    user_id: str = Field(index=True)
    display_name: str
    primary_email: str | None = Field(default=None, index=True)
    source: str = Field(default="manual")  # "manual", "gmail", "google_calendar"


class ContactIdentity(SQLModel, table=True):
    """An address or handle known to belong to a contact."""

    __tablename__ = "contact_identities"
    __table_args__ = (
        UniqueConstraint("user_id", "kind", "value", "provider", name="uq_contact_identities"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    user_id: str = Field(index=True)
    contact_id: str = Field(foreign_key="contacts.id", index=True)
    kind: str = Field(default="email")
    value: str  # lower-cased
    provider: str = Field(default="")
