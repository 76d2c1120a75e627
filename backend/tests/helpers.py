"""Shared builders for the test suite."""

from __future__ import annotations

from datetime import datetime, timezone

from omnicrm.auth import create_access_token
from omnicrm.config import Settings

TEST_USER = "user-1"
OTHER_USER = "user-2"

# Each vector component counts one keyword, so cosine similarity between
# texts is predictable without a real model.
VOCABULARY = ("therapy", "invoice", "yoga", "meeting")


def keyword_vector(text: str) -> list[float]:
    words = [w.strip(".,:!?") for w in text.lower().split()]
    return [float(words.count(k)) + 0.01 for k in VOCABULARY]


def make_settings(**overrides) -> Settings:
    defaults = {
        "db_url": "sqlite://",
        "jwt_secret": "test-jwt-secret-for-integration-tests-only",
        "cron_secret": "test-cron-secret",
        "embedding_dimensions": len(VOCABULARY),
        "job_max_attempts": 3,
        "job_retry_base_delay_seconds": 0,
        "job_timeout_seconds": 5.0,
        "runner_batch_size": 10,
        "self_emails": "pat@clinic.example",
    }
    defaults.update(overrides)
    return Settings(**defaults)


def auth_headers(user_id: str = TEST_USER) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user_id)}"}


def as_utc(value: datetime) -> datetime:
    """Stored timestamps are UTC; some dialects hand them back naive."""
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


# ── Provider records ─────────────────────────────────────────────────


def gmail_message(
    msg_id: str,
    sender: str = "Dana Client <dana@example.com>",
    to: str = "Pat Practitioner <pat@clinic.example>",
    subject: str = "Therapy follow-up",
    snippet: str = "Thanks for the therapy session",
    internal_date: str = "1717236000000",
) -> dict:
    return {
        "id": msg_id,
        "threadId": f"thread-{msg_id}",
        "labelIds": ["INBOX"],
        "snippet": snippet,
        "internalDate": internal_date,
        "payload": {
            "mimeType": "text/plain",
            "headers": [
                {"name": "From", "value": sender},
                {"name": "To", "value": to},
                {"name": "Subject", "value": subject},
            ],
            "body": {},
        },
    }


def calendar_event(
    event_id: str,
    summary: str = "Yoga session",
    attendees: list[dict] | None = None,
) -> dict:
    if attendees is None:
        attendees = [
            {"email": "pat@clinic.example", "responseStatus": "accepted"},
            {"email": "Sam@Example.com", "displayName": "Sam Student", "responseStatus": "accepted"},
        ]
    return {
        "id": event_id,
        "summary": summary,
        "description": "Weekly yoga meeting",
        "location": "Studio B",
        "status": "confirmed",
        "start": {"dateTime": "2024-06-03T10:00:00Z"},
        "end": {"dateTime": "2024-06-03T11:00:00Z"},
        "organizer": {"email": "pat@clinic.example"},
        "attendees": attendees,
    }
