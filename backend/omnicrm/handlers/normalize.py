"""normalize — turn a batch of raw provider records into interactions.

Gmail messages and Calendar events are converted into ``Interaction`` rows.
A record whose (user_id, source, source_id) already exists is skipped, so a
re-run over the same batch writes nothing new. When the batch is done one
``extract_contacts`` job is queued for it.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
from datetime import datetime, timezone
from email.utils import getaddresses, parsedate_to_datetime

from sqlmodel import Session, col, select

from omnicrm.handlers.base import HandlerError, HandlerOutcome, JobContext
from omnicrm.models.interaction import Interaction
from omnicrm.models.job import Job, JobType, NormalizePayload, Provider
from omnicrm.models.raw_event import RawEvent

logger = logging.getLogger(__name__)

BODY_MAX_CHARS = 20000


class MalformedEventError(ValueError):
    """A raw record is missing the fields needed to normalize it."""


# ── Gmail ────────────────────────────────────────────────────────────


def _headers(message: dict) -> dict[str, str]:
    headers = (message.get("payload") or {}).get("headers") or []
    out: dict[str, str] = {}
    for h in headers:
        name = (h.get("name") or "").lower()
        if name and name not in out:
            out[name] = h.get("value") or ""
    return out


def _addresses(value: str) -> list[dict]:
    result = []
    for name, addr in getaddresses([value]) if value else []:
        addr = addr.strip().lower()
        if "@" in addr:
            result.append({"email": addr, "name": name.strip() or None})
    return result


def _decode_body(data: str) -> str:
    padded = data + "=" * (-len(data) % 4)
    try:
        return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError):
        return ""


def _plain_text(part: dict) -> str:
    """Depth-first search for the first text/plain body."""
    if part.get("mimeType") == "text/plain":
        data = (part.get("body") or {}).get("data")
        if data:
            return _decode_body(data)
    for child in part.get("parts") or []:
        if isinstance(child, dict):
            text = _plain_text(child)
            if text:
                return text
    return ""


def normalize_gmail_message(event: RawEvent) -> Interaction:
    message = event.payload
    if not isinstance(message, dict) or not message.get("id"):
        raise MalformedEventError("Gmail message has no id")

    headers = _headers(message)
    sender = _addresses(headers.get("from", ""))
    if not sender:
        raise MalformedEventError(f"Gmail message {message['id']} has no From address")

    body = _plain_text(message.get("payload") or {}) or message.get("snippet") or ""

    occurred_at = event.occurred_at
    if message.get("internalDate"):
        try:
            occurred_at = datetime.fromtimestamp(
                int(message["internalDate"]) / 1000, tz=timezone.utc
            )
        except (TypeError, ValueError):
            pass
    elif headers.get("date"):
        try:
            occurred_at = parsedate_to_datetime(headers["date"])
        except (TypeError, ValueError):
            pass

    meta = {
        "from": sender[0],
        "to": _addresses(headers.get("to", "")),
        "cc": _addresses(headers.get("cc", "")),
        "thread_id": message.get("threadId"),
        "labels": message.get("labelIds") or [],
    }
    return Interaction(
        user_id=event.user_id,
        source=Provider.GMAIL.value,
        source_id=str(message["id"]),
        batch_id=event.batch_id,
        interaction_type="email",
        subject=headers.get("subject") or None,
        body_text=body[:BODY_MAX_CHARS] or None,
        source_meta_json=json.dumps(meta),
        occurred_at=occurred_at,
    )


# ── Calendar ─────────────────────────────────────────────────────────


def _event_time(value: dict | None) -> tuple[datetime | None, bool]:
    """Parse a Calendar start/end object. Returns (when, is_all_day)."""
    if not value:
        return None, False
    if value.get("dateTime"):
        return datetime.fromisoformat(value["dateTime"].replace("Z", "+00:00")), False
    if value.get("date"):
        return datetime.fromisoformat(value["date"]).replace(tzinfo=timezone.utc), True
    return None, False


def normalize_calendar_event(event: RawEvent) -> Interaction:
    cal = event.payload
    if not isinstance(cal, dict) or not cal.get("id"):
        raise MalformedEventError("Calendar event has no id")

    try:
        start, all_day = _event_time(cal.get("start"))
        end, _ = _event_time(cal.get("end"))
    except ValueError as exc:
        raise MalformedEventError(f"Calendar event {cal['id']} has a bad time: {exc}") from exc

    attendees = [
        {
            "email": a["email"].strip().lower(),
            "name": a.get("displayName"),
            "response_status": a.get("responseStatus"),
        }
        for a in cal.get("attendees") or []
        if isinstance(a, dict) and a.get("email")
    ]
    organizer = cal.get("organizer") or {}
    meta = {
        "attendees": attendees,
        "organizer": (
            {"email": organizer["email"].strip().lower(), "name": organizer.get("displayName")}
            if organizer.get("email") else None
        ),
        "location": cal.get("location"),
        "start_time": start.isoformat() if start else None,
        "end_time": end.isoformat() if end else None,
        "is_all_day": all_day,
        "recurring": bool(cal.get("recurringEventId") or cal.get("recurrence")),
        "status": cal.get("status") or "confirmed",
    }

    body_parts = [cal.get("description") or ""]
    if cal.get("location"):
        body_parts.append(f"Location: {cal['location']}")
    body = "\n".join(p for p in body_parts if p).strip()

    return Interaction(
        user_id=event.user_id,
        source=Provider.GOOGLE_CALENDAR.value,
        source_id=str(cal["id"]),
        batch_id=event.batch_id,
        interaction_type="calendar_event",
        subject=cal.get("summary") or None,
        body_text=body[:BODY_MAX_CHARS] or None,
        source_meta_json=json.dumps(meta),
        occurred_at=start or event.occurred_at,
    )


_NORMALIZERS = {
    Provider.GMAIL: normalize_gmail_message,
    Provider.GOOGLE_CALENDAR: normalize_calendar_event,
}


def _convert(convert, event: RawEvent) -> Interaction:
    """Run a converter; a record of unexpected shape is malformed, not fatal."""
    try:
        record = convert(event)
    except MalformedEventError:
        raise
    except (AttributeError, TypeError, KeyError, ValueError) as exc:
        raise MalformedEventError(
            f"{event.provider} record {event.source_id} has an unexpected shape: {exc}"
        ) from exc
    for name in ("subject", "body_text"):
        value = getattr(record, name)
        if value is not None and not isinstance(value, str):
            raise MalformedEventError(
                f"{event.provider} record {event.source_id}: {name} is not text"
            )
    return record


def _normalize_batch(engine, user_id: str, payload: NormalizePayload) -> tuple[int, int, int, int]:
    """Write interactions for one batch. Returns (total, inserted, skipped, malformed)."""
    convert = _NORMALIZERS[payload.provider]
    inserted = skipped = malformed = 0
    with Session(engine) as session:
        events = session.exec(
            select(RawEvent)
            .where(RawEvent.user_id == user_id)
            .where(RawEvent.batch_id == payload.batch_id)
            .where(RawEvent.provider == payload.provider.value)
            .order_by(col(RawEvent.occurred_at))
        ).all()

        source_ids = [e.source_id for e in events]
        already = set(
            session.exec(
                select(Interaction.source_id)
                .where(Interaction.user_id == user_id)
                .where(Interaction.source == payload.provider.value)
                .where(col(Interaction.source_id).in_(source_ids))
            ).all()
        ) if source_ids else set()

        for event in events:
            if event.source_id in already:
                skipped += 1
                continue
            try:
                record = _convert(convert, event)
            except MalformedEventError as exc:
                malformed += 1
                logger.warning("Skipping raw event %s: %s", event.id, exc)
                continue
            session.add(record)
            already.add(record.source_id)
            inserted += 1

        session.commit()
    return len(events), inserted, skipped, malformed


async def handle_normalize(ctx: JobContext, job: Job) -> HandlerOutcome:
    payload = NormalizePayload.model_validate(job.payload)
    total, inserted, skipped, malformed = await asyncio.to_thread(
        _normalize_batch, ctx.engine, job.user_id, payload
    )

    if total and malformed == total:
        raise HandlerError(
            f"All {malformed} {payload.provider.value} events in batch {payload.batch_id} are malformed"
        )

    logger.info(
        "Normalized batch %s (%s): %d inserted, %d already present, %d malformed",
        payload.batch_id, payload.provider.value, inserted, skipped, malformed,
    )

    next_job = await asyncio.to_thread(
        ctx.queue.enqueue_once,
        JobType.EXTRACT_CONTACTS,
        {"batch_id": payload.batch_id},
        job.user_id,
        payload.batch_id,
    )
    return HandlerOutcome(
        stats={"inserted": inserted, "skipped": skipped, "malformed": malformed},
        next_job_id=next_job.id if next_job else None,
    )
