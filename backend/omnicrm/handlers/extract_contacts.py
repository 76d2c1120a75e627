"""extract_contacts — resolve the people behind a batch's interactions.

Each interaction yields candidate identities (email plus display name). A
candidate is matched to a contact through, in order: a known identity, a
contact whose primary email equals the address, or a newly created contact.
Identities are stored by natural key, so re-running a batch finds the
contacts it created last time instead of creating new ones.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlmodel import Session, col, select

from omnicrm.handlers.base import HandlerOutcome, JobContext
from omnicrm.models.contact import Contact, ContactIdentity
from omnicrm.models.interaction import Interaction
from omnicrm.models.job import ExtractContactsPayload, Job, JobType

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CandidateIdentity:
    email: str
    name: str | None
    provider: str


@dataclass(frozen=True, slots=True)
class Resolution:
    contact_id: str
    confidence: float
    matched_by: str  # "identity", "email" or "created"


def candidate_identities(interaction: Interaction, exclude: set[str]) -> list[CandidateIdentity]:
    """Counterparts of an interaction, primary counterpart first."""
    meta = interaction.source_meta
    people: list[dict] = []
    if interaction.interaction_type == "email":
        if meta.get("from"):
            people.append(meta["from"])
        people.extend(meta.get("to") or [])
        people.extend(meta.get("cc") or [])
    elif interaction.interaction_type == "calendar_event":
        if meta.get("organizer"):
            people.append(meta["organizer"])
        people.extend(meta.get("attendees") or [])

    seen: set[str] = set()
    out: list[CandidateIdentity] = []
    for person in people:
        email = (person.get("email") or "").strip().lower()
        if not email or email in seen or email in exclude:
            continue
        seen.add(email)
        out.append(CandidateIdentity(email=email, name=person.get("name"), provider=interaction.source))
    return out


def _display_name(candidate: CandidateIdentity) -> str:
    if candidate.name and candidate.name.strip():
        return candidate.name.strip()
    return candidate.email.split("@", 1)[0]


def resolve_contact(session: Session, user_id: str, candidate: CandidateIdentity) -> Resolution:
    identity = session.exec(
        select(ContactIdentity)
        .where(ContactIdentity.user_id == user_id)
        .where(ContactIdentity.kind == "email")
        .where(ContactIdentity.value == candidate.email)
    ).first()
    if identity is not None:
        resolution = Resolution(identity.contact_id, 1.0, "identity")
    else:
        contact = session.exec(
            select(Contact)
            .where(Contact.user_id == user_id)
            .where(Contact.primary_email == candidate.email)
        ).first()
        if contact is not None:
            resolution = Resolution(contact.id, 0.9, "email")
        else:
            contact = Contact(
                user_id=user_id,
                display_name=_display_name(candidate),
                primary_email=candidate.email,
                source=candidate.provider,
            )
            session.add(contact)
            session.flush()
            resolution = Resolution(contact.id, 1.0, "created")

    _store_identity(session, user_id, resolution.contact_id, candidate)
    return resolution


def _store_identity(session: Session, user_id: str, contact_id: str, candidate: CandidateIdentity) -> None:
    exists = session.exec(
        select(ContactIdentity.id)
        .where(ContactIdentity.user_id == user_id)
        .where(ContactIdentity.kind == "email")
        .where(ContactIdentity.value == candidate.email)
        .where(ContactIdentity.provider == candidate.provider)
    ).first()
    if exists is None:
        session.add(
            ContactIdentity(
                user_id=user_id,
                contact_id=contact_id,
                kind="email",
                value=candidate.email,
                provider=candidate.provider,
            )
        )
        session.flush()


def _extract_batch(
    engine, user_id: str, payload: ExtractContactsPayload, exclude: set[str]
) -> tuple[int, int, int]:
    """Resolve and link contacts for one batch. Returns (processed, linked, created)."""
    processed = linked = created = 0
    with Session(engine) as session:
        stmt = (
            select(Interaction.id)
            .where(Interaction.user_id == user_id)
            .where(Interaction.batch_id == payload.batch_id)
            .order_by(col(Interaction.occurred_at))
        )
        if payload.max_items:
            stmt = stmt.limit(payload.max_items)
        interaction_ids = session.exec(stmt).all()

    for interaction_id in interaction_ids:
        with Session(engine) as session:
            interaction = session.get(Interaction, interaction_id)
            if interaction is None:
                continue
            processed += 1
            candidates = candidate_identities(interaction, exclude)
            if not candidates:
                continue

            resolutions = [resolve_contact(session, user_id, c) for c in candidates]
            created += sum(1 for r in resolutions if r.matched_by == "created")
            if interaction.contact_id is None:
                interaction.contact_id = resolutions[0].contact_id
                session.add(interaction)
                linked += 1
            now = datetime.now(timezone.utc)
            for contact_id in {r.contact_id for r in resolutions}:
                contact = session.get(Contact, contact_id)
                if contact is not None:
                    contact.updated_at = now
                    session.add(contact)
            # A concurrent run storing the same identity fails this commit;
            # the retried attempt resolves to the stored contact.
            session.commit()
    return processed, linked, created


async def handle_extract_contacts(ctx: JobContext, job: Job) -> HandlerOutcome:
    payload = ExtractContactsPayload.model_validate(job.payload)
    processed, linked, created = await asyncio.to_thread(
        _extract_batch, ctx.engine, job.user_id, payload, ctx.settings.self_email_set
    )

    logger.info(
        "Contact extraction for batch %s: %d interactions, %d linked, %d contacts created",
        payload.batch_id, processed, linked, created,
    )

    next_job = await asyncio.to_thread(
        ctx.queue.enqueue_once,
        JobType.EMBED,
        {"batch_id": payload.batch_id},
        job.user_id,
        payload.batch_id,
    )
    return HandlerOutcome(
        stats={"processed": processed, "linked": linked, "created": created},
        next_job_id=next_job.id if next_job else None,
    )
