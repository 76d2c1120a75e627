"""embed — vectorize the text-bearing records of a batch.

Only chunks whose (owner, chunk_index, content_hash) has no stored row reach
the provider; a second run over unchanged content stores nothing. Once an
owner's chunks are all current, rows for its older content are removed.
"""

from __future__ import annotations

import asyncio
import logging

from sqlmodel import Session, col, select

from omnicrm.handlers.base import HandlerOutcome, JobContext
from omnicrm.models.interaction import Interaction
from omnicrm.models.job import EmbedPayload, Job
from omnicrm.services.embedding import chunk_text, content_hash

logger = logging.getLogger(__name__)


def _load_interactions(engine, user_id: str, batch_id: str) -> list[Interaction]:
    with Session(engine) as session:
        interactions = session.exec(
            select(Interaction)
            .where(Interaction.user_id == user_id)
            .where(Interaction.batch_id == batch_id)
            .order_by(col(Interaction.occurred_at))
        ).all()
        for i in interactions:
            session.expunge(i)
        return list(interactions)


async def handle_embed(ctx: JobContext, job: Job) -> HandlerOutcome:
    payload = EmbedPayload.model_validate(job.payload)
    store = ctx.embeddings
    interactions = await asyncio.to_thread(
        _load_interactions, ctx.engine, job.user_id, payload.batch_id
    )

    created = unchanged = superseded = 0
    for interaction in interactions:
        text = interaction.embedding_text()
        current: set[tuple[int, str]] = set()
        if text:
            for index, chunk in enumerate(chunk_text(text)):
                digest = content_hash(chunk)
                current.add((index, digest))
                if await asyncio.to_thread(
                    store.has, payload.owner_type, interaction.id, index, digest
                ):
                    unchanged += 1
                    continue
                vector = await ctx.provider.embed(chunk)
                _, was_created = await asyncio.to_thread(
                    store.upsert,
                    user_id=job.user_id,
                    owner_type=payload.owner_type,
                    owner_id=interaction.id,
                    chunk_index=index,
                    content_hash=digest,
                    vector=vector,
                    meta={
                        "source": interaction.source,
                        "batch_id": payload.batch_id,
                        "interaction_type": interaction.interaction_type,
                    },
                )
                if was_created:
                    created += 1
                else:
                    unchanged += 1
        superseded += await asyncio.to_thread(
            store.supersede, payload.owner_type, interaction.id, current
        )
        # Retries an index write that failed after its row was stored
        await asyncio.to_thread(store.mirror_pending, payload.owner_type, interaction.id)

    logger.info(
        "Embedded batch %s: %d chunks stored, %d unchanged, %d superseded",
        payload.batch_id, created, unchanged, superseded,
    )
    return HandlerOutcome(
        stats={"created": created, "unchanged": unchanged, "superseded": superseded}
    )
