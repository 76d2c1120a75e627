"""End-to-end: an imported batch flows through every stage via the runner."""

from __future__ import annotations

import pytest
from sqlmodel import Session, select

from omnicrm.models.contact import Contact
from omnicrm.models.interaction import Interaction
from omnicrm.models.job import JobStatus, JobType
from omnicrm.services.embedding import EmbeddingError

from helpers import TEST_USER, calendar_event, gmail_message, keyword_vector


async def _drain(runner, max_passes: int = 10) -> int:
    passes = 0
    while passes < max_passes:
        summary = await runner.run_once()
        if summary.processed == 0:
            break
        passes += 1
    return passes


class TestPipeline:
    @pytest.mark.asyncio
    async def test_gmail_batch_runs_every_stage_once(self, engine, pipeline):
        pipeline.ingestion_service.record_batch(
            TEST_USER, "gmail", [gmail_message(f"m{i}") for i in range(3)], batch_id="b1"
        )

        passes = await _drain(pipeline.runner)

        assert passes == 3  # normalize, extract_contacts, embed
        jobs = pipeline.job_store.list_jobs(TEST_USER, batch_id="b1")
        assert sorted(j.job_type for j in jobs) == ["embed", "extract_contacts", "normalize"]
        assert {j.status for j in jobs} == {JobStatus.DONE.value}
        with Session(engine) as s:
            assert len(s.exec(select(Interaction)).all()) == 3
            assert [c.primary_email for c in s.exec(select(Contact)).all()] == ["dana@example.com"]
        assert pipeline.embedding_store.count(user_id=TEST_USER) == 3

    @pytest.mark.asyncio
    async def test_reimport_adds_nothing(self, engine, pipeline):
        items = [gmail_message("m1"), gmail_message("m2")]
        pipeline.ingestion_service.record_batch(TEST_USER, "gmail", items, batch_id="b1")
        await _drain(pipeline.runner)

        second = pipeline.ingestion_service.record_batch(TEST_USER, "gmail", items, batch_id="b2")
        await _drain(pipeline.runner)

        assert second.inserted == 0
        assert second.skipped == 2
        with Session(engine) as s:
            assert len(s.exec(select(Interaction)).all()) == 2
        assert pipeline.embedding_store.count() == 2

    @pytest.mark.asyncio
    async def test_second_import_into_drained_batch_is_fully_processed(self, engine, pipeline):
        svc = pipeline.ingestion_service
        svc.record_batch(TEST_USER, "gmail", [gmail_message("m1")], batch_id="b1")
        await _drain(pipeline.runner)

        svc.record_batch(
            TEST_USER, "gmail", [gmail_message("m2", sender="Lee <lee@example.com>")],
            batch_id="b1",
        )
        await _drain(pipeline.runner)

        with Session(engine) as s:
            late = s.exec(select(Interaction).where(Interaction.source_id == "m2")).one()
            contact = s.get(Contact, late.contact_id)
        assert contact is not None
        assert contact.primary_email == "lee@example.com"
        assert pipeline.embedding_store.count(user_id=TEST_USER) == 2
        jobs = pipeline.job_store.list_jobs(TEST_USER, batch_id="b1")
        assert {j.status for j in jobs} == {JobStatus.DONE.value}
        assert sorted(j.job_type for j in jobs) == [
            "embed", "embed", "extract_contacts", "extract_contacts", "normalize", "normalize",
        ]

    @pytest.mark.asyncio
    async def test_embed_retry_after_provider_outage(self, pipeline, mock_provider):
        calls = 0

        async def flaky_embed(text):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise EmbeddingError("Cannot connect to Ollama")
            return keyword_vector(text)

        mock_provider.embed.side_effect = flaky_embed
        pipeline.ingestion_service.record_batch(
            TEST_USER, "google_calendar", [calendar_event("e1")], batch_id="b1"
        )

        await _drain(pipeline.runner)

        embed_job = pipeline.job_store.list_jobs(TEST_USER, job_types=[JobType.EMBED.value])[0]
        assert embed_job.status == JobStatus.DONE.value
        assert embed_job.attempts == 1
        assert pipeline.embedding_store.count() == 1

    @pytest.mark.asyncio
    async def test_batch_progress_view(self, pipeline):
        pipeline.ingestion_service.record_batch(
            TEST_USER, "gmail", [gmail_message("m1")], batch_id="b1"
        )
        await pipeline.runner.run_once()

        by_status, by_type = pipeline.job_store.count_by_status_and_type(
            user_id=TEST_USER, batch_id="b1"
        )
        assert by_status == {"done": 1, "queued": 1}
        assert by_type == {"normalize": 1, "extract_contacts": 1}
