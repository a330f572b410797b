"""
Tests for TransformationService: audit rows, draft creation and retries.
"""

from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from refinery.database.models import Draft, TopicMapping, TransformationJob
from refinery.errors import (
    CollaboratorNotConfiguredError,
    NotFoundError,
    TransformationRetryExhaustedError,
    TransientTaskError,
)
from refinery.services.collaborators import TransformationOutput
from refinery.services.transformation_service import (
    TransformationService,
    data_type_for_topic,
    estimate_cost,
)


def make_transformer(**kwargs):
    transformer = MagicMock()
    transformer.transform = AsyncMock(**kwargs)
    return transformer


def meanings(*pairs):
    return TransformationOutput(
        data_type="meaning",
        items=[{"word": w, "definition": d} for w, d in pairs],
        model="test-model",
        prompt="Extract vocabulary",
        raw_response="[...]",
        tokens_input=1000,
        tokens_output=200,
    )


async def count_jobs(session, status):
    result = await session.execute(
        select(func.count()).select_from(TransformationJob).where(TransformationJob.status == status)
    )
    return result.scalar()


class TestHelpers:
    def test_estimate_cost(self):
        assert estimate_cost(1_000_000, 0) == 3.0
        assert estimate_cost(1000, 200) == 0.006

    def test_data_type_for_topic(self):
        assert data_type_for_topic("vocabulary") == "meaning"
        assert data_type_for_topic("grammar") == "rule"
        assert data_type_for_topic("listening") == "exercise"


class TestTransformMapping:
    """Tests for transform_mapping."""

    @pytest.mark.asyncio
    async def test_requires_transformer(self, session, document, curriculum, add_confirmed_mapping):
        mapping = await add_confirmed_mapping(document.id, curriculum["vocabulary"].id)

        with pytest.raises(CollaboratorNotConfiguredError):
            await TransformationService().transform_mapping(session, mapping.id)

    @pytest.mark.asyncio
    async def test_completed_job_and_drafts(self, session, document, curriculum, add_confirmed_mapping):
        topic = curriculum["vocabulary"]
        mapping = await add_confirmed_mapping(document.id, topic.id, text="Hola. Adiós.")
        transformer = make_transformer(return_value=meanings(("hola", "hello"), ("adiós", "goodbye")))
        service = TransformationService(transformer=transformer)

        job = await service.transform_mapping(session, mapping.id)

        assert job.status == "completed"
        assert job.model == "test-model"
        assert job.tokens_input == 1000
        assert job.cost_usd == estimate_cost(1000, 200)
        assert job.completed_at is not None
        assert job.parsed_result["data_type"] == "meaning"

        request = transformer.transform.call_args.args[0]
        assert request.chunk_text == "Hola. Adiós."
        assert request.topic_name == "Greetings"
        assert (request.language, request.level) == ("ES", "A1")

        drafts = await service.get_job_drafts(session, job.id)
        assert sorted(d.dedup_key for d in drafts) == ["adiós", "hola"]
        assert all(d.topic_id == topic.id and d.document_id == document.id for d in drafts)

    @pytest.mark.asyncio
    async def test_duplicate_items_are_dropped(self, session, document, curriculum, add_confirmed_mapping):
        topic_id = curriculum["vocabulary"].id
        first = await add_confirmed_mapping(document.id, topic_id, chunk_index=0)
        second = await add_confirmed_mapping(document.id, topic_id, chunk_index=1)
        transformer = make_transformer(side_effect=[
            meanings(("hola", "hello")),
            meanings(("Hola", "hi"), ("gracias", "thanks")),
        ])
        service = TransformationService(transformer=transformer)

        await service.transform_mapping(session, first.id)
        await service.transform_mapping(session, second.id)

        result = await session.execute(select(Draft.dedup_key).order_by(Draft.dedup_key))
        assert result.scalars().all() == ["gracias", "hola"]

    @pytest.mark.asyncio
    async def test_invalid_item_does_not_drop_the_rest(
        self, session, document, curriculum, add_confirmed_mapping
    ):
        mapping = await add_confirmed_mapping(document.id, curriculum["vocabulary"].id)
        output = meanings(("hola", "hello"), ("adiós", "goodbye"), ("gracias", "thanks"))
        output.items[1]["examples"] = "Adiós, amigo."
        transformer = make_transformer(return_value=output)
        service = TransformationService(transformer=transformer)

        job = await service.transform_mapping(session, mapping.id)

        assert job.status == "completed"
        drafts = await service.get_job_drafts(session, job.id)
        assert sorted(d.dedup_key for d in drafts) == ["gracias", "hola"]
        (invalid,) = job.parsed_result["invalid"]
        assert invalid["index"] == 1
        assert invalid["item"]["word"] == "adiós"
        assert "examples" in invalid["error"]

        # The completed job is reused; nothing is transformed twice
        again = await service.transform_mapping(session, mapping.id)
        assert again.id == job.id
        assert transformer.transform.await_count == 1

    @pytest.mark.asyncio
    async def test_completed_job_is_reused(self, session, document, curriculum, add_confirmed_mapping):
        mapping = await add_confirmed_mapping(document.id, curriculum["vocabulary"].id)
        transformer = make_transformer(return_value=meanings(("hola", "hello")))
        service = TransformationService(transformer=transformer)

        first = await service.transform_mapping(session, mapping.id)
        second = await service.transform_mapping(session, mapping.id)

        assert first.id == second.id
        assert transformer.transform.await_count == 1

    @pytest.mark.asyncio
    async def test_unconfirmed_mapping(self, session, document, curriculum, add_confirmed_mapping):
        mapping = await add_confirmed_mapping(document.id, curriculum["vocabulary"].id)
        mapping.status = "auto_mapped"
        await session.commit()
        service = TransformationService(transformer=make_transformer())

        with pytest.raises(ValueError, match="not confirmed"):
            await service.transform_mapping(session, mapping.id)


class TestTransformFailures:
    """Failed attempts are recorded and bounded."""

    @pytest.mark.asyncio
    async def test_failure_marks_job_failed(self, session, document, curriculum, add_confirmed_mapping):
        mapping = await add_confirmed_mapping(document.id, curriculum["vocabulary"].id)
        service = TransformationService(
            transformer=make_transformer(side_effect=ConnectionError("rate limited"))
        )

        with pytest.raises(TransientTaskError, match="rate limited"):
            await service.transform_mapping(session, mapping.id)

        result = await session.execute(select(TransformationJob))
        job = result.scalar_one()
        assert job.status == "failed"
        assert job.error_message == "rate limited"
        assert job.completed_at is not None

    @pytest.mark.asyncio
    async def test_retries_are_exhausted(self, session, document, curriculum, add_confirmed_mapping):
        mapping = await add_confirmed_mapping(document.id, curriculum["vocabulary"].id)
        transformer = make_transformer(side_effect=ConnectionError("timeout"))
        service = TransformationService(transformer=transformer)

        for _ in range(3):
            with pytest.raises(TransientTaskError):
                await service.transform_mapping(session, mapping.id)

        with pytest.raises(TransformationRetryExhaustedError):
            await service.transform_mapping(session, mapping.id)

        assert transformer.transform.await_count == 3
        assert await count_jobs(session, "failed") == 3

        jobs = (await session.execute(
            select(TransformationJob.retry_count).order_by(TransformationJob.created_at.asc())
        )).scalars().all()
        assert jobs == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_missing_mapping(self, session):
        service = TransformationService(transformer=make_transformer())

        with pytest.raises(NotFoundError):
            await service.transform_mapping(session, uuid4())

        assert (await session.execute(select(func.count()).select_from(TopicMapping))).scalar() == 0
