"""
Tests for PipelineOrchestrator: starting, task dispatch, completion and reopening.

The document processor runs against the test database with a plain-text
extractor reading from a temporary uploads directory; the semantic mapper
and content transformer are mocks.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import select

from refinery.database.models import TopicMapping, ValidatedItem
from refinery.services.collaborators import (
    MappingProposal,
    ParagraphChunker,
    PlainTextExtractor,
    TransformationOutput,
)
from refinery.services.document_processor import DocumentProcessor
from refinery.services.lifecycle_service import LifecycleService
from refinery.services.mapping_service import MappingService
from refinery.services.pipeline_orchestrator import PipelineOrchestrator, StepResult
from refinery.services.pipeline_service import PipelineService
from refinery.services.promotion_service import PromotionService
from refinery.services.transformation_service import TransformationService


UNIT_TEXT = "Saludos\n\nHola significa hello. Buenos días significa good morning."


@pytest.fixture
def mapper():
    mapper = MagicMock()
    mapper.map_chunk = AsyncMock(return_value=[])
    return mapper


@pytest.fixture
def transformer():
    transformer = MagicMock()
    transformer.transform = AsyncMock(return_value=TransformationOutput(
        data_type="meaning",
        items=[{"word": "hola", "definition": "hello"}],
        model="test-model",
        tokens_input=100,
        tokens_output=20,
    ))
    return transformer


@pytest.fixture
def orchestrator(db, uploads_dir, mapper, transformer):
    return PipelineOrchestrator(
        documents=DocumentProcessor(
            extractor=PlainTextExtractor(base_dir=uploads_dir),
            chunker=ParagraphChunker(max_words=50, min_words=1),
            db=db,
        ),
        mapping=MappingService(mapper=mapper),
        transformation=TransformationService(transformer=transformer),
        promotion=PromotionService(),
    )


async def reload_pipeline(session, pipeline_id):
    return await PipelineService().require_pipeline(session, pipeline_id)


async def task_summary(session, pipeline_id):
    tasks = await PipelineService().get_tasks(session, pipeline_id)
    return [(t.task_type, t.status) for t in tasks]


class TestStartPipeline:
    """Tests for start_pipeline and register_document."""

    @pytest.mark.asyncio
    async def test_start_creates_extract_task(self, orchestrator, session, document):
        pipeline = await PipelineService().create_pipeline(session, document.id)

        assert await orchestrator.start_pipeline(session, pipeline.id) is True

        pipeline = await reload_pipeline(session, pipeline.id)
        assert (pipeline.status, pipeline.current_stage) == ("processing", "extracting")
        assert pipeline.started_at is not None
        assert await task_summary(session, pipeline.id) == [("extract", "pending")]

    @pytest.mark.asyncio
    async def test_start_is_noop_unless_pending(self, orchestrator, session, document):
        pipelines = PipelineService()
        pipeline = await pipelines.create_pipeline(session, document.id)
        await orchestrator.start_pipeline(session, pipeline.id)

        assert await orchestrator.start_pipeline(session, pipeline.id) is False
        assert len(await pipelines.get_tasks(session, pipeline.id)) == 1

    @pytest.mark.asyncio
    async def test_register_document(self, orchestrator, session):
        document, pipeline = await orchestrator.register_document(
            session, "unit2.txt", "unit2.txt", language="es", target_level="a2"
        )

        assert (document.language, document.target_level, document.status) == ("ES", "A2", "pending")
        assert pipeline.document_id == document.id
        assert pipeline.status == "pending"


class TestFullPipeline:
    """A document travels from extraction to approved content."""

    @pytest.mark.asyncio
    async def test_extract_chunk_map_transform_approve(
        self, orchestrator, session, document, curriculum, uploads_dir, mapper
    ):
        (uploads_dir / "unit1.txt").write_text(UNIT_TEXT, encoding="utf-8")
        mapper.map_chunk.return_value = [MappingProposal(curriculum["vocabulary"].id, 0.9, "greetings")]
        pipeline = await PipelineService().create_pipeline(session, document.id)
        pipeline_id = pipeline.id

        await orchestrator.start_pipeline(session, pipeline_id)

        # extract -> chunk -> map
        for expected_stage in ("chunking", "mapping", "mapping"):
            assert await orchestrator.process_pipeline(session, pipeline_id) is True
            assert (await reload_pipeline(session, pipeline_id)).current_stage == expected_stage

        assert await task_summary(session, pipeline_id) == [
            ("extract", "completed"),
            ("chunk", "completed"),
            ("map", "completed"),
        ]
        extract, chunk, map_task = await PipelineService().get_tasks(session, pipeline_id)
        assert extract.depends_on_task_id is None
        assert chunk.depends_on_task_id == extract.id
        assert map_task.depends_on_task_id == chunk.id

        # Mappings are only proposals: nothing blocks completion
        assert await orchestrator.process_pipeline(session, pipeline_id) is True
        pipeline = await reload_pipeline(session, pipeline_id)
        assert pipeline.status == "completed"
        assert pipeline.completed_at is not None

        # A reviewer confirms the mapping later; the rescan reopens the pipeline
        mapping = (await session.execute(select(TopicMapping))).scalar_one()
        assert mapping.status == "auto_mapped"
        mapping_id = mapping.id
        await MappingService().confirm_mapping(session, mapping_id)

        step = await orchestrator.process_active_pipelines(session)
        assert step.processed >= 1
        pipeline = await reload_pipeline(session, pipeline_id)
        assert (pipeline.status, pipeline.current_stage) == ("processing", "transforming")
        assert pipeline.completed_at is None

        # transform
        assert await orchestrator.process_pipeline(session, pipeline_id) is True
        assert (await reload_pipeline(session, pipeline_id)).current_stage == "validating"
        content_tasks = await LifecycleService().get_content_tasks(session, pipeline_id)
        assert [t.current_stage for t in content_tasks] == ["DRAFT"]

        # Unapproved content keeps the pipeline open
        assert await orchestrator.process_pipeline(session, pipeline_id) is False
        assert (await reload_pipeline(session, pipeline_id)).status == "processing"

        assert await orchestrator.promotion.process_batch(session) == 1
        validated = (await session.execute(select(ValidatedItem))).scalar_one()
        await LifecycleService().approve_validated(session, validated.id, approved_by="reviewer")

        assert await orchestrator.process_pipeline(session, pipeline_id) is True
        pipeline = await reload_pipeline(session, pipeline_id)
        assert pipeline.status == "completed"
        assert pipeline.total_tasks == 4
        assert pipeline.completed_tasks == 4

    @pytest.mark.asyncio
    async def test_no_mapper_stops_after_chunking(self, db, session, document, uploads_dir):
        (uploads_dir / "unit1.txt").write_text(UNIT_TEXT, encoding="utf-8")
        orchestrator = PipelineOrchestrator(
            documents=DocumentProcessor(extractor=PlainTextExtractor(base_dir=uploads_dir), db=db),
        )
        pipeline = await PipelineService().create_pipeline(session, document.id)
        await orchestrator.start_pipeline(session, pipeline.id)

        for _ in range(3):
            await orchestrator.process_pipeline(session, pipeline.id)

        assert await task_summary(session, pipeline.id) == [
            ("extract", "completed"),
            ("chunk", "completed"),
        ]
        pipeline = await reload_pipeline(session, pipeline.id)
        assert (pipeline.status, pipeline.current_stage) == ("completed", "completed")


class TestFailures:
    """Task failures fail the task and, once nothing is runnable, the pipeline."""

    @pytest.mark.asyncio
    async def test_extraction_failure_fails_pipeline(self, orchestrator, session, document):
        pipeline = await PipelineService().create_pipeline(session, document.id)
        pipeline_id = pipeline.id

        first = await orchestrator.process_active_pipelines(session)
        assert first.processed == 1
        assert first.last_item_type == "pipeline"

        second = await orchestrator.process_active_pipelines(session)
        assert second.processed == 1

        pipeline = await reload_pipeline(session, pipeline_id)
        assert pipeline.status == "failed"
        assert "File not found" in pipeline.error_message

        (task,) = await PipelineService().get_tasks(session, pipeline_id)
        assert task.status == "failed"
        assert task.retry_count == 1
        assert "File not found" in task.error_message

    @pytest.mark.asyncio
    async def test_retry_runs_failed_task_again(self, orchestrator, session, document, uploads_dir):
        pipelines = PipelineService()
        pipeline = await pipelines.create_pipeline(session, document.id)
        await orchestrator.process_active_pipelines(session)
        await orchestrator.process_active_pipelines(session)
        assert (await reload_pipeline(session, pipeline.id)).status == "failed"

        (uploads_dir / "unit1.txt").write_text(UNIT_TEXT, encoding="utf-8")
        assert await pipelines.retry_failed_tasks(session, pipeline.id) == 1

        assert await orchestrator.process_pipeline(session, pipeline.id) is True
        assert await task_summary(session, pipeline.id) == [
            ("extract", "completed"),
            ("chunk", "pending"),
        ]

    @pytest.mark.asyncio
    async def test_validate_task_runs_promotion_batch(
        self, orchestrator, session, document, curriculum
    ):
        pipelines = PipelineService()
        pipeline = await pipelines.create_pipeline(session, document.id)
        await pipelines.update_stage(session, pipeline.id, "validating", "processing")
        await LifecycleService().create_draft(
            session,
            "meaning",
            {"word": "hola", "definition": "hello"},
            document_id=document.id,
            topic_id=curriculum["vocabulary"].id,
        )
        task = await pipelines.create_task(session, pipeline.id, document.id, "document", "validate")

        await orchestrator.process_task(session, task.id)

        assert (await pipelines.get_task(session, task.id)).status == "completed"
        validated = (await session.execute(select(ValidatedItem))).scalar_one()
        assert validated.data_type == "meaning"

    @pytest.mark.asyncio
    async def test_approve_task_is_a_noop(self, orchestrator, session, document):
        pipelines = PipelineService()
        pipeline = await pipelines.create_pipeline(session, document.id)
        await pipelines.update_stage(session, pipeline.id, "validating", "processing")
        task = await pipelines.create_task(session, pipeline.id, document.id, "document", "approve")

        await orchestrator.process_task(session, task.id)

        assert (await pipelines.get_task(session, task.id)).status == "completed"


class TestStepResult:
    def test_record_and_merge(self):
        first = StepResult()
        first.record("a", "pipeline")
        second = StepResult()
        second.record("b", "validated", count=2)

        first.merge(second)
        first.merge(StepResult())

        assert first.processed == 3
        assert (first.last_item_id, first.last_item_type) == ("b", "validated")


class TestCompletion:
    """The completion rule once no task is runnable."""

    @pytest.mark.asyncio
    async def test_ready_document_completes_without_tasks(self, orchestrator, session, document):
        document.status = "ready"
        await session.commit()
        pipelines = PipelineService()
        pipeline = await pipelines.create_pipeline(session, document.id)

        await orchestrator.start_pipeline(session, pipeline.id)
        assert await pipelines.get_tasks(session, pipeline.id) == []

        # No tasks at all counts as all tasks completed
        assert await orchestrator.process_pipeline(session, pipeline.id) is True
        pipeline = await reload_pipeline(session, pipeline.id)
        assert (pipeline.status, pipeline.total_tasks) == ("completed", 0)
