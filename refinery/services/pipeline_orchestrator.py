# refinery/services/pipeline_orchestrator.py
"""
Pipeline Orchestrator - the per-document state machine.

Pipeline status:
    pending -> processing -> completed | failed
    completed -> processing  (reopening: confirmed mappings arrived late)

Driving one pipeline (``process_pipeline``):
1. If the stage is mapping, transforming or completed, create a transform
   task for every confirmed mapping that has none; if any were created the
   pipeline is (re)opened in ``transforming``/``processing``.
2. A failed pipeline stops here until ``retry_failed_tasks`` is called.
3. Otherwise the next eligible task is dispatched. Without one:
   - any failed task fails the pipeline;
   - all tasks completed completes it, but only when no confirmed mapping
     is left untransformed and every content task is APPROVED. Until then
     the pipeline stays open so later human action is picked up.

Task dispatch:
    extract   -> extraction, then a dependent chunk task (stage chunking)
    chunk     -> chunking, then a dependent map task when a mapper is
                 configured and chunks exist (stage mapping)
    map       -> curriculum level lookup and semantic mapping
    transform -> content transformation, a content task per draft of the
                 job (stage validating)
    validate  -> one promotion batch
    approve   -> reserved for automatic approval; no-op

Usage:
    from refinery.services.pipeline_orchestrator import pipeline_orchestrator

    result = await pipeline_orchestrator.process_active_pipelines(session)
"""

import logging
from dataclasses import dataclass
from typing import Optional, Tuple
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..database.models import Document, Pipeline
from ..errors import NotFoundError
from .document_processor import DocumentProcessor
from .lifecycle_service import LifecycleService, lifecycle_service
from .mapping_service import MappingService
from .pipeline_service import PipelineService, pipeline_service
from .promotion_service import PromotionService, promotion_service
from .transformation_service import TransformationService

logger = logging.getLogger("refinery.services.orchestrator")

# Stages in which late mapping confirmations are looked for
REOPEN_STAGES = ("mapping", "transforming", "completed")


@dataclass
class StepResult:
    """Useful work done by one step of a worker tick."""
    processed: int = 0
    last_item_id: Optional[UUID] = None
    last_item_type: Optional[str] = None

    def record(self, item_id: UUID, item_type: str, count: int = 1) -> None:
        self.processed += count
        self.last_item_id = item_id
        self.last_item_type = item_type

    def merge(self, other: "StepResult") -> None:
        if other.processed:
            self.record(other.last_item_id, other.last_item_type, other.processed)


class PipelineOrchestrator:
    """
    Advances pipelines one task at a time.

    Attributes:
        documents: Extraction and chunking
        mapping: Curriculum lookup and semantic mapping
        transformation: Content transformation
        promotion: Promotion engine used by validate tasks
        pipelines: Pipeline store
        lifecycle: Content lifecycle store
    """

    def __init__(
        self,
        documents: Optional[DocumentProcessor] = None,
        mapping: Optional[MappingService] = None,
        transformation: Optional[TransformationService] = None,
        promotion: Optional[PromotionService] = None,
        pipelines: Optional[PipelineService] = None,
        lifecycle: Optional[LifecycleService] = None,
    ):
        self.documents = documents or DocumentProcessor()
        self.mapping = mapping or MappingService()
        self.transformation = transformation or TransformationService()
        self.promotion = promotion or promotion_service
        self.pipelines = pipelines or pipeline_service
        self.lifecycle = lifecycle or lifecycle_service

    # =========================================================================
    # TICK ENTRY POINT
    # =========================================================================

    async def process_active_pipelines(self, session: AsyncSession) -> StepResult:
        """
        Run the pipeline part of a worker tick.

        1. Advance up to 10 processing pipelines by one task each.
        2. Rescan up to 10 completed pipelines parked in mapping,
           transforming or completed for newly confirmed mappings.
        3. Start up to 5 pending pipelines.

        A pipeline that raises is marked failed; the scan continues.
        """
        result = StepResult()

        processing = await self.pipelines.get_pipelines_by_status(
            session, "processing", settings.active_pipeline_batch_size
        )
        for pipeline_id in [p.id for p in processing]:
            try:
                if await self.process_pipeline(session, pipeline_id):
                    result.record(pipeline_id, "pipeline")
            except Exception as e:
                await self._fail_pipeline(session, pipeline_id, e)
                result.record(pipeline_id, "pipeline")

        parked = await self.mapping.get_pipeline_ids_with_untransformed_mappings(
            session, REOPEN_STAGES, settings.parked_pipeline_batch_size, status="completed"
        )
        for pipeline_id in parked:
            try:
                created = await self.create_transformation_tasks_for_confirmed_mappings(
                    session, pipeline_id
                )
                if created:
                    result.record(pipeline_id, "pipeline")
            except Exception as e:
                await session.rollback()
                logger.exception(f"Rescan of pipeline {pipeline_id} failed: {e}")

        pending = await self.pipelines.get_pipelines_by_status(
            session, "pending", settings.pending_pipeline_batch_size
        )
        for pipeline_id in [p.id for p in pending]:
            try:
                if await self.start_pipeline(session, pipeline_id):
                    result.record(pipeline_id, "pipeline")
            except Exception as e:
                await self._fail_pipeline(session, pipeline_id, e)
                result.record(pipeline_id, "pipeline")

        return result

    # =========================================================================
    # PIPELINE OPERATIONS
    # =========================================================================

    async def register_document(
        self,
        session: AsyncSession,
        filename: str,
        storage_path: str,
        language: Optional[str] = None,
        target_level: Optional[str] = None,
    ) -> Tuple[Document, Pipeline]:
        """
        Register an uploaded document and its pending pipeline.

        Returns:
            (document, pipeline)
        """
        document = Document(
            filename=filename,
            storage_path=storage_path,
            language=(language or settings.default_language).upper(),
            target_level=target_level.upper() if target_level else None,
            status="pending",
        )
        session.add(document)
        await session.commit()
        await session.refresh(document)

        pipeline = await self.pipelines.get_or_create_pipeline(session, document.id)
        logger.info(f"Registered document {document.id} ({filename}) with pipeline {pipeline.id}")
        return document, pipeline

    async def start_pipeline(self, session: AsyncSession, pipeline_id: UUID) -> bool:
        """
        Start a pending pipeline.

        No-op unless the pipeline is ``pending``. Moves it to
        ``extracting``/``processing`` and creates the extract task when the
        document still awaits extraction.

        Returns:
            True if the pipeline was started
        """
        pipeline = await self.pipelines.require_pipeline(session, pipeline_id)
        if pipeline.status != "pending":
            logger.debug(f"Pipeline {pipeline_id} is {pipeline.status}; not starting")
            return False

        document = await self._get_document(session, pipeline.document_id)
        await self.pipelines.update_stage(session, pipeline_id, "extracting", "processing")

        if document.status == "pending":
            await self.pipelines.create_task(
                session,
                pipeline_id=pipeline_id,
                item_id=document.id,
                item_type="document",
                task_type="extract",
            )
        else:
            logger.info(
                f"Document {document.id} is {document.status}; pipeline {pipeline_id} starts without extraction"
            )

        logger.info(f"Started pipeline {pipeline_id} for document {document.id}")
        return True

    async def process_pipeline(self, session: AsyncSession, pipeline_id: UUID) -> bool:
        """
        Drive a pipeline one step.

        Returns:
            True if anything changed (task dispatched, tasks created, or
            pipeline finished)

        Raises:
            NotFoundError: If the pipeline does not exist
            Exception: Whatever the dispatched task raised (already recorded
                on the task)
        """
        pipeline = await self.pipelines.require_pipeline(session, pipeline_id)
        changed = False

        if pipeline.current_stage in REOPEN_STAGES:
            created = await self.create_transformation_tasks_for_confirmed_mappings(session, pipeline_id)
            if created:
                changed = True
                pipeline = await self.pipelines.require_pipeline(session, pipeline_id)

        if pipeline.status == "failed":
            return changed
        if pipeline.status != "processing":
            return changed

        task = await self.pipelines.get_next_task(session, pipeline_id)
        if task is None:
            finished = await self._check_completion(session, pipeline_id)
            return changed or finished

        await self.process_task(session, task.id)
        return True

    async def process_task(self, session: AsyncSession, task_id: UUID) -> None:
        """
        Run one task: mark it processing, dispatch, mark it completed.

        On error the task is marked failed with the error message and the
        error is re-raised for the pipeline-level handler.
        """
        task = await self.pipelines.update_task_status(session, task_id, "processing")
        pipeline_id, task_type, item_id = task.pipeline_id, task.task_type, task.item_id

        logger.info(f"Running {task_type} task {task_id} (pipeline {pipeline_id})")
        try:
            await self._dispatch(session, pipeline_id, task_id, task_type, item_id)
        except Exception as e:
            await session.rollback()
            await self.pipelines.update_task_status(
                session, task_id, "failed", error_message=str(e) or type(e).__name__
            )
            logger.error(f"{task_type} task {task_id} failed: {e}")
            raise

        await self.pipelines.update_task_status(session, task_id, "completed")

    async def create_transformation_tasks_for_confirmed_mappings(
        self, session: AsyncSession, pipeline_id: UUID
    ) -> int:
        """
        Create a transform task for each confirmed mapping that lacks one.

        If any were created the pipeline moves to ``transforming`` /
        ``processing``, which reopens a completed pipeline.

        Returns:
            Number of transform tasks created
        """
        pipeline = await self.pipelines.require_pipeline(session, pipeline_id)
        mappings = await self.mapping.get_untransformed_confirmed_mappings(
            session, pipeline_id, pipeline.document_id
        )
        if not mappings:
            return 0

        was_completed = pipeline.status == "completed"
        for mapping_id in [m.id for m in mappings]:
            await self.pipelines.create_task(
                session,
                pipeline_id=pipeline_id,
                item_id=mapping_id,
                item_type="mapping",
                task_type="transform",
            )
        await self.pipelines.update_stage(session, pipeline_id, "transforming", "processing")

        if was_completed:
            logger.info(f"Reopened pipeline {pipeline_id} for {len(mappings)} newly confirmed mapping(s)")
        else:
            logger.info(f"Created {len(mappings)} transform task(s) for pipeline {pipeline_id}")
        return len(mappings)

    # =========================================================================
    # DISPATCH
    # =========================================================================

    async def _dispatch(
        self,
        session: AsyncSession,
        pipeline_id: UUID,
        task_id: UUID,
        task_type: str,
        item_id: UUID,
    ) -> None:
        if task_type == "extract":
            await self._handle_extract(session, pipeline_id, task_id, item_id)
        elif task_type == "chunk":
            await self._handle_chunk(session, pipeline_id, task_id, item_id)
        elif task_type == "map":
            await self._handle_map(session, pipeline_id, item_id)
        elif task_type == "transform":
            await self._handle_transform(session, pipeline_id, item_id)
        elif task_type == "validate":
            await self.promotion.process_batch(session, settings.promotion_batch_size)
        elif task_type == "approve":
            logger.debug(f"Approve task {task_id}: approval is manual")
        else:
            raise ValueError(f"Unknown task type: {task_type}")

    async def _handle_extract(
        self, session: AsyncSession, pipeline_id: UUID, task_id: UUID, document_id: UUID
    ) -> None:
        await self.documents.extract_document(document_id)
        await self.pipelines.create_task(
            session,
            pipeline_id=pipeline_id,
            item_id=document_id,
            item_type="document",
            task_type="chunk",
            depends_on_task_id=task_id,
        )
        await self.pipelines.update_stage(session, pipeline_id, "chunking")

    async def _handle_chunk(
        self, session: AsyncSession, pipeline_id: UUID, task_id: UUID, document_id: UUID
    ) -> None:
        chunk_count = await self.documents.chunk_document(document_id)

        if chunk_count > 0 and self.mapping.has_mapper:
            await self.pipelines.create_task(
                session,
                pipeline_id=pipeline_id,
                item_id=document_id,
                item_type="document",
                task_type="map",
                depends_on_task_id=task_id,
            )
            await self.pipelines.update_stage(session, pipeline_id, "mapping")
        elif chunk_count == 0:
            logger.warning(f"Document {document_id} produced no chunks")
        else:
            logger.info(f"No semantic mapper configured; pipeline {pipeline_id} stops after chunking")

    async def _handle_map(self, session: AsyncSession, pipeline_id: UUID, document_id: UUID) -> None:
        document = await self._get_document(session, document_id)
        level = await self.mapping.resolve_level(session, document)
        await self.mapping.map_chunks_to_topics(session, document.id, level.id)
        await self.pipelines.update_stage(session, pipeline_id, "mapping")

    async def _handle_transform(
        self, session: AsyncSession, pipeline_id: UUID, mapping_id: UUID
    ) -> None:
        job = await self.transformation.transform_mapping(session, mapping_id)
        drafts = await self.lifecycle.get_drafts_for_job(session, job.id)
        for draft in drafts:
            await self.lifecycle.create_content_task(session, pipeline_id, draft)
        await self.pipelines.update_stage(session, pipeline_id, "validating")

    # =========================================================================
    # COMPLETION
    # =========================================================================

    async def _check_completion(self, session: AsyncSession, pipeline_id: UUID) -> bool:
        counts = await self.pipelines.count_tasks_by_status(session, pipeline_id)

        if counts.get("failed", 0) > 0:
            await self.pipelines.complete_pipeline(session, pipeline_id, False, "Some tasks failed")
            return True

        total = sum(counts.values())
        if counts.get("completed", 0) != total:
            return False

        pipeline = await self.pipelines.require_pipeline(session, pipeline_id)
        untransformed = await self.mapping.get_untransformed_confirmed_mappings(
            session, pipeline_id, pipeline.document_id
        )
        if untransformed:
            logger.debug(f"Pipeline {pipeline_id}: {len(untransformed)} confirmed mapping(s) untransformed")
            return False

        unapproved = await self.lifecycle.count_unapproved_content_tasks(session, pipeline_id)
        if unapproved:
            logger.debug(f"Pipeline {pipeline_id}: {unapproved} content item(s) not approved yet")
            return False

        await self.pipelines.complete_pipeline(session, pipeline_id, True)
        return True

    # =========================================================================
    # HELPERS
    # =========================================================================

    async def _get_document(self, session: AsyncSession, document_id: UUID) -> Document:
        result = await session.execute(
            select(Document)
            .where(Document.id == document_id)
            .execution_options(populate_existing=True)
        )
        document = result.scalar_one_or_none()
        if not document:
            raise NotFoundError("Document", document_id)
        return document

    async def _fail_pipeline(self, session: AsyncSession, pipeline_id: UUID, error: Exception) -> None:
        await session.rollback()
        logger.exception(f"Pipeline {pipeline_id} failed: {error}")
        await self.pipelines.complete_pipeline(
            session, pipeline_id, False, str(error) or type(error).__name__
        )


# Global orchestrator instance (no model-backed collaborators)
pipeline_orchestrator = PipelineOrchestrator()
