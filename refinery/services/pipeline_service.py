# refinery/services/pipeline_service.py
"""
Pipeline Store - durable state for document pipelines and their task graph.

Each document has exactly one pipeline. A pipeline owns a set of tasks
forming a single-predecessor graph: every task may depend on at most one
other task and is eligible to run once that predecessor has completed.

Usage:
    from refinery.services.pipeline_service import pipeline_service

    pipeline = await pipeline_service.get_or_create_pipeline(session, document_id)

    task = await pipeline_service.create_task(
        session=session,
        pipeline_id=pipeline.id,
        item_id=document_id,
        item_type="document",
        task_type="extract",
    )

    next_task = await pipeline_service.get_next_task(session, pipeline.id)
    await pipeline_service.update_task_status(session, next_task.id, "completed")
"""

import logging
from datetime import datetime
from typing import List, Optional, Sequence
from uuid import UUID

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from ..config import settings
from ..database.models import Pipeline, PipelineTask
from ..errors import NotFoundError

logger = logging.getLogger("refinery.services.pipeline")


PIPELINE_STATUSES = ("pending", "processing", "completed", "failed", "cancelled")
PIPELINE_STAGES = (
    "created",
    "extracting",
    "chunking",
    "mapping",
    "transforming",
    "validating",
    "completed",
)
TASK_TYPES = ("extract", "chunk", "map", "transform", "validate", "approve")
TASK_STATUSES = ("pending", "processing", "completed", "failed")


class PipelineService:
    """
    Service for managing Pipeline and PipelineTask records.

    Stage labels are advisory: ``update_stage`` accepts any known stage
    without checking the previous one, because a completed pipeline may be
    reopened into ``transforming`` when late mapping confirmations arrive.
    """

    # =========================================================================
    # PIPELINE OPERATIONS
    # =========================================================================

    async def create_pipeline(self, session: AsyncSession, document_id: UUID) -> Pipeline:
        """
        Create a pipeline for a document in ``pending``/``created``.

        Prefer ``get_or_create_pipeline``; this raises IntegrityError if the
        document already has a pipeline.
        """
        pipeline = Pipeline(
            document_id=document_id,
            status="pending",
            current_stage="created",
        )
        session.add(pipeline)
        await session.commit()
        await session.refresh(pipeline)

        logger.info(f"Created pipeline {pipeline.id} for document {document_id}")
        return pipeline

    async def get_or_create_pipeline(self, session: AsyncSession, document_id: UUID) -> Pipeline:
        """
        Return the document's pipeline, creating it on first call.

        Calling this any number of times for the same document yields the
        same pipeline id.
        """
        existing = await self.get_pipeline_by_document(session, document_id)
        if existing:
            return existing

        try:
            return await self.create_pipeline(session, document_id)
        except IntegrityError:
            # Lost a race against another writer; the unique constraint holds the winner.
            await session.rollback()
            existing = await self.get_pipeline_by_document(session, document_id)
            if not existing:
                raise
            return existing

    async def get_pipeline(self, session: AsyncSession, pipeline_id: UUID) -> Optional[Pipeline]:
        result = await session.execute(
            select(Pipeline)
            .where(Pipeline.id == pipeline_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def require_pipeline(self, session: AsyncSession, pipeline_id: UUID) -> Pipeline:
        """Get a pipeline or raise NotFoundError."""
        pipeline = await self.get_pipeline(session, pipeline_id)
        if not pipeline:
            raise NotFoundError("Pipeline", pipeline_id)
        return pipeline

    async def get_pipeline_by_document(
        self, session: AsyncSession, document_id: UUID
    ) -> Optional[Pipeline]:
        result = await session.execute(
            select(Pipeline)
            .where(Pipeline.document_id == document_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_pipelines_by_status(
        self, session: AsyncSession, status: str, limit: int = 10
    ) -> List[Pipeline]:
        """
        Get pipelines in a status, oldest first.

        Args:
            session: Database session
            status: Pipeline status to filter on
            limit: Maximum number of pipelines

        Returns:
            List of Pipeline instances
        """
        self._check_value("pipeline status", status, PIPELINE_STATUSES)
        result = await session.execute(
            select(Pipeline)
            .where(Pipeline.status == status)
            .order_by(Pipeline.created_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_pipelines_by_stages(
        self,
        session: AsyncSession,
        stages: Sequence[str],
        limit: int = 10,
        status: Optional[str] = None,
    ) -> List[Pipeline]:
        """Get pipelines whose current stage is one of ``stages``, least recently touched first."""
        for stage in stages:
            self._check_value("pipeline stage", stage, PIPELINE_STAGES)
        stmt = select(Pipeline).where(Pipeline.current_stage.in_(list(stages)))
        if status is not None:
            self._check_value("pipeline status", status, PIPELINE_STATUSES)
            stmt = stmt.where(Pipeline.status == status)
        result = await session.execute(
            stmt
            .order_by(Pipeline.updated_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def update_stage(
        self,
        session: AsyncSession,
        pipeline_id: UUID,
        stage: str,
        status: Optional[str] = None,
    ) -> Pipeline:
        """
        Set the advisory stage (and optionally the status) of a pipeline.

        ``started_at`` is recorded the first time the pipeline leaves the
        ``created`` stage.

        Raises:
            NotFoundError: If the pipeline does not exist
            ValueError: If stage or status is unknown
        """
        self._check_value("pipeline stage", stage, PIPELINE_STAGES)
        if status is not None:
            self._check_value("pipeline status", status, PIPELINE_STATUSES)

        pipeline = await self.require_pipeline(session, pipeline_id)
        old_stage, old_status = pipeline.current_stage, pipeline.status

        pipeline.current_stage = stage
        if status is not None:
            pipeline.status = status
            if status == "processing":
                pipeline.completed_at = None
        if stage != "created" and pipeline.started_at is None:
            pipeline.started_at = datetime.utcnow()
        pipeline.updated_at = datetime.utcnow()

        await session.commit()
        await session.refresh(pipeline)

        logger.info(
            f"Pipeline {pipeline_id} stage {old_stage} → {stage}"
            + (f", status {old_status} → {status}" if status and status != old_status else "")
        )
        return pipeline

    async def complete_pipeline(
        self,
        session: AsyncSession,
        pipeline_id: UUID,
        success: bool,
        error_message: Optional[str] = None,
    ) -> Pipeline:
        """
        Finish a pipeline as ``completed`` (success) or ``failed``.

        Raises:
            NotFoundError: If the pipeline does not exist
        """
        pipeline = await self.require_pipeline(session, pipeline_id)

        now = datetime.utcnow()
        pipeline.status = "completed" if success else "failed"
        pipeline.current_stage = "completed"
        pipeline.completed_at = now
        pipeline.updated_at = now
        pipeline.error_message = None if success else error_message

        await session.commit()
        await session.refresh(pipeline)

        if success:
            logger.info(f"Pipeline {pipeline_id} completed")
        else:
            logger.warning(f"Pipeline {pipeline_id} failed: {error_message}")
        return pipeline

    # =========================================================================
    # TASK OPERATIONS
    # =========================================================================

    async def create_task(
        self,
        session: AsyncSession,
        pipeline_id: UUID,
        item_id: UUID,
        item_type: str,
        task_type: str,
        depends_on_task_id: Optional[UUID] = None,
    ) -> PipelineTask:
        """
        Create a pending task and increment the pipeline's ``total_tasks``.

        Both writes are committed together.

        Args:
            session: Database session
            pipeline_id: Owning pipeline
            item_id: Document, chunk, mapping or candidate id
            item_type: document, chunk, mapping, candidate
            task_type: extract, chunk, map, transform, validate, approve
            depends_on_task_id: Optional single predecessor

        Returns:
            Created PipelineTask

        Raises:
            NotFoundError: If the pipeline does not exist
        """
        self._check_value("task type", task_type, TASK_TYPES)
        await self.require_pipeline(session, pipeline_id)

        task = PipelineTask(
            pipeline_id=pipeline_id,
            item_id=item_id,
            item_type=item_type,
            task_type=task_type,
            status="pending",
            depends_on_task_id=depends_on_task_id,
        )
        session.add(task)
        await session.execute(
            update(Pipeline)
            .where(Pipeline.id == pipeline_id)
            .values(total_tasks=Pipeline.total_tasks + 1, updated_at=datetime.utcnow())
        )
        await session.commit()
        await session.refresh(task)

        logger.debug(
            f"Created {task_type} task {task.id} for pipeline {pipeline_id}"
            + (f" (after {depends_on_task_id})" if depends_on_task_id else "")
        )
        return task

    async def get_task(self, session: AsyncSession, task_id: UUID) -> Optional[PipelineTask]:
        result = await session.execute(
            select(PipelineTask)
            .where(PipelineTask.id == task_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_tasks(self, session: AsyncSession, pipeline_id: UUID) -> List[PipelineTask]:
        """Get all tasks of a pipeline in creation order."""
        result = await session.execute(
            select(PipelineTask)
            .where(PipelineTask.pipeline_id == pipeline_id)
            .order_by(PipelineTask.created_at.asc())
        )
        return list(result.scalars().all())

    async def get_next_task(
        self, session: AsyncSession, pipeline_id: UUID
    ) -> Optional[PipelineTask]:
        """
        Return the oldest eligible task of a pipeline, or None.

        A task is eligible when it is pending and it either has no
        predecessor or its predecessor is completed.
        """
        predecessor = aliased(PipelineTask)
        result = await session.execute(
            select(PipelineTask)
            .outerjoin(predecessor, PipelineTask.depends_on_task_id == predecessor.id)
            .where(
                PipelineTask.pipeline_id == pipeline_id,
                PipelineTask.status == "pending",
                or_(
                    PipelineTask.depends_on_task_id.is_(None),
                    predecessor.status == "completed",
                ),
            )
            .order_by(PipelineTask.created_at.asc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def update_task_status(
        self,
        session: AsyncSession,
        task_id: UUID,
        status: str,
        stage: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> PipelineTask:
        """
        Transition a task and refresh its pipeline's counters.

        - processing: records ``started_at``
        - completed / failed: records ``completed_at``
        - failed: increments ``retry_count`` and stores ``error_message``

        Raises:
            NotFoundError: If the task does not exist
            ValueError: If the status is unknown
        """
        self._check_value("task status", status, TASK_STATUSES)

        task = await self.get_task(session, task_id)
        if not task:
            raise NotFoundError("PipelineTask", task_id)

        old_status = task.status
        now = datetime.utcnow()

        task.status = status
        if stage is not None:
            task.stage = stage
        if status == "processing":
            task.started_at = now
            task.error_message = None
        elif status in ("completed", "failed"):
            task.completed_at = now
        if status == "failed":
            task.retry_count = (task.retry_count or 0) + 1
            task.error_message = error_message
        elif error_message is not None:
            task.error_message = error_message

        await session.flush()
        await self._refresh_counters(session, task.pipeline_id)
        await session.commit()
        await session.refresh(task)

        logger.debug(f"Task {task_id} ({task.task_type}) {old_status} → {status}")
        return task

    async def retry_failed_tasks(self, session: AsyncSession, pipeline_id: UUID) -> int:
        """
        Reset failed tasks that still have attempts left.

        Tasks with ``retry_count < max_task_retries`` go back to pending with
        their error cleared. If any task was reset, the pipeline returns to
        ``processing`` and its error message is cleared.

        Returns:
            Number of tasks reset

        Raises:
            NotFoundError: If the pipeline does not exist
        """
        pipeline = await self.require_pipeline(session, pipeline_id)

        result = await session.execute(
            update(PipelineTask)
            .where(
                and_(
                    PipelineTask.pipeline_id == pipeline_id,
                    PipelineTask.status == "failed",
                    PipelineTask.retry_count < settings.max_task_retries,
                )
            )
            .values(status="pending", error_message=None, started_at=None, completed_at=None)
        )
        reset = result.rowcount or 0

        if reset > 0:
            pipeline.status = "processing"
            pipeline.error_message = None
            pipeline.completed_at = None
            pipeline.updated_at = datetime.utcnow()
            await session.flush()
            await self._refresh_counters(session, pipeline_id)
            logger.info(f"Reset {reset} failed task(s) for pipeline {pipeline_id}")
        else:
            logger.info(f"No retryable tasks for pipeline {pipeline_id}")

        await session.commit()
        return reset

    async def recover_interrupted_tasks(self, session: AsyncSession) -> int:
        """
        Return tasks left in ``processing`` by a previous process to ``pending``.

        Only one worker runs at a time, so any task still marked processing
        at start-up was interrupted mid-dispatch.

        Returns:
            Number of tasks recovered
        """
        result = await session.execute(
            update(PipelineTask)
            .where(PipelineTask.status == "processing")
            .values(status="pending", started_at=None)
        )
        recovered = result.rowcount or 0
        await session.commit()
        if recovered:
            logger.warning(f"Recovered {recovered} interrupted task(s)")
        return recovered

    # =========================================================================
    # HELPERS
    # =========================================================================

    async def count_tasks_by_status(self, session: AsyncSession, pipeline_id: UUID) -> dict:
        """Return ``{status: count}`` for a pipeline's tasks."""
        result = await session.execute(
            select(PipelineTask.status, func.count())
            .where(PipelineTask.pipeline_id == pipeline_id)
            .group_by(PipelineTask.status)
        )
        return {status: count for status, count in result.all()}

    async def _refresh_counters(self, session: AsyncSession, pipeline_id: UUID) -> None:
        counts = await self.count_tasks_by_status(session, pipeline_id)
        await session.execute(
            update(Pipeline)
            .where(Pipeline.id == pipeline_id)
            .values(
                completed_tasks=counts.get("completed", 0),
                failed_tasks=counts.get("failed", 0),
                updated_at=datetime.utcnow(),
            )
        )

    @staticmethod
    def _check_value(label: str, value: str, allowed: Sequence[str]) -> None:
        if value not in allowed:
            raise ValueError(f"Unknown {label}: {value}. Expected one of {list(allowed)}")


# Global service instance
pipeline_service = PipelineService()
