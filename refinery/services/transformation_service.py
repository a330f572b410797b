# refinery/services/transformation_service.py
"""
Content transformation of confirmed mappings into drafts.

Each attempt writes a TransformationJob audit row (prompt, raw response,
token usage, cost, duration). Items returned by the transformer become
drafts through the lifecycle store, which drops duplicates. Items that do
not validate against their payload model are skipped and listed under
``parsed_result["invalid"]``.

Usage:
    from refinery.services.transformation_service import TransformationService

    service = TransformationService(transformer=my_transformer)
    job = await service.transform_mapping(session, mapping_id)
"""

import logging
import time
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import ValidationError
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..database.models import (
    CurriculumLevel,
    CurriculumTopic,
    Document,
    DocumentChunk,
    Draft,
    TopicMapping,
    TransformationJob,
)
from ..errors import (
    CollaboratorNotConfiguredError,
    NotFoundError,
    RefineryError,
    TransformationRetryExhaustedError,
    TransientTaskError,
)
from ..models.content import DataType
from .collaborators import ContentTransformer, TransformationRequest
from .lifecycle_service import LifecycleService, lifecycle_service

logger = logging.getLogger("refinery.services.transformation")

# USD per million tokens
INPUT_COST_PER_MILLION = 3.0
OUTPUT_COST_PER_MILLION = 15.0

TOPIC_DATA_TYPES = {
    "vocabulary": DataType.MEANING.value,
    "grammar": DataType.RULE.value,
}


def estimate_cost(tokens_input: int, tokens_output: int) -> float:
    return round(
        tokens_input * INPUT_COST_PER_MILLION / 1_000_000
        + tokens_output * OUTPUT_COST_PER_MILLION / 1_000_000,
        6,
    )


def data_type_for_topic(content_type: str) -> str:
    """vocabulary -> meaning, grammar -> rule, anything else -> exercise."""
    return TOPIC_DATA_TYPES.get(content_type, DataType.EXERCISE.value)


class TransformationService:
    """Runs the content transformer for one mapping at a time."""

    def __init__(
        self,
        transformer: Optional[ContentTransformer] = None,
        lifecycle: Optional[LifecycleService] = None,
    ):
        self.transformer = transformer
        self.lifecycle = lifecycle or lifecycle_service

    async def transform_mapping(self, session: AsyncSession, mapping_id: UUID) -> TransformationJob:
        """
        Transform a confirmed mapping into drafts.

        A mapping that already has a completed job is not transformed again;
        its job is returned.

        Returns:
            The TransformationJob for this attempt

        Raises:
            NotFoundError: If the mapping or its chunk/topic is missing
            ValueError: If the mapping is not confirmed
            TransformationRetryExhaustedError: If the attempts are used up
            TransientTaskError: If the transformer failed
        """
        if not self.transformer:
            raise CollaboratorNotConfiguredError("Content transformer is not configured")

        mapping = await session.get(TopicMapping, mapping_id)
        if not mapping:
            raise NotFoundError("TopicMapping", mapping_id)
        if mapping.status != "confirmed":
            raise ValueError(f"Mapping {mapping_id} is {mapping.status}, not confirmed")

        completed = await self._get_completed_job(session, mapping_id)
        if completed:
            logger.info(f"Mapping {mapping_id} already transformed by job {completed.id}")
            return completed

        failed_attempts = await self._count_failed_jobs(session, mapping_id)
        if failed_attempts >= settings.max_transformation_retries:
            raise TransformationRetryExhaustedError(
                f"Mapping {mapping_id} failed {failed_attempts} transformation attempt(s)"
            )

        chunk = await session.get(DocumentChunk, mapping.chunk_id)
        topic = await session.get(CurriculumTopic, mapping.topic_id)
        if not chunk or not topic:
            raise NotFoundError("TopicMapping source", mapping_id)
        level = await session.get(CurriculumLevel, topic.level_id)
        document = await session.get(Document, chunk.document_id)

        language = level.language if level else None
        if not language:
            language = document.language if document else settings.default_language

        request = TransformationRequest(
            mapping_id=mapping.id,
            chunk_text=chunk.text,
            topic_name=topic.name,
            topic_type=topic.content_type,
            topic_description=topic.description,
            language=language,
            level=(level.cefr_level if level else None) or settings.default_level,
        )

        job = TransformationJob(
            mapping_id=mapping.id,
            document_id=chunk.document_id,
            chunk_id=chunk.id,
            topic_id=topic.id,
            status="processing",
            model=settings.transformer_model,
            retry_count=failed_attempts,
        )
        session.add(job)
        await session.commit()
        await session.refresh(job)
        job_id = job.id

        start = time.monotonic()
        try:
            output = await self.transformer.transform(request)
        except Exception as e:
            job.status = "failed"
            job.error_message = str(e)
            job.duration_ms = int((time.monotonic() - start) * 1000)
            job.completed_at = datetime.utcnow()
            await session.commit()
            logger.error(f"Transformation job {job_id} for mapping {mapping_id} failed: {e}")
            if isinstance(e, RefineryError):
                raise
            raise TransientTaskError(f"Transformation failed: {e}") from e

        job.model = output.model or job.model
        job.prompt = output.prompt
        job.raw_response = output.raw_response
        job.tokens_input = output.tokens_input
        job.tokens_output = output.tokens_output
        job.cost_usd = estimate_cost(output.tokens_input, output.tokens_output)
        job.duration_ms = int((time.monotonic() - start) * 1000)
        await session.commit()

        # Completed only once every item is handled; invalid items are skipped
        data_type = output.data_type or data_type_for_topic(topic.content_type)
        created = 0
        invalid = []
        for index, item in enumerate(output.items):
            try:
                draft = await self.lifecycle.create_draft(
                    session,
                    data_type=data_type,
                    payload=item,
                    document_id=chunk.document_id,
                    chunk_id=chunk.id,
                    topic_id=topic.id,
                    transformation_job_id=job_id,
                )
            except ValidationError as e:
                logger.warning(f"Job {job_id}: skipping invalid {data_type} item {index}: {e}")
                invalid.append({"index": index, "item": item, "error": str(e)})
                continue
            if draft:
                created += 1

        job.status = "completed"
        job.parsed_result = {"data_type": output.data_type, "items": output.items, "invalid": invalid}
        job.completed_at = datetime.utcnow()
        await session.commit()

        logger.info(
            f"Job {job_id}: {len(output.items)} {data_type} item(s), {created} new draft(s), "
            f"{len(invalid)} invalid, ${job.cost_usd:.4f}"
        )
        await session.refresh(job)
        return job

    async def get_job_drafts(self, session: AsyncSession, job_id: UUID) -> List[Draft]:
        return await self.lifecycle.get_drafts_for_job(session, job_id)

    async def _get_completed_job(
        self, session: AsyncSession, mapping_id: UUID
    ) -> Optional[TransformationJob]:
        result = await session.execute(
            select(TransformationJob)
            .where(TransformationJob.mapping_id == mapping_id, TransformationJob.status == "completed")
            .order_by(TransformationJob.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _count_failed_jobs(self, session: AsyncSession, mapping_id: UUID) -> int:
        result = await session.execute(
            select(func.count())
            .select_from(TransformationJob)
            .where(TransformationJob.mapping_id == mapping_id, TransformationJob.status == "failed")
        )
        return result.scalar() or 0
