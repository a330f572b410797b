# refinery/services/mapping_service.py
"""
Curriculum resolution and chunk-to-topic mappings.

Semantic mapping proposes topics for each chunk (``auto_mapped``). A human
reviewer confirms or rejects them outside the worker; the orchestrator only
reacts to ``confirmed`` mappings.

Usage:
    from refinery.services.mapping_service import MappingService

    mapping_service = MappingService(mapper=my_mapper)
    level = await mapping_service.resolve_level(session, document)
    created = await mapping_service.map_chunks_to_topics(session, document.id, level.id)
"""

import logging
from datetime import datetime
from typing import List, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy import and_, case, exists, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..database.models import (
    CurriculumLevel,
    CurriculumTopic,
    Document,
    DocumentChunk,
    Pipeline,
    PipelineTask,
    TopicMapping,
)
from ..errors import CollaboratorNotConfiguredError, NotFoundError
from ..models.curriculum import CurriculumDefinition
from .collaborators import SemanticMapper, TopicRef

logger = logging.getLogger("refinery.services.mapping")


class MappingService:
    """Service for curriculum levels and topic mappings."""

    def __init__(self, mapper: Optional[SemanticMapper] = None):
        self.mapper = mapper

    @property
    def has_mapper(self) -> bool:
        return self.mapper is not None

    # =========================================================================
    # CURRICULUM
    # =========================================================================

    async def resolve_level(self, session: AsyncSession, document: Document) -> CurriculumLevel:
        """
        Find the curriculum level for a document.

        Uses the level matching the document's language and target level,
        falling back to the language's A1 level.

        Raises:
            NotFoundError: If neither level exists
        """
        target = document.target_level or "A1"
        result = await session.execute(
            select(CurriculumLevel)
            .where(
                CurriculumLevel.language == document.language,
                CurriculumLevel.cefr_level.in_([target, "A1"]),
            )
            .order_by(case((CurriculumLevel.cefr_level == target, 0), else_=1))
            .limit(1)
        )
        level = result.scalar_one_or_none()
        if not level:
            raise NotFoundError(
                "CurriculumLevel",
                document.id,
                message="Cannot find curriculum level for document",
            )
        if level.cefr_level != target:
            logger.info(
                f"No {document.language} {target} level; using {level.cefr_level} for document {document.id}"
            )
        return level

    async def get_topics(self, session: AsyncSession, level_id: UUID) -> List[CurriculumTopic]:
        result = await session.execute(
            select(CurriculumTopic)
            .where(CurriculumTopic.level_id == level_id)
            .order_by(CurriculumTopic.sort_order.asc(), CurriculumTopic.name.asc())
        )
        return list(result.scalars().all())

    async def seed_curriculum(
        self, session: AsyncSession, curriculum: CurriculumDefinition
    ) -> Tuple[int, int]:
        """
        Insert the levels and topics of a curriculum definition.

        Existing levels (same language and CEFR level) and topics (same
        name within the level) are updated in place, so seeding twice is
        harmless.

        Returns:
            (levels_created, topics_created)
        """
        levels_created = topics_created = 0

        for level_index, level_def in enumerate(curriculum.levels):
            result = await session.execute(
                select(CurriculumLevel).where(
                    CurriculumLevel.language == level_def.language,
                    CurriculumLevel.cefr_level == level_def.cefr_level,
                )
            )
            level = result.scalar_one_or_none()
            if not level:
                level = CurriculumLevel(language=level_def.language, cefr_level=level_def.cefr_level)
                session.add(level)
                levels_created += 1
            level.name = level_def.name or f"{level_def.language} {level_def.cefr_level}"
            level.sort_order = level_def.sort_order if level_def.sort_order is not None else level_index
            await session.flush()

            existing = {t.name: t for t in await self.get_topics(session, level.id)}
            for topic_index, topic_def in enumerate(level_def.topics):
                topic = existing.get(topic_def.name)
                if not topic:
                    topic = CurriculumTopic(level_id=level.id, name=topic_def.name)
                    session.add(topic)
                    topics_created += 1
                    existing[topic.name] = topic
                topic.description = topic_def.description
                topic.content_type = topic_def.content_type
                topic.sort_order = (
                    topic_def.sort_order if topic_def.sort_order is not None else topic_index
                )

        await session.commit()
        logger.info(f"Seeded curriculum: {levels_created} new level(s), {topics_created} new topic(s)")
        return levels_created, topics_created

    # =========================================================================
    # MAPPING
    # =========================================================================

    async def map_chunks_to_topics(
        self, session: AsyncSession, document_id: UUID, level_id: UUID
    ) -> int:
        """
        Ask the semantic mapper to map each chunk of a document onto the
        level's topics and store the proposals as ``auto_mapped``.

        Proposals below ``min_mapping_confidence`` and pairs that are
        already mapped are skipped.

        Returns:
            Number of mappings created

        Raises:
            CollaboratorNotConfiguredError: If no mapper is configured
        """
        if not self.mapper:
            raise CollaboratorNotConfiguredError("Semantic mapper is not configured")

        topics = await self.get_topics(session, level_id)
        if not topics:
            logger.warning(f"Level {level_id} has no topics; nothing to map")
            return 0
        topic_refs = [
            TopicRef(id=t.id, name=t.name, content_type=t.content_type, description=t.description)
            for t in topics
        ]
        known_topics = {t.id for t in topics}

        result = await session.execute(
            select(DocumentChunk)
            .where(DocumentChunk.document_id == document_id)
            .order_by(DocumentChunk.chunk_index.asc())
        )
        chunks = list(result.scalars().all())

        result = await session.execute(
            select(TopicMapping.chunk_id, TopicMapping.topic_id)
            .join(DocumentChunk, DocumentChunk.id == TopicMapping.chunk_id)
            .where(DocumentChunk.document_id == document_id)
        )
        existing = {(row.chunk_id, row.topic_id) for row in result.all()}

        created = 0
        for chunk in chunks:
            proposals = await self.mapper.map_chunk(chunk.text, topic_refs)
            for proposal in proposals:
                if proposal.confidence < settings.min_mapping_confidence:
                    continue
                if proposal.topic_id not in known_topics:
                    logger.warning(f"Mapper proposed unknown topic {proposal.topic_id}; ignored")
                    continue
                if (chunk.id, proposal.topic_id) in existing:
                    continue
                session.add(TopicMapping(
                    chunk_id=chunk.id,
                    topic_id=proposal.topic_id,
                    confidence=proposal.confidence,
                    reasoning=proposal.reasoning,
                    status="auto_mapped",
                ))
                existing.add((chunk.id, proposal.topic_id))
                created += 1

        await session.commit()
        logger.info(f"Created {created} mapping(s) for {len(chunks)} chunk(s) of document {document_id}")
        return created

    async def get_mapping(self, session: AsyncSession, mapping_id: UUID) -> Optional[TopicMapping]:
        result = await session.execute(select(TopicMapping).where(TopicMapping.id == mapping_id))
        return result.scalar_one_or_none()

    async def confirm_mapping(self, session: AsyncSession, mapping_id: UUID) -> TopicMapping:
        """Human confirmation of a mapping."""
        return await self._set_status(session, mapping_id, "confirmed")

    async def reject_mapping(self, session: AsyncSession, mapping_id: UUID) -> TopicMapping:
        return await self._set_status(session, mapping_id, "rejected")

    async def _set_status(self, session: AsyncSession, mapping_id: UUID, status: str) -> TopicMapping:
        mapping = await self.get_mapping(session, mapping_id)
        if not mapping:
            raise NotFoundError("TopicMapping", mapping_id)
        mapping.status = status
        mapping.confirmed_at = datetime.utcnow() if status == "confirmed" else None
        await session.commit()
        await session.refresh(mapping)
        logger.info(f"Mapping {mapping_id} {status}")
        return mapping

    async def get_pipeline_ids_with_untransformed_mappings(
        self,
        session: AsyncSession,
        stages: Sequence[str],
        limit: int = 10,
        status: Optional[str] = None,
    ) -> List[UUID]:
        """Pipelines in ``stages`` whose document has confirmed mappings without a transform task."""
        has_task = exists().where(
            and_(
                PipelineTask.pipeline_id == Pipeline.id,
                PipelineTask.task_type == "transform",
                PipelineTask.item_id == TopicMapping.id,
            )
        )
        stmt = (
            select(Pipeline.id)
            .join(DocumentChunk, DocumentChunk.document_id == Pipeline.document_id)
            .join(TopicMapping, TopicMapping.chunk_id == DocumentChunk.id)
            .where(
                Pipeline.current_stage.in_(list(stages)),
                TopicMapping.status == "confirmed",
                ~has_task,
            )
        )
        if status is not None:
            stmt = stmt.where(Pipeline.status == status)
        result = await session.execute(
            stmt.group_by(Pipeline.id).order_by(func.min(TopicMapping.confirmed_at).asc()).limit(limit)
        )
        return list(result.scalars().all())

    async def get_untransformed_confirmed_mappings(
        self, session: AsyncSession, pipeline_id: UUID, document_id: UUID
    ) -> List[TopicMapping]:
        """Confirmed mappings of a document that have no transform task in the pipeline."""
        has_task = exists().where(
            and_(
                PipelineTask.pipeline_id == pipeline_id,
                PipelineTask.task_type == "transform",
                PipelineTask.item_id == TopicMapping.id,
            )
        )
        result = await session.execute(
            select(TopicMapping)
            .join(DocumentChunk, DocumentChunk.id == TopicMapping.chunk_id)
            .where(
                DocumentChunk.document_id == document_id,
                TopicMapping.status == "confirmed",
                ~has_task,
            )
            .order_by(TopicMapping.created_at.asc())
        )
        return list(result.scalars().all())
