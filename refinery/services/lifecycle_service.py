# refinery/services/lifecycle_service.py
"""
Content Lifecycle Store.

Durable state for content items moving through

    DRAFT -> CANDIDATE -> VALIDATED -> APPROVED | REJECTED

Each stage is its own table row referencing its predecessor. Every write
appends a LifecycleEvent; the event log is append-only and is the system of
record for what happened to an item and when.

Deduplication:
    ``create_draft`` is the single deduplication authority. It refuses a new
    draft when a draft, candidate, non-rejected validated item or rejected
    item already carries the same ``(topic_id, data_type, dedup_key)``.
    Rejection is additionally re-checked at candidate and validated
    creation, so a rejected key never re-enters the chain for that topic.

Usage:
    from refinery.services.lifecycle_service import lifecycle_service

    draft = await lifecycle_service.create_draft(
        session=session,
        data_type="meaning",
        payload={"word": "hola", "definition": "hello"},
        topic_id=topic_id,
    )
    if draft:
        candidate = await lifecycle_service.promote_draft_to_candidate(session, draft.id)
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence
from uuid import UUID

from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..database.models import (
    ApprovedItem,
    Candidate,
    ContentTask,
    Draft,
    LifecycleEvent,
    RejectedItem,
    ReviewQueueEntry,
    ValidatedItem,
    ValidationFailure,
)
from ..errors import NotFoundError
from ..models.content import parse_payload, review_priority

logger = logging.getLogger("refinery.services.lifecycle")


class LifecycleStage(str, Enum):
    """Stages of a content item (and of the content task tracking it)."""
    DRAFT = "DRAFT"
    CANDIDATE = "CANDIDATE"
    VALIDATED = "VALIDATED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class LifecycleService:
    """
    Service for the content lifecycle tables, the review queue and the
    lifecycle event log.
    """

    # =========================================================================
    # EVENT LOG
    # =========================================================================

    async def log_event(
        self,
        session: AsyncSession,
        item_id: UUID,
        item_type: str,
        event_type: str,
        from_stage: Optional[str] = None,
        to_stage: Optional[str] = None,
        success: bool = True,
        error_message: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> LifecycleEvent:
        """
        Append a lifecycle event.

        The event is flushed, not committed: it is persisted together with
        the state change it describes.
        """
        event = LifecycleEvent(
            item_id=item_id,
            item_type=item_type,
            event_type=event_type,
            from_stage=from_stage,
            to_stage=to_stage,
            success=success,
            error_message=error_message,
            payload=payload or {},
        )
        session.add(event)
        await session.flush()

        log_func = logger.info if success else logger.warning
        log_func(f"[{item_type} {item_id}] {event_type} ({from_stage or '-'} → {to_stage or '-'})")
        return event

    async def get_events(self, session: AsyncSession, item_id: UUID) -> List[LifecycleEvent]:
        result = await session.execute(
            select(LifecycleEvent)
            .where(LifecycleEvent.item_id == item_id)
            .order_by(LifecycleEvent.created_at.asc())
        )
        return list(result.scalars().all())

    # =========================================================================
    # DEDUPLICATION
    # =========================================================================

    @staticmethod
    def _same_key(model, topic_id: Optional[UUID], data_type: str, key: str):
        topic_clause = model.topic_id.is_(None) if topic_id is None else model.topic_id == topic_id
        return and_(topic_clause, model.data_type == data_type, model.dedup_key == key)

    async def is_rejected(
        self, session: AsyncSession, topic_id: Optional[UUID], data_type: str, key: Optional[str]
    ) -> bool:
        """True if ``(topic_id, data_type, key)`` was ever rejected."""
        if not key:
            return False
        result = await session.execute(
            select(RejectedItem.id).where(self._same_key(RejectedItem, topic_id, data_type, key)).limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def find_duplicate_stage(
        self, session: AsyncSession, topic_id: Optional[UUID], data_type: str, key: Optional[str]
    ) -> Optional[str]:
        """
        Return the stage where an item with the same key already lives.

        Checked in order: rejected, validated (not rejected), candidate,
        draft. Returns None when the key is new for the topic or when the
        payload has no dedup key.
        """
        if not key:
            return None

        if await self.is_rejected(session, topic_id, data_type, key):
            return LifecycleStage.REJECTED.value

        rejected_ids = select(RejectedItem.validated_id).where(RejectedItem.validated_id.is_not(None))
        checks = (
            (
                LifecycleStage.VALIDATED.value,
                select(ValidatedItem.id).where(
                    self._same_key(ValidatedItem, topic_id, data_type, key),
                    ValidatedItem.id.not_in(rejected_ids),
                ),
            ),
            (
                LifecycleStage.CANDIDATE.value,
                select(Candidate.id).where(self._same_key(Candidate, topic_id, data_type, key)),
            ),
            (
                LifecycleStage.DRAFT.value,
                select(Draft.id).where(self._same_key(Draft, topic_id, data_type, key)),
            ),
        )
        for stage, stmt in checks:
            result = await session.execute(stmt.limit(1))
            if result.scalar_one_or_none() is not None:
                return stage
        return None

    # =========================================================================
    # DRAFT / CANDIDATE / VALIDATED
    # =========================================================================

    async def create_draft(
        self,
        session: AsyncSession,
        data_type: str,
        payload: Dict[str, Any],
        document_id: Optional[UUID] = None,
        chunk_id: Optional[UUID] = None,
        topic_id: Optional[UUID] = None,
        transformation_job_id: Optional[UUID] = None,
        source: str = "document_transform",
    ) -> Optional[Draft]:
        """
        Insert a draft unless the same item already exists for the topic.

        Returns:
            The new Draft, or None when it was skipped as a duplicate
        """
        typed = parse_payload(data_type, payload)
        key = typed.dedup_key()

        existing_stage = await self.find_duplicate_stage(session, topic_id, data_type, key)
        if existing_stage:
            logger.info(
                f"Skipping duplicate {data_type} draft '{key}' for topic {topic_id} "
                f"(already {existing_stage})"
            )
            return None

        draft = Draft(
            data_type=data_type,
            dedup_key=key,
            data=dict(payload),
            source=source,
            document_id=document_id,
            chunk_id=chunk_id,
            topic_id=topic_id,
            transformation_job_id=transformation_job_id,
        )
        session.add(draft)
        await session.flush()

        await self.log_event(
            session,
            item_id=draft.id,
            item_type="draft",
            event_type="draft_created",
            to_stage=LifecycleStage.DRAFT.value,
            payload={"data_type": data_type, "dedup_key": key, "source": source},
        )
        await session.commit()
        await session.refresh(draft)
        return draft

    async def get_draft(self, session: AsyncSession, draft_id: UUID) -> Optional[Draft]:
        result = await session.execute(select(Draft).where(Draft.id == draft_id))
        return result.scalar_one_or_none()

    async def get_drafts_for_job(self, session: AsyncSession, job_id: UUID) -> List[Draft]:
        result = await session.execute(
            select(Draft)
            .where(Draft.transformation_job_id == job_id)
            .order_by(Draft.created_at.asc())
        )
        return list(result.scalars().all())

    async def get_unnormalized_drafts(self, session: AsyncSession, limit: int = 10) -> List[Draft]:
        """Drafts that have not been promoted to a candidate, oldest first."""
        result = await session.execute(
            select(Draft)
            .where(Draft.id.not_in(select(Candidate.draft_id)))
            .order_by(Draft.created_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def promote_draft_to_candidate(
        self, session: AsyncSession, draft_id: UUID
    ) -> Optional[Candidate]:
        """
        Normalize a draft into a candidate.

        Returns the existing candidate if the draft was already promoted,
        or None if the draft's key has been rejected for its topic.

        Raises:
            NotFoundError: If the draft does not exist
        """
        draft = await self.get_draft(session, draft_id)
        if not draft:
            raise NotFoundError("Draft", draft_id)

        result = await session.execute(select(Candidate).where(Candidate.draft_id == draft_id))
        existing = result.scalar_one_or_none()
        if existing:
            return existing

        if await self.is_rejected(session, draft.topic_id, draft.data_type, draft.dedup_key):
            logger.info(
                f"Draft {draft_id} not promoted: '{draft.dedup_key}' was rejected for topic {draft.topic_id}"
            )
            return None

        normalized = parse_payload(draft.data_type, draft.data).model_dump(exclude_none=True)
        candidate = Candidate(
            draft_id=draft.id,
            data_type=draft.data_type,
            dedup_key=draft.dedup_key,
            data=normalized,
            topic_id=draft.topic_id,
        )
        session.add(candidate)
        await session.flush()

        await self.log_event(
            session,
            item_id=candidate.id,
            item_type="candidate",
            event_type="promoted_to_candidate",
            from_stage=LifecycleStage.DRAFT.value,
            to_stage=LifecycleStage.CANDIDATE.value,
            payload={"draft_id": str(draft.id)},
        )
        await self._set_content_stage(session, draft.id, LifecycleStage.CANDIDATE)
        await session.commit()
        await session.refresh(candidate)
        return candidate

    async def get_candidate(self, session: AsyncSession, candidate_id: UUID) -> Optional[Candidate]:
        result = await session.execute(select(Candidate).where(Candidate.id == candidate_id))
        return result.scalar_one_or_none()

    async def get_unresolved_candidates(
        self, session: AsyncSession, limit: int = 10
    ) -> List[Candidate]:
        """Candidates without a validated row, oldest first."""
        result = await session.execute(
            select(Candidate)
            .where(Candidate.id.not_in(select(ValidatedItem.candidate_id)))
            .order_by(Candidate.created_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def promote_candidate_to_validated(
        self,
        session: AsyncSession,
        candidate_id: UUID,
        gate_results: Sequence[Any] = (),
    ) -> Optional[ValidatedItem]:
        """
        Promote a candidate that passed its gates.

        Writes the validated row, a ``promoted_to_validated`` event and a
        review queue entry in one commit. Returns the existing validated row
        if the candidate was already promoted, or None if its key has been
        rejected for the topic.

        Raises:
            NotFoundError: If the candidate does not exist
        """
        candidate = await self.get_candidate(session, candidate_id)
        if not candidate:
            raise NotFoundError("Candidate", candidate_id)

        result = await session.execute(
            select(ValidatedItem).where(ValidatedItem.candidate_id == candidate_id)
        )
        existing = result.scalar_one_or_none()
        if existing:
            return existing

        if await self.is_rejected(session, candidate.topic_id, candidate.data_type, candidate.dedup_key):
            logger.info(
                f"Candidate {candidate_id} not validated: '{candidate.dedup_key}' was rejected "
                f"for topic {candidate.topic_id}"
            )
            return None

        results = [r.to_dict() if hasattr(r, "to_dict") else dict(r) for r in gate_results]
        validated = ValidatedItem(
            candidate_id=candidate.id,
            data_type=candidate.data_type,
            dedup_key=candidate.dedup_key,
            data=dict(candidate.data or {}),
            topic_id=candidate.topic_id,
            validation_results=results,
        )
        session.add(validated)
        await session.flush()

        priority = review_priority(candidate.data_type)
        await self.log_event(
            session,
            item_id=validated.id,
            item_type="validated",
            event_type="promoted_to_validated",
            from_stage=LifecycleStage.CANDIDATE.value,
            to_stage=LifecycleStage.VALIDATED.value,
            payload={"candidate_id": str(candidate.id), "gates_passed": len(results)},
        )
        await self._enqueue(session, validated.id, candidate.data_type, priority)
        await self._set_content_stage(session, candidate.draft_id, LifecycleStage.VALIDATED)
        await session.commit()
        await session.refresh(validated)
        return validated

    async def record_gate_failures(
        self,
        session: AsyncSession,
        candidate: Candidate,
        failures: Sequence[Any],
    ) -> List[ValidationFailure]:
        """
        Persist one ValidationFailure per failing gate and a
        ``quality_gates_failed`` event. The candidate stays unresolved.
        """
        rows = []
        for failure in failures:
            row = ValidationFailure(
                candidate_id=candidate.id,
                data_type=candidate.data_type,
                gate_name=failure.gate_name,
                failure_reason=failure.reason or "Gate failed",
                score=failure.score,
                failure_details=dict(failure.details or {}),
            )
            session.add(row)
            rows.append(row)

        await session.flush()
        await self.log_event(
            session,
            item_id=candidate.id,
            item_type="candidate",
            event_type="quality_gates_failed",
            from_stage=LifecycleStage.CANDIDATE.value,
            to_stage=LifecycleStage.CANDIDATE.value,
            success=False,
            error_message="; ".join(f"{f.gate_name}: {f.reason}" for f in failures),
            payload={"failed_gates": [f.gate_name for f in failures]},
        )
        await session.commit()
        return rows

    async def get_validation_failures(
        self, session: AsyncSession, candidate_id: UUID
    ) -> List[ValidationFailure]:
        result = await session.execute(
            select(ValidationFailure)
            .where(ValidationFailure.candidate_id == candidate_id)
            .order_by(ValidationFailure.created_at.asc())
        )
        return list(result.scalars().all())

    async def get_validated(self, session: AsyncSession, validated_id: UUID) -> Optional[ValidatedItem]:
        result = await session.execute(select(ValidatedItem).where(ValidatedItem.id == validated_id))
        return result.scalar_one_or_none()

    # =========================================================================
    # REVIEW OUTCOMES
    # =========================================================================

    async def record_rejection(
        self,
        session: AsyncSession,
        validated_id: UUID,
        reason: str,
        rejected_by: Optional[str] = None,
    ) -> RejectedItem:
        """
        Record a reviewer's rejection of a validated item.

        The item's ``(topic, data_type, dedup_key)`` is blocked from
        re-entering the lifecycle for that topic from now on.

        Raises:
            NotFoundError: If the validated item does not exist
            ValueError: If the item was already approved
        """
        validated = await self.get_validated(session, validated_id)
        if not validated:
            raise NotFoundError("ValidatedItem", validated_id)

        result = await session.execute(
            select(RejectedItem).where(RejectedItem.validated_id == validated_id)
        )
        existing = result.scalar_one_or_none()
        if existing:
            return existing
        if await self._is_approved(session, validated_id):
            raise ValueError(f"Validated item {validated_id} is already approved")

        rejected = RejectedItem(
            validated_id=validated.id,
            data_type=validated.data_type,
            dedup_key=validated.dedup_key,
            topic_id=validated.topic_id,
            reason=reason,
            rejected_data=dict(validated.data or {}),
            rejected_by=rejected_by,
        )
        session.add(rejected)
        await session.flush()

        await self.log_event(
            session,
            item_id=validated.id,
            item_type="validated",
            event_type="rejected",
            from_stage=LifecycleStage.VALIDATED.value,
            to_stage=LifecycleStage.REJECTED.value,
            payload={"reason": reason, "rejected_by": rejected_by},
        )
        await self._mark_reviewed(session, validated.id, "reject")
        draft_id = await self._draft_id_for_validated(session, validated)
        if draft_id:
            await self._set_content_stage(session, draft_id, LifecycleStage.REJECTED)
        await session.commit()
        await session.refresh(rejected)
        return rejected

    async def approve_validated(
        self,
        session: AsyncSession,
        validated_id: UUID,
        approved_by: Optional[str] = None,
    ) -> ApprovedItem:
        """
        Record a reviewer's approval of a validated item.

        Raises:
            NotFoundError: If the validated item does not exist
            ValueError: If the item was already rejected
        """
        validated = await self.get_validated(session, validated_id)
        if not validated:
            raise NotFoundError("ValidatedItem", validated_id)

        result = await session.execute(
            select(ApprovedItem).where(ApprovedItem.validated_id == validated_id)
        )
        existing = result.scalar_one_or_none()
        if existing:
            return existing
        if await self.is_rejected(session, validated.topic_id, validated.data_type, validated.dedup_key):
            raise ValueError(f"Validated item {validated_id} has been rejected")

        approved = ApprovedItem(
            validated_id=validated.id,
            data_type=validated.data_type,
            data=dict(validated.data or {}),
            topic_id=validated.topic_id,
            approved_by=approved_by,
        )
        session.add(approved)
        await session.flush()

        await self.log_event(
            session,
            item_id=validated.id,
            item_type="validated",
            event_type="approved",
            from_stage=LifecycleStage.VALIDATED.value,
            to_stage=LifecycleStage.APPROVED.value,
            payload={"approved_by": approved_by},
        )
        await self._mark_reviewed(session, validated.id, "approve")
        draft_id = await self._draft_id_for_validated(session, validated)
        if draft_id:
            await self._set_content_stage(session, draft_id, LifecycleStage.APPROVED)
        await session.commit()
        await session.refresh(approved)
        return approved

    # =========================================================================
    # REVIEW QUEUE
    # =========================================================================

    async def enqueue_for_review(
        self,
        session: AsyncSession,
        item_id: UUID,
        data_type: str,
        priority: Optional[int] = None,
    ) -> ReviewQueueEntry:
        """Queue an item for human review (idempotent per item)."""
        entry = await self._enqueue(
            session, item_id, data_type, priority if priority is not None else review_priority(data_type)
        )
        await session.commit()
        await session.refresh(entry)
        return entry

    async def get_review_queue(self, session: AsyncSession, limit: int = 50) -> List[ReviewQueueEntry]:
        """Pending review entries, highest priority first."""
        result = await session.execute(
            select(ReviewQueueEntry)
            .where(ReviewQueueEntry.reviewed_at.is_(None))
            .order_by(ReviewQueueEntry.priority.asc(), ReviewQueueEntry.queued_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def _enqueue(
        self, session: AsyncSession, item_id: UUID, data_type: str, priority: int
    ) -> ReviewQueueEntry:
        result = await session.execute(
            select(ReviewQueueEntry).where(ReviewQueueEntry.item_id == item_id)
        )
        entry = result.scalar_one_or_none()
        if entry:
            return entry

        entry = ReviewQueueEntry(item_id=item_id, data_type=data_type, priority=priority)
        session.add(entry)
        await session.flush()
        logger.debug(f"Queued {data_type} {item_id} for review (priority {priority})")
        return entry

    async def _mark_reviewed(self, session: AsyncSession, item_id: UUID, decision: str) -> None:
        result = await session.execute(
            select(ReviewQueueEntry).where(ReviewQueueEntry.item_id == item_id)
        )
        entry = result.scalar_one_or_none()
        if entry:
            entry.reviewed_at = datetime.utcnow()
            entry.decision = decision

    async def _is_approved(self, session: AsyncSession, validated_id: UUID) -> bool:
        result = await session.execute(
            select(ApprovedItem.id).where(ApprovedItem.validated_id == validated_id)
        )
        return result.scalar_one_or_none() is not None

    # =========================================================================
    # CONTENT TASKS
    # =========================================================================

    async def create_content_task(
        self, session: AsyncSession, pipeline_id: UUID, draft: Draft
    ) -> ContentTask:
        """Track a draft under a pipeline, starting at its current stage (idempotent per draft)."""
        result = await session.execute(select(ContentTask).where(ContentTask.item_id == draft.id))
        task = result.scalar_one_or_none()
        if task:
            return task

        task = ContentTask(
            pipeline_id=pipeline_id,
            item_id=draft.id,
            item_type="draft",
            data_type=draft.data_type,
            current_stage=await self._current_stage(session, draft.id),
        )
        session.add(task)
        await session.commit()
        await session.refresh(task)
        return task

    async def get_content_tasks(self, session: AsyncSession, pipeline_id: UUID) -> List[ContentTask]:
        result = await session.execute(
            select(ContentTask)
            .where(ContentTask.pipeline_id == pipeline_id)
            .order_by(ContentTask.created_at.asc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def count_unapproved_content_tasks(self, session: AsyncSession, pipeline_id: UUID) -> int:
        result = await session.execute(
            select(func.count())
            .select_from(ContentTask)
            .where(
                ContentTask.pipeline_id == pipeline_id,
                ContentTask.current_stage != LifecycleStage.APPROVED.value,
            )
        )
        return result.scalar() or 0

    async def update_content_stage(
        self, session: AsyncSession, draft_id: UUID, stage: LifecycleStage
    ) -> None:
        await self._set_content_stage(session, draft_id, stage)
        await session.commit()

    async def _set_content_stage(
        self, session: AsyncSession, draft_id: UUID, stage: LifecycleStage
    ) -> None:
        result = await session.execute(select(ContentTask).where(ContentTask.item_id == draft_id))
        task = result.scalar_one_or_none()
        if task:
            task.current_stage = LifecycleStage(stage).value
            task.updated_at = datetime.utcnow()

    async def _draft_id_for_validated(
        self, session: AsyncSession, validated: ValidatedItem
    ) -> Optional[UUID]:
        result = await session.execute(
            select(Candidate.draft_id).where(Candidate.id == validated.candidate_id)
        )
        return result.scalar_one_or_none()

    async def _current_stage(self, session: AsyncSession, draft_id: UUID) -> str:
        result = await session.execute(select(Candidate.id).where(Candidate.draft_id == draft_id))
        candidate_id = result.scalar_one_or_none()
        if candidate_id is None:
            return LifecycleStage.DRAFT.value

        result = await session.execute(
            select(ValidatedItem.id).where(ValidatedItem.candidate_id == candidate_id)
        )
        validated_id = result.scalar_one_or_none()
        if validated_id is None:
            return LifecycleStage.CANDIDATE.value
        if await self._is_approved(session, validated_id):
            return LifecycleStage.APPROVED.value
        result = await session.execute(
            select(RejectedItem.id).where(RejectedItem.validated_id == validated_id)
        )
        if result.scalar_one_or_none() is not None:
            return LifecycleStage.REJECTED.value
        return LifecycleStage.VALIDATED.value


# Global service instance
lifecycle_service = LifecycleService()
