# refinery/services/promotion_service.py
"""
Promotion Engine - sweeps unresolved candidates through the quality gates.

Each batch:
1. Normalizes drafts that have no candidate yet (draft -> candidate).
2. Selects up to ``limit`` candidates without a validated row, oldest first.
3. Skips candidates whose dedup key was rejected for their topic.
4. Runs the gates; on pass writes the validated row, a
   ``promoted_to_validated`` event and a review queue entry; on failure
   records one ValidationFailure per failing gate and a
   ``quality_gates_failed`` event. Failed candidates stay unresolved and
   are selected again by later batches.

Usage:
    from refinery.services.promotion_service import promotion_service

    advanced = await promotion_service.process_batch(session, limit=10)
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Sequence
from uuid import UUID

from sqlalchemy import and_, exists, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..database.models import Candidate, Draft, RejectedItem
from ..models.content import parse_payload
from .lifecycle_service import LifecycleService, lifecycle_service
from .quality_gates import (
    GateInput,
    GateRunOutcome,
    QualityGate,
    build_gate_input,
    default_gates,
    run_tier_ordered,
)

logger = logging.getLogger("refinery.services.promotion")

GateRunner = Callable[[Sequence[QualityGate], GateInput], Awaitable[GateRunOutcome]]


@dataclass
class PromotionBatchResult:
    """Counts for one promotion batch."""
    normalized: int = 0
    promoted: int = 0
    failed: int = 0
    skipped: int = 0
    errors: int = 0
    last_item_id: Optional[UUID] = None
    last_item_type: Optional[str] = None

    @property
    def advanced(self) -> int:
        return self.promoted + self.failed


class PromotionService:
    """
    Quality-gate promotion of candidates.

    Attributes:
        gates: Ordered gate list (caller order is kept within a tier)
        runner: Gate runner; defaults to tier-ordered, stop at first failure
    """

    def __init__(
        self,
        gates: Optional[Sequence[QualityGate]] = None,
        runner: Optional[GateRunner] = None,
        lifecycle: Optional[LifecycleService] = None,
    ):
        self.gates: List[QualityGate] = list(gates) if gates is not None else default_gates()
        self.runner: GateRunner = runner or run_tier_ordered
        self.lifecycle = lifecycle or lifecycle_service

    async def process_batch(self, session: AsyncSession, limit: Optional[int] = None) -> int:
        """
        Run one promotion batch.

        Returns:
            Number of candidates advanced (promoted or recorded as failed)
        """
        result = await self.run_batch(session, limit)
        return result.advanced

    async def run_batch(
        self, session: AsyncSession, limit: Optional[int] = None
    ) -> PromotionBatchResult:
        """Run one promotion batch and return detailed counts."""
        limit = limit or settings.promotion_batch_size
        batch = PromotionBatchResult()

        batch.normalized = await self.normalize_drafts(session, limit)

        candidates = await self.lifecycle.get_unresolved_candidates(session, limit)
        if not candidates:
            return batch

        logger.debug(f"Evaluating {len(candidates)} candidate(s)")

        for candidate_id in [c.id for c in candidates]:
            try:
                candidate = await self.lifecycle.get_candidate(session, candidate_id)
                await self._evaluate(session, candidate, batch)
            except Exception as e:
                batch.errors += 1
                await session.rollback()
                logger.exception(f"Error evaluating candidate {candidate_id}: {e}")

        if batch.advanced or batch.skipped:
            logger.info(
                f"Promotion batch: {batch.promoted} promoted, {batch.failed} failed gates, "
                f"{batch.skipped} skipped (rejected)"
            )
        return batch

    async def normalize_drafts(self, session: AsyncSession, limit: int) -> int:
        """Promote drafts without a candidate (and not rejected) into candidates."""
        rejected_match = exists().where(
            and_(
                RejectedItem.topic_id == Draft.topic_id,
                RejectedItem.data_type == Draft.data_type,
                RejectedItem.dedup_key == Draft.dedup_key,
            )
        )
        result = await session.execute(
            select(Draft)
            .where(Draft.id.not_in(select(Candidate.draft_id)), ~rejected_match)
            .order_by(Draft.created_at.asc())
            .limit(limit)
        )
        drafts = list(result.scalars().all())

        normalized = 0
        for draft in drafts:
            candidate = await self.lifecycle.promote_draft_to_candidate(session, draft.id)
            if candidate:
                normalized += 1
        if normalized:
            logger.info(f"Normalized {normalized} draft(s) into candidates")
        return normalized

    async def _evaluate(
        self, session: AsyncSession, candidate: Candidate, batch: PromotionBatchResult
    ) -> None:
        key = parse_payload(candidate.data_type, candidate.data).dedup_key()
        if await self.lifecycle.is_rejected(session, candidate.topic_id, candidate.data_type, key):
            batch.skipped += 1
            logger.info(
                f"Skipping candidate {candidate.id}: '{key}' was rejected for topic {candidate.topic_id}"
            )
            return

        outcome = await self.runner(self.gates, build_gate_input(candidate))

        if outcome.passed:
            validated = await self.lifecycle.promote_candidate_to_validated(
                session, candidate.id, outcome.results
            )
            if validated is None:
                batch.skipped += 1
                return
            batch.promoted += 1
            batch.last_item_id = validated.id
            batch.last_item_type = "validated"
            return

        await self.lifecycle.record_gate_failures(session, candidate, outcome.failures)
        batch.failed += 1
        batch.last_item_id = candidate.id
        batch.last_item_type = "candidate"
        logger.info(f"Candidate {candidate.id} failed gate '{outcome.failed_at}'")


# Global service instance
promotion_service = PromotionService()
