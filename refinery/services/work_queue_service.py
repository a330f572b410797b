# refinery/services/work_queue_service.py
"""
External prioritized work queue.

Other systems (gap analysis, content planners) drop WorkItems into the
queue; the worker claims at most one per tick and hands it to the handler
registered for its ``work_type``.

Claiming order is priority (1 = critical first), then age. Items left in
``processing`` for longer than ``stale_work_hours`` are released back to
``pending`` by ``release_stale``.

ADDING A HANDLER:
    class MeaningGapHandler:
        work_type = "meaning"

        async def process(self, session, item):
            ...

    work_queue_service.register(MeaningGapHandler())

Usage:
    from refinery.services.work_queue_service import WorkPriority, work_queue_service

    await work_queue_service.enqueue(session, "meaning", {"language": "ES"}, WorkPriority.HIGH)
    item = await work_queue_service.process_next(session)
"""

import logging
from datetime import datetime, timedelta
from enum import IntEnum
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..database.models import WorkItem
from ..errors import NotFoundError

logger = logging.getLogger("refinery.services.work_queue")


class WorkPriority(IntEnum):
    CRITICAL = 1
    HIGH = 2
    MEDIUM = 3
    LOW = 4


@runtime_checkable
class WorkHandler(Protocol):
    """Processes work items of one ``work_type``."""
    work_type: str

    async def process(self, session: AsyncSession, item: WorkItem) -> None:
        ...


class WorkQueueService:
    """Priority queue of WorkItems with a handler registry."""

    def __init__(self):
        self._handlers: Dict[str, WorkHandler] = {}

    # =========================================================================
    # HANDLER REGISTRY
    # =========================================================================

    def register(self, handler: WorkHandler) -> None:
        if handler.work_type in self._handlers:
            logger.warning(f"Replacing handler for work type '{handler.work_type}'")
        self._handlers[handler.work_type] = handler
        logger.debug(f"Registered handler for work type '{handler.work_type}'")

    def unregister(self, work_type: str) -> None:
        self._handlers.pop(work_type, None)

    def get_handler(self, work_type: str) -> Optional[WorkHandler]:
        return self._handlers.get(work_type)

    @property
    def work_types(self) -> List[str]:
        return sorted(self._handlers)

    # =========================================================================
    # QUEUE OPERATIONS
    # =========================================================================

    async def enqueue(
        self,
        session: AsyncSession,
        work_type: str,
        payload: Optional[Dict[str, Any]] = None,
        priority: int = WorkPriority.MEDIUM,
    ) -> WorkItem:
        """Add a pending work item."""
        item = WorkItem(
            work_type=work_type,
            priority=int(priority),
            status="pending",
            payload=payload or {},
        )
        session.add(item)
        await session.commit()
        await session.refresh(item)
        logger.info(f"Queued {work_type} work item {item.id} (priority {int(priority)})")
        return item

    async def claim_next(self, session: AsyncSession) -> Optional[WorkItem]:
        """
        Claim the highest-priority pending item.

        The item moves to ``processing`` with ``claimed_at`` set and its
        attempt count incremented.

        Returns:
            The claimed item, or None if the queue is empty
        """
        result = await session.execute(
            select(WorkItem)
            .where(WorkItem.status == "pending")
            .order_by(WorkItem.priority.asc(), WorkItem.created_at.asc())
            .limit(1)
        )
        item = result.scalar_one_or_none()
        if not item:
            return None

        item.status = "processing"
        item.claimed_at = datetime.utcnow()
        item.attempts = (item.attempts or 0) + 1
        await session.commit()
        return item

    async def mark_complete(self, session: AsyncSession, item_id: UUID) -> WorkItem:
        item = await self._require(session, item_id)
        item.status = "completed"
        item.completed_at = datetime.utcnow()
        item.error_message = None
        await session.commit()
        return item

    async def mark_failed(self, session: AsyncSession, item_id: UUID, error_message: str) -> WorkItem:
        item = await self._require(session, item_id)
        item.status = "failed"
        item.completed_at = datetime.utcnow()
        item.error_message = error_message
        await session.commit()
        return item

    async def release_stale(self, session: AsyncSession, max_age_hours: Optional[int] = None) -> int:
        """
        Return items claimed more than ``max_age_hours`` ago to ``pending``.

        Returns:
            Number of items released
        """
        hours = max_age_hours if max_age_hours is not None else settings.stale_work_hours
        cutoff = datetime.utcnow() - timedelta(hours=hours)
        result = await session.execute(
            update(WorkItem)
            .where(WorkItem.status == "processing", WorkItem.claimed_at < cutoff)
            .values(status="pending", claimed_at=None)
        )
        released = result.rowcount or 0
        await session.commit()
        if released:
            logger.warning(f"Released {released} stale work item(s) older than {hours}h")
        return released

    async def process_next(self, session: AsyncSession) -> Optional[WorkItem]:
        """
        Claim one item and run its handler.

        Items without a registered handler are marked failed. Handler errors
        mark the item failed and are not re-raised.

        Returns:
            The processed item (completed or failed), or None if idle
        """
        item = await self.claim_next(session)
        if not item:
            return None

        item_id, work_type = item.id, item.work_type
        handler = self.get_handler(work_type)
        if handler is None:
            logger.error(f"No handler for work type '{work_type}'; failing item {item_id}")
            return await self.mark_failed(session, item_id, f"No handler for work type '{work_type}'")

        try:
            await handler.process(session, item)
        except Exception as e:
            await session.rollback()
            logger.exception(f"Work item {item_id} ({work_type}) failed: {e}")
            return await self.mark_failed(session, item_id, str(e) or type(e).__name__)

        logger.info(f"Work item {item_id} ({work_type}) completed")
        return await self.mark_complete(session, item_id)

    async def count_by_status(self, session: AsyncSession) -> Dict[str, int]:
        result = await session.execute(
            select(WorkItem.status, func.count()).group_by(WorkItem.status)
        )
        return {status: count for status, count in result.all()}

    async def _require(self, session: AsyncSession, item_id: UUID) -> WorkItem:
        item = await session.get(WorkItem, item_id)
        if not item:
            raise NotFoundError("WorkItem", item_id)
        return item


# Global work queue instance
work_queue_service = WorkQueueService()
