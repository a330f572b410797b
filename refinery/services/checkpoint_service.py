# refinery/services/checkpoint_service.py
"""
Service checkpoints and error records for the refinement worker.

The worker writes a checkpoint after every tick that did work, a heartbeat
checkpoint (``metadata.heartbeat = true``) when it has been idle for a
while, and an error checkpoint when a tick raises. A checkpoint older than
``healthy_checkpoint_age_seconds`` means the worker is stalled or dead.

Usage:
    from refinery.services.checkpoint_service import checkpoint_service

    await checkpoint_service.save_checkpoint(session, item_id, "pipeline", {"processed": 3})
    healthy = await checkpoint_service.is_healthy(session)
"""

import logging
import traceback
from datetime import datetime, timedelta
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..database.models import ServiceCheckpoint, ServiceError

logger = logging.getLogger("refinery.services.checkpoint")


class CheckpointService:
    """
    Reads and writes the worker's checkpoint row.

    One row per service name; every save overwrites it.
    """

    def __init__(self, service_name: Optional[str] = None):
        self.service_name = service_name or settings.service_name

    async def save_checkpoint(
        self,
        session: AsyncSession,
        last_processed_id: Optional[UUID] = None,
        last_processed_type: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ServiceCheckpoint:
        """
        Upsert the checkpoint with the current time.

        Args:
            session: Database session
            last_processed_id: Id of the last item the worker touched
            last_processed_type: Kind of that item (pipeline, candidate, ...)
            metadata: Free-form state (processed counts, heartbeat, error)

        Returns:
            The stored checkpoint
        """
        checkpoint = await session.get(ServiceCheckpoint, self.service_name)
        if checkpoint is None:
            checkpoint = ServiceCheckpoint(service_name=self.service_name)
            session.add(checkpoint)

        checkpoint.last_processed_id = str(last_processed_id) if last_processed_id else None
        checkpoint.last_processed_type = last_processed_type
        checkpoint.timestamp = datetime.utcnow()
        checkpoint.state_metadata = metadata or {}

        await session.commit()
        logger.debug(f"Checkpoint saved for {self.service_name} ({last_processed_type} {last_processed_id})")
        return checkpoint

    async def get_checkpoint(self, session: AsyncSession) -> Optional[ServiceCheckpoint]:
        result = await session.execute(
            select(ServiceCheckpoint)
            .where(ServiceCheckpoint.service_name == self.service_name)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def save_error(
        self,
        session: AsyncSession,
        error: BaseException,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ServiceError:
        """Record an error raised by the worker loop."""
        record = ServiceError(
            service_name=self.service_name,
            error_type=type(error).__name__,
            error_message=str(error) or type(error).__name__,
            stack_trace="".join(traceback.format_exception(type(error), error, error.__traceback__)),
            error_metadata=metadata or {},
        )
        session.add(record)
        await session.commit()
        return record

    async def is_healthy(self, session: AsyncSession, now: Optional[datetime] = None) -> bool:
        """True if a checkpoint exists and is at most five minutes old."""
        checkpoint = await self.get_checkpoint(session)
        if checkpoint is None or checkpoint.timestamp is None:
            return False
        age = (now or datetime.utcnow()) - checkpoint.timestamp
        return age <= timedelta(seconds=settings.healthy_checkpoint_age_seconds)


# Global checkpoint service instance
checkpoint_service = CheckpointService()
