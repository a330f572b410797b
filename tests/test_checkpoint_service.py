"""
Tests for CheckpointService: upserts, error records and health.
"""

from datetime import datetime, timedelta
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from refinery.database.models import ServiceCheckpoint, ServiceError
from refinery.services.checkpoint_service import CheckpointService


class TestCheckpoints:
    """Tests for save_checkpoint and get_checkpoint."""

    @pytest.mark.asyncio
    async def test_no_checkpoint(self, session):
        assert await CheckpointService("svc").get_checkpoint(session) is None

    @pytest.mark.asyncio
    async def test_save_overwrites_single_row(self, session):
        service = CheckpointService("svc")
        first_id, second_id = uuid4(), uuid4()

        await service.save_checkpoint(session, first_id, "pipeline", {"processed": 1})
        await service.save_checkpoint(session, second_id, "validated", {"processed": 4})

        checkpoint = await service.get_checkpoint(session)
        assert checkpoint.last_processed_id == str(second_id)
        assert checkpoint.last_processed_type == "validated"
        assert checkpoint.state_metadata == {"processed": 4}

        result = await session.execute(select(func.count()).select_from(ServiceCheckpoint))
        assert result.scalar() == 1

    @pytest.mark.asyncio
    async def test_services_are_separate(self, session):
        await CheckpointService("a").save_checkpoint(session, None, None, {"heartbeat": True})

        assert await CheckpointService("b").get_checkpoint(session) is None
        checkpoint = await CheckpointService("a").get_checkpoint(session)
        assert checkpoint.last_processed_id is None
        assert checkpoint.state_metadata["heartbeat"] is True


class TestHealth:
    @pytest.mark.asyncio
    async def test_unhealthy_without_checkpoint(self, session):
        assert await CheckpointService("svc").is_healthy(session) is False

    @pytest.mark.asyncio
    async def test_health_follows_checkpoint_age(self, session):
        service = CheckpointService("svc")
        await service.save_checkpoint(session, None, None)
        checkpoint = await service.get_checkpoint(session)

        assert await service.is_healthy(session, now=checkpoint.timestamp + timedelta(seconds=60)) is True
        assert await service.is_healthy(session, now=checkpoint.timestamp + timedelta(seconds=300)) is True
        assert await service.is_healthy(session, now=checkpoint.timestamp + timedelta(seconds=301)) is False


class TestErrors:
    @pytest.mark.asyncio
    async def test_save_error(self, session):
        service = CheckpointService("svc")
        try:
            raise RuntimeError("database unavailable")
        except RuntimeError as e:
            await service.save_error(session, e, {"phase": "main_loop"})

        record = (await session.execute(select(ServiceError))).scalar_one()
        assert record.service_name == "svc"
        assert record.error_type == "RuntimeError"
        assert record.error_message == "database unavailable"
        assert "Traceback" in record.stack_trace
        assert record.error_metadata == {"phase": "main_loop"}
        assert record.occurred_at <= datetime.utcnow()

    @pytest.mark.asyncio
    async def test_error_without_message_uses_type(self, session):
        record = await CheckpointService("svc").save_error(session, TimeoutError())

        assert record.error_message == "TimeoutError"
        assert record.error_metadata == {}
