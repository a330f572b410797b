"""
Tests for the promotion engine.

Candidates run through quality gates: passing ones become validated items
with a review queue entry, failing ones get one ValidationFailure per
failing gate and stay unresolved.
"""

import pytest
from sqlalchemy import func, select

from refinery.database.models import Candidate, Draft, ReviewQueueEntry, ValidatedItem, ValidationFailure
from refinery.services.lifecycle_service import LifecycleService
from refinery.services.promotion_service import PromotionService
from refinery.services.quality_gates import GateResult, run_gates_by_tier


class StubGate:
    """Gate with a fixed outcome."""

    def __init__(self, name, passed=True, tier=1):
        self.name = name
        self.tier = tier
        self.passed = passed
        self.calls = 0

    async def check(self, gate_input):
        self.calls += 1
        reason = None if self.passed else f"{self.name} rejected '{gate_input.text}'"
        return GateResult(self.name, self.passed, reason, 1.0 if self.passed else 0.2)


@pytest.fixture
def lifecycle():
    return LifecycleService()


@pytest.fixture
def topic_id(curriculum):
    return curriculum["vocabulary"].id


async def count(session, model):
    result = await session.execute(select(func.count()).select_from(model))
    return result.scalar()


async def make_candidate(lifecycle, session, topic_id, data_type="meaning", payload=None):
    draft = await lifecycle.create_draft(
        session, data_type, payload or {"word": "hola", "definition": "hello"}, topic_id=topic_id
    )
    return await lifecycle.promote_draft_to_candidate(session, draft.id)


class TestPromotionPass:
    """Candidates that pass every gate."""

    @pytest.mark.asyncio
    async def test_pass_creates_validated_and_review_entry(self, lifecycle, session, topic_id):
        candidate = await make_candidate(lifecycle, session, topic_id)
        service = PromotionService(gates=[StubGate("a"), StubGate("b")], lifecycle=lifecycle)

        advanced = await service.process_batch(session, 10)

        assert advanced == 1
        assert await count(session, ValidatedItem) == 1
        entry = (await session.execute(select(ReviewQueueEntry))).scalar_one()
        assert entry.priority == 2
        validated = (await session.execute(select(ValidatedItem))).scalar_one()
        assert validated.candidate_id == candidate.id
        assert entry.item_id == validated.id

    @pytest.mark.asyncio
    async def test_rule_gets_top_review_priority(self, lifecycle, session, curriculum):
        await make_candidate(
            lifecycle, session, curriculum["grammar"].id, "rule", {"title": "Ser", "explanation": "To be"}
        )
        service = PromotionService(gates=[StubGate("a")], lifecycle=lifecycle)

        await service.process_batch(session, 10)

        entry = (await session.execute(select(ReviewQueueEntry))).scalar_one()
        assert entry.priority == 1

    @pytest.mark.asyncio
    async def test_second_batch_does_nothing(self, lifecycle, session, topic_id):
        await make_candidate(lifecycle, session, topic_id)
        service = PromotionService(gates=[StubGate("a")], lifecycle=lifecycle)

        assert await service.process_batch(session, 10) == 1
        assert await service.process_batch(session, 10) == 0

    @pytest.mark.asyncio
    async def test_batch_normalizes_drafts_first(self, lifecycle, session, topic_id):
        """A bare draft is normalized and evaluated in the same batch."""
        await lifecycle.create_draft(session, "meaning", {"word": "adiós", "definition": "bye"}, topic_id=topic_id)
        service = PromotionService(gates=[StubGate("a")], lifecycle=lifecycle)

        batch = await service.run_batch(session, 10)

        assert batch.normalized == 1
        assert batch.promoted == 1
        assert batch.last_item_type == "validated"


class TestPromotionFail:
    """Candidates that fail a gate."""

    @pytest.mark.asyncio
    async def test_fail_records_one_failure_per_failing_gate(self, lifecycle, session, topic_id):
        candidate = await make_candidate(lifecycle, session, topic_id)
        gates = [StubGate("cefr", passed=False), StubGate("orthography", passed=False), StubGate("ok")]
        service = PromotionService(gates=gates, runner=run_gates_by_tier, lifecycle=lifecycle)

        advanced = await service.process_batch(session, 10)

        assert advanced == 1
        assert await count(session, ValidatedItem) == 0
        failures = await lifecycle.get_validation_failures(session, candidate.id)
        assert sorted(f.gate_name for f in failures) == ["cefr", "orthography"]

        events = await lifecycle.get_events(session, candidate.id)
        assert events[-1].event_type == "quality_gates_failed"
        assert events[-1].success is False

    @pytest.mark.asyncio
    async def test_default_runner_stops_at_first_failure(self, lifecycle, session, topic_id):
        await make_candidate(lifecycle, session, topic_id)
        later = StubGate("later", tier=2)
        gates = [later, StubGate("first", passed=False, tier=1)]
        service = PromotionService(gates=gates, lifecycle=lifecycle)

        await service.process_batch(session, 10)

        assert later.calls == 0
        assert await count(session, ValidationFailure) == 1

    @pytest.mark.asyncio
    async def test_failed_candidate_is_reselected(self, lifecycle, session, topic_id):
        """Gate failures leave the candidate unresolved for the next batch."""
        await make_candidate(lifecycle, session, topic_id)
        gate = StubGate("strict", passed=False)
        service = PromotionService(gates=[gate], lifecycle=lifecycle)

        await service.process_batch(session, 10)
        await service.process_batch(session, 10)

        assert gate.calls == 2
        assert await count(session, ValidationFailure) == 2


class TestPromotionRejected:
    """Candidates whose key was rejected for the topic."""

    @pytest.mark.asyncio
    async def test_rejected_key_is_skipped(self, lifecycle, session, topic_id):
        first = await make_candidate(lifecycle, session, topic_id)
        validated = await lifecycle.promote_candidate_to_validated(session, first.id)
        await lifecycle.record_rejection(session, validated.id, "wrong")

        # Same key, written before the rejection existed
        stale_draft = Draft(data_type="meaning", dedup_key="hola", data={"word": "Hola"}, topic_id=topic_id)
        session.add(stale_draft)
        await session.flush()
        session.add(Candidate(
            draft_id=stale_draft.id,
            data_type="meaning",
            dedup_key="hola",
            data={"word": "Hola", "definition": "hi"},
            topic_id=topic_id,
        ))
        await session.commit()

        gate = StubGate("a")
        service = PromotionService(gates=[gate], lifecycle=lifecycle)
        batch = await service.run_batch(session, 10)

        assert batch.advanced == 0
        assert gate.calls == 0
        assert await count(session, ValidatedItem) == 1
