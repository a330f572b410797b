"""
Tests for quality gate runners and the structural default gates.
"""

from types import SimpleNamespace
from uuid import uuid4

import pytest

from refinery.config import settings
from refinery.errors import CollaboratorLoadError
from refinery.services.quality_gates import (
    GateInput,
    GateResult,
    PlaceholderTextGate,
    RequiredFieldsGate,
    TextLengthGate,
    build_gate_input,
    default_gates,
    load_quality_gates,
    order_by_tier,
    run_gates,
    run_gates_by_tier,
    run_tier_ordered,
)


class RecordingGate:
    def __init__(self, name, tier, passed=True, log=None):
        self.name = name
        self.tier = tier
        self.passed = passed
        self.log = log if log is not None else []

    async def check(self, gate_input):
        self.log.append(self.name)
        return GateResult(self.name, self.passed, None if self.passed else "no")


# =============================================================================
# Runner Tests
# =============================================================================


class TestRunners:
    """Ordering and short-circuit behavior of the gate runners."""

    def test_order_by_tier_is_stable(self):
        gates = [RecordingGate("b2", 2), RecordingGate("a1", 1), RecordingGate("c2", 2), RecordingGate("d1", 1)]

        assert [g.name for g in order_by_tier(gates)] == ["a1", "d1", "b2", "c2"]

    @pytest.mark.asyncio
    async def test_run_gates_all_pass(self):
        log = []
        gates = [RecordingGate("a", 1, log=log), RecordingGate("b", 1, log=log)]

        outcome = await run_gates(gates, GateInput(text="hola"))

        assert outcome.passed
        assert outcome.failed_at is None
        assert log == ["a", "b"]
        assert outcome.failures == []

    @pytest.mark.asyncio
    async def test_run_gates_stops_at_first_failure(self):
        log = []
        gates = [
            RecordingGate("a", 1, log=log),
            RecordingGate("b", 1, passed=False, log=log),
            RecordingGate("c", 1, log=log),
        ]

        outcome = await run_gates(gates, GateInput(text="hola"))

        assert not outcome.passed
        assert outcome.failed_at == "b"
        assert log == ["a", "b"]
        assert [f.gate_name for f in outcome.failures] == ["b"]

    @pytest.mark.asyncio
    async def test_run_tier_ordered_runs_lower_tiers_first(self):
        log = []
        gates = [RecordingGate("late", 2, log=log), RecordingGate("early", 1, log=log)]

        await run_tier_ordered(gates, GateInput(text="hola"))

        assert log == ["early", "late"]

    @pytest.mark.asyncio
    async def test_run_gates_by_tier_reports_whole_failing_tier(self):
        log = []
        gates = [
            RecordingGate("a", 1, passed=False, log=log),
            RecordingGate("b", 1, passed=False, log=log),
            RecordingGate("c", 2, log=log),
        ]

        outcome = await run_gates_by_tier(gates, GateInput(text="hola"))

        assert not outcome.passed
        assert outcome.failed_at == "a"
        assert [f.gate_name for f in outcome.failures] == ["a", "b"]
        assert "c" not in log


# =============================================================================
# Structural Gate Tests
# =============================================================================


class TestStructuralGates:
    """The default gates shipped with the service."""

    @pytest.mark.asyncio
    async def test_required_fields_pass(self):
        gate_input = GateInput(
            text="hola: hello", content_type="meaning", payload={"word": "hola", "definition": "hello"}
        )

        result = await RequiredFieldsGate().check(gate_input)

        assert result.passed

    @pytest.mark.asyncio
    async def test_required_fields_missing_definition(self):
        gate_input = GateInput(text="hola", content_type="meaning", payload={"word": "hola", "definition": " "})

        result = await RequiredFieldsGate().check(gate_input)

        assert not result.passed
        assert result.details["missing"] == ["definition"]

    @pytest.mark.asyncio
    async def test_text_length(self):
        gate = TextLengthGate(min_chars=1, max_chars=10)

        assert (await gate.check(GateInput(text="hola"))).passed
        assert not (await gate.check(GateInput(text="   "))).passed
        assert not (await gate.check(GateInput(text="x" * 11))).passed

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "text",
        ["Lorem ipsum dolor", "TODO: translate", "Hola {{name}}", "[insert example here]", "¿Qué ???"],
    )
    async def test_placeholder_text_fails(self, text):
        result = await PlaceholderTextGate().check(GateInput(text=text))

        assert not result.passed

    @pytest.mark.asyncio
    async def test_placeholder_text_passes_clean_text(self):
        result = await PlaceholderTextGate().check(GateInput(text="¿Cómo estás?"))

        assert result.passed

    def test_default_gates_tiers(self):
        assert [(g.name, g.tier) for g in default_gates()] == [
            ("required_fields", 1),
            ("text_length", 1),
            ("placeholder_text", 2),
        ]


class TestBuildGateInput:
    def test_meaning_candidate(self):
        candidate = SimpleNamespace(
            id=uuid4(),
            draft_id=uuid4(),
            data_type="meaning",
            data={"word": "hola", "definition": "hello", "language": "ES", "level": "A2"},
        )

        gate_input = build_gate_input(candidate)

        assert gate_input.text == "hola: hello"
        assert gate_input.language == "ES"
        assert gate_input.level == "A2"
        assert gate_input.content_type == "meaning"
        assert gate_input.metadata["candidate_id"] == str(candidate.id)


class TestLoadQualityGates:
    def test_defaults_when_unconfigured(self, monkeypatch):
        monkeypatch.setattr(settings, "quality_gate_classes", [])

        assert [g.name for g in load_quality_gates()] == [
            "required_fields", "text_length", "placeholder_text"
        ]

    def test_configured_gates(self, monkeypatch):
        monkeypatch.setattr(settings, "quality_gate_classes", [
            "refinery.services.quality_gates:TextLengthGate",
            "refinery.services.quality_gates.PlaceholderTextGate",
        ])

        gates = load_quality_gates()

        assert [type(g) for g in gates] == [TextLengthGate, PlaceholderTextGate]

    def test_bad_gate_path(self, monkeypatch):
        monkeypatch.setattr(settings, "quality_gate_classes", ["refinery.services.quality_gates:Nope"])

        with pytest.raises(CollaboratorLoadError):
            load_quality_gates()
