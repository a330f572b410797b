# refinery/services/quality_gates.py
"""
Quality gate contract and runners.

A quality gate is an automatic pass/fail check applied to a candidate before
it may become a validated item. The concrete linguistic gates (CEFR
consistency, orthography, content safety) live outside this package; it
only needs their tiered pass/fail contract. A few structural gates are
provided so the worker has a usable default list.

Usage:
    from refinery.services.quality_gates import GateInput, default_gates, run_gates

    outcome = await run_gates(default_gates(), GateInput(text="hola: hello"))
    if not outcome.passed:
        print(outcome.failed_at, [f.reason for f in outcome.failures])
"""

import logging
import re
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence, runtime_checkable

from ..config import settings
from ..models.content import parse_payload
from .collaborators import load_collaborator

logger = logging.getLogger("refinery.services.quality_gates")


@dataclass
class GateInput:
    """Everything a gate may look at for one candidate."""
    text: str
    language: str = "EN"
    content_type: str = ""
    level: str = "A1"
    payload: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GateResult:
    """Outcome of one gate."""
    gate_name: str
    passed: bool
    reason: Optional[str] = None
    score: Optional[float] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class GateRunOutcome:
    """Aggregate outcome of a gate run."""
    passed: bool
    results: List[GateResult]
    failed_at: Optional[str] = None
    execution_time_ms: int = 0

    @property
    def failures(self) -> List[GateResult]:
        return [r for r in self.results if not r.passed]


@runtime_checkable
class QualityGate(Protocol):
    """Contract every gate implements. Lower tiers run first."""

    name: str
    tier: int

    async def check(self, gate_input: GateInput) -> GateResult:
        ...


# =============================================================================
# RUNNERS
# =============================================================================


def order_by_tier(gates: Sequence[QualityGate]) -> List[QualityGate]:
    """Stable sort by tier: caller order is kept within a tier."""
    return sorted(gates, key=lambda gate: getattr(gate, "tier", 1))


async def run_gates(gates: Sequence[QualityGate], gate_input: GateInput) -> GateRunOutcome:
    """
    Run gates one after another in the given order, stopping at the first failure.
    """
    start = time.monotonic()
    results: List[GateResult] = []

    for gate in gates:
        result = await gate.check(gate_input)
        results.append(result)
        if not result.passed:
            return GateRunOutcome(
                passed=False,
                results=results,
                failed_at=gate.name,
                execution_time_ms=int((time.monotonic() - start) * 1000),
            )

    return GateRunOutcome(
        passed=True,
        results=results,
        execution_time_ms=int((time.monotonic() - start) * 1000),
    )


async def run_tier_ordered(gates: Sequence[QualityGate], gate_input: GateInput) -> GateRunOutcome:
    """Order gates by tier, then run them with ``run_gates``."""
    return await run_gates(order_by_tier(gates), gate_input)


async def run_gates_by_tier(gates: Sequence[QualityGate], gate_input: GateInput) -> GateRunOutcome:
    """
    Run every gate of a tier, stopping after the first tier with a failure.

    Unlike ``run_gates`` this reports all failing gates of that tier.
    """
    start = time.monotonic()
    results: List[GateResult] = []

    tiers: Dict[int, List[QualityGate]] = {}
    for gate in gates:
        tiers.setdefault(getattr(gate, "tier", 1), []).append(gate)

    for tier in sorted(tiers):
        tier_results = [await gate.check(gate_input) for gate in tiers[tier]]
        results.extend(tier_results)
        failed = [r for r in tier_results if not r.passed]
        if failed:
            return GateRunOutcome(
                passed=False,
                results=results,
                failed_at=failed[0].gate_name,
                execution_time_ms=int((time.monotonic() - start) * 1000),
            )

    return GateRunOutcome(
        passed=True,
        results=results,
        execution_time_ms=int((time.monotonic() - start) * 1000),
    )


# =============================================================================
# STRUCTURAL GATES
# =============================================================================


class RequiredFieldsGate:
    """Fails when the payload lacks the fields its data type needs."""

    name = "required_fields"
    tier = 1

    async def check(self, gate_input: GateInput) -> GateResult:
        payload = parse_payload(gate_input.content_type, gate_input.payload)
        missing = payload.missing_fields()
        if missing:
            return GateResult(
                gate_name=self.name,
                passed=False,
                reason=f"Missing required fields: {', '.join(missing)}",
                score=0.0,
                details={"missing": missing},
            )
        return GateResult(gate_name=self.name, passed=True, score=1.0)


class TextLengthGate:
    """Fails on empty or oversized gate text."""

    name = "text_length"
    tier = 1

    def __init__(self, min_chars: int = 1, max_chars: int = 4000):
        self.min_chars = min_chars
        self.max_chars = max_chars

    async def check(self, gate_input: GateInput) -> GateResult:
        length = len((gate_input.text or "").strip())
        if length < self.min_chars:
            return GateResult(self.name, False, f"Text too short ({length} chars)", 0.0, {"length": length})
        if length > self.max_chars:
            return GateResult(self.name, False, f"Text too long ({length} chars)", 0.0, {"length": length})
        return GateResult(self.name, True, score=1.0, details={"length": length})


class PlaceholderTextGate:
    """Fails when generated text still contains template placeholders."""

    name = "placeholder_text"
    tier = 2

    PATTERNS = (
        re.compile(r"lorem ipsum", re.IGNORECASE),
        re.compile(r"\bTODO\b"),
        re.compile(r"\{\{.*?\}\}"),
        re.compile(r"\[(?:insert|placeholder)[^\]]*\]", re.IGNORECASE),
        re.compile(r"\?{3,}"),
    )

    async def check(self, gate_input: GateInput) -> GateResult:
        text = gate_input.text or ""
        hits = [p.pattern for p in self.PATTERNS if p.search(text)]
        if hits:
            return GateResult(
                gate_name=self.name,
                passed=False,
                reason="Text contains placeholder content",
                score=0.0,
                details={"patterns": hits},
            )
        return GateResult(gate_name=self.name, passed=True, score=1.0)


def default_gates() -> List[QualityGate]:
    """Structural gates used when no linguistic gates are configured."""
    return [RequiredFieldsGate(), TextLengthGate(), PlaceholderTextGate()]


def load_quality_gates() -> List[QualityGate]:
    """Gates named in ``quality_gate_classes``, or the structural defaults."""
    if not settings.quality_gate_classes:
        return default_gates()
    gates = [load_collaborator(path) for path in settings.quality_gate_classes]
    logger.info(f"Loaded {len(gates)} quality gate(s): {', '.join(g.name for g in gates)}")
    return gates


def build_gate_input(candidate) -> GateInput:
    """Build the gate input for a candidate row."""
    data = dict(candidate.data or {})
    payload = parse_payload(candidate.data_type, data)
    return GateInput(
        text=payload.gate_text(),
        language=str(data.get("language") or settings.default_language),
        content_type=candidate.data_type,
        level=str(data.get("level") or settings.default_level),
        payload=data,
        metadata={
            "candidate_id": str(candidate.id),
            "data_type": candidate.data_type,
            "draft_id": str(candidate.draft_id),
        },
    )
