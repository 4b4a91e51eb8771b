"""Gate evaluation: automatic signal predicates, human decisions, and overrides.

All functions here are pure: they return an updated copy of the gate and never
touch the owning phase or the store. The engine is responsible for checking
that a phase's required units are finished before it stores a ``passed`` gate.
"""

from __future__ import annotations

import logging
from typing import Mapping

from .errors import TransitionError
from .models import AutoGate, ConditionalGate, Gate, GateStatus, HumanDecision, utc_now

logger = logging.getLogger(__name__)


def signals_satisfied(required: list[str], signals: Mapping[str, bool]) -> bool:
    """Return True only if every required signal is present and true."""
    return all(signals.get(name) is True for name in required)


def missing_signals(required: list[str], signals: Mapping[str, bool]) -> list[str]:
    return [name for name in required if signals.get(name) is not True]


def evaluate_auto(gate: AutoGate | ConditionalGate, signals: Mapping[str, bool]) -> GateStatus:
    """Evaluate an automatic predicate against the current signal values.

    Idempotent for a fixed ``signals`` mapping. A gate that was rejected stays
    rejected until its phase records new unit activity; a gate that already
    passed stays passed.
    """
    if gate.status == GateStatus.PASSED:
        return GateStatus.PASSED
    if gate.status == GateStatus.REJECTED and not gate.has_new_activity:
        return GateStatus.REJECTED
    if signals_satisfied(gate.signals, signals):
        return GateStatus.PASSED
    return GateStatus.PENDING


def submit_human_decision(
    gate: Gate,
    decision: HumanDecision,
    feedback: str | None = None,
    *,
    allow_reapproval: bool = False,
) -> Gate:
    """Apply an approve/changes decision and return the updated gate.

    ``changes`` leaves the gate pending, stores the feedback, and snapshots the
    unit activity counter. A later ``approve`` is refused until new unit
    activity is recorded, unless ``allow_reapproval`` is set.

    Raises:
        TransitionError: If the gate is automatic, feedback is missing for a
            changes request, or re-approval without rework is not allowed.
    """
    if isinstance(gate, AutoGate):
        raise TransitionError(f"Gate {gate.gate_id} is automatic; it cannot take a human decision")

    updated = gate.model_copy(deep=True)
    if decision == HumanDecision.CHANGES:
        text = (feedback or "").strip()
        if not text:
            raise TransitionError("A changes request requires feedback")
        updated.status = GateStatus.PENDING
        updated.feedback = text
        updated.activity_mark = updated.unit_activity
        updated.decided_at = utc_now()
        return updated

    if isinstance(gate, ConditionalGate):
        raise TransitionError(f"Gate {gate.gate_id} is conditional; approving it requires an override")
    if gate.status == GateStatus.PASSED:
        raise TransitionError(f"Gate {gate.gate_id} is already passed")
    if not gate.has_new_activity and not allow_reapproval:
        raise TransitionError(
            f"Gate {gate.gate_id} had changes requested; record new unit activity before approving again"
        )
    updated.status = GateStatus.PASSED
    if feedback:
        updated.feedback = feedback.strip()
    updated.decided_at = utc_now()
    return updated


def force_conditional(gate: ConditionalGate, *, passed: bool, reason: str) -> ConditionalGate:
    """Force-pass or force-reject a conditional gate.

    Raises:
        TransitionError: If the gate does not permit overrides or no reason is given.
    """
    if not gate.override_allowed:
        raise TransitionError(f"Gate {gate.gate_id} does not allow overrides")
    if not reason.strip():
        raise TransitionError("A conditional override requires a reason")
    updated = gate.model_copy(deep=True)
    updated.status = GateStatus.PASSED if passed else GateStatus.REJECTED
    updated.feedback = reason.strip()
    updated.activity_mark = updated.unit_activity
    updated.decided_at = utc_now()
    logger.warning("Conditional gate %s force-%s: %s", gate.gate_id, "passed" if passed else "rejected", reason)
    return updated


def reset_gate(gate: Gate) -> Gate:
    """Return a fresh pending copy of *gate*, keeping its identity and signals."""
    updated = gate.model_copy(deep=True)
    updated.status = GateStatus.PENDING
    updated.feedback = None
    updated.skipped = False
    updated.skip_reason = None
    updated.activity_mark = None
    updated.decided_at = None
    return updated
