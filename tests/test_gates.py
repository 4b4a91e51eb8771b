import pytest

from phasegate.errors import TransitionError
from phasegate.gates import evaluate_auto, force_conditional, reset_gate, submit_human_decision
from phasegate.models import AutoGate, ConditionalGate, GateStatus, HumanDecision, HumanGate


def test_evaluate_auto_requires_every_signal_true() -> None:
    gate = AutoGate(gate_id="test-gate", signals=["tests_pass", "build_ok"])

    assert evaluate_auto(gate, {"tests_pass": True, "build_ok": True}) == GateStatus.PASSED
    assert evaluate_auto(gate, {"tests_pass": True}) == GateStatus.PENDING
    assert evaluate_auto(gate, {"tests_pass": True, "build_ok": False}) == GateStatus.PENDING
    assert evaluate_auto(gate, {}) == GateStatus.PENDING


def test_evaluate_auto_is_idempotent_and_pure() -> None:
    gate = AutoGate(gate_id="test-gate", signals=["tests_pass"])
    signals = {"tests_pass": True}
    before = gate.model_dump()

    first = evaluate_auto(gate, signals)
    second = evaluate_auto(gate, signals)

    assert first == second == GateStatus.PASSED
    assert gate.model_dump() == before


def test_rejected_gate_stays_rejected_until_new_activity() -> None:
    gate = ConditionalGate(gate_id="verify", signals=["lint_clean"])
    rejected = force_conditional(gate, passed=False, reason="security finding")

    assert rejected.status == GateStatus.REJECTED
    assert evaluate_auto(rejected, {"lint_clean": True}) == GateStatus.REJECTED

    rejected.unit_activity += 1
    assert evaluate_auto(rejected, {"lint_clean": True}) == GateStatus.PASSED


def test_changes_leave_gate_pending_with_feedback() -> None:
    gate = HumanGate(gate_id="spec-gate", unit_activity=3)
    updated = submit_human_decision(gate, HumanDecision.CHANGES, "clarify rollout plan")

    assert updated.status == GateStatus.PENDING
    assert updated.feedback == "clarify rollout plan"
    assert updated.activity_mark == 3
    assert gate.feedback is None


def test_changes_require_feedback() -> None:
    with pytest.raises(TransitionError):
        submit_human_decision(HumanGate(gate_id="spec-gate"), HumanDecision.CHANGES, "  ")


def test_reapproval_without_rework_is_refused_by_default() -> None:
    gate = submit_human_decision(HumanGate(gate_id="spec-gate"), HumanDecision.CHANGES, "rework")

    with pytest.raises(TransitionError):
        submit_human_decision(gate, HumanDecision.APPROVE)

    allowed = submit_human_decision(gate, HumanDecision.APPROVE, allow_reapproval=True)
    assert allowed.status == GateStatus.PASSED

    gate.unit_activity += 1
    assert submit_human_decision(gate, HumanDecision.APPROVE).status == GateStatus.PASSED


def test_auto_gate_refuses_human_decisions() -> None:
    gate = AutoGate(gate_id="test-gate", signals=["tests_pass"])
    with pytest.raises(TransitionError):
        submit_human_decision(gate, HumanDecision.APPROVE)


def test_conditional_gate_needs_override_to_approve() -> None:
    gate = ConditionalGate(gate_id="verify", signals=["lint_clean"])
    with pytest.raises(TransitionError):
        submit_human_decision(gate, HumanDecision.APPROVE)

    locked = ConditionalGate(gate_id="verify", signals=["lint_clean"], override_allowed=False)
    with pytest.raises(TransitionError):
        force_conditional(locked, passed=True, reason="ship it")

    forced = force_conditional(gate, passed=True, reason="waived")
    assert forced.status == GateStatus.PASSED


def test_reset_gate_clears_decision_state() -> None:
    gate = force_conditional(ConditionalGate(gate_id="verify", signals=["lint_clean"]), passed=False, reason="no")
    fresh = reset_gate(gate)

    assert fresh.status == GateStatus.PENDING
    assert fresh.feedback is None
    assert fresh.activity_mark is None
    assert fresh.signals == ["lint_clean"]
