from pathlib import Path
from typing import Any

import pytest

from phasegate import UnitOutcome, WorkflowEngine, WorkflowRunner, WorkflowStateStore
from phasegate.models import (
    GateStatus,
    GateTemplate,
    PhaseTemplate,
    UnitStatus,
    UnitTemplate,
    WorkflowStatus,
    WorkflowTemplate,
)
from phasegate.settings import RuntimeSettings


class _RecordingExecutor:
    def __init__(self, failing: set[str] | None = None) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.failing = failing or set()

    def __call__(self, unit_id: str, context: dict[str, Any]) -> UnitOutcome:
        self.calls.append((unit_id, context))
        if unit_id in self.failing:
            return UnitOutcome(status=UnitStatus.FAILED, error="boom")
        return UnitOutcome(status=UnitStatus.COMPLETE, deliverables=[f"{unit_id}.md"])


def _runner(tmp_path: Path, executor: _RecordingExecutor, **kwargs: Any) -> WorkflowRunner:
    engine = WorkflowEngine(WorkflowStateStore(tmp_path / "store"))
    return WorkflowRunner(
        engine,
        executor,
        signal_source=kwargs.pop("signal_source", lambda _state: {"tests_pass": True}),
        checkpoint_path=tmp_path / "checkpoints.sqlite",
        **kwargs,
    )


def test_runner_interrupts_at_human_gate_and_resumes_to_completion(tmp_path: Path) -> None:
    executor = _RecordingExecutor()
    runner = _runner(tmp_path, executor)
    try:
        result = runner.start("bugfix-loop", project="issue-7")
        assert result.outcome == "interrupted"
        assert result.interrupt_payload["gate_id"] == "triage-gate"
        assert result.interrupt_payload["approval_type"] == "human"
        assert [call[0] for call in executor.calls] == ["triage", "reproduce"]
        assert result.state is not None
        assert result.state.get_phase("INIT").gate.status == GateStatus.PENDING

        final = runner.resume(result.instance_id, {"action": "approve"})
        assert final.complete
        assert final.state is None
        assert [call[0] for call in executor.calls] == ["triage", "reproduce", "fix", "regression-test", "postmortem"]
        runs = runner.engine.query_runs()
        assert len(runs) == 1
        assert runs[0].state.instance_id == result.instance_id
    finally:
        runner.close()


def test_changes_decision_schedules_rework_unit(tmp_path: Path) -> None:
    executor = _RecordingExecutor()
    runner = _runner(tmp_path, executor)
    try:
        result = runner.start("bugfix-loop")
        again = runner.resume(result.instance_id, {"action": "changes", "feedback": "capture repro logs"})

        assert again.outcome == "interrupted"
        assert again.interrupt_payload["feedback"] == "capture repro logs"
        rework_call = executor.calls[-1]
        assert rework_call[0] == "triage-gate-rework-1"
        assert rework_call[1]["feedback"] == "capture repro logs"

        done = runner.resume(result.instance_id, {"action": "approve"})
        assert done.complete
    finally:
        runner.close()


def test_non_interactive_run_reports_blocked(tmp_path: Path) -> None:
    executor = _RecordingExecutor()
    runner = _runner(tmp_path, executor, signal_source=lambda _state: {}, enable_interrupts=False)
    try:
        result = runner.start("bugfix-loop")
        assert result.outcome == "blocked"
        assert "triage-gate" in (result.blocked_reason or "")

        runner.engine.skip_gate(result.state, "triage done in ticket")
        second = runner.run(result.instance_id)
        assert second.outcome == "blocked"
        assert "verify-gate" in (second.blocked_reason or "")
        assert second.state.current_phase_id == "VERIFY"
    finally:
        runner.close()


def test_failed_required_unit_blocks_the_run(tmp_path: Path) -> None:
    executor = _RecordingExecutor(failing={"reproduce"})
    runner = _runner(tmp_path, executor)
    try:
        result = runner.start("bugfix-loop")
        assert result.outcome == "blocked"
        assert "reproduce" in (result.blocked_reason or "")
        assert result.state.get_phase("INIT").get_unit("reproduce").error == "boom"
    finally:
        runner.close()


def test_pause_decision_suspends_execution(tmp_path: Path) -> None:
    runner = _runner(tmp_path, _RecordingExecutor())
    try:
        result = runner.start("bugfix-loop")
        paused = runner.resume(result.instance_id, {"action": "pause", "feedback": "holiday freeze"})
        assert paused.outcome == "paused"
        assert paused.state.suspend is not None
        assert paused.state.suspend.reason == "holiday freeze"
    finally:
        runner.close()


def test_run_after_pause_resumes_execution(tmp_path: Path) -> None:
    runner = _runner(tmp_path, _RecordingExecutor())
    try:
        result = runner.start("bugfix-loop")
        runner.resume(result.instance_id, {"action": "pause", "feedback": "holiday freeze"})

        again = runner.run(result.instance_id)
        assert again.outcome == "interrupted"
        assert again.state.status == WorkflowStatus.ACTIVE
        assert again.state.suspend is None

        done = runner.resume(result.instance_id, {"action": "approve"})
        assert done.complete
    finally:
        runner.close()


def test_decision_after_pause_is_applied(tmp_path: Path) -> None:
    runner = _runner(tmp_path, _RecordingExecutor())
    try:
        result = runner.start("bugfix-loop")
        runner.resume(result.instance_id, {"action": "pause"})

        done = runner.resume(result.instance_id, {"action": "approve"})
        assert done.complete
    finally:
        runner.close()


def test_rejected_decision_is_reported_in_next_interrupt(tmp_path: Path) -> None:
    runner = _runner(tmp_path, _RecordingExecutor())
    try:
        result = runner.start("bugfix-loop")
        assert result.interrupt_payload["rejected"] is None

        again = runner.resume(result.instance_id, {"action": "changes"})
        assert again.outcome == "interrupted"
        assert "feedback" in again.interrupt_payload["rejected"]

        unknown = runner.resume(result.instance_id, {"action": "ship-it"})
        assert "ship-it" in unknown.interrupt_payload["rejected"]

        done = runner.resume(result.instance_id, {"action": "approve"})
        assert done.complete
    finally:
        runner.close()


def test_conditional_gate_needs_override_decision(tmp_path: Path) -> None:
    template = WorkflowTemplate(
        template_id="lint-only",
        modes=["greenfield"],
        phases=[
            PhaseTemplate(
                phase_id="CHECK",
                units=[UnitTemplate(unit_id="lint")],
                gate=GateTemplate(gate_id="lint-gate", approval_type="conditional", signals=["lint_clean"]),
            )
        ],
    )
    runner = _runner(tmp_path, _RecordingExecutor(), signal_source=lambda _state: {})
    try:
        result = runner.start(template)
        assert result.interrupt_payload["approval_type"] == "conditional"

        refused = runner.resume(result.instance_id, {"action": "approve"})
        assert refused.outcome == "interrupted"
        assert "override" in refused.interrupt_payload["rejected"]
        assert refused.state.get_phase("CHECK").gate.status == GateStatus.PENDING

        forced = runner.resume(result.instance_id, {"action": "approve", "override": True, "feedback": "known noise"})
        assert forced.complete
        assert forced.state is None
    finally:
        runner.close()


def test_failed_unit_replaced_by_follow_up_unblocks_run(tmp_path: Path) -> None:
    executor = _RecordingExecutor(failing={"reproduce"})
    runner = _runner(tmp_path, executor)
    try:
        result = runner.start("bugfix-loop")
        assert result.outcome == "blocked"

        runner.engine.add_follow_up_unit(result.state, "reproduce-retry", replaces="reproduce")
        again = runner.run(result.instance_id)
        assert again.outcome == "interrupted"
        assert again.interrupt_payload["gate_id"] == "triage-gate"
        assert executor.calls[-1][0] == "reproduce-retry"
    finally:
        runner.close()


def test_checkpoint_location(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    engine = WorkflowEngine(WorkflowStateStore(tmp_path / "store"))
    default = WorkflowRunner(engine, _RecordingExecutor())
    nested = WorkflowRunner(engine, _RecordingExecutor(), checkpoint_path=Path("graphs") / "nightly.sqlite")
    monkeypatch.setenv("PHASEGATE_CHECKPOINT_DB", "var/runner.sqlite")
    configured = WorkflowRunner.from_settings(
        WorkflowEngine(WorkflowStateStore(tmp_path / "store"), settings=RuntimeSettings.from_env()),
        _RecordingExecutor(),
        tmp_path,
    )
    try:
        assert default.checkpoint_path == tmp_path / "store" / "checkpoints" / "runner.sqlite"
        assert nested.checkpoint_path == tmp_path / "store" / "graphs" / "nightly.sqlite"
        assert configured.checkpoint_path == tmp_path / "var" / "runner.sqlite"
    finally:
        for runner in (default, nested, configured):
            runner.close()
