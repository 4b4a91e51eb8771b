"""LangGraph driver that carries one execution through its phases.

The graph loops ``execute -> gate -> advance`` until the workflow completes.
Human gates, and automatic gates whose signals are not met, suspend the graph
with ``interrupt()``; the SQLite checkpointer keeps the suspended run so that
``resume`` can continue it with a decision.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Mapping, Protocol, TypedDict

from langgraph.checkpoint.sqlite import SqliteSaver
from langgraph.graph import END, START, StateGraph
from langgraph.types import Command, interrupt
from pydantic import BaseModel, Field

from .directives import SignalSource
from .engine import WorkflowEngine
from .errors import TransitionError
from .models import (
    AutoGate,
    ConditionalGate,
    ExecutionState,
    GateStatus,
    HumanDecision,
    UnitStatus,
    WorkflowStatus,
    WorkflowTemplate,
)

logger = logging.getLogger(__name__)

DECISION_OPTIONS = ["approve", "changes", "skip", "pause"]


class UnitOutcome(BaseModel):
    status: UnitStatus
    deliverables: list[str] = Field(default_factory=list)
    reason: str | None = None
    error: str | None = None


class UnitExecutor(Protocol):
    def __call__(self, unit_id: str, context: dict[str, Any]) -> UnitOutcome: ...


class RunnerState(TypedDict, total=False):
    instance_id: str
    route: str
    outcome: str
    blocked_reason: str | None
    rejection: str | None


@dataclass
class RunResult:
    instance_id: str
    outcome: str
    interrupt_payload: dict[str, Any] | None = None
    blocked_reason: str | None = None
    state: ExecutionState | None = None

    @property
    def complete(self) -> bool:
        return self.outcome == "complete"


def _no_signals(_state: ExecutionState) -> Mapping[str, bool]:
    return {}


class WorkflowRunner:
    """Drives executions through a compiled LangGraph StateGraph."""

    def __init__(
        self,
        engine: WorkflowEngine,
        executor: UnitExecutor,
        *,
        signal_source: SignalSource | None = None,
        checkpoint_path: str | Path | None = None,
        enable_interrupts: bool = True,
    ) -> None:
        self.engine = engine
        self.executor = executor
        self.signal_source: Callable[[ExecutionState], Mapping[str, bool]] = (
            signal_source if signal_source is not None else _no_signals
        )
        self.enable_interrupts = enable_interrupts
        self.settings = engine.settings

        # Relative paths live under the state store root.
        path = Path(checkpoint_path) if checkpoint_path is not None else Path("checkpoints") / "runner.sqlite"
        if not path.is_absolute():
            path = self.engine.store.root / path
        path.parent.mkdir(parents=True, exist_ok=True)
        self.checkpoint_path = path
        self._checkpoint_conn = sqlite3.connect(self.checkpoint_path, check_same_thread=False)
        self._checkpointer = SqliteSaver(self._checkpoint_conn)
        self.graph = self._build_graph().compile(checkpointer=self._checkpointer)

    @classmethod
    def from_settings(
        cls,
        engine: WorkflowEngine,
        executor: UnitExecutor,
        repo_root: Path,
        **kwargs: Any,
    ) -> "WorkflowRunner":
        """Build a runner whose checkpoint database follows ``PHASEGATE_CHECKPOINT_DB``."""
        return cls(engine, executor, checkpoint_path=engine.settings.checkpoint_path(repo_root), **kwargs)

    def close(self) -> None:
        self._checkpoint_conn.close()

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(RunnerState)
        graph.add_node("execute", self._execute_node)
        graph.add_node("gate", self._gate_node)
        graph.add_node("advance", self._advance_node)

        graph.add_edge(START, "execute")
        graph.add_conditional_edges(
            "execute",
            self._route,
            {
                "gate": "gate",
                "end": END,
            },
        )
        graph.add_conditional_edges(
            "gate",
            self._route,
            {
                "advance": "advance",
                "execute": "execute",
                "gate": "gate",
                "end": END,
            },
        )
        graph.add_conditional_edges(
            "advance",
            self._route,
            {
                "execute": "execute",
                "end": END,
            },
        )
        return graph

    @staticmethod
    def _route(state: RunnerState) -> str:
        return state.get("route", "end")

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def _execute_node(self, state: RunnerState) -> dict[str, Any]:
        execution = self.engine.load(state["instance_id"])
        phase = self.engine.require_active_phase(execution)
        feedback = phase.gate.feedback if phase.gate is not None else None

        for unit_id in [unit.unit_id for unit in phase.units if not unit.is_terminal]:
            context = {
                "instance_id": execution.instance_id,
                "template_id": execution.template_id,
                "mode": execution.mode,
                "project": execution.project,
                "phase_id": phase.phase_id,
                "feedback": feedback,
            }
            outcome = self.executor(unit_id, context)
            logger.info("Unit %s/%s finished: %s", execution.instance_id, unit_id, outcome.status.value)
            execution = self.engine.record_unit_status(
                execution,
                unit_id,
                outcome.status,
                reason=outcome.reason,
                deliverables=outcome.deliverables,
                error=outcome.error,
            )

        unfinished = [unit.unit_id for unit in self.engine.require_active_phase(execution).units if not unit.is_terminal]
        if unfinished:
            return {
                "route": "end",
                "outcome": "blocked",
                "blocked_reason": f"units still in progress: {', '.join(unfinished)}",
            }
        return {"route": "gate"}

    def _gate_node(self, state: RunnerState) -> dict[str, Any]:
        execution = self.engine.load(state["instance_id"])
        phase = self.engine.require_active_phase(execution)
        gate = phase.gate
        if gate is None or gate.skipped or gate.status == GateStatus.PASSED:
            return {"route": "advance"}

        failed = [unit.unit_id for unit in phase.units if unit.required and unit.status == UnitStatus.FAILED]
        if failed:
            return {
                "route": "end",
                "outcome": "blocked",
                "blocked_reason": f"required units failed: {', '.join(failed)}",
            }

        if isinstance(gate, (AutoGate, ConditionalGate)):
            execution = self.engine.evaluate_gate(execution, self.signal_source(execution))
            gate = self.engine.require_active_phase(execution).gate
            if gate is not None and gate.status == GateStatus.PASSED:
                return {"route": "advance"}

        reason = f"gate {gate.gate_id} awaiting decision"
        if not self.enable_interrupts:
            return {"route": "end", "outcome": "blocked", "blocked_reason": reason}

        decision = interrupt(
            {
                "instance_id": execution.instance_id,
                "phase_id": phase.phase_id,
                "gate_id": gate.gate_id,
                "approval_type": gate.approval_type,
                "status": gate.status.value,
                "deliverables": list(gate.deliverables),
                "feedback": gate.feedback,
                "options": DECISION_OPTIONS,
                "rejected": state.get("rejection"),
            }
        )
        return self._apply_decision(execution, decision or {})

    def _apply_decision(self, execution: ExecutionState, decision: Mapping[str, Any]) -> dict[str, Any]:
        """Apply a resume decision; a refused decision is reported in the next interrupt."""
        action = str(decision.get("action", "")).lower()
        feedback = decision.get("feedback")
        gate = self.engine.require_active_phase(execution).gate
        if gate is None:
            return {"route": "advance", "rejection": None}
        try:
            if action == "approve":
                if isinstance(gate, AutoGate):
                    return {"route": "gate", "rejection": f"gate {gate.gate_id} is automatic; its signals decide it"}
                if isinstance(gate, ConditionalGate):
                    if not decision.get("override"):
                        return {
                            "route": "gate",
                            "rejection": f"gate {gate.gate_id} signals not met; approve with override to force it",
                        }
                    self.engine.override_gate(execution, passed=True, reason=feedback or "approved by operator")
                else:
                    self.engine.decide_gate(execution, HumanDecision.APPROVE, feedback)
                return {"route": "advance", "rejection": None}
            if action == "changes":
                updated = self.engine.decide_gate(execution, HumanDecision.CHANGES, feedback)
                rework = sum(1 for unit in self.engine.require_active_phase(updated).units if unit.follow_up) + 1
                self.engine.add_follow_up_unit(updated, f"{gate.gate_id}-rework-{rework}")
                return {"route": "execute", "rejection": None}
            if action == "skip":
                self.engine.skip_gate(execution, feedback or "skipped by operator", override=True)
                return {"route": "advance", "rejection": None}
            if action == "pause":
                self.engine.pause(execution, feedback)
                return {"route": "end", "outcome": "paused", "rejection": None}
        except TransitionError as exc:
            logger.warning("Decision %r rejected for %s: %s", action, execution.instance_id, exc)
            return {"route": "gate", "rejection": str(exc)}
        logger.warning("Unknown decision %r for %s", action, execution.instance_id)
        options = ", ".join(DECISION_OPTIONS)
        return {"route": "gate", "rejection": f"unknown decision {action!r}; expected one of {options}"}

    def _advance_node(self, state: RunnerState) -> dict[str, Any]:
        execution = self.engine.load(state["instance_id"])
        updated = self.engine.advance_phase(execution)
        if updated.is_terminal:
            return {"route": "end", "outcome": "complete"}
        return {"route": "execute"}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def _config(self, instance_id: str) -> dict[str, Any]:
        return {
            "recursion_limit": self.settings.recursion_limit,
            "configurable": {"thread_id": f"workflow-{instance_id}"},
        }

    def _pending_interrupts(self, instance_id: str) -> list[dict[str, Any]]:
        snapshot = self.graph.get_state(self._config(instance_id))
        return [intr.value for task in snapshot.tasks for intr in task.interrupts]

    def _resume_if_paused(self, instance_id: str) -> None:
        if not self.engine.store.exists(instance_id):
            return
        execution = self.engine.load(instance_id)
        if execution.status == WorkflowStatus.PAUSED:
            self.engine.resume(execution)

    def _result(self, instance_id: str, final: Mapping[str, Any]) -> RunResult:
        payloads = self._pending_interrupts(instance_id)
        live = self.engine.load(instance_id) if self.engine.store.exists(instance_id) else None
        if payloads:
            return RunResult(instance_id=instance_id, outcome="interrupted", interrupt_payload=payloads[0], state=live)
        return RunResult(
            instance_id=instance_id,
            outcome=str(final.get("outcome", "blocked")),
            blocked_reason=final.get("blocked_reason"),
            state=live,
        )

    def start(
        self,
        template: WorkflowTemplate | str,
        mode: str | None = None,
        *,
        project: str | None = None,
    ) -> RunResult:
        execution = self.engine.initialize(template, mode, project=project)
        return self.run(execution.instance_id)

    def run(self, instance_id: str) -> RunResult:
        """Drive *instance_id* until it completes, blocks, or needs a decision.

        A paused execution is resumed first.
        """
        self._resume_if_paused(instance_id)
        final = self.graph.invoke({"instance_id": instance_id}, config=self._config(instance_id))
        return self._result(instance_id, final)

    def resume(self, instance_id: str, decision: Mapping[str, Any]) -> RunResult:
        """Continue a suspended run with ``{"action": ..., "feedback": ..., "override": ...}``.

        When no gate is waiting (after a pause, say) the run is driven to its
        next gate first and the decision is applied there.
        """
        self._resume_if_paused(instance_id)
        if not self._pending_interrupts(instance_id):
            final = self.graph.invoke({"instance_id": instance_id}, config=self._config(instance_id))
            if not self._pending_interrupts(instance_id):
                return self._result(instance_id, final)
        final = self.graph.invoke(Command(resume=dict(decision)), config=self._config(instance_id))
        return self._result(instance_id, final)
