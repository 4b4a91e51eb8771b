from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Iterable, Mapping

from .errors import GateNotSatisfied, InvalidTemplate, InvalidTransition, TransitionError
from .gates import evaluate_auto, force_conditional, missing_signals, reset_gate, submit_human_decision
from .models import (
    GATE_READY_UNIT_STATUSES,
    UNIT_STATUS_TRANSITIONS,
    ApprovalType,
    ArchivedRun,
    AuditEntry,
    AutoGate,
    ConditionalGate,
    ExecutionState,
    ExecutionSummary,
    Gate,
    GateStatus,
    GateTemplate,
    HumanDecision,
    HumanGate,
    Phase,
    PhaseStatus,
    SuspendPoint,
    UnitStatus,
    WorkflowStatus,
    WorkflowTemplate,
    WorkUnit,
    utc_now,
)
from .settings import RuntimeSettings
from .state_store import WorkflowStateStore
from .templates import TemplateRegistry

logger = logging.getLogger(__name__)


def build_gate(template: GateTemplate) -> Gate:
    common = {
        "gate_id": template.gate_id,
        "required": template.required,
        "deliverables": list(template.deliverables),
    }
    if template.approval_type == ApprovalType.AUTO:
        return AutoGate(signals=list(template.signals), **common)
    if template.approval_type == ApprovalType.CONDITIONAL:
        return ConditionalGate(
            signals=list(template.signals),
            override_allowed=template.override_allowed,
            **common,
        )
    return HumanGate(**common)


def instantiate_phases(template: WorkflowTemplate, mode: str) -> list[Phase]:
    """Materialize template phases for *mode*, dropping units the mode excludes."""
    phases: list[Phase] = []
    for phase_template in template.phases:
        units = [
            WorkUnit(unit_id=unit.unit_id, deliverables=list(unit.deliverables), required=unit.required)
            for unit in phase_template.units
            if unit.applies_to(mode)
        ]
        gate = build_gate(phase_template.gate) if phase_template.gate is not None else None
        phases.append(Phase(phase_id=phase_template.phase_id, units=units, gate=gate))
    return phases


class WorkflowEngine:
    """Phase graph: owns every mutation of an ExecutionState.

    Each operation works on a deep copy of the state it is given, persists the
    copy atomically, and returns it. When an operation raises, the caller's
    state and the stored document are both left as they were.
    """

    def __init__(
        self,
        store: WorkflowStateStore,
        *,
        registry: TemplateRegistry | None = None,
        settings: RuntimeSettings | None = None,
    ) -> None:
        self.store = store
        self.registry = registry if registry is not None else TemplateRegistry()
        self.settings = settings if settings is not None else RuntimeSettings()

    @classmethod
    def from_settings(cls, settings: RuntimeSettings, repo_root: Path) -> "WorkflowEngine":
        store = WorkflowStateStore(
            settings.state_store_path(repo_root),
            archive_root=settings.archive_path(repo_root),
        )
        return cls(store, settings=settings)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(
        self,
        template: WorkflowTemplate | str,
        mode: str | None = None,
        *,
        project: str | None = None,
        instance_id: str | None = None,
    ) -> ExecutionState:
        """Create and persist a new execution with its first phase active.

        Raises:
            InvalidTemplate: If the template id or mode is unknown.
            InvalidTransition: If *instance_id* already has live state.
        """
        resolved = self.registry.get(template) if isinstance(template, str) else template
        effective_mode = mode or resolved.default_mode or resolved.modes[0]
        if effective_mode not in resolved.modes:
            raise InvalidTemplate(
                f"Mode {effective_mode!r} is not supported by template {resolved.template_id} "
                f"(expected one of: {', '.join(resolved.modes)})"
            )

        phases = instantiate_phases(resolved, effective_mode)
        now = utc_now()
        phases[0].status = PhaseStatus.ACTIVE
        phases[0].started_at = now

        fields: dict[str, object] = {}
        if instance_id is not None:
            fields["instance_id"] = instance_id
        state = ExecutionState(
            template_id=resolved.template_id,
            template_version=resolved.version,
            mode=effective_mode,
            project=project,
            current_phase_id=phases[0].phase_id,
            phases=phases,
            jump_edges=list(resolved.jump_edges),
            audit=[AuditEntry(action="initialize", target=resolved.template_id, detail=f"mode={effective_mode}")],
            created_at=now,
            updated_at=now,
            **fields,
        )
        if self.store.exists(state.instance_id):
            raise InvalidTransition(f"Execution {state.instance_id} already exists")
        self.store.write_state(state)
        logger.info(
            "Initialized execution %s from %s@%s (mode=%s)",
            state.instance_id,
            resolved.template_id,
            resolved.version,
            effective_mode,
        )
        return state

    def load(self, instance_id: str) -> ExecutionState:
        return self.store.read_state(instance_id)

    def list_instances(self) -> list[str]:
        return self.store.list_instances()

    def query_runs(
        self,
        *,
        template_id: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int | None = None,
    ) -> list[ArchivedRun]:
        return self.store.query_runs(template_id=template_id, since=since, until=until, limit=limit)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _commit(self, state: ExecutionState) -> ExecutionState:
        state.version += 1
        state.updated_at = utc_now()
        if state.is_terminal:
            # The live document stays at its last open version until the
            # archive entry is confirmed, so a failed archive can be retried.
            self.store.archive(state)
        else:
            self.store.write_state(state)
        return state

    @staticmethod
    def _require_open(state: ExecutionState) -> None:
        if state.is_terminal:
            raise InvalidTransition(f"Execution {state.instance_id} is complete")

    @classmethod
    def _require_mutable(cls, state: ExecutionState) -> None:
        cls._require_open(state)
        if state.status == WorkflowStatus.PAUSED:
            raise InvalidTransition(f"Execution {state.instance_id} is paused; resume it first")

    @staticmethod
    def require_active_phase(state: ExecutionState) -> Phase:
        phase = state.active_phase
        if phase is None:
            raise InvalidTransition(f"Execution {state.instance_id} has no active phase")
        return phase

    @staticmethod
    def _audit(state: ExecutionState, action: str, target: str | None, detail: str | None, *, override: bool = False) -> None:
        state.audit.append(AuditEntry(action=action, target=target, detail=detail, override=override))

    @staticmethod
    def _gate_satisfied(phase: Phase) -> bool:
        gate = phase.gate
        if gate is None or gate.skipped:
            return phase.required_units_terminal()
        return gate.status == GateStatus.PASSED

    def _store_gate(self, phase: Phase, gate: Gate) -> None:
        if gate.status == GateStatus.PASSED and not phase.required_units_gate_ready():
            pending = [u.unit_id for u in phase.units if u.required and u.status not in GATE_READY_UNIT_STATUSES]
            raise GateNotSatisfied(
                f"Gate {gate.gate_id} cannot pass while required units are unfinished: {', '.join(pending)}"
            )
        phase.gate = gate

    # ------------------------------------------------------------------
    # Phase transitions
    # ------------------------------------------------------------------

    def advance_phase(self, state: ExecutionState) -> ExecutionState:
        """Complete the active phase and activate the next one.

        Advancing past the last phase marks the execution complete and archives
        it.

        Raises:
            GateNotSatisfied: If the active phase's gate has not passed (or, with
                no gate or a skipped gate, a required unit is unfinished).
        """
        self._require_mutable(state)
        current = self.require_active_phase(state)
        if not self._gate_satisfied(current):
            gate = current.gate
            if gate is None or gate.skipped:
                raise GateNotSatisfied(f"Phase {current.phase_id} has unfinished required units")
            raise GateNotSatisfied(f"Gate {gate.gate_id} is {gate.status.value}; phase {current.phase_id} cannot advance")

        updated = state.model_copy(deep=True)
        now = utc_now()
        phase = self.require_active_phase(updated)
        phase.status = PhaseStatus.COMPLETE
        phase.completed_at = now
        idx = updated.phase_index(phase.phase_id)
        if idx + 1 < len(updated.phases):
            nxt = updated.phases[idx + 1]
            nxt.status = PhaseStatus.ACTIVE
            nxt.started_at = now
            updated.current_phase_id = nxt.phase_id
            self._audit(updated, "advance", nxt.phase_id, f"from {phase.phase_id}")
            logger.info("Execution %s advanced %s -> %s", updated.instance_id, phase.phase_id, nxt.phase_id)
        else:
            updated.current_phase_id = None
            updated.status = WorkflowStatus.COMPLETE
            updated.completed_at = now
            self._audit(updated, "complete", phase.phase_id, None)
            logger.info("Execution %s completed", updated.instance_id)
        return self._commit(updated)

    def jump_to_phase(
        self,
        state: ExecutionState,
        phase_id: str,
        *,
        override: bool = False,
        reason: str | None = None,
    ) -> ExecutionState:
        """Move the active pointer to *phase_id*.

        Without an override the target must be an earlier phase, the phase right
        after a satisfied gate, or reachable through a template jump edge.
        Phases after the target are reset to pending with fresh gates.

        Raises:
            TransitionError: If the phase is unknown or the jump is not allowed.
        """
        self._require_mutable(state)
        current = self.require_active_phase(state)
        try:
            target_idx = state.phase_index(phase_id)
        except KeyError:
            raise TransitionError(f"Unknown phase: {phase_id}") from None
        current_idx = state.phase_index(current.phase_id)
        if target_idx == current_idx:
            raise InvalidTransition(f"Phase {phase_id} is already active")

        on_edge = any(e.from_phase == current.phase_id and e.to_phase == phase_id for e in state.jump_edges)
        allowed = (
            target_idx < current_idx
            or (target_idx == current_idx + 1 and self._gate_satisfied(current))
            or on_edge
        )
        if not allowed and not override:
            raise InvalidTransition(
                f"Jump {current.phase_id} -> {phase_id} is not permitted without an override"
            )

        updated = state.model_copy(deep=True)
        now = utc_now()
        leaving = updated.phases[current_idx]
        if target_idx > current_idx and self._gate_satisfied(leaving):
            leaving.status = PhaseStatus.COMPLETE
            leaving.completed_at = now
        else:
            leaving.status = PhaseStatus.PENDING
        for idx in range(target_idx, len(updated.phases)):
            phase = updated.phases[idx]
            if phase.gate is not None:
                phase.gate = reset_gate(phase.gate)
            if idx > target_idx:
                phase.status = PhaseStatus.PENDING
                phase.completed_at = None
        target = updated.phases[target_idx]
        target.status = PhaseStatus.ACTIVE
        target.started_at = now
        target.completed_at = None
        updated.current_phase_id = phase_id

        used_override = override and not allowed
        self._audit(updated, "jump", phase_id, reason or f"from {current.phase_id}", override=used_override)
        if used_override:
            logger.warning(
                "Execution %s override jump %s -> %s: %s",
                updated.instance_id,
                current.phase_id,
                phase_id,
                reason or "no reason given",
            )
        else:
            logger.info("Execution %s jumped %s -> %s", updated.instance_id, current.phase_id, phase_id)
        return self._commit(updated)

    # ------------------------------------------------------------------
    # Units
    # ------------------------------------------------------------------

    def record_unit_status(
        self,
        state: ExecutionState,
        unit_id: str,
        status: UnitStatus,
        reason: str | None = None,
        deliverables: Iterable[str] = (),
        *,
        error: str | None = None,
    ) -> ExecutionState:
        """Record a work unit transition in the active phase.

        Raises:
            InvalidTransition: If the unit is not in the active phase, is already
                terminal, or the transition is not allowed.
            TransitionError: If a skip has no reason.
        """
        self._require_mutable(state)
        status = UnitStatus(status)
        phase = self.require_active_phase(state)
        unit = phase.get_unit(unit_id)
        if unit is None:
            raise InvalidTransition(f"Unit {unit_id} is not part of active phase {phase.phase_id}")
        if unit.is_terminal:
            raise InvalidTransition(f"Unit {unit_id} is already {unit.status.value}")
        if status not in UNIT_STATUS_TRANSITIONS[unit.status]:
            raise InvalidTransition(f"Unit {unit_id} cannot move from {unit.status.value} to {status.value}")
        if status == UnitStatus.SKIPPED and not (reason or "").strip():
            raise TransitionError(f"Skipping unit {unit_id} requires a reason")

        updated = state.model_copy(deep=True)
        target_phase = self.require_active_phase(updated)
        target = target_phase.units[phase.units.index(unit)]
        target.status = status
        target.updated_at = utc_now()
        if status == UnitStatus.SKIPPED:
            target.skip_reason = (reason or "").strip()
        if status == UnitStatus.FAILED:
            target.error = error or reason
        extra = [name for name in deliverables if name not in target.deliverables]
        target.deliverables.extend(extra)
        if target_phase.gate is not None:
            target_phase.gate.unit_activity += 1
        self._audit(updated, f"unit:{status.value}", unit_id, reason or error)
        logger.info("Execution %s unit %s -> %s", updated.instance_id, unit_id, status.value)
        return self._commit(updated)

    def add_follow_up_unit(
        self,
        state: ExecutionState,
        unit_id: str,
        deliverables: Iterable[str] = (),
        *,
        replaces: str | None = None,
    ) -> ExecutionState:
        """Append a pending rework unit to the active phase.

        With *replaces*, the named failed unit is superseded: it stops counting
        as required and the new unit inherits its deliverables and requirement.

        Raises:
            InvalidTransition: If *unit_id* already exists, or *replaces* is not a
                failed unit of the active phase.
        """
        self._require_mutable(state)
        phase = self.require_active_phase(state)
        if any(p.get_unit(unit_id) is not None for p in state.phases):
            raise InvalidTransition(f"Unit {unit_id} already exists")
        if replaces is not None:
            failed = phase.get_unit(replaces)
            if failed is None or failed.status != UnitStatus.FAILED:
                raise InvalidTransition(f"Unit {replaces} is not a failed unit of phase {phase.phase_id}")

        updated = state.model_copy(deep=True)
        target_phase = self.require_active_phase(updated)
        unit = WorkUnit(unit_id=unit_id, deliverables=list(deliverables), follow_up=True)
        detail = f"phase {phase.phase_id}"
        superseded = target_phase.get_unit(replaces) if replaces is not None else None
        if superseded is not None:
            unit.required = superseded.required
            if not unit.deliverables:
                unit.deliverables = list(superseded.deliverables)
            superseded.required = False
            superseded.superseded_by = unit_id
            detail = f"replaces {replaces}"
            logger.info("Execution %s unit %s superseded by %s", updated.instance_id, replaces, unit_id)
        target_phase.units.append(unit)
        self._audit(updated, "follow-up", unit_id, detail)
        return self._commit(updated)

    def next_pending_unit(self, state: ExecutionState) -> WorkUnit | None:
        phase = state.active_phase
        if phase is None:
            return None
        for unit in phase.units:
            if not unit.is_terminal:
                return unit
        return None

    # ------------------------------------------------------------------
    # Gates
    # ------------------------------------------------------------------

    def evaluate_gate(self, state: ExecutionState, signals: Mapping[str, bool]) -> ExecutionState:
        """Evaluate the active phase's automatic gate against *signals*.

        Human gates and gates that do not change status are returned untouched.
        A predicate that holds while required units are unfinished leaves the
        gate pending.
        """
        self._require_mutable(state)
        phase = self.require_active_phase(state)
        gate = phase.gate
        if not isinstance(gate, (AutoGate, ConditionalGate)) or gate.skipped:
            return state
        outcome = evaluate_auto(gate, signals)
        if outcome == GateStatus.PASSED and not phase.required_units_gate_ready():
            outcome = GateStatus.PENDING
        if outcome == gate.status:
            if outcome == GateStatus.PENDING:
                logger.debug("Gate %s waiting on signals: %s", gate.gate_id, missing_signals(gate.signals, signals))
            return state

        updated = state.model_copy(deep=True)
        target_phase = self.require_active_phase(updated)
        new_gate = target_phase.gate.model_copy(update={"status": outcome, "decided_at": utc_now()})
        self._store_gate(target_phase, new_gate)
        self._audit(updated, f"gate:{outcome.value}", gate.gate_id, "signals")
        logger.info("Execution %s gate %s -> %s", updated.instance_id, gate.gate_id, outcome.value)
        return self._commit(updated)

    def decide_gate(
        self,
        state: ExecutionState,
        decision: HumanDecision,
        feedback: str | None = None,
    ) -> ExecutionState:
        """Apply a human approve/changes decision to the active phase's gate.

        Raises:
            TransitionError: If there is no gate or the decision is not allowed.
            GateNotSatisfied: If approval is given while required units are unfinished.
        """
        self._require_mutable(state)
        phase = self.require_active_phase(state)
        if phase.gate is None:
            raise InvalidTransition(f"Phase {phase.phase_id} has no gate")
        decided = submit_human_decision(
            phase.gate,
            HumanDecision(decision),
            feedback,
            allow_reapproval=self.settings.allow_reapproval,
        )
        updated = state.model_copy(deep=True)
        target_phase = self.require_active_phase(updated)
        self._store_gate(target_phase, decided)
        self._audit(updated, f"gate:{HumanDecision(decision).value}", decided.gate_id, feedback)
        logger.info("Execution %s gate %s decision %s", updated.instance_id, decided.gate_id, HumanDecision(decision).value)
        return self._commit(updated)

    def override_gate(self, state: ExecutionState, *, passed: bool, reason: str) -> ExecutionState:
        """Force-pass or force-reject the active conditional gate."""
        self._require_mutable(state)
        phase = self.require_active_phase(state)
        if not isinstance(phase.gate, ConditionalGate):
            raise InvalidTransition(f"Phase {phase.phase_id} has no conditional gate")
        forced = force_conditional(phase.gate, passed=passed, reason=reason)
        updated = state.model_copy(deep=True)
        target_phase = self.require_active_phase(updated)
        self._store_gate(target_phase, forced)
        self._audit(updated, f"gate:force-{forced.status.value}", forced.gate_id, reason, override=True)
        return self._commit(updated)

    def skip_gate(self, state: ExecutionState, reason: str, *, override: bool = False) -> ExecutionState:
        """Mark the active gate skipped so the phase advances on its units alone.

        Required gates need ``override``; the skip is audited either way.
        """
        self._require_mutable(state)
        phase = self.require_active_phase(state)
        gate = phase.gate
        if gate is None:
            raise InvalidTransition(f"Phase {phase.phase_id} has no gate")
        if not reason.strip():
            raise TransitionError("Skipping a gate requires a reason")
        if gate.required and not override:
            raise InvalidTransition(f"Gate {gate.gate_id} is required; skipping it needs --override")
        updated = state.model_copy(deep=True)
        skipped = gate.model_copy(update={"skipped": True, "skip_reason": reason.strip()}, deep=True)
        self.require_active_phase(updated).gate = skipped
        self._audit(updated, "gate:skip", gate.gate_id, reason, override=gate.required)
        if gate.required:
            logger.warning("Execution %s override skip of gate %s: %s", updated.instance_id, gate.gate_id, reason)
        return self._commit(updated)

    # ------------------------------------------------------------------
    # Suspend / resume
    # ------------------------------------------------------------------

    def pause(self, state: ExecutionState, reason: str | None = None) -> ExecutionState:
        self._require_mutable(state)
        updated = state.model_copy(deep=True)
        updated.status = WorkflowStatus.PAUSED
        updated.suspend = SuspendPoint(phase_id=updated.current_phase_id, reason=reason)
        self._audit(updated, "pause", updated.current_phase_id, reason)
        logger.info("Execution %s paused at %s", updated.instance_id, updated.current_phase_id)
        return self._commit(updated)

    def resume(self, state: ExecutionState) -> ExecutionState:
        self._require_open(state)
        if state.status != WorkflowStatus.PAUSED:
            raise InvalidTransition(f"Execution {state.instance_id} is not paused")
        updated = state.model_copy(deep=True)
        updated.status = WorkflowStatus.ACTIVE
        updated.suspend = None
        self._audit(updated, "resume", updated.current_phase_id, None)
        logger.info("Execution %s resumed at %s", updated.instance_id, updated.current_phase_id)
        return self._commit(updated)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    @staticmethod
    def summarize(state: ExecutionState) -> ExecutionSummary:
        units = [unit for phase in state.phases for unit in phase.units]
        complete = sum(1 for unit in units if unit.status == UnitStatus.COMPLETE)
        skipped = sum(1 for unit in units if unit.status == UnitStatus.SKIPPED)
        failed = sum(1 for unit in units if unit.status == UnitStatus.FAILED)
        done_phases = sum(1 for phase in state.phases if phase.status == PhaseStatus.COMPLETE)
        return ExecutionSummary(
            instance_id=state.instance_id,
            template_id=state.template_id,
            mode=state.mode,
            status=state.status,
            current_phase_id=state.current_phase_id,
            phase_statuses={phase.phase_id: phase.status for phase in state.phases},
            gate_statuses={phase.gate.gate_id: phase.gate.status for phase in state.phases if phase.gate is not None},
            units_complete=complete,
            units_skipped=skipped,
            units_failed=failed,
            units_total=len(units),
            progress_percentage=round(100 * done_phases / len(state.phases)),
            paused_reason=state.suspend.reason if state.suspend is not None else None,
        )
