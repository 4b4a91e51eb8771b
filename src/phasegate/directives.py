"""Textual directives and the per-instance command interpreter."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Mapping

from .engine import WorkflowEngine
from .errors import DirectiveError, GateNotSatisfied, InvalidTransition, TransitionError
from .gates import evaluate_auto, missing_signals
from .models import AutoGate, ConditionalGate, ExecutionState, GateStatus, HumanDecision, WorkflowStatus

logger = logging.getLogger(__name__)

SignalSource = Callable[[ExecutionState], Mapping[str, bool]]

HELP_TEXT = """\
Available directives:
  continue | go                        evaluate the active gate and advance
  status                               show progress
  approve-gate | approve | yes         approve the active gate
  approve-gate --override [: <reason>] force-pass a conditional gate
  request-changes: <feedback>          send the active gate back for rework
  pause [: <reason>]                   suspend the workflow
  skip-unit [<unit>] : <reason>        skip a unit in the active phase
  skip-gate [--override] : <reason>    skip the active gate
  jump-phase <phase> [--override] [: <reason>]
"""

_ALIASES = {
    "continue": "continue",
    "go": "continue",
    "status": "status",
    "approve-gate": "approve-gate",
    "approve": "approve-gate",
    "approved": "approve-gate",
    "yes": "approve-gate",
    "request-changes": "request-changes",
    "changes": "request-changes",
    "pause": "pause",
    "skip-unit": "skip-unit",
    "skip-gate": "skip-gate",
    "jump-phase": "jump-phase",
}

# Directives allowed while paused; ``continue`` resumes.
_PAUSED_ALLOWED = frozenset({"continue", "status"})


@dataclass(frozen=True)
class Directive:
    name: str
    argument: str | None = None
    text: str | None = None
    override: bool = False


@dataclass(frozen=True)
class DirectiveResult:
    accepted: bool
    message: str
    state: ExecutionState | None = None


def parse_directive(raw: str) -> Directive | None:
    """Parse directive text.

    Returns ``None`` for an unrecognized verb so the caller can show help.

    Raises:
        DirectiveError: If a known directive is missing a required part or
            carries arguments it does not accept.
    """
    text = raw.strip()
    if not text:
        raise DirectiveError("Empty directive")

    head, sep, tail = text.partition(":")
    payload = tail.strip() if sep else None
    tokens = head.split()
    if not tokens:
        raise DirectiveError(f"Directive has no command: {raw!r}")
    name = _ALIASES.get(tokens[0].lower())
    if name is None:
        return None

    args = tokens[1:]
    override = "--override" in args
    args = [arg for arg in args if arg != "--override"]
    if override and name not in {"approve-gate", "skip-gate", "jump-phase"}:
        raise DirectiveError(f"{name} does not accept --override")

    if name in {"continue", "status"}:
        if args or payload:
            raise DirectiveError(f"{name} takes no arguments")
        return Directive(name=name)
    if name == "approve-gate":
        if args:
            raise DirectiveError("approve-gate takes no arguments")
        return Directive(name=name, text=payload or None, override=override)
    if name == "request-changes":
        if args or not payload:
            raise DirectiveError("request-changes requires feedback: request-changes: <feedback>")
        return Directive(name=name, text=payload)
    if name == "pause":
        if args:
            raise DirectiveError("pause takes only an optional reason: pause: <reason>")
        return Directive(name=name, text=payload or None)
    if name == "skip-unit":
        if len(args) > 1:
            raise DirectiveError("skip-unit takes at most one unit id")
        if not payload:
            raise DirectiveError("skip-unit requires a reason: skip-unit [<unit>] : <reason>")
        return Directive(name=name, argument=args[0] if args else None, text=payload)
    if name == "skip-gate":
        if args:
            raise DirectiveError("skip-gate takes no positional arguments")
        if not payload:
            raise DirectiveError("skip-gate requires a reason: skip-gate [--override] : <reason>")
        return Directive(name=name, text=payload, override=override)
    # jump-phase
    if len(args) != 1:
        raise DirectiveError("jump-phase requires exactly one phase id")
    return Directive(name=name, argument=args[0], text=payload or None, override=override)


def _no_signals(_state: ExecutionState) -> Mapping[str, bool]:
    return {}


def format_status(engine: WorkflowEngine, state: ExecutionState) -> str:
    summary = engine.summarize(state)
    lines = [
        f"{summary.instance_id} [{summary.template_id}/{summary.mode}] {summary.status.value}",
        f"phase: {summary.current_phase_id or '-'} ({summary.progress_percentage}% phases complete)",
        f"units: {summary.units_complete} complete, {summary.units_skipped} skipped, "
        f"{summary.units_failed} failed of {summary.units_total}",
    ]
    if summary.gate_statuses:
        lines.append("gates: " + ", ".join(f"{gid}={status.value}" for gid, status in summary.gate_statuses.items()))
    if summary.paused_reason:
        lines.append(f"paused: {summary.paused_reason}")
    return "\n".join(lines)


class CommandInterpreter:
    """Applies directives to one instance at a time.

    Directives for the same instance are serialized by a per-instance
    ``threading.Lock`` and by the store's file lock, so they never interleave
    across threads or processes.
    """

    def __init__(self, engine: WorkflowEngine, *, signal_source: SignalSource | None = None) -> None:
        self.engine = engine
        self.signal_source = signal_source if signal_source is not None else _no_signals
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _instance_lock(self, instance_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(instance_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[instance_id] = lock
            return lock

    def execute(self, instance_id: str, raw: str) -> DirectiveResult:
        """Parse and apply one directive.

        Rejected directives return ``accepted=False`` with the reason and the
        unchanged state.

        Raises:
            DirectiveError: If the directive is malformed.
            ExecutionNotFound: If the instance has no live state.
        """
        directive = parse_directive(raw)
        if directive is None:
            return DirectiveResult(accepted=False, message=HELP_TEXT)

        with self._instance_lock(instance_id), self.engine.store.locked(instance_id):
            state = self.engine.load(instance_id)
            if state.status == WorkflowStatus.PAUSED and directive.name not in _PAUSED_ALLOWED:
                return DirectiveResult(
                    accepted=False,
                    message=f"Execution {instance_id} is paused; send 'continue' to resume",
                    state=state,
                )
            try:
                return self._dispatch(state, directive)
            except TransitionError as exc:
                logger.info("Directive %r rejected for %s: %s", directive.name, instance_id, exc)
                return DirectiveResult(accepted=False, message=str(exc), state=state)

    def _dispatch(self, state: ExecutionState, directive: Directive) -> DirectiveResult:
        engine = self.engine
        name = directive.name

        if name == "status":
            return DirectiveResult(accepted=True, message=format_status(engine, state), state=state)

        if name == "continue":
            return self._continue(state)

        if name == "approve-gate":
            return self._approve(state, directive)

        if name == "request-changes":
            updated = engine.decide_gate(state, HumanDecision.CHANGES, directive.text)
            return DirectiveResult(True, "Changes requested; gate remains pending", updated)

        if name == "pause":
            updated = engine.pause(state, directive.text)
            return DirectiveResult(True, f"Paused at {updated.current_phase_id}", updated)

        if name == "skip-unit":
            unit_id = directive.argument
            if unit_id is None:
                unit = engine.next_pending_unit(state)
                if unit is None:
                    raise InvalidTransition("No pending unit in the active phase")
                unit_id = unit.unit_id
            updated = engine.record_unit_status(state, unit_id, "skipped", reason=directive.text)
            return DirectiveResult(True, f"Unit {unit_id} skipped", updated)

        if name == "skip-gate":
            updated = engine.skip_gate(state, directive.text or "", override=directive.override)
            return DirectiveResult(True, "Gate skipped", updated)

        if name == "jump-phase" and directive.argument is not None:
            updated = engine.jump_to_phase(
                state, directive.argument, override=directive.override, reason=directive.text
            )
            return DirectiveResult(True, f"Now at {updated.current_phase_id}", updated)
        raise InvalidTransition(f"Unsupported directive: {name}")

    def _approve(self, state: ExecutionState, directive: Directive) -> DirectiveResult:
        engine = self.engine
        phase = engine.require_active_phase(state)
        gate = phase.gate
        if gate is None:
            raise InvalidTransition(f"Phase {phase.phase_id} has no gate to approve")
        if isinstance(gate, AutoGate):
            raise TransitionError(f"Gate {gate.gate_id} is automatic; use 'continue' to evaluate it")
        if not isinstance(gate, ConditionalGate):
            if directive.override:
                raise InvalidTransition(f"Gate {gate.gate_id} is a human gate; --override applies to conditional gates")
            updated = engine.decide_gate(state, HumanDecision.APPROVE, directive.text)
            return DirectiveResult(True, f"Gate {gate.gate_id} passed; send 'continue' to advance", updated)

        if directive.override:
            updated = engine.override_gate(state, passed=True, reason=directive.text or "approved by operator")
            return DirectiveResult(True, f"Gate {gate.gate_id} force-passed; send 'continue' to advance", updated)
        signals = self.signal_source(state)
        if evaluate_auto(gate, signals) != GateStatus.PASSED:
            missing = ", ".join(missing_signals(gate.signals, signals))
            raise GateNotSatisfied(
                f"Gate {gate.gate_id} signals not met ({missing}); use 'approve-gate --override' to force it"
            )
        if not phase.required_units_gate_ready():
            raise GateNotSatisfied(f"Gate {gate.gate_id} cannot pass while required units are unfinished")
        updated = engine.evaluate_gate(state, signals)
        return DirectiveResult(True, f"Gate {gate.gate_id} passed; send 'continue' to advance", updated)

    def _continue(self, state: ExecutionState) -> DirectiveResult:
        engine = self.engine
        if state.status == WorkflowStatus.PAUSED:
            updated = engine.resume(state)
            return DirectiveResult(True, f"Resumed at {updated.current_phase_id}", updated)

        phase = engine.require_active_phase(state)
        gate = phase.gate
        if isinstance(gate, (AutoGate, ConditionalGate)) and not gate.skipped:
            state = engine.evaluate_gate(state, self.signal_source(state))
        try:
            updated = engine.advance_phase(state)
        except GateNotSatisfied as exc:
            evaluated = engine.require_active_phase(state).gate
            if gate is not None and evaluated is not None and evaluated.status != gate.status:
                # Re-evaluation was persisted even though the phase cannot advance.
                return DirectiveResult(True, f"Gate {gate.gate_id} is now {evaluated.status.value}; {exc}", state)
            return DirectiveResult(accepted=False, message=str(exc), state=state)
        if updated.is_terminal:
            return DirectiveResult(True, "Workflow complete; run archived", updated)
        return DirectiveResult(True, f"Advanced to {updated.current_phase_id}", updated)
