from __future__ import annotations

import math
import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

SCHEMA_VERSION = "1.0.0"


def utc_now() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Status enums
# ---------------------------------------------------------------------------


class UnitStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    SKIPPED = "skipped"
    FAILED = "failed"


class PhaseStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETE = "complete"


class GateStatus(str, Enum):
    PENDING = "pending"
    PASSED = "passed"
    REJECTED = "rejected"


class ApprovalType(str, Enum):
    HUMAN = "human"
    AUTO = "auto"
    CONDITIONAL = "conditional"


class WorkflowStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETE = "complete"


class HumanDecision(str, Enum):
    APPROVE = "approve"
    CHANGES = "changes"


TERMINAL_UNIT_STATUSES = frozenset({UnitStatus.COMPLETE, UnitStatus.SKIPPED, UnitStatus.FAILED})
GATE_READY_UNIT_STATUSES = frozenset({UnitStatus.COMPLETE, UnitStatus.SKIPPED})

UNIT_STATUS_TRANSITIONS: dict[UnitStatus, set[UnitStatus]] = {
    UnitStatus.PENDING: {UnitStatus.RUNNING, UnitStatus.COMPLETE, UnitStatus.SKIPPED, UnitStatus.FAILED},
    UnitStatus.RUNNING: {UnitStatus.COMPLETE, UnitStatus.SKIPPED, UnitStatus.FAILED},
    UnitStatus.COMPLETE: set(),
    UnitStatus.SKIPPED: set(),
    UnitStatus.FAILED: set(),
}


# ---------------------------------------------------------------------------
# Work units and gates
# ---------------------------------------------------------------------------


class WorkUnit(BaseModel):
    unit_id: str = Field(min_length=1)
    deliverables: list[str] = Field(default_factory=list)
    required: bool = True
    status: UnitStatus = UnitStatus.PENDING
    skip_reason: str | None = None
    error: str | None = None
    follow_up: bool = False
    superseded_by: str | None = None
    updated_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_UNIT_STATUSES


class GateBase(BaseModel):
    gate_id: str = Field(min_length=1)
    required: bool = True
    status: GateStatus = GateStatus.PENDING
    deliverables: list[str] = Field(default_factory=list)
    feedback: str | None = None
    skipped: bool = False
    skip_reason: str | None = None
    # Count of unit transitions recorded in the owning phase; ``activity_mark``
    # snapshots it when a decision needs rework before the gate may pass again.
    unit_activity: int = 0
    activity_mark: int | None = None
    decided_at: datetime | None = None

    @property
    def has_new_activity(self) -> bool:
        return self.activity_mark is None or self.unit_activity > self.activity_mark


class HumanGate(GateBase):
    approval_type: Literal["human"] = "human"


class AutoGate(GateBase):
    approval_type: Literal["auto"] = "auto"
    signals: list[str] = Field(min_length=1)


class ConditionalGate(GateBase):
    approval_type: Literal["conditional"] = "conditional"
    signals: list[str] = Field(min_length=1)
    override_allowed: bool = True


Gate = Annotated[Union[HumanGate, AutoGate, ConditionalGate], Field(discriminator="approval_type")]


class Phase(BaseModel):
    phase_id: str = Field(min_length=1)
    units: list[WorkUnit] = Field(default_factory=list)
    status: PhaseStatus = PhaseStatus.PENDING
    gate: Gate | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def unit_ids(self) -> list[str]:
        return [unit.unit_id for unit in self.units]

    def get_unit(self, unit_id: str) -> WorkUnit | None:
        for unit in self.units:
            if unit.unit_id == unit_id:
                return unit
        return None

    def required_units_terminal(self) -> bool:
        return all(unit.is_terminal for unit in self.units if unit.required)

    def required_units_gate_ready(self) -> bool:
        return all(unit.status in GATE_READY_UNIT_STATUSES for unit in self.units if unit.required)


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------


class UnitTemplate(BaseModel):
    unit_id: str = Field(min_length=1)
    deliverables: list[str] = Field(default_factory=list)
    required: bool = True
    modes: list[str] = Field(default_factory=list)

    def applies_to(self, mode: str) -> bool:
        return not self.modes or mode in self.modes


class GateTemplate(BaseModel):
    gate_id: str = Field(min_length=1)
    approval_type: ApprovalType = ApprovalType.HUMAN
    required: bool = True
    signals: list[str] = Field(default_factory=list)
    override_allowed: bool = True
    deliverables: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _signals_for_predicate_gates(self) -> "GateTemplate":
        if self.approval_type != ApprovalType.HUMAN and not self.signals:
            raise ValueError(f"gate {self.gate_id}: {self.approval_type.value} gates must name at least one signal")
        return self


class PhaseTemplate(BaseModel):
    phase_id: str = Field(min_length=1)
    units: list[UnitTemplate] = Field(min_length=1)
    gate: GateTemplate | None = None


class JumpEdge(BaseModel):
    """Non-linear transition permitted without an override."""

    model_config = ConfigDict(frozen=True)

    from_phase: str
    to_phase: str


class WorkflowTemplate(BaseModel):
    template_id: str = Field(min_length=1)
    name: str = ""
    version: str = "1.0.0"
    description: str = ""
    modes: list[str] = Field(min_length=1)
    default_mode: str | None = None
    phases: list[PhaseTemplate] = Field(min_length=1)
    jump_edges: list[JumpEdge] = Field(default_factory=list)

    @model_validator(mode="after")
    def _validate_graph(self) -> "WorkflowTemplate":
        phase_ids = [phase.phase_id for phase in self.phases]
        if len(set(phase_ids)) != len(phase_ids):
            raise ValueError(f"template {self.template_id}: duplicate phase ids")
        unit_ids = [unit.unit_id for phase in self.phases for unit in phase.units]
        if len(set(unit_ids)) != len(unit_ids):
            raise ValueError(f"template {self.template_id}: duplicate unit ids")
        gate_ids = [phase.gate.gate_id for phase in self.phases if phase.gate is not None]
        if len(set(gate_ids)) != len(gate_ids):
            raise ValueError(f"template {self.template_id}: duplicate gate ids")
        known = set(phase_ids)
        for edge in self.jump_edges:
            if edge.from_phase not in known or edge.to_phase not in known:
                raise ValueError(
                    f"template {self.template_id}: jump edge {edge.from_phase}->{edge.to_phase} references unknown phase"
                )
        if self.default_mode is not None and self.default_mode not in self.modes:
            raise ValueError(f"template {self.template_id}: default_mode {self.default_mode!r} is not a declared mode")
        return self


# ---------------------------------------------------------------------------
# Execution state
# ---------------------------------------------------------------------------


class AuditEntry(BaseModel):
    at: datetime = Field(default_factory=utc_now)
    action: str
    target: str | None = None
    detail: str | None = None
    override: bool = False


class SuspendPoint(BaseModel):
    at: datetime = Field(default_factory=utc_now)
    phase_id: str | None
    reason: str | None = None


class ExecutionState(BaseModel):
    instance_id: str = Field(default_factory=lambda: f"EXE-{uuid.uuid4().hex[:12]}")
    template_id: str
    template_version: str
    mode: str
    project: str | None = None
    schema_version: str = SCHEMA_VERSION
    status: WorkflowStatus = WorkflowStatus.ACTIVE
    current_phase_id: str | None
    phases: list[Phase] = Field(min_length=1)
    jump_edges: list[JumpEdge] = Field(default_factory=list)
    suspend: SuspendPoint | None = None
    audit: list[AuditEntry] = Field(default_factory=list)
    version: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status == WorkflowStatus.COMPLETE

    @property
    def phase_ids(self) -> list[str]:
        return [phase.phase_id for phase in self.phases]

    def phase_index(self, phase_id: str) -> int:
        for idx, phase in enumerate(self.phases):
            if phase.phase_id == phase_id:
                return idx
        raise KeyError(phase_id)

    def get_phase(self, phase_id: str) -> Phase | None:
        for phase in self.phases:
            if phase.phase_id == phase_id:
                return phase
        return None

    @property
    def active_phase(self) -> Phase | None:
        if self.current_phase_id is None:
            return None
        return self.get_phase(self.current_phase_id)

    def deliverable_manifest(self) -> list[dict[str, Any]]:
        return [
            {
                "phase_id": phase.phase_id,
                "unit_id": unit.unit_id,
                "status": unit.status.value,
                "deliverables": list(unit.deliverables),
            }
            for phase in self.phases
            for unit in phase.units
        ]


class ExecutionSummary(BaseModel):
    instance_id: str
    template_id: str
    mode: str
    status: WorkflowStatus
    current_phase_id: str | None
    phase_statuses: dict[str, PhaseStatus]
    gate_statuses: dict[str, GateStatus]
    units_complete: int
    units_skipped: int
    units_failed: int
    units_total: int
    progress_percentage: int
    paused_reason: str | None = None


class ArchivedRun(BaseModel):
    archived_at: datetime = Field(default_factory=utc_now)
    archive_version: str = SCHEMA_VERSION
    fingerprint: str
    manifest: list[dict[str, Any]]
    state: ExecutionState


# ---------------------------------------------------------------------------
# Planning: candidates and queues
# ---------------------------------------------------------------------------


class Candidate(BaseModel):
    candidate_id: str = Field(min_length=1)
    target: str = ""
    category: str = ""
    subscores: dict[str, float] = Field(default_factory=dict)
    score: float | None = None
    blocked_by: set[str] = Field(default_factory=set)
    unlocks: set[str] = Field(default_factory=set)

    @field_validator("subscores")
    @classmethod
    def _finite_subscores(cls, value: dict[str, float]) -> dict[str, float]:
        # Persisted queues must round-trip through JSON, which has no NaN or infinity.
        for name, raw in value.items():
            if not math.isfinite(raw):
                raise ValueError(f"subscore {name} must be finite, got {raw}")
        return value

    @field_validator("score")
    @classmethod
    def _finite_score(cls, value: float | None) -> float | None:
        if value is not None and not math.isfinite(value):
            raise ValueError(f"score must be finite, got {value}")
        return value

    @property
    def estimated_effort(self) -> float:
        return self.subscores.get("effort", 0.0)


class BlockerStatus(BaseModel):
    blocked: bool
    blocked_by: set[str] = Field(default_factory=set)


class QueueEntry(BaseModel):
    rank: int = Field(ge=1)
    candidate: Candidate


class BlockedEntry(BaseModel):
    candidate: Candidate
    blocked_by: set[str]


class Queue(BaseModel):
    queue_id: str = Field(default_factory=lambda: f"Q-{uuid.uuid4().hex[:8]}")
    entries: list[QueueEntry] = Field(default_factory=list)
    blocked: list[BlockedEntry] = Field(default_factory=list)
    generated_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime | None = None) -> bool:
        moment = now if now is not None else utc_now()
        return moment >= self.expires_at

    @property
    def candidate_ids(self) -> list[str]:
        return [entry.candidate.candidate_id for entry in self.entries]

    def renumber(self) -> None:
        for idx, entry in enumerate(self.entries, start=1):
            entry.rank = idx


class InsertOp(BaseModel):
    op: Literal["insert"] = "insert"
    candidate: Candidate
    position: int = Field(ge=1)


class RemoveOp(BaseModel):
    op: Literal["remove"] = "remove"
    rank: int = Field(ge=1)


class ReorderOp(BaseModel):
    op: Literal["reorder"] = "reorder"
    rank: int = Field(ge=1)
    new_position: int = Field(ge=1)


QueueOp = Annotated[Union[InsertOp, RemoveOp, ReorderOp], Field(discriminator="op")]
