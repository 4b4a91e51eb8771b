from importlib.metadata import version

from .directives import CommandInterpreter, Directive, DirectiveResult, parse_directive
from .engine import WorkflowEngine
from .errors import (
    ConfigurationError,
    CyclicDependency,
    DirectiveError,
    ExecutionNotFound,
    GateNotSatisfied,
    InvalidTemplate,
    InvalidTransition,
    InvalidWeights,
    PersistenceError,
    PhaseGateError,
    StaleQueueError,
    TransitionError,
)
from .gates import evaluate_auto, submit_human_decision
from .models import (
    ApprovalType,
    ArchivedRun,
    AutoGate,
    Candidate,
    ConditionalGate,
    ExecutionState,
    ExecutionSummary,
    GateStatus,
    HumanDecision,
    HumanGate,
    InsertOp,
    Phase,
    PhaseStatus,
    Queue,
    QueueEntry,
    RemoveOp,
    ReorderOp,
    UnitStatus,
    WorkflowStatus,
    WorkflowTemplate,
    WorkUnit,
)
from .queue import PlanningPass, QueueBuilder, SharedQueue, resolve_blockers
from .runner import RunResult, UnitOutcome, WorkflowRunner
from .scoring import DEFAULT_WEIGHTS, Criterion, WeightTable, linear, load_weights, rank, saturating, score
from .settings import RuntimeSettings
from .state_store import WorkflowStateStore
from .templates import BUILTIN_TEMPLATES, TemplateRegistry, load_template, parse_template


def get_version() -> str:
    try:
        return version(__name__)
    except Exception:
        return "0.0.0"


__all__ = [
    "ApprovalType",
    "ArchivedRun",
    "AutoGate",
    "BUILTIN_TEMPLATES",
    "Candidate",
    "CommandInterpreter",
    "ConditionalGate",
    "ConfigurationError",
    "Criterion",
    "CyclicDependency",
    "DEFAULT_WEIGHTS",
    "Directive",
    "DirectiveError",
    "DirectiveResult",
    "ExecutionNotFound",
    "ExecutionState",
    "ExecutionSummary",
    "GateNotSatisfied",
    "GateStatus",
    "HumanDecision",
    "HumanGate",
    "InsertOp",
    "InvalidTemplate",
    "InvalidTransition",
    "InvalidWeights",
    "PersistenceError",
    "Phase",
    "PhaseGateError",
    "PhaseStatus",
    "PlanningPass",
    "Queue",
    "QueueBuilder",
    "QueueEntry",
    "RemoveOp",
    "ReorderOp",
    "RunResult",
    "RuntimeSettings",
    "SharedQueue",
    "StaleQueueError",
    "TemplateRegistry",
    "TransitionError",
    "UnitOutcome",
    "UnitStatus",
    "WeightTable",
    "WorkUnit",
    "WorkflowEngine",
    "WorkflowRunner",
    "WorkflowStateStore",
    "WorkflowStatus",
    "WorkflowTemplate",
    "evaluate_auto",
    "get_version",
    "linear",
    "load_template",
    "load_weights",
    "parse_directive",
    "parse_template",
    "rank",
    "resolve_blockers",
    "saturating",
    "score",
    "submit_human_decision",
]
