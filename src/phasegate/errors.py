from __future__ import annotations


class PhaseGateError(Exception):
    """Base class for every error raised by the engine."""


# ---------------------------------------------------------------------------
# Configuration errors (fatal, raised before any state exists)
# ---------------------------------------------------------------------------


class ConfigurationError(PhaseGateError, ValueError):
    """Invalid template, weight table, or dependency graph."""


class InvalidTemplate(ConfigurationError):
    pass


class InvalidWeights(ConfigurationError):
    pass


class CyclicDependency(ConfigurationError):
    """Raised when the blocked-by graph contains a cycle."""

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = list(cycle)
        super().__init__(f"Cyclic dependency detected: {' -> '.join(self.cycle)}")


# ---------------------------------------------------------------------------
# Transition errors (recoverable, state unchanged)
# ---------------------------------------------------------------------------


class TransitionError(PhaseGateError, ValueError):
    """A directive or operation was rejected; the state was not modified."""


class GateNotSatisfied(TransitionError):
    pass


class InvalidTransition(TransitionError):
    pass


class DirectiveError(TransitionError):
    """A directive could not be parsed into a known command shape."""


# ---------------------------------------------------------------------------
# Queue / persistence
# ---------------------------------------------------------------------------


class StaleQueueError(PhaseGateError):
    def __init__(self, queue_id: str, expires_at: object) -> None:
        self.queue_id = queue_id
        self.expires_at = expires_at
        super().__init__(f"Queue {queue_id} expired at {expires_at}; regenerate before consuming")


class PersistenceError(PhaseGateError, OSError):
    """A state write could not be confirmed."""


class ExecutionNotFound(PhaseGateError, FileNotFoundError):
    def __init__(self, instance_id: str) -> None:
        self.instance_id = instance_id
        super().__init__(f"execution state not found: {instance_id}")
