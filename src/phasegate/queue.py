from __future__ import annotations

import logging
import threading
from collections import defaultdict, deque
from datetime import datetime, timedelta
from typing import Callable, Iterable

from .errors import CyclicDependency, InvalidTransition, StaleQueueError
from .models import (
    BlockedEntry,
    BlockerStatus,
    Candidate,
    InsertOp,
    Queue,
    QueueEntry,
    QueueOp,
    RemoveOp,
    ReorderOp,
    utc_now,
)
from .scoring import DEFAULT_WEIGHTS, WeightTable, rank, score, score_candidates
from .state_store import WorkflowStateStore

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Blocker resolution
# ---------------------------------------------------------------------------


def find_cycle(candidates: Iterable[Candidate]) -> list[str] | None:
    """Return one cycle in the blocked-by graph, or ``None`` if it is acyclic.

    Only edges between known candidates are considered. The cycle is reported
    as ``[a, b, ..., a]`` where each id is blocked by the next.
    """
    by_id = {candidate.candidate_id: candidate for candidate in candidates}
    indegree = {candidate_id: 0 for candidate_id in by_id}
    edges: dict[str, list[str]] = defaultdict(list)
    for candidate in by_id.values():
        for blocker in candidate.blocked_by:
            if blocker not in by_id:
                continue
            indegree[candidate.candidate_id] += 1
            edges[blocker].append(candidate.candidate_id)

    queue = deque(sorted(candidate_id for candidate_id, degree in indegree.items() if degree == 0))
    visited: set[str] = set()
    while queue:
        current = queue.popleft()
        visited.add(current)
        for nxt in sorted(edges[current]):
            indegree[nxt] -= 1
            if indegree[nxt] == 0:
                queue.append(nxt)

    remaining = sorted(set(by_id) - visited)
    if not remaining:
        return None

    # Every remaining node still has a remaining blocker, so walking blockers
    # from any of them must revisit a node.
    leftover = set(remaining)
    path: list[str] = []
    seen: dict[str, int] = {}
    node = remaining[0]
    while node not in seen:
        seen[node] = len(path)
        path.append(node)
        node = sorted(b for b in by_id[node].blocked_by if b in leftover)[0]
    return path[seen[node]:] + [node]


def resolve_blockers(
    candidates: Iterable[Candidate],
    resolved: Iterable[str] = (),
) -> dict[str, BlockerStatus]:
    """Compute blocked/unblocked status for every candidate.

    A candidate is blocked while any id in its ``blocked_by`` set is not in
    *resolved*; unknown blocker ids count as unresolved.

    Raises:
        CyclicDependency: If the blocked-by graph contains a cycle, including a
            candidate that blocks itself.
    """
    pool = list(candidates)
    cycle = find_cycle(pool)
    if cycle is not None:
        raise CyclicDependency(cycle)
    done = set(resolved)
    statuses: dict[str, BlockerStatus] = {}
    for candidate in pool:
        outstanding = {blocker for blocker in candidate.blocked_by if blocker not in done}
        statuses[candidate.candidate_id] = BlockerStatus(blocked=bool(outstanding), blocked_by=outstanding)
    return statuses


def _as_timedelta(ttl: timedelta | float | int) -> timedelta:
    return ttl if isinstance(ttl, timedelta) else timedelta(seconds=ttl)


# ---------------------------------------------------------------------------
# Queue builder
# ---------------------------------------------------------------------------


class QueueBuilder:
    """Turns candidates into a ranked, bounded, expiring queue."""

    def __init__(
        self,
        weights: WeightTable | None = None,
        *,
        resolved: Iterable[str] = (),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.weights = weights if weights is not None else DEFAULT_WEIGHTS
        self.resolved = set(resolved)
        self.clock = clock

    def build(self, candidates: Iterable[Candidate], limit: int, ttl: timedelta | float | int) -> Queue:
        """Rank unblocked candidates and keep the top *limit*.

        Blocked candidates are listed in ``queue.blocked`` rather than dropped.

        Raises:
            CyclicDependency: If the candidates' blockers form a cycle.
            ValueError: If *limit* is not positive.
        """
        if limit < 1:
            raise ValueError(f"limit must be >= 1, got {limit}")
        pool = list(candidates)
        ids = [candidate.candidate_id for candidate in pool]
        if len(set(ids)) != len(ids):
            raise ValueError("candidate ids must be unique")
        statuses = resolve_blockers(pool, self.resolved)

        ready = [candidate for candidate in pool if not statuses[candidate.candidate_id].blocked]
        blocked = [
            BlockedEntry(candidate=candidate, blocked_by=statuses[candidate.candidate_id].blocked_by)
            for candidate in rank(
                [candidate for candidate in pool if statuses[candidate.candidate_id].blocked],
                self.weights,
            )
        ]
        ranked = rank(ready, self.weights)[:limit]
        now = self.clock()
        queue = Queue(
            entries=[QueueEntry(rank=idx, candidate=candidate) for idx, candidate in enumerate(ranked, start=1)],
            blocked=blocked,
            generated_at=now,
            expires_at=now + _as_timedelta(ttl),
        )
        logger.info(
            "Built queue %s: %d ranked, %d blocked, expires %s",
            queue.queue_id,
            len(queue.entries),
            len(queue.blocked),
            queue.expires_at.isoformat(),
        )
        return queue

    def mutate(self, queue: Queue, op: QueueOp, *, now: datetime | None = None) -> Queue:
        """Apply an insert/remove/reorder and return the renumbered queue.

        Raises:
            StaleQueueError: If *queue* has expired.
            InvalidTransition: If the operation references a missing rank, an
                out-of-range position, a duplicate id, or a blocked candidate.
        """
        moment = now if now is not None else self.clock()
        if queue.is_expired(moment):
            raise StaleQueueError(queue.queue_id, queue.expires_at)

        updated = queue.model_copy(deep=True)
        entries = updated.entries
        if isinstance(op, InsertOp):
            candidate = op.candidate
            if candidate.candidate_id in updated.candidate_ids:
                raise InvalidTransition(f"Candidate {candidate.candidate_id} is already queued")
            outstanding = {blocker for blocker in candidate.blocked_by if blocker not in self.resolved}
            if outstanding:
                raise InvalidTransition(
                    f"Candidate {candidate.candidate_id} is blocked by: {', '.join(sorted(outstanding))}"
                )
            if op.position > len(entries) + 1:
                raise InvalidTransition(f"Position {op.position} is out of range (queue has {len(entries)} entries)")
            if candidate.score is None:
                candidate = candidate.model_copy(update={"score": score(candidate, self.weights)})
            entries.insert(op.position - 1, QueueEntry(rank=op.position, candidate=candidate))
        elif isinstance(op, RemoveOp):
            if op.rank > len(entries):
                raise InvalidTransition(f"Rank {op.rank} does not exist")
            entries.pop(op.rank - 1)
        elif isinstance(op, ReorderOp):
            if op.rank > len(entries):
                raise InvalidTransition(f"Rank {op.rank} does not exist")
            if op.new_position > len(entries):
                raise InvalidTransition(f"Position {op.new_position} is out of range")
            entry = entries.pop(op.rank - 1)
            entries.insert(op.new_position - 1, entry)
        else:
            raise InvalidTransition(f"Unsupported queue operation: {op!r}")

        still_ready: list[QueueEntry] = []
        for entry in entries:
            outstanding = {blocker for blocker in entry.candidate.blocked_by if blocker not in self.resolved}
            if outstanding:
                updated.blocked.append(BlockedEntry(candidate=entry.candidate, blocked_by=outstanding))
            else:
                still_ready.append(entry)
        updated.entries = still_ready
        updated.renumber()
        return updated


# ---------------------------------------------------------------------------
# Shared queue and planning pass
# ---------------------------------------------------------------------------


class SharedQueue:
    """Process-wide holder for the current queue with an atomic claim."""

    def __init__(self, *, clock: Callable[[], datetime] = utc_now) -> None:
        self._lock = threading.Lock()
        self._queue: Queue | None = None
        self.clock = clock

    def publish(self, queue: Queue) -> None:
        with self._lock:
            self._queue = queue

    def snapshot(self) -> Queue | None:
        with self._lock:
            return self._queue.model_copy(deep=True) if self._queue is not None else None

    def claim(self, *, now: datetime | None = None) -> QueueEntry | None:
        """Remove and return the top entry.

        Returns ``None`` when nothing has been published or the queue is empty.

        Raises:
            StaleQueueError: If the published queue has expired.
        """
        with self._lock:
            if self._queue is None:
                return None
            if self._queue.is_expired(now if now is not None else self.clock()):
                raise StaleQueueError(self._queue.queue_id, self._queue.expires_at)
            if not self._queue.entries:
                return None
            head = self._queue.entries.pop(0)
            self._queue.renumber()
            return head

    def mutate(self, builder: QueueBuilder, op: QueueOp) -> Queue:
        with self._lock:
            if self._queue is None:
                raise InvalidTransition("No queue has been published")
            self._queue = builder.mutate(self._queue, op, now=self.clock())
            return self._queue.model_copy(deep=True)


class PlanningPass:
    """Resolve, score, build, and publish a queue from a candidate source.

    Every pass rescores all candidates; nothing carries over from earlier
    queues.
    """

    def __init__(
        self,
        candidate_source: Callable[[], Iterable[Candidate]],
        *,
        weights: WeightTable | None = None,
        resolved_source: Callable[[], Iterable[str]] | None = None,
        limit: int = 10,
        ttl: timedelta | float | int = 3_600,
        shared: SharedQueue | None = None,
        store: WorkflowStateStore | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.candidate_source = candidate_source
        self.weights = weights if weights is not None else DEFAULT_WEIGHTS
        self.resolved_source = resolved_source
        self.limit = limit
        self.ttl = ttl
        self.shared = shared if shared is not None else SharedQueue(clock=clock)
        self.store = store
        self.clock = clock

    def run(self) -> Queue:
        resolved = set(self.resolved_source()) if self.resolved_source is not None else set()
        builder = QueueBuilder(self.weights, resolved=resolved, clock=self.clock)
        scored = score_candidates(self.candidate_source(), self.weights)
        queue = builder.build(scored, self.limit, self.ttl)
        self.shared.publish(queue)
        if self.store is not None:
            self.store.write_queue(queue)
        return queue

    def claim_next(self) -> QueueEntry | None:
        """Claim the top entry, regenerating the queue once if it has expired."""
        if self.shared.snapshot() is None:
            self.run()
        try:
            return self.shared.claim(now=self.clock())
        except StaleQueueError as exc:
            logger.info("%s", exc)
        self.run()
        return self.shared.claim(now=self.clock())
