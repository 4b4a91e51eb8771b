from __future__ import annotations

import fcntl
import logging
import os
import re
import tempfile
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator

from pydantic import ValidationError

from .canonical import fingerprint
from .errors import ExecutionNotFound, PersistenceError, StaleQueueError
from .models import ArchivedRun, ExecutionState, Queue, QueueEntry, utc_now

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# File locking helpers
# ---------------------------------------------------------------------------

_LOCK_SUFFIX = ".lock"
_held_locks = threading.local()


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Hold an exclusive ``flock`` on ``<path>.lock`` while the block runs.

    The lock lives on a sidecar so ``os.replace`` can swap the data file
    underneath it. A thread that already holds the lock passes straight
    through.
    """
    lock_path = path.with_name(path.name + _LOCK_SUFFIX)
    held: set[str] | None = getattr(_held_locks, "paths", None)
    if held is None:
        held = set()
        _held_locks.paths = held
    key = str(lock_path)
    if key in held:
        yield
        return

    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with open(lock_path, "a+", encoding="utf-8") as handle:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
        held.add(key)
        try:
            yield
        finally:
            held.discard(key)
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


def _atomic_write_text(path: Path, content: str) -> None:
    """Replace *path* with *content* via fsynced temp file and ``os.replace``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


def _read_document(path: Path, label: str) -> str:
    """Return the text of a stored document.

    Raises:
        FileNotFoundError: If nothing is stored at *path*.
        ValueError: If the document is blank or not UTF-8.
    """
    if not path.is_file():
        raise FileNotFoundError(f"No {label} at {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"{label} at {path} is not valid UTF-8") from exc
    if not text.strip():
        raise ValueError(f"{label} at {path} is blank")
    return text


def sanitize_instance_id(instance_id: str) -> str:
    """Make *instance_id* safe to use as one path component.

    Raises:
        ValueError: If nothing usable is left.
    """
    value = instance_id.strip()
    if not value:
        raise ValueError("instance_id must be non-empty")
    value = re.sub(r"[^A-Za-z0-9._-]+", "-", value).strip("-")
    if not value:
        raise ValueError(f"instance_id {instance_id!r} has no path-safe characters")
    return value[:128]


# ---------------------------------------------------------------------------
# WorkflowStateStore
# ---------------------------------------------------------------------------


class WorkflowStateStore:
    """Filesystem store for execution states, archived runs, and the work queue.

    Every write is an atomic temp-file-then-rename. Read-modify-write paths
    (instance directives, queue claims) are guarded by ``fcntl`` exclusive
    locks so several processes can share one directory.
    """

    def __init__(self, root: Path, *, archive_root: Path | None = None) -> None:
        self.root = root
        self.executions_dir = self.root / "executions"
        self.archive_dir = archive_root if archive_root is not None else self.root / "archive"
        self.queue_dir = self.root / "queue"
        self.ensure_structure()

    def ensure_structure(self) -> None:
        """Create all required directories if they do not exist."""
        for directory in (self.root, self.executions_dir, self.archive_dir, self.queue_dir):
            directory.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Execution state (locked - one writer per instance)
    # ------------------------------------------------------------------

    def state_path(self, instance_id: str) -> Path:
        return self.executions_dir / sanitize_instance_id(instance_id) / "state.json"

    def exists(self, instance_id: str) -> bool:
        return self.state_path(instance_id).is_file()

    def write_state(self, state: ExecutionState) -> None:
        """Persist an execution state under an exclusive file lock.

        Args:
            state: Validated ExecutionState model.

        Raises:
            PersistenceError: If the write could not be completed.
        """
        path = self.state_path(state.instance_id)
        with _locked_file(path):
            try:
                _atomic_write_text(path, state.model_dump_json(indent=2))
            except OSError as exc:
                raise PersistenceError(f"failed to persist execution {state.instance_id}: {exc}") from exc

    def read_state(self, instance_id: str) -> ExecutionState:
        """Read an execution state under an exclusive file lock.

        Returns:
            The deserialized ExecutionState.

        Raises:
            ExecutionNotFound: If no live state exists for *instance_id*.
            ValueError: If the file is corrupt or fails validation.
        """
        path = self.state_path(instance_id)
        if not path.is_file():
            raise ExecutionNotFound(instance_id)
        with _locked_file(path):
            text = _read_document(path, "execution state")
            try:
                return ExecutionState.model_validate_json(text)
            except ValidationError as exc:
                raise ValueError(f"execution state at {path} failed validation: {exc}") from exc

    @contextmanager
    def locked(self, instance_id: str) -> Iterator[None]:
        """Hold the instance lock across a read-modify-write cycle.

        Reads and writes issued by the same thread inside the block re-enter
        the lock; other threads and processes wait.
        """
        path = self.state_path(instance_id)
        if not path.is_file():
            raise ExecutionNotFound(instance_id)
        with _locked_file(path):
            yield

    def delete_state(self, instance_id: str) -> None:
        path = self.state_path(instance_id)
        lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
        for target in (path, lock_path):
            try:
                target.unlink()
            except FileNotFoundError:
                pass
        try:
            path.parent.rmdir()
        except OSError:
            logger.debug("Execution directory %s not removed (not empty)", path.parent)

    def list_instances(self) -> list[str]:
        """Return sorted IDs of all live (non-archived) executions."""
        return sorted(p.parent.name for p in self.executions_dir.glob("*/state.json"))

    # ------------------------------------------------------------------
    # Archive
    # ------------------------------------------------------------------

    def archive_path(self, state: ExecutionState, completed_at: datetime) -> Path:
        year_month = completed_at.strftime("%Y-%m")
        stamp = completed_at.strftime("%Y%m%dT%H%M%S%fZ")
        name = f"{state.template_id}-{sanitize_instance_id(state.instance_id)}-{stamp}.json"
        return self.archive_dir / year_month / name

    def archive(self, state: ExecutionState) -> Path:
        """Write an immutable snapshot of a terminal state, then drop the live copy.

        The live state is deleted only once the archive file has been written
        and read back with a matching fingerprint.

        Returns:
            Path to the archive entry.

        Raises:
            PersistenceError: If the archive write cannot be confirmed.
        """
        completed_at = state.completed_at or utc_now()
        record = ArchivedRun(
            fingerprint=fingerprint(state),
            manifest=state.deliverable_manifest(),
            state=state,
        )
        path = self.archive_path(state, completed_at)
        if path.exists():
            raise PersistenceError(f"archive entry already exists: {path}")
        try:
            _atomic_write_text(path, record.model_dump_json(indent=2))
            acknowledged = self.read_archive(path)
        except (OSError, ValueError) as exc:
            raise PersistenceError(f"failed to archive execution {state.instance_id}: {exc}") from exc
        if acknowledged.fingerprint != fingerprint(acknowledged.state):
            raise PersistenceError(f"archive entry {path} failed fingerprint verification")

        self.delete_state(state.instance_id)
        logger.info("Archived execution %s to %s", state.instance_id, path)
        return path

    def read_archive(self, path: Path) -> ArchivedRun:
        text = _read_document(path, "archived run")
        try:
            return ArchivedRun.model_validate_json(text)
        except ValidationError as exc:
            raise ValueError(f"archived run at {path} failed validation: {exc}") from exc

    def query_runs(
        self,
        *,
        template_id: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int | None = None,
    ) -> list[ArchivedRun]:
        """Return archived runs, newest first, filtered by template and completion time."""
        runs: list[ArchivedRun] = []
        for path in self.archive_dir.rglob("*.json"):
            run = self.read_archive(path)
            if template_id is not None and run.state.template_id != template_id:
                continue
            completed = run.state.completed_at or run.archived_at
            if since is not None and completed < since:
                continue
            if until is not None and completed > until:
                continue
            runs.append(run)
        runs.sort(key=lambda run: run.state.completed_at or run.archived_at, reverse=True)
        return runs[:limit] if limit is not None else runs

    # ------------------------------------------------------------------
    # Queue (locked - shared between planner and consumers)
    # ------------------------------------------------------------------

    @property
    def queue_path(self) -> Path:
        return self.queue_dir / "queue.json"

    def write_queue(self, queue: Queue) -> None:
        with _locked_file(self.queue_path):
            try:
                _atomic_write_text(self.queue_path, queue.model_dump_json(indent=2))
            except OSError as exc:
                raise PersistenceError(f"failed to persist queue {queue.queue_id}: {exc}") from exc

    def read_queue(self) -> Queue:
        """Read the persisted queue.

        Raises:
            FileNotFoundError: If no queue has been published.
            ValueError: If the file is corrupt or fails validation.
        """
        with _locked_file(self.queue_path):
            text = _read_document(self.queue_path, "queue")
            try:
                return Queue.model_validate_json(text)
            except ValidationError as exc:
                raise ValueError(f"queue at {self.queue_path} failed validation: {exc}") from exc

    def claim_queue_head(self, *, now: datetime | None = None) -> QueueEntry | None:
        """Atomically remove and return the top entry of the persisted queue.

        Returns:
            The claimed entry, or ``None`` if the queue is empty.

        Raises:
            StaleQueueError: If the persisted queue has expired.
            FileNotFoundError: If no queue has been published.
        """
        with _locked_file(self.queue_path):
            queue = self.read_queue()
            if queue.is_expired(now):
                raise StaleQueueError(queue.queue_id, queue.expires_at)
            if not queue.entries:
                return None
            head = queue.entries.pop(0)
            queue.renumber()
            self.write_queue(queue)
            return head
