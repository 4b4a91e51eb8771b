from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    state_store_root: str = "state_store"
    archive_root: str = ""
    queue_limit: int = 10
    queue_ttl_seconds: int = 3_600
    weights_json: str = ""
    allow_reapproval: bool = False
    checkpoint_db: str = "state_store/checkpoints/runner.sqlite"
    recursion_limit: int = 1_000

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            state_store_root=os.getenv("PHASEGATE_STATE_STORE_ROOT", "state_store"),
            archive_root=os.getenv("PHASEGATE_ARCHIVE_ROOT", ""),
            queue_limit=_get_env_int("PHASEGATE_QUEUE_LIMIT", default=10, minimum=1),
            queue_ttl_seconds=_get_env_int("PHASEGATE_QUEUE_TTL_SECONDS", default=3_600, minimum=1),
            weights_json=os.getenv("PHASEGATE_WEIGHTS_JSON", ""),
            allow_reapproval=_get_env_bool("PHASEGATE_ALLOW_REAPPROVAL", default=False),
            checkpoint_db=os.getenv("PHASEGATE_CHECKPOINT_DB", "state_store/checkpoints/runner.sqlite"),
            recursion_limit=_get_env_int("PHASEGATE_RECURSION_LIMIT", default=1_000, minimum=25),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        state_store_root = self.state_store_root.strip()
        if not state_store_root:
            raise ValueError("PHASEGATE_STATE_STORE_ROOT must be non-empty")
        checkpoint_db = self.checkpoint_db.strip()
        if not checkpoint_db:
            raise ValueError("PHASEGATE_CHECKPOINT_DB must be non-empty")

        if self.queue_limit > 10_000:
            raise ValueError(f"PHASEGATE_QUEUE_LIMIT must be <= 10000, got: {self.queue_limit}")
        if self.queue_ttl_seconds > 30 * 24 * 3_600:
            raise ValueError(
                f"PHASEGATE_QUEUE_TTL_SECONDS must be <= 2592000 (30 days), got: {self.queue_ttl_seconds}"
            )
        if self.recursion_limit > 100_000:
            raise ValueError(f"PHASEGATE_RECURSION_LIMIT must be <= 100000, got: {self.recursion_limit}")

        return RuntimeSettings(
            state_store_root=state_store_root,
            archive_root=self.archive_root.strip(),
            queue_limit=self.queue_limit,
            queue_ttl_seconds=self.queue_ttl_seconds,
            weights_json=self.weights_json.strip(),
            allow_reapproval=self.allow_reapproval,
            checkpoint_db=checkpoint_db,
            recursion_limit=self.recursion_limit,
        )

    def state_store_path(self, repo_root: Path) -> Path:
        path = Path(self.state_store_root)
        return path if path.is_absolute() else repo_root / path

    def archive_path(self, repo_root: Path) -> Path:
        """Archive root; defaults to ``<state store>/archive`` when unset."""
        if not self.archive_root:
            return self.state_store_path(repo_root) / "archive"
        path = Path(self.archive_root)
        return path if path.is_absolute() else repo_root / path

    def checkpoint_path(self, repo_root: Path) -> Path:
        path = Path(self.checkpoint_db)
        return path if path.is_absolute() else repo_root / path


def _get_env_int(name: str, default: int, minimum: int) -> int:
    """Read a bounded integer; upper bounds are checked in ``normalized()``."""
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw.strip())
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    return parsed


def _get_env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    lowered = raw.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off", ""}:
        return False
    raise ValueError(f"{name} must be a boolean flag, got: {raw!r}")
