from pathlib import Path

import pytest

from phasegate.settings import RuntimeSettings


def _clear_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "PHASEGATE_STATE_STORE_ROOT",
        "PHASEGATE_ARCHIVE_ROOT",
        "PHASEGATE_QUEUE_LIMIT",
        "PHASEGATE_QUEUE_TTL_SECONDS",
        "PHASEGATE_WEIGHTS_JSON",
        "PHASEGATE_ALLOW_REAPPROVAL",
        "PHASEGATE_CHECKPOINT_DB",
        "PHASEGATE_RECURSION_LIMIT",
    ):
        monkeypatch.delenv(name, raising=False)


def test_runtime_settings_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    _clear_env(monkeypatch)
    settings = RuntimeSettings.from_env()
    assert settings == RuntimeSettings()
    assert settings.archive_path(Path("/repo")) == Path("/repo/state_store/archive")


def test_runtime_settings_read_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    _clear_env(monkeypatch)
    monkeypatch.setenv("PHASEGATE_STATE_STORE_ROOT", str(tmp_path / "store"))
    monkeypatch.setenv("PHASEGATE_ARCHIVE_ROOT", "runs")
    monkeypatch.setenv("PHASEGATE_QUEUE_LIMIT", "25")
    monkeypatch.setenv("PHASEGATE_ALLOW_REAPPROVAL", "yes")

    settings = RuntimeSettings.from_env()
    assert settings.queue_limit == 25
    assert settings.allow_reapproval is True
    assert settings.state_store_path(Path("/repo")) == tmp_path / "store"
    assert settings.archive_path(Path("/repo")) == Path("/repo/runs")


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("PHASEGATE_QUEUE_LIMIT", "zero"),
        ("PHASEGATE_QUEUE_LIMIT", "0"),
        ("PHASEGATE_QUEUE_TTL_SECONDS", "99999999"),
        ("PHASEGATE_RECURSION_LIMIT", "5"),
        ("PHASEGATE_ALLOW_REAPPROVAL", "maybe"),
        ("PHASEGATE_STATE_STORE_ROOT", "   "),
    ],
)
def test_runtime_settings_fail_fast(monkeypatch: pytest.MonkeyPatch, name: str, value: str) -> None:
    _clear_env(monkeypatch)
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError):
        RuntimeSettings.from_env()
