from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import allure
import pytest

from runledger.config import Settings

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Environment Settings"),
]


def test_defaults_are_rooted_under_home(tmp_path: Path) -> None:
    settings = Settings.from_env(home=tmp_path)

    assert settings.store.runs_root == tmp_path / "runs"
    assert settings.credentials.control_db_path == tmp_path / "control.db"
    assert settings.publisher.status_dir == tmp_path / "status"
    assert settings.specs_dir == tmp_path / "specs"
    assert settings.publisher.channel == "file"
    assert settings.controller.transient_exit_codes == (137, 143)
    assert settings.controller.unit_id
    settings.validate()


def test_env_overrides_are_applied(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RUNLEDGER_HOME", str(tmp_path / "state"))
    monkeypatch.setenv("RUNLEDGER_HEARTBEAT_INTERVAL_SECONDS", "5")
    monkeypatch.setenv("RUNLEDGER_LEASE_STALE_AFTER_SECONDS", "20")
    monkeypatch.setenv("RUNLEDGER_TRANSIENT_EXIT_CODES", "137, 143,124")
    monkeypatch.setenv("RUNLEDGER_ALLOW_NETWORK_VOLUMES", "yes")
    monkeypatch.setenv("RUNLEDGER_STATUS_CHANNEL", " HTTP ")
    monkeypatch.setenv("RUNLEDGER_STATUS_BASE_URL", "https://status.example.com/api")
    monkeypatch.setenv("RUNLEDGER_UNIT_ID", "unit-7")

    settings = Settings.from_env()

    assert settings.store.runs_root == tmp_path / "state" / "runs"
    assert settings.controller.heartbeat_interval_seconds == 5.0
    assert settings.store.lease_stale_after_seconds == 20
    assert settings.controller.transient_exit_codes == (137, 143, 124)
    assert settings.store.allow_network_volumes is True
    assert settings.publisher.channel == "http"
    assert settings.controller.unit_id == "unit-7"
    settings.validate()


def test_invalid_boolean_is_rejected(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("RUNLEDGER_ALLOW_NETWORK_VOLUMES", "sometimes")

    with pytest.raises(ValueError, match="RUNLEDGER_ALLOW_NETWORK_VOLUMES"):
        Settings.from_env(home=tmp_path)


def test_invalid_exit_code_list_is_rejected(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    monkeypatch.setenv("RUNLEDGER_TRANSIENT_EXIT_CODES", "137,abc")

    with pytest.raises(ValueError, match="RUNLEDGER_TRANSIENT_EXIT_CODES"):
        Settings.from_env(home=tmp_path)


def test_lease_staleness_must_exceed_heartbeat_interval(tmp_path: Path) -> None:
    settings = Settings.from_env(home=tmp_path)
    settings = replace(
        settings,
        controller=replace(settings.controller, heartbeat_interval_seconds=120.0),
    )

    with pytest.raises(ValueError, match="RUNLEDGER_LEASE_STALE_AFTER_SECONDS"):
        settings.validate()


def test_http_channel_requires_absolute_url(tmp_path: Path) -> None:
    settings = Settings.from_env(home=tmp_path)
    settings = replace(
        settings,
        publisher=replace(settings.publisher, channel="http", base_url="status.local"),
    )

    with pytest.raises(ValueError, match="RUNLEDGER_STATUS_BASE_URL"):
        settings.validate()


def test_unknown_status_channel_is_rejected(tmp_path: Path) -> None:
    settings = Settings.from_env(home=tmp_path)
    settings = replace(settings, publisher=replace(settings.publisher, channel="carrier-pigeon"))

    with pytest.raises(ValueError, match="Unsupported RUNLEDGER_STATUS_CHANNEL"):
        settings.validate()


def test_rate_limit_exit_code_range(tmp_path: Path) -> None:
    settings = Settings.from_env(home=tmp_path)
    settings = replace(
        settings,
        credentials=replace(settings.credentials, rate_limit_exit_code=300),
    )

    with pytest.raises(ValueError, match="RUNLEDGER_RATE_LIMIT_EXIT_CODE"):
        settings.validate()


def test_child_process_environment_reproduces_settings(
    settings: Settings,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    for name, value in settings.to_env().items():
        monkeypatch.setenv(name, value)
    monkeypatch.setenv("RUNLEDGER_UNIT_ID", "unit-child")

    child = Settings.from_env()

    assert child.store == settings.store
    assert child.credentials == settings.credentials
    assert child.publisher == settings.publisher
    assert child.specs_dir == settings.specs_dir
    assert child.controller == replace(settings.controller, unit_id="unit-child")
    assert "RUNLEDGER_UNIT_ID" not in settings.to_env()
