"""Shared test fixtures."""

from __future__ import annotations

import os
import sys
from collections.abc import Callable, Iterator
from datetime import timedelta
from pathlib import Path

import pytest
from sqlalchemy import update as sa_update
from sqlmodel import Session, col

from runledger.config import (
    ControllerSettings,
    CredentialSettings,
    PublisherSettings,
    ReconcilerSettings,
    Settings,
    StoreSettings,
)
from runledger.orchestrator.controller import ControllerResult, ExecutionUnitController
from runledger.orchestrator.credentials import CredentialRegistry
from runledger.orchestrator.liveness import current_holder_identity
from runledger.orchestrator.models import AlertSeverity, HolderIdentity
from runledger.orchestrator.store import STATE_DB_NAME, RunStore
from runledger.storage.common import build_sqlite_engine, to_db_datetime, utc_now
from runledger.storage.sqlmodel_models import RunLeaseRow

ECHO_TASK_COMMAND = f"{sys.executable} -m runledger.orchestrator.backend.echo_task"


class RecordingAlertSink:
    """Collects alerts instead of delivering them."""

    def __init__(self) -> None:
        self.alerts: list[tuple[AlertSeverity, str, str | None]] = []

    def notify(self, severity: AlertSeverity, message: str, *, run_id: str | None = None) -> None:
        self.alerts.append((severity, message, run_id))

    def severities(self) -> list[AlertSeverity]:
        return [severity for severity, _, _ in self.alerts]


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    home = tmp_path / "home"
    settings = Settings(
        store=StoreSettings(runs_root=home / "runs", lease_stale_after_seconds=30),
        controller=ControllerSettings(
            unit_id="unit-test",
            heartbeat_interval_seconds=0.2,
            default_command_template=f"{ECHO_TASK_COMMAND} --task-id {{task_id}}",
            task_timeout_seconds=30,
            max_attempts=3,
            retry_base_seconds=0,
            retry_max_seconds=0,
            graceful_shutdown_seconds=2,
            credential_wait_seconds=1,
            feedback_poll_seconds=0.05,
        ),
        credentials=CredentialSettings(
            control_db_path=home / "control.db",
            rate_limit_backoff_seconds=600,
        ),
        publisher=PublisherSettings(
            status_dir=home / "status",
            max_retries=1,
            retry_backoff_seconds=0.01,
        ),
        reconciler=ReconcilerSettings(poll_interval_seconds=0.1, stale_after_seconds=30),
        specs_dir=home / "specs",
    )
    settings.validate()
    return settings


@pytest.fixture()
def echo_template() -> Callable[..., str]:
    """Command template running the scripted echo task with extra flags."""

    def _template(*flags: str) -> str:
        return " ".join([ECHO_TASK_COMMAND, "--task-id {task_id}", *flags])

    return _template


@pytest.fixture()
def store(settings: Settings) -> Iterator[RunStore]:
    run_store = RunStore(
        settings.store.runs_root,
        lease_stale_after_seconds=settings.store.lease_stale_after_seconds,
    )
    yield run_store
    run_store.close()


@pytest.fixture()
def registry(settings: Settings) -> Iterator[CredentialRegistry]:
    credential_registry = CredentialRegistry(settings.credentials.control_db_path)
    credential_registry.init_schema()
    yield credential_registry
    credential_registry.close()


@pytest.fixture()
def alerts() -> RecordingAlertSink:
    return RecordingAlertSink()


@pytest.fixture()
def dead_holder() -> HolderIdentity:
    """This process with a start time that cannot match, so the liveness check calls it gone."""

    identity = current_holder_identity()
    return HolderIdentity(pid=identity.pid, hostname=identity.hostname, process_started_at=1.0)


@pytest.fixture()
def age_lease(settings: Settings) -> Callable[[str, float], None]:
    """Push a run's lease heartbeat into the past."""

    def _age(run_id: str, seconds: float) -> None:
        engine = build_sqlite_engine(
            db_path=settings.store.runs_root / run_id / STATE_DB_NAME,
            busy_timeout_ms=5_000,
        )
        try:
            with Session(engine) as session:
                session.exec(
                    sa_update(RunLeaseRow)
                    .where(col(RunLeaseRow.run_id) == run_id)
                    .values(heartbeat_at=to_db_datetime(utc_now() - timedelta(seconds=seconds))),
                )
                session.commit()
        finally:
            engine.dispose()

    return _age


@pytest.fixture()
def run_unit(
    settings: Settings,
    alerts: RecordingAlertSink,
) -> Callable[..., ControllerResult]:
    """Run one execution unit session in the calling thread."""

    def _run(
        run_id: str,
        *,
        unit_id: str = "unit-test",
        unit_settings: Settings | None = None,
    ) -> ControllerResult:
        controller = ExecutionUnitController.from_settings(
            unit_settings or settings,
            run_id=run_id,
            unit_id=unit_id,
            alerts=alerts,
        )
        try:
            return controller.run()
        finally:
            controller.close()

    return _run


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in list(os.environ):
        if name.startswith("RUNLEDGER_") or name == "ANTHROPIC_API_KEY":
            monkeypatch.delenv(name, raising=False)
