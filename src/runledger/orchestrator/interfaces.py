"""Collaborators the orchestrator talks to: spec sources, provisioners and alert sinks."""

from __future__ import annotations

import json
import logging
import os
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

import httpx

from runledger.config import Settings
from runledger.orchestrator.errors import OrchestratorError, SpecNotFound
from runledger.orchestrator.liveness import current_holder_identity
from runledger.orchestrator.models import AlertSeverity, HolderIdentity, TaskList, TaskSpec
from runledger.storage.common import utc_now

logger = logging.getLogger(__name__)


class SpecSource(Protocol):
    def get_spec(self, spec_id: str) -> TaskList:
        """Return the ordered task list for ``spec_id``."""


class JsonSpecSource:
    """Reads ``<specs_dir>/<spec_id>.json``.

    The document is either a bare list of task entries or an object with a
    ``tasks`` list and an optional ``command_template``.
    """

    def __init__(self, specs_dir: Path) -> None:
        self.specs_dir = specs_dir

    def get_spec(self, spec_id: str) -> TaskList:
        path = self.specs_dir / f"{spec_id}.json"
        if not path.is_file():
            raise SpecNotFound(spec_id)
        try:
            payload: Any = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as error:
            raise OrchestratorError(f"Failed to read spec {spec_id}: {error}") from error

        if isinstance(payload, list):
            entries, command_template = payload, None
        elif isinstance(payload, dict):
            entries = payload.get("tasks")
            command_template = payload.get("command_template") or None
        else:
            entries, command_template = None, None
        if not isinstance(entries, list) or not entries:
            raise OrchestratorError(f"Spec {spec_id} has no tasks.")

        try:
            tasks = [TaskSpec.from_dict(entry) for entry in entries]
        except (TypeError, ValueError) as error:
            raise OrchestratorError(f"Spec {spec_id} is malformed: {error}") from error
        seen: set[str] = set()
        for task in tasks:
            if task.task_id in seen:
                raise OrchestratorError(f"Spec {spec_id} repeats task id {task.task_id}.")
            seen.add(task.task_id)
        return TaskList(spec_id=spec_id, tasks=tasks, command_template=command_template)


@dataclass(slots=True)
class UnitHandle:
    """A scheduled execution unit and the process identity it runs under."""

    run_id: str
    unit_id: str
    holder: HolderIdentity
    log_path: Path | None = None


class Provisioner(Protocol):
    def schedule_unit(
        self,
        run_id: str,
        *,
        unit_id: str,
        template: str,
        resources: dict[str, Any],
    ) -> UnitHandle:
        """Start an execution unit that will adopt ``unit_id``'s lease on ``run_id``."""


@dataclass(slots=True)
class LocalProcessProvisioner:
    """Start execution units as detached local ``runledger unit run`` processes.

    ``template`` and ``resources`` are recorded in the unit's environment;
    a local process has nothing else to size.
    """

    settings: Settings
    python_executable: str = sys.executable
    extra_env: dict[str, str] = field(default_factory=dict)

    def schedule_unit(
        self,
        run_id: str,
        *,
        unit_id: str,
        template: str,
        resources: dict[str, Any],
    ) -> UnitHandle:
        run_dir = self.settings.store.runs_root / run_id
        run_dir.mkdir(parents=True, exist_ok=True)
        log_path = run_dir / f"unit-{unit_id}.log"

        env = os.environ.copy()
        env.update(self.settings.to_env())
        env.update(self.extra_env)
        env["RUNLEDGER_UNIT_ID"] = unit_id
        env["RUNLEDGER_UNIT_TEMPLATE"] = template
        env["RUNLEDGER_UNIT_RESOURCES"] = json.dumps(resources, sort_keys=True)

        args = [
            self.python_executable,
            "-m",
            "runledger.main",
            "unit",
            "run",
            run_id,
            "--unit-id",
            unit_id,
        ]
        with log_path.open("ab") as log_handle:
            process = subprocess.Popen(  # noqa: S603
                args,
                stdin=subprocess.DEVNULL,
                stdout=log_handle,
                stderr=subprocess.STDOUT,
                env=env,
                start_new_session=True,
            )
        logger.info(
            "Scheduled unit %s for run %s (pid=%s, template=%s).",
            unit_id,
            run_id,
            process.pid,
            template,
        )
        return UnitHandle(
            run_id=run_id,
            unit_id=unit_id,
            holder=current_holder_identity(process.pid),
            log_path=log_path,
        )


class AlertSink(Protocol):
    def notify(self, severity: AlertSeverity, message: str, *, run_id: str | None = None) -> None:
        """Deliver an operator alert. Must not raise."""


_SEVERITY_LEVELS = {
    AlertSeverity.INFO: logging.INFO,
    AlertSeverity.WARNING: logging.WARNING,
    AlertSeverity.CRITICAL: logging.CRITICAL,
}


class LoggingAlertSink:
    """Write alerts to the ``runledger.alerts`` logger."""

    def __init__(self) -> None:
        self._logger = logging.getLogger("runledger.alerts")

    def notify(self, severity: AlertSeverity, message: str, *, run_id: str | None = None) -> None:
        self._logger.log(_SEVERITY_LEVELS[severity], "[%s] %s", run_id or "-", message)

    def close(self) -> None:
        pass


class WebhookAlertSink:
    """POST alerts as JSON to a webhook; delivery failures are logged and dropped."""

    def __init__(
        self,
        url: str,
        *,
        timeout_seconds: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.url = url
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=min(10.0, timeout_seconds)),
            transport=transport,
        )
        self._fallback = LoggingAlertSink()

    def notify(self, severity: AlertSeverity, message: str, *, run_id: str | None = None) -> None:
        self._fallback.notify(severity, message, run_id=run_id)
        payload = {
            "severity": severity.value,
            "message": message,
            "run_id": run_id,
            "sent_at": utc_now().isoformat(),
        }
        try:
            response = self._client.post(self.url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Failed to deliver %s alert to %s: %s", severity.value, self.url, exc)

    def close(self) -> None:
        self._client.close()


def build_alert_sink(settings: Settings) -> LoggingAlertSink | WebhookAlertSink:
    """Webhook sink when a URL is configured, log-only otherwise. The caller closes it."""
    if settings.alerts.webhook_url:
        return WebhookAlertSink(
            settings.alerts.webhook_url,
            timeout_seconds=settings.alerts.request_timeout_seconds,
        )
    return LoggingAlertSink()
