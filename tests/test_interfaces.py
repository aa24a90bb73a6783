from __future__ import annotations

import json
import logging
from dataclasses import replace
from pathlib import Path

import allure
import httpx
import pytest

from runledger.config import AlertSettings, Settings
from runledger.orchestrator.controller import ExecutionUnitController
from runledger.orchestrator.controllers import _dispatcher as open_dispatcher
from runledger.orchestrator.errors import OrchestratorError, SpecNotFound
from runledger.orchestrator.interfaces import (
    JsonSpecSource,
    LoggingAlertSink,
    WebhookAlertSink,
    build_alert_sink,
)
from runledger.orchestrator.models import AlertSeverity

pytestmark = [
    allure.epic("Dispatch"),
    allure.feature("Spec Sources And Alerts"),
]


def _write(specs_dir: Path, spec_id: str, payload: object) -> None:
    specs_dir.mkdir(parents=True, exist_ok=True)
    text = payload if isinstance(payload, str) else json.dumps(payload)
    (specs_dir / f"{spec_id}.json").write_text(text, encoding="utf-8")


def test_spec_source_reads_bare_task_list(tmp_path: Path) -> None:
    _write(
        tmp_path,
        "spec-a",
        [
            {"id": "plan", "type": "prep"},
            {"id": "review", "type": "review", "human_gate": True, "max_attempts": 1},
        ],
    )

    spec = JsonSpecSource(tmp_path).get_spec("spec-a")

    assert spec.spec_id == "spec-a"
    assert spec.command_template is None
    assert [(task.task_id, task.task_type) for task in spec.tasks] == [
        ("plan", "prep"),
        ("review", "review"),
    ]
    assert spec.tasks[1].human_gate is True
    assert spec.tasks[1].max_attempts == 1


def test_spec_source_reads_document_with_template(tmp_path: Path) -> None:
    _write(
        tmp_path,
        "spec-b",
        {
            "tasks": [{"id": "build", "type": "impl", "command": "make {task_id}"}],
            "command_template": "agent --task {task_id}",
        },
    )

    spec = JsonSpecSource(tmp_path).get_spec("spec-b")

    assert spec.command_template == "agent --task {task_id}"
    assert spec.tasks[0].command == "make {task_id}"


def test_spec_source_missing_spec(tmp_path: Path) -> None:
    with pytest.raises(SpecNotFound, match="Spec not found: nope"):
        JsonSpecSource(tmp_path).get_spec("nope")


@pytest.mark.parametrize(
    ("payload", "message"),
    [
        ("{broken", "Failed to read spec"),
        ({"tasks": []}, "has no tasks"),
        ("42", "has no tasks"),
        ([{"id": "a"}], "malformed"),
        ([{"id": "a", "type": "impl"}, {"id": "a", "type": "impl"}], "repeats task id a"),
    ],
)
def test_spec_source_rejects_bad_documents(
    tmp_path: Path,
    payload: object,
    message: str,
) -> None:
    _write(tmp_path, "spec-bad", payload)

    with pytest.raises(OrchestratorError, match=message):
        JsonSpecSource(tmp_path).get_spec("spec-bad")


def test_webhook_alert_sink_posts_json(caplog: pytest.LogCaptureFixture) -> None:
    received: list[dict[str, object]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        received.append(json.loads(request.content))
        return httpx.Response(202)

    sink = WebhookAlertSink("http://alerts.local/hook", transport=httpx.MockTransport(handler))
    caplog.set_level(logging.INFO, logger="runledger.alerts")

    sink.notify(AlertSeverity.CRITICAL, "Run run-1 failed: boom", run_id="run-1")
    sink.close()

    assert received[0]["severity"] == "critical"
    assert received[0]["message"] == "Run run-1 failed: boom"
    assert received[0]["run_id"] == "run-1"
    assert "sent_at" in received[0]
    assert "[run-1] Run run-1 failed: boom" in caplog.text


def test_webhook_alert_sink_swallows_delivery_failures(caplog: pytest.LogCaptureFixture) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503)

    sink = WebhookAlertSink("http://alerts.local/hook", transport=httpx.MockTransport(handler))
    caplog.set_level(logging.WARNING)

    sink.notify(AlertSeverity.WARNING, "Dispatch refused")

    assert "Failed to deliver warning alert" in caplog.text
    sink.close()


def test_logging_alert_sink_maps_severity(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO, logger="runledger.alerts")

    LoggingAlertSink().notify(AlertSeverity.CRITICAL, "credentials exhausted", run_id="run-7")

    record = caplog.records[-1]
    assert record.levelno == logging.CRITICAL
    assert record.getMessage() == "[run-7] credentials exhausted"


def test_build_alert_sink_follows_settings(settings: Settings) -> None:
    assert isinstance(build_alert_sink(settings), LoggingAlertSink)

    with_webhook = replace(settings, alerts=AlertSettings(webhook_url="http://alerts.local/hook"))
    sink = build_alert_sink(with_webhook)

    assert isinstance(sink, WebhookAlertSink)
    sink.close()


def _with_webhook(settings: Settings) -> Settings:
    return replace(settings, alerts=AlertSettings(webhook_url="http://alerts.local/hook"))


def test_controller_closes_the_alert_sink_it_built(settings: Settings) -> None:
    controller = ExecutionUnitController.from_settings(_with_webhook(settings), run_id="run-1")
    sink = controller.alerts
    assert isinstance(sink, WebhookAlertSink)

    controller.close()

    assert sink._client.is_closed


def test_controller_leaves_a_passed_alert_sink_open(settings: Settings) -> None:
    sink = WebhookAlertSink("http://alerts.local/hook")
    controller = ExecutionUnitController.from_settings(
        _with_webhook(settings),
        run_id="run-1",
        alerts=sink,
    )

    controller.close()

    assert not sink._client.is_closed
    sink.close()


def test_dispatcher_context_closes_its_alert_sink(settings: Settings) -> None:
    with open_dispatcher(_with_webhook(settings)) as dispatcher:
        sink = dispatcher.alerts
        assert isinstance(sink, WebhookAlertSink)
        assert not sink._client.is_closed

    assert sink._client.is_closed
