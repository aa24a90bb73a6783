from __future__ import annotations

import json
import sys
import time
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner, Result

from runledger import __version__
from runledger.main import runledger
from runledger.orchestrator.models import RunStatus, TaskSpec
from runledger.orchestrator.store import RunStore

pytestmark = [
    allure.epic("Command Line"),
    allure.feature("runledger CLI"),
]

ECHO_TASK_COMMAND = f"{sys.executable} -m runledger.orchestrator.backend.echo_task"


@pytest.fixture()
def home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    home_dir = tmp_path / "home"
    monkeypatch.setenv(
        "RUNLEDGER_TASK_COMMAND_TEMPLATE",
        f"{ECHO_TASK_COMMAND} --task-id {{task_id}} --record {tmp_path / 'record.jsonl'}",
    )
    monkeypatch.setenv("RUNLEDGER_HEARTBEAT_INTERVAL_SECONDS", "0.5")
    monkeypatch.setenv("RUNLEDGER_FEEDBACK_POLL_SECONDS", "0.1")
    monkeypatch.setenv("RUNLEDGER_UNIT_ID", "unit-cli")
    return home_dir


def _invoke(*args: str, input_text: str | None = None) -> Result:
    return CliRunner().invoke(runledger, list(args), input=input_text, catch_exceptions=False)


def _create_run(home: Path, *tasks: TaskSpec, run_id: str | None = None) -> str:
    store = RunStore(home / "runs")
    try:
        run = store.create_run(
            "spec-a",
            list(tasks) or [TaskSpec(task_id="t1", task_type="impl")],
            run_id=run_id,
        )
    finally:
        store.close()
    return run.run_id


def test_version() -> None:
    result = _invoke("--version")

    assert result.exit_code == 0
    assert __version__ in result.output


def test_credentials_add_list_rotate_remove(home: Path) -> None:
    added = _invoke(
        "credentials",
        "add",
        "--home",
        str(home),
        "--key",
        "sk-ant-first-1111",
        "--label",
        "team-a",
    )
    prompted = _invoke(
        "credentials",
        "add",
        "--home",
        str(home),
        input_text="sk-ant-second-2222\n",
    )

    assert added.exit_code == 0
    assert "Credential slot added: provider=anthropic slot=0 generation=1" in added.output
    assert prompted.exit_code == 0
    assert "slot=1 generation=2" in prompted.output

    listed = _invoke("credentials", "list", "--home", str(home))
    assert "Credential slots: 2" in listed.output
    assert "anthropic[0] team-a key=********1111" in listed.output
    assert "sk-ant-first" not in listed.output

    rotated = _invoke("credentials", "rotate", "--home", str(home))
    assert "Credential pointer moved: provider=anthropic slot=1" in rotated.output

    removed = _invoke("credentials", "remove", "--home", str(home), "--slot", "0")
    assert "Credential slot removed: provider=anthropic slot=0" in removed.output
    assert " removed" in _invoke("credentials", "list", "--home", str(home)).output


def test_dispatch_of_missing_spec_fails(home: Path) -> None:
    result = CliRunner().invoke(runledger, ["dispatch", "--home", str(home), "nope"])

    assert result.exit_code == 1
    assert "Spec not found: nope" in result.output


def test_dispatch_rejects_malformed_resource(home: Path) -> None:
    result = CliRunner().invoke(
        runledger,
        ["dispatch", "--home", str(home), "spec-a", "--resource", "cpu"],
    )

    assert result.exit_code == 2
    assert "KEY=VALUE" in result.output


def test_unit_run_executes_run_in_foreground(tmp_path: Path, home: Path) -> None:
    run_id = _create_run(
        home,
        TaskSpec(task_id="t1", task_type="impl"),
        TaskSpec(task_id="t2", task_type="impl"),
    )

    result = _invoke("unit", "run", "--home", str(home), run_id)

    assert result.exit_code == 0
    assert (
        f"Unit summary: run_id={run_id} unit=unit-cli status=finished exit=finished "
        "completed=2/2 iteration=1"
    ) in result.output
    records = (tmp_path / "record.jsonl").read_text(encoding="utf-8").splitlines()
    assert [json.loads(line)["task_id"] for line in records] == ["t1", "t2"]

    listed = _invoke("runs", "list", "--home", str(home))
    assert "Runs: 1" in listed.output
    assert f"{run_id} status=finished phase=done progress=2/2" in listed.output
    assert "Runs: 0" in _invoke("runs", "list", "--home", str(home), "--status", "running").output

    shown = _invoke("runs", "show", "--home", str(home), run_id)
    assert f"Run: {run_id}" in shown.output
    assert "Status: finished" in shown.output
    assert "Lease: free" in shown.output
    assert "Tasks: 2" in shown.output
    assert "1:impl t1 status=finished attempt=1/3" in shown.output
    assert "Published status: finished phase=done" in shown.output


def test_unit_run_reports_failed_run(home: Path) -> None:
    run_id = _create_run(
        home,
        TaskSpec(
            task_id="broken",
            task_type="impl",
            command=f"{ECHO_TASK_COMMAND} --exit-code 2 --stderr nope",
        ),
    )

    result = CliRunner().invoke(runledger, ["unit", "run", "--home", str(home), run_id])

    assert result.exit_code == 1
    assert "status=failed exit=failed" in result.output
    assert "Error: Task broken failed permanently: exit code 2: nope" in result.output
    assert f"Run {run_id} failed." in result.output


def test_feedback_and_cancel(home: Path) -> None:
    run_id = _create_run(home, TaskSpec(task_id="review", task_type="review", human_gate=True))

    recorded = _invoke("feedback", "--home", str(home), run_id, "approve", "--notes", "ok")
    cancelled = _invoke("cancel", "--home", str(home), run_id)
    again = CliRunner().invoke(runledger, ["cancel", "--home", str(home), run_id])

    assert f"Feedback recorded: run={run_id} decision=approve task=review" in recorded.output
    assert f"Run cancelled: {run_id}" in cancelled.output
    assert again.exit_code == 1
    assert "already cancelled" in again.output


def test_gc_reports_and_skips(home: Path) -> None:
    run_id = _create_run(home)
    _invoke("cancel", "--home", str(home), run_id)

    disabled = _invoke("gc", "--home", str(home), "--days", "0")
    dry = _invoke("gc", "--home", str(home), "--days", "1", "--dry-run")

    assert "Retention prune skipped: days=0." in disabled.output
    assert "Retention prune completed: days=1 dry_run=yes" in dry.output
    assert "Runs deleted: 0" in dry.output


def test_reconcile_reports_published_runs(home: Path) -> None:
    run_id = _create_run(home)
    _invoke("unit", "run", "--home", str(home), run_id)

    result = _invoke("reconcile", "--home", str(home), "--auto-resume")

    assert "Status records: 1" in result.output
    assert f"{run_id} status=finished liveness=unknown" in result.output
    assert "Resumed runs: 0" in result.output


def test_dispatch_starts_detached_unit_that_finishes_run(tmp_path: Path, home: Path) -> None:
    specs_dir = home / "specs"
    specs_dir.mkdir(parents=True)
    (specs_dir / "spec-a.json").write_text(
        json.dumps({"tasks": [{"id": "t1", "type": "impl"}, {"id": "t2", "type": "impl"}]}),
        encoding="utf-8",
    )

    result = _invoke(
        "dispatch",
        "--home",
        str(home),
        "spec-a",
        "--run-id",
        "run-cli",
        "--resource",
        "cpu=2",
    )

    assert result.exit_code == 0
    assert "Dispatched run run-cli on unit unit-" in result.output
    assert "Run: run-cli status=pending" in result.output

    store = RunStore(home / "runs")
    try:
        deadline = time.monotonic() + 60
        while time.monotonic() < deadline:
            if store.load_run("run-cli").status == RunStatus.FINISHED:
                break
            time.sleep(0.2)
        run = store.load_run("run-cli")
        assert run.status == RunStatus.FINISHED
        assert run.resources == {"cpu": "2"}
        records = (tmp_path / "record.jsonl").read_text(encoding="utf-8").splitlines()
        assert [json.loads(line)["task_id"] for line in records] == ["t1", "t2"]
        event_types = [event.event_type for event in store.list_events("run-cli")]
        assert "lease_adopted" in event_types
    finally:
        store.close()
