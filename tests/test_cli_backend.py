from __future__ import annotations

import sys
import time
from pathlib import Path

import allure
import pytest

from runledger.orchestrator.backend import BackendRunError, BackendRunRequest, SubprocessTaskBackend
from runledger.orchestrator.backend.cli_backend import TIMEOUT_EXIT_CODE, build_run_args, read_tail

pytestmark = [
    allure.epic("Task Execution"),
    allure.feature("Task Process Backend"),
]

_ECHO_TASK = f"{sys.executable} -m runledger.orchestrator.backend.echo_task"


def _request(tmp_path: Path, command_template: str, **overrides) -> BackendRunRequest:
    values = {
        "run_id": "run-1",
        "task_id": "task one",
        "task_type": "impl",
        "attempt": 2,
        "command_template": command_template,
        "workdir": tmp_path / "work dir",
        "timeout_seconds": 30,
    }
    values.update(overrides)
    return BackendRunRequest(**values)


def test_build_run_args_quotes_placeholder_values(tmp_path: Path) -> None:
    request = _request(
        tmp_path,
        "runner --task {task_id} --type {task_type} --attempt {attempt} --cwd {workdir}",
    )

    assert build_run_args(request) == [
        "runner",
        "--task",
        "task one",
        "--type",
        "impl",
        "--attempt",
        "2",
        "--cwd",
        str(tmp_path / "work dir"),
    ]


def test_build_run_args_rejects_unknown_placeholder(tmp_path: Path) -> None:
    with pytest.raises(BackendRunError, match="Unsupported command template placeholder") as info:
        build_run_args(_request(tmp_path, "runner {prompt}"))
    assert info.value.transient is False


def test_build_run_args_rejects_empty_template(tmp_path: Path) -> None:
    with pytest.raises(BackendRunError, match="empty"):
        build_run_args(_request(tmp_path, "   "))


def test_run_success_writes_logs_and_task_env(tmp_path: Path) -> None:
    record = tmp_path / "record.jsonl"
    request = _request(
        tmp_path,
        f"{_ECHO_TASK} --task-id {{task_id}} --record {record}",
        env={"ANTHROPIC_API_KEY": "key-a"},
    )

    result = SubprocessTaskBackend().run(request)

    assert result.exit_code == 0
    assert result.timed_out is False
    assert result.interrupted is False
    assert result.stdout_path.name == "attempt-2.0.stdout.log"
    assert "task task one done (attempt 2)" in read_tail(result.stdout_path)
    line = record.read_text(encoding="utf-8").strip()
    assert '"key": "key-a"' in line
    assert '"attempt": 2' in line


def test_run_reports_failure_exit_code(tmp_path: Path) -> None:
    request = _request(tmp_path, f"{_ECHO_TASK} --exit-code 3 --stderr boom")

    result = SubprocessTaskBackend().run(request)

    assert result.exit_code == 3
    assert read_tail(result.stderr_path).strip() == "boom"


def test_run_times_out(tmp_path: Path) -> None:
    request = _request(tmp_path, f"{_ECHO_TASK} --sleep 20", timeout_seconds=1)

    started = time.monotonic()
    result = SubprocessTaskBackend().run(request)

    assert result.timed_out is True
    assert result.exit_code == TIMEOUT_EXIT_CODE
    assert time.monotonic() - started < 10


def test_shutdown_request_interrupts_running_task(tmp_path: Path) -> None:
    started = time.monotonic()
    request = _request(
        tmp_path,
        f"{_ECHO_TASK} --sleep 20",
        shutdown_requested=lambda: time.monotonic() - started > 0.5,
        graceful_shutdown_seconds=5,
    )

    result = SubprocessTaskBackend().run(request)

    assert result.interrupted is True
    assert result.timed_out is False
    assert result.exit_code in {143, -15}
    assert time.monotonic() - started < 10


def test_forced_shutdown_skips_grace_period(tmp_path: Path) -> None:
    started = time.monotonic()
    request = _request(
        tmp_path,
        f"{_ECHO_TASK} --sleep 20",
        shutdown_requested=lambda: time.monotonic() - started > 0.5,
        force_kill_requested=lambda: True,
        graceful_shutdown_seconds=60,
    )

    result = SubprocessTaskBackend().run(request)

    assert result.interrupted is True
    assert time.monotonic() - started < 10


def test_missing_command_is_not_transient(tmp_path: Path) -> None:
    request = _request(tmp_path, "definitely-not-a-runledger-command --flag")

    with pytest.raises(BackendRunError, match="Task command not found") as info:
        SubprocessTaskBackend().run(request)
    assert info.value.transient is False
