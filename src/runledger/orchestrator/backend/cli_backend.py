"""Subprocess-based backend runner for task processes."""

from __future__ import annotations

import os
import shlex
import subprocess
import time
from pathlib import Path
from typing import IO

from runledger.orchestrator.backend.base import BackendRunRequest, BackendRunResult

TIMEOUT_EXIT_CODE = 124
_POLL_INTERVAL_SECONDS = 0.1


class BackendRunError(RuntimeError):
    """Backend execution error with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class SubprocessTaskBackend:
    """Execute the task command template as a child process.

    The template is rendered with ``{run_id}``, ``{task_id}``, ``{task_type}``,
    ``{attempt}`` and ``{workdir}``; values are shell-quoted before splitting.
    """

    def run(self, request: BackendRunRequest) -> BackendRunResult:
        request.workdir.mkdir(parents=True, exist_ok=True)
        log_stem = f"attempt-{request.attempt}.{request.invocation_index}"
        stdout_path = request.workdir / f"{log_stem}.stdout.log"
        stderr_path = request.workdir / f"{log_stem}.stderr.log"

        run_args = build_run_args(request)

        env = os.environ.copy()
        env.update(request.env)
        env["RUNLEDGER_RUN_ID"] = request.run_id
        env["RUNLEDGER_TASK_ID"] = request.task_id
        env["RUNLEDGER_TASK_TYPE"] = request.task_type
        env["RUNLEDGER_TASK_ATTEMPT"] = str(request.attempt)
        env["RUNLEDGER_TASK_WORKDIR"] = str(request.workdir)

        try:
            with (
                stdout_path.open("w", encoding="utf-8") as stdout_handle,
                stderr_path.open("w", encoding="utf-8") as stderr_handle,
            ):
                return _run_subprocess_with_shutdown(
                    run_args=run_args,
                    env=env,
                    cwd=request.workdir,
                    timeout_seconds=request.timeout_seconds,
                    stdout_handle=stdout_handle,
                    stderr_handle=stderr_handle,
                    shutdown_requested=request.shutdown_requested,
                    graceful_shutdown_seconds=request.graceful_shutdown_seconds,
                    force_kill_requested=request.force_kill_requested,
                    stdout_path=stdout_path,
                    stderr_path=stderr_path,
                )
        except FileNotFoundError as error:
            raise BackendRunError(
                f"Task command not found: {run_args[0]}",
                transient=False,
            ) from error
        except OSError as error:
            raise BackendRunError(
                f"Task process failed to start: {error}",
                transient=True,
            ) from error


def build_run_args(request: BackendRunRequest) -> list[str]:
    stripped = request.command_template.strip()
    if not stripped:
        raise BackendRunError("Task command template is empty.", transient=False)
    try:
        rendered = stripped.format(
            run_id=shlex.quote(request.run_id),
            task_id=shlex.quote(request.task_id),
            task_type=shlex.quote(request.task_type),
            attempt=request.attempt,
            workdir=shlex.quote(str(request.workdir)),
        )
    except (KeyError, IndexError) as error:
        raise BackendRunError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise BackendRunError("Task command template rendered empty command.", transient=False)
    return argv


def read_tail(path: Path, *, limit: int = 4000) -> str:
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return ""
    return text[-limit:]


def _run_subprocess_with_shutdown(  # noqa: PLR0913
    *,
    run_args: list[str],
    env: dict[str, str],
    cwd: Path,
    timeout_seconds: int,
    stdout_handle: IO[str],
    stderr_handle: IO[str],
    shutdown_requested,
    graceful_shutdown_seconds: int | None,
    force_kill_requested,
    stdout_path: Path,
    stderr_path: Path,
) -> BackendRunResult:
    process = subprocess.Popen(  # noqa: S603
        run_args,
        env=env,
        cwd=cwd,
        stdout=stdout_handle,
        stderr=stderr_handle,
        text=True,
    )
    start_monotonic = time.monotonic()
    shutdown_deadline: float | None = None
    graceful_seconds = max(0, graceful_shutdown_seconds or 0)

    while True:
        returncode = process.poll()
        if returncode is not None:
            return BackendRunResult(
                exit_code=returncode,
                timed_out=False,
                interrupted=shutdown_deadline is not None,
                stdout_path=stdout_path,
                stderr_path=stderr_path,
            )

        now = time.monotonic()
        if now - start_monotonic >= timeout_seconds:
            _terminate_process(process, grace_seconds=graceful_seconds)
            return BackendRunResult(
                exit_code=TIMEOUT_EXIT_CODE,
                timed_out=True,
                interrupted=False,
                stdout_path=stdout_path,
                stderr_path=stderr_path,
            )

        if shutdown_requested is not None and shutdown_requested():
            if shutdown_deadline is None:
                # Ask first; the task gets the grace period to checkpoint.
                shutdown_deadline = now + graceful_seconds
                _signal_terminate(process)
            elif now >= shutdown_deadline or (
                force_kill_requested is not None and force_kill_requested()
            ):
                _kill_process(process)
                return BackendRunResult(
                    exit_code=process.returncode if process.returncode is not None else -9,
                    timed_out=False,
                    interrupted=True,
                    stdout_path=stdout_path,
                    stderr_path=stderr_path,
                )

        time.sleep(_POLL_INTERVAL_SECONDS)


def _signal_terminate(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return


def _kill_process(process: subprocess.Popen[str]) -> None:
    try:
        process.kill()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        return


def _terminate_process(process: subprocess.Popen[str], *, grace_seconds: int) -> None:
    _signal_terminate(process)
    try:
        process.wait(timeout=max(2, grace_seconds))
    except subprocess.TimeoutExpired:
        _kill_process(process)
