"""Backend interface for task process execution."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol


@dataclass(slots=True)
class BackendRunRequest:
    """Inputs required to execute one task process invocation."""

    run_id: str
    task_id: str
    task_type: str
    attempt: int
    command_template: str
    workdir: Path
    timeout_seconds: int
    env: dict[str, str] = field(default_factory=dict)
    invocation_index: int = 0
    shutdown_requested: Callable[[], bool] | None = None
    graceful_shutdown_seconds: int | None = None
    force_kill_requested: Callable[[], bool] | None = None


@dataclass(slots=True)
class BackendRunResult:
    """Execution outcome from the backend runner."""

    exit_code: int
    timed_out: bool
    interrupted: bool
    stdout_path: Path
    stderr_path: Path


class TaskBackend(Protocol):
    """Protocol implemented by backend runners."""

    def run(self, request: BackendRunRequest) -> BackendRunResult:
        """Run one task process and return execution metadata."""
