"""Independent process-existence checks for lease holders.

A heartbeat only says when a unit last managed to write. Whether the unit is
gone is answered here, by asking the operating system about the recorded
process, and a heartbeat is never treated as proof of death on its own.
"""

from __future__ import annotations

import logging
import os
import socket
from enum import Enum
from typing import Protocol

import psutil

from runledger.orchestrator.models import HolderIdentity

logger = logging.getLogger(__name__)

# psutil reports create_time with sub-second jitter across calls on some kernels.
CREATE_TIME_TOLERANCE_SECONDS = 1.0


class ProcessState(str, Enum):
    ALIVE = "alive"
    DEAD = "dead"
    UNKNOWN = "unknown"


class LivenessChecker(Protocol):
    def check(
        self,
        *,
        pid: int | None,
        hostname: str | None,
        process_started_at: float | None,
    ) -> ProcessState:
        """Report whether the recorded holder process still exists."""


class ProcessLivenessChecker:
    """Check local processes through psutil.

    Holders on another host cannot be inspected from here and are reported as
    ``unknown``, never ``dead``.
    """

    def __init__(self, *, hostname: str | None = None) -> None:
        self.hostname = hostname or socket.gethostname()

    def check(
        self,
        *,
        pid: int | None,
        hostname: str | None,
        process_started_at: float | None,
    ) -> ProcessState:
        if pid is None or hostname is None:
            return ProcessState.UNKNOWN
        if hostname != self.hostname:
            return ProcessState.UNKNOWN
        if not psutil.pid_exists(pid):
            return ProcessState.DEAD
        try:
            process = psutil.Process(pid)
            if process.status() == psutil.STATUS_ZOMBIE:
                return ProcessState.DEAD
            created = process.create_time()
        except psutil.NoSuchProcess:
            return ProcessState.DEAD
        except psutil.AccessDenied:
            return ProcessState.ALIVE
        if (
            process_started_at is not None
            and abs(created - process_started_at) > CREATE_TIME_TOLERANCE_SECONDS
        ):
            logger.info(
                "PID %s was reused (started %.3f, lease recorded %.3f); holder is gone.",
                pid,
                created,
                process_started_at,
            )
            return ProcessState.DEAD
        return ProcessState.ALIVE


def current_holder_identity(pid: int | None = None) -> HolderIdentity:
    """Identity of ``pid`` (default: this process) as stored with a lease."""

    target = pid if pid is not None else os.getpid()
    try:
        started_at: float | None = psutil.Process(target).create_time()
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        started_at = None
    return HolderIdentity(
        pid=target,
        hostname=socket.gethostname(),
        process_started_at=started_at,
    )
