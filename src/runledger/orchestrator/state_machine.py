"""Run lifecycle state machine."""

from __future__ import annotations

from runledger.orchestrator.errors import InvalidTransition
from runledger.orchestrator.models import TERMINAL_RUN_STATUSES, RunStatus

ALLOWED_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.PENDING: frozenset({RunStatus.RUNNING}),
    RunStatus.RUNNING: frozenset(
        {RunStatus.BLOCKED, RunStatus.FINISHED, RunStatus.FAILED, RunStatus.CANCELLED},
    ),
    RunStatus.BLOCKED: frozenset({RunStatus.RUNNING, RunStatus.CANCELLED}),
    RunStatus.FINISHED: frozenset(),
    RunStatus.FAILED: frozenset(),
    RunStatus.CANCELLED: frozenset(),
}


def is_terminal(status: RunStatus) -> bool:
    return status in TERMINAL_RUN_STATUSES


def can_transition(current: RunStatus, target: RunStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def ensure_transition(current: RunStatus, target: RunStatus) -> None:
    """Raise ``InvalidTransition`` unless ``current -> target`` is a legal edge."""

    if can_transition(current, target):
        return
    if is_terminal(current):
        raise InvalidTransition(
            f"Run is terminal ({current.value}); cannot move to {target.value}.",
        )
    raise InvalidTransition(f"Illegal run transition: {current.value} -> {target.value}.")
