"""Domain exceptions raised by the orchestrator."""

from __future__ import annotations

from datetime import datetime


class OrchestratorError(RuntimeError):
    """Base class for orchestrator failures."""


class RunNotFound(OrchestratorError):  # noqa: N818
    def __init__(self, run_id: str) -> None:
        super().__init__(f"Run not found: {run_id}")
        self.run_id = run_id


class LeaseConflict(OrchestratorError):  # noqa: N818
    """Another execution unit holds (or may still hold) the run's write lease."""


class CredentialExhausted(OrchestratorError):  # noqa: N818
    """Every credential slot of a provider is rate limited."""

    def __init__(self, provider: str, retry_at: datetime | None) -> None:
        when = retry_at.isoformat() if retry_at is not None else "unknown"
        super().__init__(
            f"All credential slots for provider {provider!r} are exhausted; "
            f"earliest retry at {when}.",
        )
        self.provider = provider
        self.retry_at = retry_at


class UnrecoverableTaskError(OrchestratorError):
    def __init__(self, task_id: str, reason: str) -> None:
        super().__init__(f"Task {task_id} failed permanently: {reason}")
        self.task_id = task_id
        self.reason = reason


class InvalidTransition(OrchestratorError):  # noqa: N818
    pass


class TaskOrderViolation(OrchestratorError):  # noqa: N818
    pass


class TaskImmutable(OrchestratorError):  # noqa: N818
    pass


class RunTerminal(OrchestratorError):  # noqa: N818
    pass


class UnsupportedVolume(OrchestratorError):  # noqa: N818
    pass


class StatusChannelError(OrchestratorError):
    """A status channel could not read or write a record."""


class SpecNotFound(OrchestratorError):  # noqa: N818
    def __init__(self, spec_id: str) -> None:
        super().__init__(f"Spec not found: {spec_id}")
        self.spec_id = spec_id
