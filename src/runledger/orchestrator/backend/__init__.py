"""Task process backend implementations."""

from runledger.orchestrator.backend.base import BackendRunRequest, BackendRunResult, TaskBackend
from runledger.orchestrator.backend.cli_backend import BackendRunError, SubprocessTaskBackend

__all__ = [
    "BackendRunError",
    "BackendRunRequest",
    "BackendRunResult",
    "SubprocessTaskBackend",
    "TaskBackend",
]
