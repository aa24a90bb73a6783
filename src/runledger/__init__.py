"""Resumable, lease-guarded orchestration of long-running task runs."""

__version__ = "0.1.0"
