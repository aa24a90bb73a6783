"""Runtime configuration for run orchestration."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

SUPPORTED_STATUS_CHANNELS: tuple[str, ...] = ("file", "http")


@dataclass(slots=True)
class StoreSettings:
    """Per-run persisted state store settings."""

    runs_root: Path = Path(".runledger/runs")
    busy_timeout_ms: int = 5_000
    lease_stale_after_seconds: int = 120
    allow_network_volumes: bool = False


@dataclass(slots=True)
class ControllerSettings:
    """Execution unit controller settings."""

    unit_id: str = ""
    heartbeat_interval_seconds: float = 30.0
    default_command_template: str = ""
    task_timeout_seconds: int = 3_600
    max_attempts: int = 3
    retry_base_seconds: int = 30
    retry_max_seconds: int = 900
    transient_exit_codes: tuple[int, ...] = (137, 143)
    graceful_shutdown_seconds: int = 30
    credential_wait_seconds: int = 3_600
    feedback_poll_seconds: float = 5.0
    max_run_seconds: int = 0


@dataclass(slots=True)
class CredentialSettings:
    """Credential slot registry and rotation settings."""

    control_db_path: Path = Path(".runledger/control.db")
    default_provider: str = "anthropic"
    env_var_name: str = "ANTHROPIC_API_KEY"
    rate_limit_backoff_seconds: int = 3_600
    rate_limit_exit_code: int = 75


@dataclass(slots=True)
class PublisherSettings:
    """Status publisher channel settings."""

    channel: str = "file"
    status_dir: Path = Path(".runledger/status")
    base_url: str = ""
    request_timeout_seconds: float = 10.0
    max_retries: int = 3
    retry_backoff_seconds: float = 1.0


@dataclass(slots=True)
class ReconcilerSettings:
    """Observer-side cache settings."""

    poll_interval_seconds: float = 15.0
    stale_after_seconds: int = 90
    stuck_task_after_seconds: int = 3_600


@dataclass(slots=True)
class RetentionSettings:
    """Retention window for terminal runs."""

    retention_days: int = 14


@dataclass(slots=True)
class AlertSettings:
    """Alerting channel settings."""

    webhook_url: str = ""
    request_timeout_seconds: float = 10.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    store: StoreSettings = field(default_factory=StoreSettings)
    controller: ControllerSettings = field(default_factory=ControllerSettings)
    credentials: CredentialSettings = field(default_factory=CredentialSettings)
    publisher: PublisherSettings = field(default_factory=PublisherSettings)
    reconciler: ReconcilerSettings = field(default_factory=ReconcilerSettings)
    retention: RetentionSettings = field(default_factory=RetentionSettings)
    alerts: AlertSettings = field(default_factory=AlertSettings)
    specs_dir: Path = Path(".runledger/specs")

    @classmethod
    def from_env(cls, home: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        home_dir = home or Path(os.getenv("RUNLEDGER_HOME", ".runledger"))
        return cls(
            store=StoreSettings(
                runs_root=Path(os.getenv("RUNLEDGER_RUNS_ROOT", str(home_dir / "runs"))),
                busy_timeout_ms=int(os.getenv("RUNLEDGER_SQLITE_BUSY_TIMEOUT_MS", "5000")),
                lease_stale_after_seconds=int(
                    os.getenv("RUNLEDGER_LEASE_STALE_AFTER_SECONDS", "120"),
                ),
                allow_network_volumes=_env_bool(
                    "RUNLEDGER_ALLOW_NETWORK_VOLUMES",
                    default=False,
                ),
            ),
            controller=ControllerSettings(
                unit_id=os.getenv("RUNLEDGER_UNIT_ID", "") or _default_unit_id(),
                heartbeat_interval_seconds=float(
                    os.getenv("RUNLEDGER_HEARTBEAT_INTERVAL_SECONDS", "30"),
                ),
                default_command_template=os.getenv("RUNLEDGER_TASK_COMMAND_TEMPLATE", ""),
                task_timeout_seconds=int(os.getenv("RUNLEDGER_TASK_TIMEOUT_SECONDS", "3600")),
                max_attempts=int(os.getenv("RUNLEDGER_TASK_MAX_ATTEMPTS", "3")),
                retry_base_seconds=int(os.getenv("RUNLEDGER_RETRY_BASE_SECONDS", "30")),
                retry_max_seconds=int(os.getenv("RUNLEDGER_RETRY_MAX_SECONDS", "900")),
                transient_exit_codes=_env_int_tuple(
                    "RUNLEDGER_TRANSIENT_EXIT_CODES",
                    default=(137, 143),
                ),
                graceful_shutdown_seconds=int(
                    os.getenv("RUNLEDGER_GRACEFUL_SHUTDOWN_SECONDS", "30"),
                ),
                credential_wait_seconds=int(
                    os.getenv("RUNLEDGER_CREDENTIAL_WAIT_SECONDS", "3600"),
                ),
                feedback_poll_seconds=float(os.getenv("RUNLEDGER_FEEDBACK_POLL_SECONDS", "5")),
                max_run_seconds=int(os.getenv("RUNLEDGER_MAX_RUN_SECONDS", "0")),
            ),
            credentials=CredentialSettings(
                control_db_path=Path(
                    os.getenv("RUNLEDGER_CONTROL_DB_PATH", str(home_dir / "control.db")),
                ),
                default_provider=os.getenv("RUNLEDGER_DEFAULT_PROVIDER", "anthropic"),
                env_var_name=os.getenv("RUNLEDGER_CREDENTIAL_ENV_VAR", "ANTHROPIC_API_KEY"),
                rate_limit_backoff_seconds=int(
                    os.getenv("RUNLEDGER_RATE_LIMIT_BACKOFF_SECONDS", "3600"),
                ),
                rate_limit_exit_code=int(os.getenv("RUNLEDGER_RATE_LIMIT_EXIT_CODE", "75")),
            ),
            publisher=PublisherSettings(
                channel=os.getenv("RUNLEDGER_STATUS_CHANNEL", "file").strip().lower(),
                status_dir=Path(
                    os.getenv("RUNLEDGER_STATUS_DIR", str(home_dir / "status")),
                ),
                base_url=os.getenv("RUNLEDGER_STATUS_BASE_URL", "").strip(),
                request_timeout_seconds=float(
                    os.getenv("RUNLEDGER_STATUS_REQUEST_TIMEOUT_SECONDS", "10"),
                ),
                max_retries=int(os.getenv("RUNLEDGER_STATUS_MAX_RETRIES", "3")),
                retry_backoff_seconds=float(
                    os.getenv("RUNLEDGER_STATUS_RETRY_BACKOFF_SECONDS", "1.0"),
                ),
            ),
            reconciler=ReconcilerSettings(
                poll_interval_seconds=float(
                    os.getenv("RUNLEDGER_RECONCILE_POLL_INTERVAL_SECONDS", "15"),
                ),
                stale_after_seconds=int(os.getenv("RUNLEDGER_STATUS_STALE_AFTER_SECONDS", "90")),
                stuck_task_after_seconds=int(
                    os.getenv("RUNLEDGER_STUCK_TASK_AFTER_SECONDS", "3600"),
                ),
            ),
            retention=RetentionSettings(
                retention_days=int(os.getenv("RUNLEDGER_RETENTION_DAYS", "14")),
            ),
            alerts=AlertSettings(
                webhook_url=os.getenv("RUNLEDGER_ALERT_WEBHOOK_URL", "").strip(),
                request_timeout_seconds=float(
                    os.getenv("RUNLEDGER_ALERT_REQUEST_TIMEOUT_SECONDS", "10"),
                ),
            ),
            specs_dir=Path(os.getenv("RUNLEDGER_SPECS_DIR", str(home_dir / "specs"))),
        )

    def validate(self) -> None:
        """Raise configuration error for values the orchestrator cannot work with."""

        if self.store.lease_stale_after_seconds <= 0:
            raise ValueError("RUNLEDGER_LEASE_STALE_AFTER_SECONDS must be > 0.")
        if self.store.busy_timeout_ms <= 0:
            raise ValueError("RUNLEDGER_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.controller.heartbeat_interval_seconds <= 0:
            raise ValueError("RUNLEDGER_HEARTBEAT_INTERVAL_SECONDS must be > 0.")
        if self.store.lease_stale_after_seconds <= self.controller.heartbeat_interval_seconds:
            raise ValueError(
                "RUNLEDGER_LEASE_STALE_AFTER_SECONDS must be greater than "
                "RUNLEDGER_HEARTBEAT_INTERVAL_SECONDS.",
            )
        if self.controller.max_attempts <= 0:
            raise ValueError("RUNLEDGER_TASK_MAX_ATTEMPTS must be > 0.")
        if self.controller.task_timeout_seconds <= 0:
            raise ValueError("RUNLEDGER_TASK_TIMEOUT_SECONDS must be > 0.")
        if self.controller.max_run_seconds < 0:
            raise ValueError("RUNLEDGER_MAX_RUN_SECONDS must be >= 0.")
        if self.credentials.rate_limit_backoff_seconds < 0:
            raise ValueError("RUNLEDGER_RATE_LIMIT_BACKOFF_SECONDS must be >= 0.")
        if not 1 <= self.credentials.rate_limit_exit_code <= 255:  # noqa: PLR2004
            raise ValueError("RUNLEDGER_RATE_LIMIT_EXIT_CODE must be within 1..255.")
        if self.publisher.channel not in SUPPORTED_STATUS_CHANNELS:
            raise ValueError(
                f"Unsupported RUNLEDGER_STATUS_CHANNEL: {self.publisher.channel!r}. "
                f"Expected one of: {', '.join(SUPPORTED_STATUS_CHANNELS)}.",
            )
        if self.publisher.channel == "http":
            _validate_http_url("RUNLEDGER_STATUS_BASE_URL", self.publisher.base_url)
        if self.publisher.max_retries < 0:
            raise ValueError("RUNLEDGER_STATUS_MAX_RETRIES must be >= 0.")
        if self.reconciler.stale_after_seconds <= 0:
            raise ValueError("RUNLEDGER_STATUS_STALE_AFTER_SECONDS must be > 0.")
        if self.reconciler.stuck_task_after_seconds <= 0:
            raise ValueError("RUNLEDGER_STUCK_TASK_AFTER_SECONDS must be > 0.")
        if self.retention.retention_days < 0:
            raise ValueError("RUNLEDGER_RETENTION_DAYS must be >= 0.")
        if self.alerts.webhook_url:
            _validate_http_url("RUNLEDGER_ALERT_WEBHOOK_URL", self.alerts.webhook_url)

    def to_env(self) -> dict[str, str]:
        """Environment that makes ``from_env`` in a child process see these settings.

        The unit id is left out: every execution unit gets its own.
        """

        controller = self.controller
        return {
            "RUNLEDGER_RUNS_ROOT": str(self.store.runs_root),
            "RUNLEDGER_SQLITE_BUSY_TIMEOUT_MS": str(self.store.busy_timeout_ms),
            "RUNLEDGER_LEASE_STALE_AFTER_SECONDS": str(self.store.lease_stale_after_seconds),
            "RUNLEDGER_ALLOW_NETWORK_VOLUMES": "1" if self.store.allow_network_volumes else "0",
            "RUNLEDGER_HEARTBEAT_INTERVAL_SECONDS": str(controller.heartbeat_interval_seconds),
            "RUNLEDGER_TASK_COMMAND_TEMPLATE": controller.default_command_template,
            "RUNLEDGER_TASK_TIMEOUT_SECONDS": str(controller.task_timeout_seconds),
            "RUNLEDGER_TASK_MAX_ATTEMPTS": str(controller.max_attempts),
            "RUNLEDGER_RETRY_BASE_SECONDS": str(controller.retry_base_seconds),
            "RUNLEDGER_RETRY_MAX_SECONDS": str(controller.retry_max_seconds),
            "RUNLEDGER_TRANSIENT_EXIT_CODES": ",".join(
                str(code) for code in controller.transient_exit_codes
            ),
            "RUNLEDGER_GRACEFUL_SHUTDOWN_SECONDS": str(controller.graceful_shutdown_seconds),
            "RUNLEDGER_CREDENTIAL_WAIT_SECONDS": str(controller.credential_wait_seconds),
            "RUNLEDGER_FEEDBACK_POLL_SECONDS": str(controller.feedback_poll_seconds),
            "RUNLEDGER_MAX_RUN_SECONDS": str(controller.max_run_seconds),
            "RUNLEDGER_CONTROL_DB_PATH": str(self.credentials.control_db_path),
            "RUNLEDGER_DEFAULT_PROVIDER": self.credentials.default_provider,
            "RUNLEDGER_CREDENTIAL_ENV_VAR": self.credentials.env_var_name,
            "RUNLEDGER_RATE_LIMIT_BACKOFF_SECONDS": str(
                self.credentials.rate_limit_backoff_seconds,
            ),
            "RUNLEDGER_RATE_LIMIT_EXIT_CODE": str(self.credentials.rate_limit_exit_code),
            "RUNLEDGER_STATUS_CHANNEL": self.publisher.channel,
            "RUNLEDGER_STATUS_DIR": str(self.publisher.status_dir),
            "RUNLEDGER_STATUS_BASE_URL": self.publisher.base_url,
            "RUNLEDGER_STATUS_REQUEST_TIMEOUT_SECONDS": str(
                self.publisher.request_timeout_seconds,
            ),
            "RUNLEDGER_STATUS_MAX_RETRIES": str(self.publisher.max_retries),
            "RUNLEDGER_STATUS_RETRY_BACKOFF_SECONDS": str(self.publisher.retry_backoff_seconds),
            "RUNLEDGER_ALERT_WEBHOOK_URL": self.alerts.webhook_url,
            "RUNLEDGER_ALERT_REQUEST_TIMEOUT_SECONDS": str(self.alerts.request_timeout_seconds),
            "RUNLEDGER_SPECS_DIR": str(self.specs_dir),
        }


def _default_unit_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


def _validate_http_url(name: str, value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            f"Invalid {name}: {value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_int_tuple(name: str, default: tuple[int, ...]) -> tuple[int, ...]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    values: list[int] = []
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        try:
            values.append(int(token))
        except ValueError as error:
            raise ValueError(f"Invalid integer in {name}: {token!r}") from error
    return tuple(values)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
