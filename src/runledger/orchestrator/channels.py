"""Passive, pollable channels that carry published run status records."""

from __future__ import annotations

import json
import logging
import os
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Protocol

import httpx

from runledger.config import PublisherSettings
from runledger.orchestrator.errors import StatusChannelError
from runledger.orchestrator.models import StatusRecord

logger = logging.getLogger(__name__)

RecordCallback = Callable[[StatusRecord], None]


class StatusChannel(Protocol):
    """Key/value store of the latest status record per run."""

    def publish(self, record: StatusRecord) -> None:
        """Overwrite the run's record. Raises ``StatusChannelError``."""

    def fetch(self, run_id: str) -> StatusRecord | None:
        """Read one run's record directly from the channel."""

    def fetch_all(self) -> list[StatusRecord]:
        """Read every record currently on the channel."""

    def delete(self, run_id: str) -> None:
        """Drop a run's record."""

    def watch(self, on_record: RecordCallback, stop: threading.Event, interval: float) -> None:
        """Block until ``stop`` is set, reporting records as they change."""

    def close(self) -> None:
        """Release channel resources."""


class FileStatusChannel:
    """One ``<run_id>.json`` document per run inside a shared directory."""

    def __init__(self, status_dir: Path) -> None:
        self.status_dir = status_dir

    def path_for(self, run_id: str) -> Path:
        return self.status_dir / f"{run_id}.json"

    def publish(self, record: StatusRecord) -> None:
        target = self.path_for(record.run_id)
        temp = target.with_name(f".{target.name}.{os.getpid()}.{threading.get_ident()}.tmp")
        try:
            self.status_dir.mkdir(parents=True, exist_ok=True)
            with temp.open("w", encoding="utf-8") as handle:
                json.dump(record.to_dict(), handle, ensure_ascii=False, sort_keys=True)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp, target)
        except OSError as error:
            temp.unlink(missing_ok=True)
            raise StatusChannelError(f"Failed to write status for {record.run_id}: {error}") from error

    def fetch(self, run_id: str) -> StatusRecord | None:
        return self._read(self.path_for(run_id))

    def fetch_all(self) -> list[StatusRecord]:
        if not self.status_dir.is_dir():
            return []
        records: list[StatusRecord] = []
        for path in sorted(self.status_dir.glob("*.json")):
            record = self._read(path)
            if record is not None:
                records.append(record)
        return records

    def delete(self, run_id: str) -> None:
        self.path_for(run_id).unlink(missing_ok=True)

    def watch(self, on_record: RecordCallback, stop: threading.Event, interval: float) -> None:
        seen: dict[Path, int] = {}
        while not stop.is_set():
            if self.status_dir.is_dir():
                for path in self.status_dir.glob("*.json"):
                    try:
                        mtime = path.stat().st_mtime_ns
                    except OSError:
                        continue
                    if seen.get(path) == mtime:
                        continue
                    seen[path] = mtime
                    try:
                        record = self._read(path)
                    except StatusChannelError as error:
                        logger.warning("Skipping unreadable status file %s: %s", path, error)
                        continue
                    if record is not None:
                        on_record(record)
            stop.wait(max(0.05, interval))

    def close(self) -> None:
        return

    def _read(self, path: Path) -> StatusRecord | None:
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as error:
            raise StatusChannelError(f"Failed to read status file {path}: {error}") from error
        try:
            return StatusRecord.from_dict(payload)
        except (KeyError, TypeError, ValueError) as error:
            raise StatusChannelError(f"Malformed status file {path}: {error}") from error


class HttpStatusChannel:
    """Metadata endpoint: ``PUT/GET {base}/runs/{id}/status`` and ``GET {base}/runs``."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds, connect=min(10.0, timeout_seconds)),
            transport=transport,
        )

    def publish(self, record: StatusRecord) -> None:
        try:
            response = self._client.put(f"/runs/{record.run_id}/status", json=record.to_dict())
            response.raise_for_status()
        except httpx.HTTPError as error:
            raise StatusChannelError(
                f"Failed to publish status for {record.run_id}: {error}",
            ) from error

    def fetch(self, run_id: str) -> StatusRecord | None:
        try:
            response = self._client.get(f"/runs/{run_id}/status")
            if response.status_code == httpx.codes.NOT_FOUND:
                return None
            response.raise_for_status()
            return StatusRecord.from_dict(response.json())
        except httpx.HTTPError as error:
            raise StatusChannelError(f"Failed to fetch status for {run_id}: {error}") from error
        except (KeyError, TypeError, ValueError) as error:
            raise StatusChannelError(f"Malformed status for {run_id}: {error}") from error

    def fetch_all(self) -> list[StatusRecord]:
        try:
            response = self._client.get("/runs")
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as error:
            raise StatusChannelError(f"Failed to list run statuses: {error}") from error
        except ValueError as error:
            raise StatusChannelError(f"Malformed run status listing: {error}") from error
        items = payload.get("runs", []) if isinstance(payload, dict) else payload
        records: list[StatusRecord] = []
        for item in items:
            try:
                records.append(StatusRecord.from_dict(item))
            except (KeyError, TypeError, ValueError) as error:
                logger.warning("Skipping malformed status entry: %s", error)
        return records

    def delete(self, run_id: str) -> None:
        try:
            response = self._client.delete(f"/runs/{run_id}/status")
            if response.status_code != httpx.codes.NOT_FOUND:
                response.raise_for_status()
        except httpx.HTTPError as error:
            raise StatusChannelError(f"Failed to delete status for {run_id}: {error}") from error

    def watch(self, on_record: RecordCallback, stop: threading.Event, interval: float) -> None:
        seen: dict[str, tuple[str, int]] = {}
        while not stop.is_set():
            try:
                records = self.fetch_all()
            except StatusChannelError as error:
                logger.warning("Status watch poll failed: %s", error)
                records = []
            for record in records:
                marker = (record.updated_at.isoformat(), record.sequence)
                if seen.get(record.run_id) == marker:
                    continue
                seen[record.run_id] = marker
                on_record(record)
            stop.wait(max(0.05, interval))

    def close(self) -> None:
        self._client.close()


def build_status_channel(settings: PublisherSettings) -> StatusChannel:
    if settings.channel == "http":
        return HttpStatusChannel(
            settings.base_url,
            timeout_seconds=settings.request_timeout_seconds,
        )
    return FileStatusChannel(settings.status_dir)
