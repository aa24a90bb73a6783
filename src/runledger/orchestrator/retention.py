"""Retention pruning of terminal runs."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from runledger.orchestrator.channels import StatusChannel
from runledger.orchestrator.errors import RunNotFound, StatusChannelError
from runledger.orchestrator.store import RunStore
from runledger.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RunPruneResult:
    cutoff: datetime
    dry_run: bool
    deleted: list[str] = field(default_factory=list)
    skipped_leased: list[str] = field(default_factory=list)
    active: int = 0


def prune_runs(
    store: RunStore,
    *,
    retention_days: int,
    channel: StatusChannel | None = None,
    dry_run: bool = False,
    now: datetime | None = None,
) -> RunPruneResult | None:
    """Delete terminal runs that finished before the retention cutoff.

    Non-terminal runs are never touched, and neither is a terminal run whose
    lease is still held. Returns None when retention is disabled.
    """

    if retention_days <= 0:
        return None
    cutoff = (now or utc_now()) - timedelta(days=retention_days)
    result = RunPruneResult(cutoff=cutoff, dry_run=dry_run)
    for run_id in store.list_run_ids():
        try:
            run = store.load_run(run_id)
        except RunNotFound:
            continue
        if not run.is_terminal:
            result.active += 1
            continue
        if (run.finished_at or run.updated_at) >= cutoff:
            continue
        lease = store.get_lease(run_id)
        if lease is not None and lease.is_held:
            result.skipped_leased.append(run_id)
            continue
        result.deleted.append(run_id)
        if dry_run:
            continue
        store.delete_run(run_id)
        if channel is not None:
            try:
                channel.delete(run_id)
            except StatusChannelError as error:
                logger.warning("Could not drop status record of run %s: %s", run_id, error)
        logger.info("Pruned %s run %s (finished %s).", run.status.value, run_id, run.finished_at)
    return result
