"""Control-plane registry of ordered credential slots per provider."""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path

from sqlalchemy import update as sa_update
from sqlmodel import Session, col, func, select

from runledger.orchestrator.errors import CredentialExhausted, OrchestratorError
from runledger.orchestrator.models import CredentialSlotView, SlotStatus
from runledger.storage.alembic_runner import CONTROL_BRANCH, upgrade_head
from runledger.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from runledger.storage.sqlmodel_models import (
    CredentialEventRow,
    CredentialProviderRow,
    CredentialSlotRow,
)

logger = logging.getLogger(__name__)


class CredentialRegistry:
    """Slots are never deleted: removal stamps ``removed_at`` and rotation moves a pointer.

    Operator actions (add, remove, rotate) bump the provider ``generation`` so
    running units notice the change at their next heartbeat. Automatic
    failover after a rate limit moves the pointer without bumping it.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        upgrade_head(self.db_path, branch=CONTROL_BRANCH)

    def add_slot(
        self,
        provider: str,
        key_material: str,
        *,
        label: str | None = None,
    ) -> CredentialSlotView:
        if not key_material.strip():
            raise ValueError("Credential key material must not be empty.")
        now = utc_now()
        with Session(self.engine) as session:
            provider_row = self._provider_row(session=session, provider=provider, now=now)
            max_index = session.exec(
                select(func.max(CredentialSlotRow.slot_index)).where(
                    CredentialSlotRow.provider == provider,
                ),
            ).one()
            slot_index = 0 if max_index is None else int(max_index) + 1
            row = CredentialSlotRow(
                provider=provider,
                slot_index=slot_index,
                label=label,
                key_material=key_material,
                added_at=to_db_datetime(now),
            )
            session.add(row)
            if provider_row.current_slot_index is None:
                provider_row.current_slot_index = slot_index
            provider_row.generation += 1
            provider_row.updated_at = to_db_datetime(now)
            session.add(provider_row)
            self._add_event(
                session=session,
                provider=provider,
                slot_index=slot_index,
                event_type="added",
                details={"label": label, "generation": provider_row.generation},
            )
            session.commit()
            session.refresh(row)
            logger.info("Added credential slot %s/%s.", provider, slot_index)
            return _to_slot_view(row)

    def remove_slot(self, provider: str, slot_index: int) -> None:
        now = utc_now()
        with Session(self.engine) as session:
            row = self._slot_row(session=session, provider=provider, slot_index=slot_index)
            if row.removed_at is not None:
                return
            row.removed_at = to_db_datetime(now)
            session.add(row)
            provider_row = self._provider_row(session=session, provider=provider, now=now)
            if provider_row.current_slot_index == slot_index:
                session.flush()
                provider_row.current_slot_index = self._next_active_index(
                    session=session,
                    provider=provider,
                    after=slot_index,
                )
            provider_row.generation += 1
            provider_row.updated_at = to_db_datetime(now)
            session.add(provider_row)
            self._add_event(
                session=session,
                provider=provider,
                slot_index=slot_index,
                event_type="removed",
                details={"generation": provider_row.generation},
            )
            session.commit()
        logger.info("Removed credential slot %s/%s.", provider, slot_index)

    def rotate(self, provider: str, slot_index: int | None = None) -> int:
        """Point ``provider`` at ``slot_index`` (default: the next active slot)."""

        now = utc_now()
        with Session(self.engine) as session:
            provider_row = self._provider_row(session=session, provider=provider, now=now)
            if slot_index is None:
                target = self._next_active_index(
                    session=session,
                    provider=provider,
                    after=provider_row.current_slot_index,
                )
                if target is None:
                    raise OrchestratorError(f"No active credential slots for {provider!r}.")
            else:
                row = self._slot_row(session=session, provider=provider, slot_index=slot_index)
                if row.removed_at is not None:
                    raise OrchestratorError(
                        f"Credential slot {provider}/{slot_index} has been removed.",
                    )
                target = slot_index
            previous = provider_row.current_slot_index
            provider_row.current_slot_index = target
            provider_row.generation += 1
            provider_row.updated_at = to_db_datetime(now)
            session.add(provider_row)
            self._add_event(
                session=session,
                provider=provider,
                slot_index=target,
                event_type="rotated",
                details={"from": previous, "generation": provider_row.generation},
            )
            session.commit()
        logger.info("Rotated %s credentials to slot %s.", provider, target)
        return target

    def generation(self, provider: str) -> int:
        with Session(self.engine) as session:
            row = session.get(CredentialProviderRow, provider)
            return row.generation if row is not None else 0

    def has_active_slots(self, provider: str) -> bool:
        return any(slot.is_active for slot in self.list_slots(provider))

    def ensure_available(self, provider: str, *, now: datetime | None = None) -> None:
        """Raise ``CredentialExhausted`` when no active slot is usable now.

        Read only: the slot pointer and ``last_used_at`` stay untouched.
        """

        current_time = to_utc_aware_datetime(now or utc_now())
        slots = [slot for slot in self.list_slots(provider) if slot.is_active]
        if not slots:
            raise CredentialExhausted(provider, None)
        limited = [
            slot.rate_limited_until
            for slot in slots
            if slot.rate_limited_until is not None and slot.rate_limited_until > current_time
        ]
        if len(limited) == len(slots):
            raise CredentialExhausted(provider, min(limited))

    def list_slots(self, provider: str, *, include_removed: bool = True) -> list[CredentialSlotView]:
        with Session(self.engine) as session:
            statement = (
                select(CredentialSlotRow)
                .where(CredentialSlotRow.provider == provider)
                .order_by(col(CredentialSlotRow.slot_index).asc())
            )
            if not include_removed:
                statement = statement.where(col(CredentialSlotRow.removed_at).is_(None))
            rows = session.exec(statement).all()
        return [_to_slot_view(row) for row in rows]

    def acquire(self, provider: str, *, now: datetime | None = None) -> CredentialSlotView:
        """Return the slot to use now, failing over past rate-limited slots.

        Raises ``CredentialExhausted`` carrying the earliest time a slot frees up.
        """

        current_time = now or utc_now()
        with Session(self.engine) as session:
            provider_row = self._provider_row(session=session, provider=provider, now=current_time)
            rows = session.exec(
                select(CredentialSlotRow)
                .where(
                    CredentialSlotRow.provider == provider,
                    col(CredentialSlotRow.removed_at).is_(None),
                )
                .order_by(col(CredentialSlotRow.slot_index).asc()),
            ).all()
            if not rows:
                raise CredentialExhausted(provider, None)

            chosen = _pick_available(
                rows=list(rows),
                current_index=provider_row.current_slot_index,
                now=current_time,
            )
            if chosen is None:
                retry_at = min(
                    to_utc_aware_datetime(row.rate_limited_until)
                    for row in rows
                    if row.rate_limited_until is not None
                )
                session.rollback()
                raise CredentialExhausted(provider, retry_at)

            if provider_row.current_slot_index != chosen.slot_index:
                self._add_event(
                    session=session,
                    provider=provider,
                    slot_index=chosen.slot_index,
                    event_type="failover",
                    details={"from": provider_row.current_slot_index},
                )
                logger.info(
                    "Credential failover for %s: slot %s -> %s.",
                    provider,
                    provider_row.current_slot_index,
                    chosen.slot_index,
                )
                provider_row.current_slot_index = chosen.slot_index
                provider_row.updated_at = to_db_datetime(current_time)
                session.add(provider_row)
            chosen.last_used_at = to_db_datetime(current_time)
            session.add(chosen)
            session.commit()
            session.refresh(chosen)
            return _to_slot_view(chosen)

    def mark_rate_limited(self, provider: str, slot_index: int, *, until: datetime) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(CredentialSlotRow)
                .where(
                    col(CredentialSlotRow.provider) == provider,
                    col(CredentialSlotRow.slot_index) == slot_index,
                    col(CredentialSlotRow.removed_at).is_(None),
                )
                .values(
                    rate_limited_until=to_db_datetime(until),
                    rate_limit_count=CredentialSlotRow.rate_limit_count + 1,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                provider=provider,
                slot_index=slot_index,
                event_type="rate_limited",
                details={"until": to_utc_aware_datetime(until).isoformat()},
            )
            session.commit()
        logger.warning(
            "Credential slot %s/%s rate limited until %s.",
            provider,
            slot_index,
            to_utc_aware_datetime(until).isoformat(),
        )
        return True

    def list_status(self) -> list[SlotStatus]:
        with Session(self.engine) as session:
            providers = {
                row.provider: row for row in session.exec(select(CredentialProviderRow)).all()
            }
            rows = session.exec(
                select(CredentialSlotRow).order_by(
                    col(CredentialSlotRow.provider).asc(),
                    col(CredentialSlotRow.slot_index).asc(),
                ),
            ).all()

        statuses: list[SlotStatus] = []
        for row in rows:
            provider_row = providers.get(row.provider)
            statuses.append(
                SlotStatus(
                    provider=row.provider,
                    slot_index=row.slot_index,
                    label=row.label,
                    masked_key=mask_key(row.key_material),
                    is_current=(
                        provider_row is not None
                        and provider_row.current_slot_index == row.slot_index
                    ),
                    is_removed=row.removed_at is not None,
                    rate_limited_until=(
                        to_utc_aware_datetime(row.rate_limited_until)
                        if row.rate_limited_until is not None
                        else None
                    ),
                    rate_limit_count=row.rate_limit_count,
                    generation=provider_row.generation if provider_row is not None else 0,
                ),
            )
        return statuses

    def _provider_row(
        self,
        *,
        session: Session,
        provider: str,
        now: datetime,
    ) -> CredentialProviderRow:
        row = session.get(CredentialProviderRow, provider)
        if row is None:
            row = CredentialProviderRow(
                provider=provider,
                current_slot_index=None,
                generation=0,
                updated_at=to_db_datetime(now),
            )
            session.add(row)
        return row

    def _slot_row(self, *, session: Session, provider: str, slot_index: int) -> CredentialSlotRow:
        row = session.exec(
            select(CredentialSlotRow).where(
                CredentialSlotRow.provider == provider,
                CredentialSlotRow.slot_index == slot_index,
            ),
        ).one_or_none()
        if row is None:
            raise OrchestratorError(f"Credential slot not found: {provider}/{slot_index}")
        return row

    def _next_active_index(
        self,
        *,
        session: Session,
        provider: str,
        after: int | None,
    ) -> int | None:
        indexes = [
            row.slot_index
            for row in session.exec(
                select(CredentialSlotRow)
                .where(
                    CredentialSlotRow.provider == provider,
                    col(CredentialSlotRow.removed_at).is_(None),
                )
                .order_by(col(CredentialSlotRow.slot_index).asc()),
            ).all()
        ]
        if not indexes:
            return None
        if after is None:
            return indexes[0]
        following = [index for index in indexes if index > after]
        return following[0] if following else indexes[0]

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        provider: str,
        slot_index: int | None,
        event_type: str,
        details: dict[str, object],
    ) -> None:
        session.add(
            CredentialEventRow(
                provider=provider,
                slot_index=slot_index,
                event_type=event_type,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def mask_key(key_material: str) -> str:
    """Keep only the last four characters visible."""

    if len(key_material) <= 4:  # noqa: PLR2004
        return "*" * len(key_material)
    return f"{'*' * min(8, len(key_material) - 4)}{key_material[-4:]}"


def _pick_available(
    *,
    rows: list[CredentialSlotRow],
    current_index: int | None,
    now: datetime,
) -> CredentialSlotRow | None:
    """First usable slot starting at the current pointer, wrapping around."""

    ordered = sorted(rows, key=lambda row: row.slot_index)
    start = 0
    if current_index is not None:
        for position, row in enumerate(ordered):
            if row.slot_index >= current_index:
                start = position
                break
    for offset in range(len(ordered)):
        row = ordered[(start + offset) % len(ordered)]
        if row.rate_limited_until is None:
            return row
        if to_utc_aware_datetime(row.rate_limited_until) <= to_utc_aware_datetime(now):
            return row
    return None


def _to_slot_view(row: CredentialSlotRow) -> CredentialSlotView:
    return CredentialSlotView(
        provider=row.provider,
        slot_index=row.slot_index,
        label=row.label,
        key_material=row.key_material,
        rate_limited_until=(
            to_utc_aware_datetime(row.rate_limited_until)
            if row.rate_limited_until is not None
            else None
        ),
        rate_limit_count=row.rate_limit_count,
        last_used_at=(
            to_utc_aware_datetime(row.last_used_at) if row.last_used_at is not None else None
        ),
        added_at=to_utc_aware_datetime(row.added_at),
        removed_at=(
            to_utc_aware_datetime(row.removed_at) if row.removed_at is not None else None
        ),
    )
