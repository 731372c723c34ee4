from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta

from sqlalchemy import and_, case, delete, func, or_, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from resizepipe.core.clock import Clock, SystemClock, coerce_utc
from resizepipe.core.config import Settings
from resizepipe.core.errors import LeaseLostError, LedgerUnavailableError
from resizepipe.db.models import LedgerEntry, LedgerState
from resizepipe.ledger.types import LedgerEntrySnapshot, ReserveOutcome, ReserveResult

logger = logging.getLogger(__name__)

_RESERVE_ROUNDS = 4


class LedgerEntryNotFoundError(RuntimeError):
    pass


class LedgerStateError(RuntimeError):
    pass


class IdempotencyLedger:
    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        clock: Clock | None = None,
    ):
        self._settings = settings
        self._session_factory = session_factory
        self._clock = clock or SystemClock()

    def _lease_delta(self) -> timedelta:
        return timedelta(seconds=self._settings.lease_duration_seconds)

    def _normalize_owner(self, owner_id: str) -> str:
        normalized = owner_id.strip()
        if not normalized:
            raise ValueError("owner_id cannot be blank")
        return normalized

    @contextmanager
    def _guard(self, action: str) -> Iterator[None]:
        try:
            yield
        except DBAPIError as exc:
            raise LedgerUnavailableError(f"Ledger unavailable during {action}: {exc.orig or exc}") from exc

    def reserve(self, job_key: str, owner_id: str) -> ReserveResult:
        owner = self._normalize_owner(owner_id)
        with self._guard("reserve"), self._session_factory() as session:
            for _ in range(_RESERVE_ROUNDS):
                now = self._clock.now()
                expires_at = now + self._lease_delta()

                if self._try_insert(session, job_key=job_key, owner=owner, now=now, expires_at=expires_at):
                    logger.debug("Ledger reserved job_key=%s owner=%s", job_key, owner)
                    return ReserveResult(ReserveOutcome.ACQUIRED, job_key, lease_expires_at=expires_at)

                if self._try_reclaim(session, job_key=job_key, owner=owner, now=now, expires_at=expires_at):
                    logger.info("Ledger reclaimed job_key=%s for owner=%s", job_key, owner)
                    return ReserveResult(ReserveOutcome.ACQUIRED, job_key, lease_expires_at=expires_at)

                current = session.execute(
                    select(LedgerEntry.state, LedgerEntry.derived_key, LedgerEntry.lease_expires_at).where(
                        LedgerEntry.job_key == job_key
                    )
                ).first()
                session.commit()
                if current is None or current.state == LedgerState.RELEASED:
                    continue
                if current.state == LedgerState.DONE:
                    return ReserveResult(ReserveOutcome.ALREADY_DONE, job_key, derived_key=current.derived_key)
                if current.state == LedgerState.FAILED:
                    return ReserveResult(ReserveOutcome.ALREADY_FAILED, job_key)
                lease_expires_at = coerce_utc(current.lease_expires_at)
                if lease_expires_at is not None and lease_expires_at <= now:
                    continue
                return ReserveResult(
                    ReserveOutcome.ALREADY_RESERVED,
                    job_key,
                    lease_expires_at=lease_expires_at,
                )

        raise LedgerUnavailableError(f"Ledger reservation did not settle for job_key={job_key}")

    def _try_insert(
        self, session: Session, *, job_key: str, owner: str, now: datetime, expires_at: datetime
    ) -> bool:
        session.add(
            LedgerEntry(
                job_key=job_key,
                state=LedgerState.RESERVED,
                owner_id=owner,
                reserved_at=now,
                lease_expires_at=expires_at,
                release_count=0,
                reclaim_count=0,
            )
        )
        try:
            session.commit()
            return True
        except IntegrityError:
            session.rollback()
            return False

    def _try_reclaim(
        self, session: Session, *, job_key: str, owner: str, now: datetime, expires_at: datetime
    ) -> bool:
        result = session.execute(
            update(LedgerEntry)
            .where(
                LedgerEntry.job_key == job_key,
                or_(
                    LedgerEntry.state == LedgerState.RELEASED,
                    and_(LedgerEntry.state == LedgerState.RESERVED, LedgerEntry.lease_expires_at <= now),
                ),
            )
            .values(
                state=LedgerState.RESERVED,
                owner_id=owner,
                reserved_at=now,
                lease_expires_at=expires_at,
                reclaim_count=case(
                    (LedgerEntry.state == LedgerState.RESERVED, LedgerEntry.reclaim_count + 1),
                    else_=LedgerEntry.reclaim_count,
                ),
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        claimed = int(result.rowcount or 0) == 1
        session.commit()
        return claimed

    def commit(self, job_key: str, owner_id: str, derived_key: str) -> LedgerEntrySnapshot:
        owner = self._normalize_owner(owner_id)
        with self._guard("commit"), self._session_factory() as session:
            now = self._clock.now()
            result = session.execute(
                update(LedgerEntry)
                .where(
                    LedgerEntry.job_key == job_key,
                    LedgerEntry.state == LedgerState.RESERVED,
                    LedgerEntry.owner_id == owner,
                )
                .values(
                    state=LedgerState.DONE,
                    derived_key=derived_key,
                    completed_at=now,
                    lease_expires_at=None,
                    failure_reason=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            session.commit()
            entry = session.get(LedgerEntry, job_key, populate_existing=True)
            if int(result.rowcount or 0) == 1 and entry is not None:
                return self._to_snapshot(entry)
            if entry is not None and entry.state == LedgerState.DONE and entry.derived_key == derived_key:
                return self._to_snapshot(entry)
            raise LeaseLostError(f"Reservation for job_key={job_key} is no longer held by {owner}")

    def release(self, job_key: str, owner_id: str) -> LedgerEntrySnapshot | None:
        owner = self._normalize_owner(owner_id)
        limit = int(self._settings.ledger_max_releases)
        with self._guard("release"), self._session_factory() as session:
            now = self._clock.now()
            exhausted = LedgerEntry.release_count + 1 >= limit
            result = session.execute(
                update(LedgerEntry)
                .where(
                    LedgerEntry.job_key == job_key,
                    LedgerEntry.state == LedgerState.RESERVED,
                    LedgerEntry.owner_id == owner,
                )
                .values(
                    state=case((exhausted, LedgerState.FAILED), else_=LedgerState.RELEASED),
                    failure_reason=case(
                        (exhausted, f"Released {limit} times without completion"),
                        else_=LedgerEntry.failure_reason,
                    ),
                    completed_at=case((exhausted, now), else_=LedgerEntry.completed_at),
                    release_count=LedgerEntry.release_count + 1,
                    owner_id=None,
                    lease_expires_at=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            session.commit()
            if int(result.rowcount or 0) != 1:
                logger.warning("Ledger release skipped; job_key=%s not held by owner=%s", job_key, owner)
                return None
            entry = session.get(LedgerEntry, job_key, populate_existing=True)
            if entry is None:
                return None
            if entry.state == LedgerState.FAILED:
                logger.warning("Ledger job_key=%s parked as failed after %s releases", job_key, entry.release_count)
            return self._to_snapshot(entry)

    def mark_failed(self, job_key: str, owner_id: str, reason: str) -> LedgerEntrySnapshot | None:
        owner = self._normalize_owner(owner_id)
        with self._guard("mark_failed"), self._session_factory() as session:
            now = self._clock.now()
            result = session.execute(
                update(LedgerEntry)
                .where(
                    LedgerEntry.job_key == job_key,
                    LedgerEntry.state == LedgerState.RESERVED,
                    LedgerEntry.owner_id == owner,
                )
                .values(
                    state=LedgerState.FAILED,
                    failure_reason=reason,
                    completed_at=now,
                    owner_id=None,
                    lease_expires_at=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            session.commit()
            if int(result.rowcount or 0) != 1:
                logger.warning("Ledger mark_failed skipped; job_key=%s not held by owner=%s", job_key, owner)
                return None
            entry = session.get(LedgerEntry, job_key, populate_existing=True)
            return self._to_snapshot(entry) if entry is not None else None

    def park_failed(self, job_key: str, reason: str) -> LedgerEntrySnapshot | None:
        with self._guard("park_failed"), self._session_factory() as session:
            now = self._clock.now()
            session.add(
                LedgerEntry(
                    job_key=job_key,
                    state=LedgerState.FAILED,
                    failure_reason=reason,
                    completed_at=now,
                    release_count=0,
                    reclaim_count=0,
                )
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                result = session.execute(
                    update(LedgerEntry)
                    .where(LedgerEntry.job_key == job_key, LedgerEntry.state == LedgerState.RELEASED)
                    .values(state=LedgerState.FAILED, failure_reason=reason, completed_at=now, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                session.commit()
                if int(result.rowcount or 0) != 1:
                    return None
            entry = session.get(LedgerEntry, job_key, populate_existing=True)
            return self._to_snapshot(entry) if entry is not None else None

    def replay(self, job_key: str) -> LedgerEntrySnapshot:
        with self._guard("replay"), self._session_factory() as session:
            now = self._clock.now()
            result = session.execute(
                update(LedgerEntry)
                .where(LedgerEntry.job_key == job_key, LedgerEntry.state == LedgerState.FAILED)
                .values(
                    state=LedgerState.RELEASED,
                    release_count=0,
                    failure_reason=None,
                    completed_at=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            session.commit()
            entry = session.get(LedgerEntry, job_key, populate_existing=True)
            if entry is None:
                raise LedgerEntryNotFoundError(f"Ledger entry not found: {job_key}")
            if int(result.rowcount or 0) != 1:
                raise LedgerStateError(f"Only failed entries can be replayed; job_key={job_key} is {entry.state.value}")
            return self._to_snapshot(entry)

    def get_entry(self, job_key: str) -> LedgerEntrySnapshot:
        with self._guard("get_entry"), self._session_factory() as session:
            entry = session.get(LedgerEntry, job_key)
            if entry is None:
                raise LedgerEntryNotFoundError(f"Ledger entry not found: {job_key}")
            return self._to_snapshot(entry)

    def list_entries(self, *, state: LedgerState | None = None, limit: int = 100) -> list[LedgerEntrySnapshot]:
        bounded_limit = max(1, min(limit, 1000))
        with self._guard("list_entries"), self._session_factory() as session:
            stmt = select(LedgerEntry).order_by(LedgerEntry.updated_at.desc(), LedgerEntry.job_key).limit(bounded_limit)
            if state is not None:
                stmt = stmt.where(LedgerEntry.state == state)
            return [self._to_snapshot(row) for row in session.scalars(stmt).all()]

    def evict_done(self) -> int:
        retention = self._settings.ledger_done_retention_seconds
        if retention is None:
            return 0
        cutoff = self._clock.now() - timedelta(seconds=retention)
        with self._guard("evict_done"), self._session_factory() as session:
            result = session.execute(
                delete(LedgerEntry).where(
                    LedgerEntry.state == LedgerState.DONE,
                    LedgerEntry.completed_at <= cutoff,
                )
            )
            session.commit()
            evicted = int(result.rowcount or 0)
        if evicted:
            logger.info("Evicted %s done ledger entries older than %ss", evicted, retention)
        return evicted

    def counts(self) -> dict[LedgerState, int]:
        with self._guard("counts"), self._session_factory() as session:
            rows = session.execute(
                select(LedgerEntry.state, func.count(LedgerEntry.job_key)).group_by(LedgerEntry.state)
            ).all()
        totals = {state: 0 for state in LedgerState}
        for state, count in rows:
            totals[LedgerState(state)] = int(count)
        return totals

    def _to_snapshot(self, entry: LedgerEntry) -> LedgerEntrySnapshot:
        return LedgerEntrySnapshot(
            job_key=entry.job_key,
            state=entry.state,
            owner_id=entry.owner_id,
            derived_key=entry.derived_key,
            reserved_at=coerce_utc(entry.reserved_at),
            lease_expires_at=coerce_utc(entry.lease_expires_at),
            completed_at=coerce_utc(entry.completed_at),
            release_count=entry.release_count,
            reclaim_count=entry.reclaim_count,
            failure_reason=entry.failure_reason,
            created_at=entry.created_at,
            updated_at=entry.updated_at,
        )


def ledger_entry_snapshot_to_dict(snapshot: LedgerEntrySnapshot) -> dict[str, object]:
    return {
        "job_key": snapshot.job_key,
        "state": snapshot.state.value,
        "owner_id": snapshot.owner_id,
        "derived_key": snapshot.derived_key,
        "reserved_at": snapshot.reserved_at,
        "lease_expires_at": snapshot.lease_expires_at,
        "completed_at": snapshot.completed_at,
        "release_count": snapshot.release_count,
        "reclaim_count": snapshot.reclaim_count,
        "failure_reason": snapshot.failure_reason,
        "created_at": snapshot.created_at,
        "updated_at": snapshot.updated_at,
    }
