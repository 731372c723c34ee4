from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from resizepipe.db.models import LedgerState


class ReserveOutcome(str, Enum):
    ACQUIRED = "acquired"
    ALREADY_DONE = "already_done"
    ALREADY_RESERVED = "already_reserved"
    ALREADY_FAILED = "already_failed"


@dataclass(frozen=True)
class ReserveResult:
    outcome: ReserveOutcome
    job_key: str
    derived_key: str | None = None
    lease_expires_at: datetime | None = None

    @property
    def acquired(self) -> bool:
        return self.outcome == ReserveOutcome.ACQUIRED


@dataclass(frozen=True)
class LedgerEntrySnapshot:
    job_key: str
    state: LedgerState
    owner_id: str | None
    derived_key: str | None
    reserved_at: datetime | None
    lease_expires_at: datetime | None
    completed_at: datetime | None
    release_count: int
    reclaim_count: int
    failure_reason: str | None
    created_at: datetime
    updated_at: datetime
