from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from resizepipe.db.models import JobState


@dataclass(frozen=True)
class JobSnapshot:
    id: str
    job_key: str
    source_collection: str
    source_key: str
    source_version: str | None
    content_type_hint: str | None
    content_type: str | None
    state: JobState
    attempt_count: int
    deferral_count: int
    available_at: datetime | None
    worker_id: str | None
    lease_expires_at: datetime | None
    derived_key: str | None
    width: int | None
    height: int | None
    error_kind: str | None
    error_code: str | None
    error_message: str | None
    received_at: datetime
    updated_at: datetime
    started_at: datetime | None
    finished_at: datetime | None

    @property
    def is_terminal(self) -> bool:
        return self.state in {JobState.ACKNOWLEDGED, JobState.FAILED}


@dataclass(frozen=True)
class FailureRecord:
    job_id: str
    job_key: str
    source_collection: str
    source_key: str
    kind: str
    reason: str
    message: str
    attempt_count: int
    received_at: datetime
    finished_at: datetime


@dataclass(frozen=True)
class DispatchMetricsSnapshot:
    generated_at: datetime
    queue_capacity: int
    queue_depth: int
    queue_received: int
    queue_in_flight: int
    retry_backlog: int
    acknowledged: int
    failed: int
    failed_permanent: int
    failed_exhausted: int
    ledger_reserved: int
    ledger_released: int
    ledger_done: int
    ledger_failed: int
