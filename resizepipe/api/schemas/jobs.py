from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class JobResponse(BaseModel):
    id: str
    job_key: str
    source_collection: str
    source_key: str
    source_version: str | None
    content_type_hint: str | None
    content_type: str | None
    state: str
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


class JobListResponse(BaseModel):
    items: list[JobResponse]


class DispatchMetricsResponse(BaseModel):
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
