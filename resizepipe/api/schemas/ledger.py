from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel

from resizepipe.api.schemas.jobs import JobResponse


class LedgerEntryResponse(BaseModel):
    job_key: str
    state: str
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


class LedgerReplayResponse(BaseModel):
    entry: LedgerEntryResponse
    job: JobResponse | None
