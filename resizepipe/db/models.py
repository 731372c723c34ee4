from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import DateTime, Enum as SAEnum, Index, Integer, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class JobState(str, Enum):
    RECEIVED = "received"
    RESERVING = "reserving"
    FETCHING = "fetching"
    TRANSFORMING = "transforming"
    WRITING = "writing"
    COMMITTING = "committing"
    ACKNOWLEDGED = "acknowledged"
    FAILED = "failed"


IN_FLIGHT_STATES = (
    JobState.RESERVING,
    JobState.FETCHING,
    JobState.TRANSFORMING,
    JobState.WRITING,
    JobState.COMMITTING,
)
TERMINAL_STATES = (JobState.ACKNOWLEDGED, JobState.FAILED)
OPEN_STATES = (JobState.RECEIVED, *IN_FLIGHT_STATES)


class LedgerState(str, Enum):
    RESERVED = "reserved"
    RELEASED = "released"
    DONE = "done"
    FAILED = "failed"


class PipelineJob(Base):
    __tablename__ = "pipeline_jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    job_key: Mapped[str] = mapped_column(String(64), nullable=False)
    source_collection: Mapped[str] = mapped_column(String(255), nullable=False)
    source_key: Mapped[str] = mapped_column(String(1024), nullable=False)
    source_version: Mapped[str | None] = mapped_column(String(255), nullable=True)
    content_type_hint: Mapped[str | None] = mapped_column(String(255), nullable=True)
    content_type: Mapped[str | None] = mapped_column(String(255), nullable=True)

    state: Mapped[JobState] = mapped_column(
        SAEnum(JobState, native_enum=False, values_callable=_enum_values),
        nullable=False,
        default=JobState.RECEIVED,
    )
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    deferral_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    available_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    worker_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    derived_key: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    width: Mapped[int | None] = mapped_column(Integer, nullable=True)
    height: Mapped[int | None] = mapped_column(Integer, nullable=True)

    error_kind: Mapped[str | None] = mapped_column(String(32), nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_pipeline_jobs_state_available", "state", "available_at", "received_at"),
        Index("ix_pipeline_jobs_job_key", "job_key"),
        Index("ix_pipeline_jobs_running_lease", "state", "lease_expires_at"),
        Index("ix_pipeline_jobs_finished_at", "finished_at"),
    )


class LedgerEntry(Base):
    __tablename__ = "ledger_entries"

    job_key: Mapped[str] = mapped_column(String(64), primary_key=True)
    state: Mapped[LedgerState] = mapped_column(
        SAEnum(LedgerState, native_enum=False, values_callable=_enum_values),
        nullable=False,
        default=LedgerState.RESERVED,
    )
    owner_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    derived_key: Mapped[str | None] = mapped_column(String(1024), nullable=True)

    reserved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    release_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reclaim_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_ledger_entries_state_lease", "state", "lease_expires_at"),
        Index("ix_ledger_entries_state_completed", "state", "completed_at"),
    )
