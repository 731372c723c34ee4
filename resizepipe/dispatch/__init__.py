from resizepipe.dispatch.pool import WorkerPool, WorkerPoolError, WorkerSlot
from resizepipe.dispatch.retry import RetryPolicy
from resizepipe.dispatch.service import (
    ALLOWED_TRANSITIONS,
    Dispatcher,
    DispatcherBusyError,
    InvalidJobStateError,
    JobNotFoundError,
    ShutdownRequestedError,
    build_job_key,
    dispatch_metrics_snapshot_to_dict,
    job_snapshot_to_dict,
    log_failure_record,
)
from resizepipe.dispatch.types import DispatchMetricsSnapshot, FailureRecord, JobSnapshot

__all__ = [
    "ALLOWED_TRANSITIONS",
    "Dispatcher",
    "DispatcherBusyError",
    "DispatchMetricsSnapshot",
    "FailureRecord",
    "InvalidJobStateError",
    "JobNotFoundError",
    "JobSnapshot",
    "RetryPolicy",
    "ShutdownRequestedError",
    "WorkerPool",
    "WorkerPoolError",
    "WorkerSlot",
    "build_job_key",
    "dispatch_metrics_snapshot_to_dict",
    "job_snapshot_to_dict",
    "log_failure_record",
]
