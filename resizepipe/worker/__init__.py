from resizepipe.worker.pipeline import (
    build_dispatcher,
    drain_once,
    run_worker,
    submit_notification,
    submit_s3_event,
)

__all__ = [
    "build_dispatcher",
    "drain_once",
    "run_worker",
    "submit_notification",
    "submit_s3_event",
]
