from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status

from resizepipe.api.dependencies import get_dispatcher
from resizepipe.api.schemas.jobs import JobListResponse, JobResponse
from resizepipe.db.models import JobState
from resizepipe.dispatch.service import Dispatcher, JobNotFoundError, job_snapshot_to_dict

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.get("", response_model=JobListResponse)
def list_jobs(
    state: JobState | None = None,
    job_key: str | None = None,
    limit: int = Query(default=50, ge=1, le=500),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> JobListResponse:
    items = dispatcher.list_jobs(state=state, job_key=job_key, limit=limit)
    return JobListResponse(items=[JobResponse.model_validate(job_snapshot_to_dict(item)) for item in items])


@router.get("/failures", response_model=JobListResponse)
def list_failures(
    limit: int = Query(default=50, ge=1, le=500),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> JobListResponse:
    items = dispatcher.list_failures(limit=limit)
    return JobListResponse(items=[JobResponse.model_validate(job_snapshot_to_dict(item)) for item in items])


@router.get("/{job_id}", response_model=JobResponse)
def get_job(job_id: str, dispatcher: Dispatcher = Depends(get_dispatcher)) -> JobResponse:
    try:
        job = dispatcher.get_job(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return JobResponse.model_validate(job_snapshot_to_dict(job))
