from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import ValidationError

from resizepipe.api.dependencies import get_dispatcher
from resizepipe.api.schemas.jobs import JobResponse
from resizepipe.api.schemas.notifications import (
    S3EventRequest,
    S3EventResponse,
    SubmitNotificationRequest,
    SubmitNotificationResponse,
)
from resizepipe.dispatch.service import Dispatcher, DispatcherBusyError, job_snapshot_to_dict
from resizepipe.notifications import ObjectCreatedNotification, parse_s3_event

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.post("", response_model=SubmitNotificationResponse, status_code=status.HTTP_202_ACCEPTED)
def submit_notification(
    request: SubmitNotificationRequest,
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> SubmitNotificationResponse:
    try:
        notification = ObjectCreatedNotification(
            collection=request.collection,
            key=request.key,
            version=request.version,
            content_type_hint=request.content_type_hint,
        )
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

    try:
        snapshot = dispatcher.submit(notification, block_seconds=request.block_seconds)
    except DispatcherBusyError as exc:
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=str(exc)) from exc

    if snapshot is None:
        return SubmitNotificationResponse(accepted=False, job=None, detail="Derived object notification ignored")
    return SubmitNotificationResponse(accepted=True, job=JobResponse.model_validate(job_snapshot_to_dict(snapshot)))


@router.post("/s3-event", response_model=S3EventResponse, status_code=status.HTTP_202_ACCEPTED)
def submit_s3_event(
    request: S3EventRequest,
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> S3EventResponse:
    try:
        notifications = parse_s3_event(request.model_dump())
    except (ValueError, ValidationError) as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

    accepted: list[JobResponse] = []
    ignored = 0
    for notification in notifications:
        try:
            snapshot = dispatcher.submit(notification)
        except DispatcherBusyError as exc:
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail=f"{exc} (accepted {len(accepted)} of {len(notifications)} before rejecting)",
            ) from exc
        if snapshot is None:
            ignored += 1
            continue
        accepted.append(JobResponse.model_validate(job_snapshot_to_dict(snapshot)))

    return S3EventResponse(received=len(notifications), accepted=accepted, ignored=ignored)
