from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from resizepipe.api.dependencies import get_dispatcher, get_ledger
from resizepipe.api.schemas.jobs import JobResponse
from resizepipe.api.schemas.ledger import LedgerEntryResponse, LedgerReplayResponse
from resizepipe.dispatch.service import Dispatcher, DispatcherBusyError, JobNotFoundError, job_snapshot_to_dict
from resizepipe.ledger.service import (
    IdempotencyLedger,
    LedgerEntryNotFoundError,
    LedgerStateError,
    ledger_entry_snapshot_to_dict,
)

router = APIRouter(prefix="/ledger", tags=["ledger"])


@router.get("/{job_key}", response_model=LedgerEntryResponse)
def get_ledger_entry(job_key: str, ledger: IdempotencyLedger = Depends(get_ledger)) -> LedgerEntryResponse:
    try:
        entry = ledger.get_entry(job_key)
    except LedgerEntryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return LedgerEntryResponse.model_validate(ledger_entry_snapshot_to_dict(entry))


@router.post("/{job_key}/replay", response_model=LedgerReplayResponse, status_code=status.HTTP_202_ACCEPTED)
def replay_ledger_entry(job_key: str, dispatcher: Dispatcher = Depends(get_dispatcher)) -> LedgerReplayResponse:
    try:
        job = dispatcher.replay(job_key)
    except (JobNotFoundError, LedgerEntryNotFoundError) as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except LedgerStateError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except DispatcherBusyError as exc:
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=str(exc)) from exc

    entry = dispatcher.ledger.get_entry(job_key)
    return LedgerReplayResponse(
        entry=LedgerEntryResponse.model_validate(ledger_entry_snapshot_to_dict(entry)),
        job=JobResponse.model_validate(job_snapshot_to_dict(job)) if job is not None else None,
    )
