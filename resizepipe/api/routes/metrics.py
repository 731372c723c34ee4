from __future__ import annotations

from fastapi import APIRouter, Depends

from resizepipe.api.dependencies import get_dispatcher
from resizepipe.api.schemas.jobs import DispatchMetricsResponse
from resizepipe.dispatch.service import Dispatcher, dispatch_metrics_snapshot_to_dict

router = APIRouter(tags=["metrics"])


@router.get("/metrics", response_model=DispatchMetricsResponse)
def get_metrics(dispatcher: Dispatcher = Depends(get_dispatcher)) -> DispatchMetricsResponse:
    return DispatchMetricsResponse.model_validate(dispatch_metrics_snapshot_to_dict(dispatcher.get_metrics()))
