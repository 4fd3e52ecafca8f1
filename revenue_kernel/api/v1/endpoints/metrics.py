"""
Pipeline counters.
"""
from fastapi import APIRouter, Depends

from revenue_kernel.api.deps import get_metrics, require_operator
from revenue_kernel.models.schemas.base import ResponseBase
from revenue_kernel.utils.metrics import PipelineMetrics

router = APIRouter(dependencies=[Depends(require_operator)])


@router.get("", response_model=ResponseBase, summary="Snapshot of pipeline counters")
async def get_pipeline_metrics(metrics: PipelineMetrics = Depends(get_metrics)) -> ResponseBase:
    return ResponseBase(success=True, data={"counters": metrics.snapshot()})
