"""
Cron endpoints: each runs one periodic task under its cron lock.

Handlers are plain ``def`` so the blocking runs execute in the threadpool.
"""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Request

from revenue_kernel.api.deps import get_task_context, require_cron_secret
from revenue_kernel.jobs.tasks import (
    TaskContext,
    run_attempt_cap_task,
    run_backfill_task,
    run_reconcile_enqueue_task,
    run_reconcile_run_task,
    run_recover_processing_task,
    run_upload_task,
)
from revenue_kernel.models.schemas.cron import (
    AttemptCapRequest,
    BackfillRequest,
    ReconcileRunRequest,
    RecoverProcessingRequest,
    UploadRunRequest,
)
from revenue_kernel.utils import get_logger

router = APIRouter(dependencies=[Depends(require_cron_secret)])
logger = get_logger(__name__)


def _log_run(name: str, request: Request, result: Dict[str, Any]) -> Dict[str, Any]:
    logger.info(
        "Cron task finished",
        task=name,
        skipped=bool(result.get("skipped")),
        request_id=getattr(request.state, "request_id", None),
    )
    return result


@router.post("/upload", summary="Upload eligible offline conversions")
def cron_upload(
    request: Request,
    body: Optional[UploadRunRequest] = None,
    ctx: TaskContext = Depends(get_task_context),
) -> Dict[str, Any]:
    body = body or UploadRunRequest()
    return _log_run("upload", request, run_upload_task(ctx, provider_key=body.provider_key, limit=body.limit))


@router.post("/attempt-cap", summary="Fail rows at or above the attempt cap")
def cron_attempt_cap(
    request: Request,
    body: Optional[AttemptCapRequest] = None,
    ctx: TaskContext = Depends(get_task_context),
) -> Dict[str, Any]:
    body = body or AttemptCapRequest()
    result = run_attempt_cap_task(ctx, max_attempts=body.max_attempts, min_age_minutes=body.min_age_minutes)
    return _log_run("attempt_cap", request, result)


@router.post("/recover-processing", summary="Recover rows stuck in PROCESSING")
def cron_recover_processing(
    request: Request,
    body: Optional[RecoverProcessingRequest] = None,
    ctx: TaskContext = Depends(get_task_context),
) -> Dict[str, Any]:
    body = body or RecoverProcessingRequest()
    return _log_run("recover_processing", request, run_recover_processing_task(ctx, min_age_minutes=body.min_age_minutes))


@router.post("/reconcile-usage/enqueue", summary="Enqueue usage reconciliation for active sites")
def cron_reconcile_enqueue(request: Request, ctx: TaskContext = Depends(get_task_context)) -> Dict[str, Any]:
    return _log_run("reconcile_enqueue", request, run_reconcile_enqueue_task(ctx))


@router.post("/reconcile-usage/run", summary="Process queued usage reconciliation jobs")
def cron_reconcile_run(
    request: Request,
    body: Optional[ReconcileRunRequest] = None,
    ctx: TaskContext = Depends(get_task_context),
) -> Dict[str, Any]:
    body = body or ReconcileRunRequest()
    return _log_run("reconcile_run", request, run_reconcile_run_task(ctx, limit=body.limit))


@router.post("/reconcile-usage/backfill", summary="Enqueue reconciliation jobs for past periods")
def cron_reconcile_backfill(
    request: Request,
    body: BackfillRequest,
    ctx: TaskContext = Depends(get_task_context),
) -> Dict[str, Any]:
    try:
        result = run_backfill_task(ctx, body.from_year_month, body.to_year_month, site_id=body.site_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _log_run("reconcile_backfill", request, result)
