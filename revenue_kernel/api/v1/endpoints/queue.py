"""
Operator endpoints for the offline conversion queue.
"""
import time
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.orm import Session

from revenue_kernel.api.deps import get_db, require_operator
from revenue_kernel.models.db.enums import QueueStatus
from revenue_kernel.models.schemas.base import ResponseBase
from revenue_kernel.models.schemas.queue import (
    ConversionEnqueue,
    QueueActionRequest,
    QueueRowPage,
    QueueRowRead,
    QueueStats,
)
from revenue_kernel.services.conversion_queue import (
    apply_queue_action,
    enqueue_conversion,
    list_rows,
    queue_stats,
)
from revenue_kernel.utils import get_logger, log_performance

router = APIRouter(dependencies=[Depends(require_operator)])
logger = get_logger(__name__)


@router.post(
    "/enqueue",
    response_model=ResponseBase,
    status_code=status.HTTP_201_CREATED,
    summary="Enqueue a confirmed conversion for upload",
)
async def enqueue(
    body: ConversionEnqueue,
    request: Request,
    db: Session = Depends(get_db),
) -> ResponseBase:
    try:
        row, created = enqueue_conversion(
            db,
            site_id=body.site_id,
            provider_key=body.provider_key,
            source_event_id=body.source_event_id,
            occurred_at=body.occurred_at,
            amount_minor=body.amount_minor,
            currency=body.currency,
            click_ids=body.click_ids.model_dump(),
            payload=body.payload,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return ResponseBase(
        success=True,
        message="Conversion enqueued" if created else "Conversion already enqueued",
        data={"id": row.id, "created": created, "status": QueueStatus(row.status).value},
    )


@router.post("/actions", response_model=ResponseBase, summary="Apply a bulk operator action")
async def queue_actions(
    body: QueueActionRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> ResponseBase:
    """Rows not in a source status eligible for the action are skipped silently."""
    start_time = time.time()
    affected = apply_queue_action(
        db,
        body.site_id,
        body.action,
        body.ids,
        reason=body.reason,
        error_code=body.error_code,
        error_category=body.error_category,
        clear_errors=body.clear_errors,
    )
    logger.info(
        "Queue action applied",
        site_id=body.site_id,
        action=body.action.value,
        requested=len(body.ids),
        affected=affected,
        request_id=getattr(request.state, "request_id", None),
    )
    log_performance("queue_action", (time.time() - start_time) * 1000, {"affected": affected})
    return ResponseBase(
        success=True,
        message=f"{affected} row(s) updated",
        data={"action": body.action.value, "requested": len(body.ids), "affected": affected},
    )


@router.get("/stats", response_model=QueueStats, summary="Queue totals per status for a site")
async def get_queue_stats(
    site_id: str = Query(..., min_length=1),
    db: Session = Depends(get_db),
) -> QueueStats:
    return QueueStats(**queue_stats(db, site_id))


@router.get("/rows", response_model=QueueRowPage, summary="List queue rows for a site")
async def get_queue_rows(
    site_id: str = Query(..., min_length=1),
    status_filter: Optional[QueueStatus] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
) -> QueueRowPage:
    rows, total = list_rows(db, site_id, status=status_filter, limit=limit, offset=offset)
    return QueueRowPage(
        items=[QueueRowRead.model_validate(r) for r in rows],
        total=total,
        limit=limit,
        offset=offset,
    )
