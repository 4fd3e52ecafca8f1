"""
Billing endpoints: dispute evidence export.
"""
from typing import Iterator

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse

from revenue_kernel.api.deps import get_task_context, require_operator
from revenue_kernel.jobs.tasks import TaskContext
from revenue_kernel.services.dispute_export import (
    dispute_export_filename,
    stream_dispute_export,
    validate_export_request,
)
from revenue_kernel.utils import get_logger

router = APIRouter(dependencies=[Depends(require_operator)])
logger = get_logger(__name__)


def _stream_with_own_session(ctx: TaskContext, site_id: str, year_month: str) -> Iterator[str]:
    """Yield export lines from a session the stream opens and closes itself."""
    session = ctx.session_factory()
    try:
        yield from stream_dispute_export(session, site_id, year_month)
    finally:
        session.close()


@router.get("/dispute-export", summary="CSV of a site's billable events for one month")
async def dispute_export(
    request: Request,
    site_id: str = Query(..., min_length=1),
    year_month: str = Query(..., pattern=r"^\d{4}-\d{2}$"),
    ctx: TaskContext = Depends(get_task_context),
) -> StreamingResponse:
    """Every ingest idempotency record of ``site_id`` in ``year_month``, oldest first."""
    try:
        validate_export_request(site_id, year_month)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    logger.info(
        "Dispute export requested",
        site_id=site_id,
        year_month=year_month,
        request_id=getattr(request.state, "request_id", None),
    )
    return StreamingResponse(
        _stream_with_own_session(ctx, site_id, year_month),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{dispute_export_filename(site_id, year_month)}"'},
    )
