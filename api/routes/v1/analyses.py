"""Analysis read, wait and automation-callback endpoints."""

import logging
from typing import Any, Optional
from fastapi import APIRouter, Depends, HTTPException, Query, status

from api.dependencies import get_job_store, get_result_poller, get_realtime_watcher
from api.schemas.analysis import AnalysisCallback, WaitMode
from api.schemas.common import PaginationParams
from api.services.job_store import AnalysisRecord, JobRecordStore
from api.services.result_watcher import ResultPoller, RealtimeWatcher
from api.services.submissions import apply_callback_result
from core.exceptions import JobNotFound
from database.models.analyses import JobStatus

logger = logging.getLogger(__name__)

router = APIRouter()


async def load_record(
    store: JobRecordStore,
    job_id: str,
    user_id: Optional[str] = None,
) -> AnalysisRecord:
    result = await store.get_analysis_by_id(job_id)
    if result.not_found:
        raise JobNotFound(f"Analysis {job_id} not found")
    if not result.success:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Analysis store temporarily unavailable",
        )
    if user_id is not None and result.data.user_id != user_id:
        raise JobNotFound(f"Analysis {job_id} not found")
    return result.data


@router.get(
    "",
    summary="List analyses",
    description="Analysis history of one user, newest first",
)
async def list_analyses(
    user_id: str = Query(..., min_length=1),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    store: JobRecordStore = Depends(get_job_store),
) -> dict[str, Any]:
    pagination = PaginationParams(page=page, page_size=page_size)
    result = await store.get_analyses_by_user_id(
        user_id, limit=pagination.page_size, offset=pagination.offset
    )
    if not result.success:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Analysis store temporarily unavailable",
        )
    return {
        "items": [record.to_response() for record in result.data],
        "page": pagination.page,
        "page_size": pagination.page_size,
    }


@router.get(
    "/{job_id}",
    summary="Get analysis",
    description="Current state of one analysis job",
)
async def get_analysis(
    job_id: str,
    user_id: Optional[str] = Query(None),
    store: JobRecordStore = Depends(get_job_store),
) -> dict[str, Any]:
    record = await load_record(store, job_id, user_id)
    return record.to_response()


@router.get(
    "/{job_id}/wait",
    summary="Wait for analysis",
    description="Block until the job completes, fails or the watch budget runs out",
)
async def wait_for_analysis(
    job_id: str,
    mode: WaitMode = Query("poll"),
    user_id: Optional[str] = Query(None),
    poller: ResultPoller = Depends(get_result_poller),
    realtime: RealtimeWatcher = Depends(get_realtime_watcher),
) -> dict[str, Any]:
    """
    Resolve a job id to its completed analysis.

    `mode=poll` reads the store on the configured schedule; `mode=subscribe`
    waits for the change event. Failures come back as 422 (job failed),
    504 (timeout) or 503 (database error).
    """
    watcher = realtime if mode == "subscribe" else poller
    record = await watcher.wait_for_result(job_id, user_id=user_id)
    return record.to_response()


@router.post(
    "/{job_id}/result",
    summary="Record automation result",
    description="Callback for the automation webhook to write a relayed job's outcome",
)
async def record_result(
    job_id: str,
    callback: AnalysisCallback,
    store: JobRecordStore = Depends(get_job_store),
) -> dict[str, Any]:
    record = await load_record(store, job_id)
    if record.status != JobStatus.PROCESSING.value:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Analysis {job_id} is already {record.status}",
        )

    updated = await apply_callback_result(
        store,
        job_id,
        content=callback.content,
        payload=callback.result,
        error=callback.error.model_dump() if callback.error else None,
    )
    if not updated.success:
        # lost the race against another writer
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=updated.error)

    logger.info(f"Automation result recorded for {job_id}: {updated.data['status']}")
    return {"success": True, "jobId": job_id, "status": updated.data["status"]}
