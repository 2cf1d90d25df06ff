"""Action-item checklist endpoints."""

import logging
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query, status

from api.dependencies import get_action_item_tracker, get_job_store
from api.routes.v1.analyses import load_record
from api.schemas.action_items import ActionItemList, ActionItemResponse, ActionItemToggle
from api.services.action_items import (
    ActionItemTracker,
    completion_percent_by_section,
    overall_completion_percent,
)
from api.services.job_store import JobRecordStore

logger = logging.getLogger(__name__)

router = APIRouter()


def checklist(items: list[dict]) -> ActionItemList:
    return ActionItemList(
        items=[ActionItemResponse.model_validate(item) for item in items],
        section_completion=completion_percent_by_section(items),
        overall_completion=overall_completion_percent(items),
    )


def _unavailable(error: Optional[str]) -> HTTPException:
    logger.error(f"Action item store error: {error}")
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Action items temporarily unavailable",
    )


@router.post(
    "/analyses/{job_id}/action-items",
    response_model=ActionItemList,
    summary="Create action items",
    description="Derive the checklist from a completed analysis; returns the existing one if already created",
)
async def ensure_action_items(
    job_id: str,
    user_id: Optional[str] = Query(None),
    store: JobRecordStore = Depends(get_job_store),
    tracker: ActionItemTracker = Depends(get_action_item_tracker),
) -> ActionItemList:
    record = await load_record(store, job_id, user_id)
    if not record.is_completed:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Analysis {job_id} is not completed",
        )

    result = await tracker.ensure_items(job_id, record.user_id, record.result.moves())
    if not result.success:
        raise _unavailable(result.error)
    return checklist(result.data)


@router.get(
    "/analyses/{job_id}/action-items",
    response_model=ActionItemList,
    summary="List action items",
)
async def list_action_items(
    job_id: str,
    user_id: Optional[str] = Query(None),
    store: JobRecordStore = Depends(get_job_store),
    tracker: ActionItemTracker = Depends(get_action_item_tracker),
) -> ActionItemList:
    await load_record(store, job_id, user_id)
    result = await tracker.list_items(job_id)
    if not result.success:
        raise _unavailable(result.error)
    return checklist(result.data)


@router.patch(
    "/action-items/{item_id}",
    response_model=ActionItemResponse,
    summary="Toggle action item",
)
async def toggle_action_item(
    item_id: str,
    update: ActionItemToggle,
    tracker: ActionItemTracker = Depends(get_action_item_tracker),
) -> ActionItemResponse:
    result = await tracker.toggle(item_id, update.completed, user_id=update.user_id)
    if result.not_found:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Action item not found")
    if not result.success:
        raise _unavailable(result.error)
    return ActionItemResponse.model_validate(result.data)
