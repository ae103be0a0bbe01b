"""
CaseFlow Engine - Work Items Router

Cases and Tickets: create, transition, assign, notes and read endpoints.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..services.errors import WorkflowError
from ..services.models import (
    AgingTier,
    ListFilters,
    NoteCreate,
    Pagination,
    Priority,
    TransitionExtra,
    WorkItemCreate,
    WorkItemKind,
    ensure_utc,
)
from ..services.permissions import Actor, Operation
from .common import authorize, get_actor, http_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/work-items", tags=["work-items"])

# Workflow engine - set by main app
workflow_engine = None


def set_dependencies(engine):
    global workflow_engine
    workflow_engine = engine


# ==================== MODELS ====================

class CreateWorkItemRequest(WorkItemCreate):
    kind: WorkItemKind = WorkItemKind.CASE


class TransitionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    to_stage: str = Field(..., min_length=1)
    reason: Optional[str] = None
    assignee_id: Optional[str] = None
    due_at: Optional[datetime] = None
    attributes: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("due_at")
    @classmethod
    def _due_at_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)


class AssignRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    assignee_id: str
    reason: Optional[str] = None


async def _load(work_item_id: str, actor: Actor, operation: Operation):
    try:
        item = await workflow_engine.get_by_id(work_item_id)
    except WorkflowError as e:
        raise http_error(e)
    await authorize(actor, operation, item)
    return item


# ==================== COLLECTION ENDPOINTS ====================

@router.post("", status_code=201)
async def create_work_item(request: CreateWorkItemRequest, actor: Actor = Depends(get_actor)):
    """Create a Case or Ticket in its initial stage."""
    await authorize(actor, Operation.CREATE)
    data = WorkItemCreate(**request.model_dump(exclude={"kind"}))
    try:
        return await workflow_engine.create(request.kind, data, actor.user_id)
    except WorkflowError as e:
        raise http_error(e)


@router.get("")
async def list_work_items(
    kind: Optional[WorkItemKind] = Query(None),
    stage: Optional[str] = Query(None),
    priority: Optional[Priority] = Query(None),
    assignee_id: Optional[str] = Query(None),
    location_id: Optional[str] = Query(None),
    aging_tier: Optional[AgingTier] = Query(None),
    queue_id: Optional[str] = Query(None),
    search: Optional[str] = Query(None),
    page: int = Query(1),
    limit: int = Query(20),
    sort_by: str = Query("created_at"),
    sort_order: str = Query("desc"),
    actor: Actor = Depends(get_actor),
):
    """List work items with filters and pagination."""
    await authorize(actor, Operation.VIEW)
    try:
        pagination = Pagination(page=page, limit=limit, sort_by=sort_by, sort_order=sort_order)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False))

    filters = ListFilters(
        kind=kind,
        stage=stage,
        priority=priority,
        assignee_id=assignee_id,
        location_id=location_id,
        aging_tier=aging_tier,
        queue_id=queue_id,
        search=search,
    )
    try:
        result = await workflow_engine.list(filters, pagination)
    except WorkflowError as e:
        raise http_error(e)
    return {
        "items": result.items,
        "total": result.total,
        "page": result.page,
        "limit": result.limit,
        "pages": result.pages,
    }


@router.get("/stats")
async def get_work_item_stats(
    kind: Optional[WorkItemKind] = Query(None),
    location_id: Optional[str] = Query(None),
    actor: Actor = Depends(get_actor),
):
    """Totals by stage and aging tier, SLA breaches, mean completion time."""
    await authorize(actor, Operation.VIEW)
    try:
        return await workflow_engine.stats(ListFilters(kind=kind, location_id=location_id))
    except WorkflowError as e:
        raise http_error(e)


@router.get("/aging-summary")
async def get_aging_summary(location_id: Optional[str] = Query(None), actor: Actor = Depends(get_actor)):
    """Open work items per aging tier."""
    await authorize(actor, Operation.VIEW)
    try:
        return await workflow_engine.aging_summary(location_id)
    except WorkflowError as e:
        raise http_error(e)


# ==================== SINGLE ITEM ENDPOINTS ====================

@router.get("/{work_item_id}")
async def get_work_item(work_item_id: str, actor: Actor = Depends(get_actor)):
    return await _load(work_item_id, actor, Operation.VIEW)


@router.post("/{work_item_id}/transition")
async def transition_work_item(work_item_id: str, request: TransitionRequest, actor: Actor = Depends(get_actor)):
    """
    Move a work item to another stage.

    Returns 409 when the stage graph has no such edge.
    """
    await _load(work_item_id, actor, Operation.TRANSITION)
    extra = TransitionExtra(
        assignee_id=request.assignee_id,
        due_at=request.due_at,
        attributes=request.attributes,
    )
    try:
        return await workflow_engine.transition(
            work_item_id, request.to_stage, actor.user_id, reason=request.reason, extra=extra
        )
    except WorkflowError as e:
        raise http_error(e)


@router.post("/{work_item_id}/assign")
async def assign_work_item(work_item_id: str, request: AssignRequest, actor: Actor = Depends(get_actor)):
    await _load(work_item_id, actor, Operation.ASSIGN)
    try:
        return await workflow_engine.assign(work_item_id, request.assignee_id, actor.user_id, reason=request.reason)
    except WorkflowError as e:
        raise http_error(e)


@router.post("/{work_item_id}/notes", status_code=201)
async def add_work_item_note(work_item_id: str, request: NoteCreate, actor: Actor = Depends(get_actor)):
    await _load(work_item_id, actor, Operation.ADD_NOTE)
    try:
        return await workflow_engine.add_note(work_item_id, request, actor.user_id)
    except WorkflowError as e:
        raise http_error(e)


@router.get("/{work_item_id}/history")
async def get_work_item_history(work_item_id: str, actor: Actor = Depends(get_actor)):
    """Transition events, oldest first."""
    await _load(work_item_id, actor, Operation.VIEW)
    try:
        events = await workflow_engine.history(work_item_id)
    except WorkflowError as e:
        raise http_error(e)
    return {"events": events, "total": len(events)}


@router.get("/{work_item_id}/notes")
async def get_work_item_notes(
    work_item_id: str,
    include_internal: bool = Query(False),
    actor: Actor = Depends(get_actor),
):
    await _load(work_item_id, actor, Operation.VIEW)
    try:
        notes = await workflow_engine.notes(work_item_id, include_internal)
    except WorkflowError as e:
        raise http_error(e)
    return {"notes": notes, "total": len(notes)}


@router.get("/{work_item_id}/progress")
async def get_work_item_progress(work_item_id: str, actor: Actor = Depends(get_actor)):
    await _load(work_item_id, actor, Operation.VIEW)
    try:
        return await workflow_engine.progress(work_item_id)
    except WorkflowError as e:
        raise http_error(e)


@router.get("/{work_item_id}/next-stages")
async def get_next_stages(work_item_id: str, actor: Actor = Depends(get_actor)):
    item = await _load(work_item_id, actor, Operation.VIEW)
    try:
        stages = await workflow_engine.next_stages(work_item_id)
    except WorkflowError as e:
        raise http_error(e)
    return {"current_stage": item.stage, "next_stages": stages}
