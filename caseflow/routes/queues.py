"""
CaseFlow Engine - Queues Router

Role-scoped queue views and the manual aging sweep trigger.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from ..services.errors import WorkflowError
from ..services.permissions import Actor, Operation
from .common import authorize, get_actor, http_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/queues", tags=["queues"])
aging_router = APIRouter(prefix="/aging", tags=["aging"])

# Set by main app
workflow_engine = None
aging_sweep = None


def set_dependencies(engine, sweep=None):
    global workflow_engine, aging_sweep
    workflow_engine = engine
    aging_sweep = sweep


# ==================== QUEUE ENDPOINTS ====================

@router.get("")
async def list_queues(location_id: Optional[str] = Query(None), actor: Actor = Depends(get_actor)):
    """Active queues the caller's roles can see."""
    await authorize(actor, Operation.VIEW)
    queues = workflow_engine.router.visible_queues(actor.roles, location_id)
    return {"queues": queues, "total": len(queues)}


@router.get("/mine/items")
async def get_my_queue_items(location_id: Optional[str] = Query(None), actor: Actor = Depends(get_actor)):
    """Everything waiting in any queue the caller can see."""
    await authorize(actor, Operation.VIEW)
    try:
        items = await workflow_engine.queue_items_for_roles(actor.roles, location_id)
    except WorkflowError as e:
        raise http_error(e)
    return {"items": items, "total": len(items)}


@router.get("/{queue_id}/items")
async def get_queue_items(queue_id: str, actor: Actor = Depends(get_actor)):
    """Items waiting in one queue, critical first then oldest first."""
    await authorize(actor, Operation.VIEW)
    queue = workflow_engine.router.get(queue_id)
    if queue is not None and not workflow_engine.router.is_visible(queue, actor.roles):
        raise HTTPException(status_code=403, detail=f"Queue {queue.code} is not visible to {actor.user_id}")
    try:
        items = await workflow_engine.queue_items(queue_id)
    except WorkflowError as e:
        raise http_error(e)
    return {"queue": queue, "items": items, "total": len(items)}


# ==================== AGING ====================

@aging_router.post("/sweep")
async def trigger_aging_sweep(actor: Actor = Depends(get_actor)):
    """Run one aging sweep now (normally runs on a timer)."""
    await authorize(actor, Operation.SWEEP)
    if aging_sweep is None:
        raise HTTPException(status_code=400, detail="Aging sweep is not configured")
    try:
        result = await aging_sweep.run_once()
    except WorkflowError as e:
        raise http_error(e)
    return result.to_dict()
