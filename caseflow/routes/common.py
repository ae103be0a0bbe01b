"""
CaseFlow Engine - Shared Route Helpers

Caller identification, permission gate and engine error -> HTTP mapping.
"""

import logging
from typing import Optional

from fastapi import Header, HTTPException

from ..services.errors import (
    InvalidTransition,
    InvariantViolation,
    NotFound,
    PersistenceError,
    SequenceExhausted,
    WorkflowError,
)
from ..services.models import WorkItem
from ..services.permissions import Actor, AllowAll, Operation, PermissionCheck

logger = logging.getLogger(__name__)

STATUS_CODES = {
    NotFound: 404,
    InvalidTransition: 409,
    InvariantViolation: 422,
    PersistenceError: 503,
    SequenceExhausted: 507,
}

permission_check: PermissionCheck = AllowAll()


def set_permission_check(check: PermissionCheck):
    global permission_check
    permission_check = check


def http_error(error: WorkflowError) -> HTTPException:
    status_code = 500
    for error_type, code in STATUS_CODES.items():
        if isinstance(error, error_type):
            status_code = code
            break
    return HTTPException(status_code=status_code, detail=error.to_dict())


async def get_actor(
    x_user_id: Optional[str] = Header(None),
    x_user_roles: Optional[str] = Header(None),
) -> Actor:
    """X-User-Id identifies the caller; X-User-Roles is a comma separated list."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="X-User-Id header is required")
    roles = frozenset(r.strip() for r in (x_user_roles or "").split(",") if r.strip())
    return Actor(user_id=x_user_id.strip(), roles=roles)


async def authorize(actor: Actor, operation: Operation, work_item: Optional[WorkItem] = None):
    if not await permission_check(actor, operation, work_item):
        raise HTTPException(
            status_code=403,
            detail=f"{actor.user_id} is not allowed to {operation.value}",
        )
