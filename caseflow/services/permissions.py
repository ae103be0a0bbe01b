"""
CaseFlow Engine - Permission Check

Authorization is evaluated outside the engine. The HTTP layer asks a
PermissionCheck before every engine call and turns a "no" into 403.

AllowAll is the default. RoleBasedPermissionCheck is a simple role table for
deployments without an external policy service.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Optional

from .models import WorkItem

logger = logging.getLogger(__name__)


class Operation(str, Enum):
    CREATE = "create"
    VIEW = "view"
    TRANSITION = "transition"
    ASSIGN = "assign"
    ADD_NOTE = "add_note"
    SWEEP = "sweep"


@dataclass(frozen=True)
class Actor:
    """The caller, as identified by the request headers."""
    user_id: str
    roles: FrozenSet[str] = frozenset()


class PermissionCheck(ABC):
    @abstractmethod
    async def __call__(self, actor: Actor, operation: Operation, work_item: Optional[WorkItem] = None) -> bool:
        """True when actor may perform operation (on work_item, when given)."""


class AllowAll(PermissionCheck):
    async def __call__(self, actor: Actor, operation: Operation, work_item: Optional[WorkItem] = None) -> bool:
        return True


@dataclass
class RoleBasedPermissionCheck(PermissionCheck):
    """
    Grants an operation when the actor holds one of its roles. Operations
    missing from the table are allowed. Admin roles are always allowed.
    """
    rules: Dict[Operation, FrozenSet[str]] = field(default_factory=dict)
    admin_roles: FrozenSet[str] = frozenset({"Director", "Admin"})

    async def __call__(self, actor: Actor, operation: Operation, work_item: Optional[WorkItem] = None) -> bool:
        if actor.roles & self.admin_roles:
            return True
        required = self.rules.get(Operation(operation))
        if required is None:
            return True
        allowed = bool(actor.roles & required)
        if not allowed:
            logger.warning(
                "Permission denied: user=%s operation=%s work_item=%s",
                actor.user_id, Operation(operation).value, work_item.id if work_item else None,
            )
        return allowed
