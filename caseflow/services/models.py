"""
CaseFlow Engine - Domain Models

Work items (Cases and Tickets), their append-only history and notes,
and the queue configuration they are routed through.

Models are pydantic so the same shapes serve the engine, the MongoDB
documents and the HTTP layer. TransitionEvent, Note and Queue are frozen:
once built they are never mutated.
"""

import math
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Timestamps without an offset are taken as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def new_id() -> str:
    return str(uuid.uuid4())


# =============================================================================
# ENUMS
# =============================================================================

class WorkItemKind(str, Enum):
    """Kinds of work flowing through the engine."""
    CASE = "case"        # Sales/engineering engagement
    TICKET = "ticket"    # Support request


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# Queue ordering rank, highest first
PRIORITY_RANK = {
    Priority.CRITICAL: 4,
    Priority.HIGH: 3,
    Priority.MEDIUM: 2,
    Priority.LOW: 1,
}


class AgingTier(str, Enum):
    ON_TIME = "on_time"
    AT_RISK = "at_risk"      # Due within the at-risk threshold
    BREACHED = "breached"    # Past due


class NoteType(str, Enum):
    GENERAL = "general"
    STATUS_CHANGE = "status_change"
    ASSIGNMENT = "assignment"
    CUSTOMER_COMMUNICATION = "customer_communication"
    INTERNAL = "internal"
    SYSTEM = "system"
    DIAGNOSIS = "diagnosis"      # Ticket specific
    RESOLUTION = "resolution"    # Ticket specific


# =============================================================================
# CORE MODELS
# =============================================================================

class WorkItem(BaseModel):
    """
    A Case or Ticket.

    Invariant: queue_id and assignee_id are never both set. A work item
    either waits in a queue for pickup or is held by exactly one assignee.
    """
    model_config = ConfigDict(use_enum_values=False)

    id: str = Field(default_factory=new_id)
    kind: WorkItemKind
    display_number: str
    title: str
    description: Optional[str] = None

    stage: str
    priority: Priority = Priority.MEDIUM

    # Routing
    queue_id: Optional[str] = None
    assignee_id: Optional[str] = None

    # SLA
    due_at: Optional[datetime] = None
    aging_tier: AgingTier = AgingTier.ON_TIME
    sla_breached: bool = False

    # Business fields
    customer_name: Optional[str] = None
    estimated_value: float = 0.0
    attributes: Dict[str, Any] = Field(default_factory=dict)

    created_by: str
    location_id: str
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    resolution_hours: Optional[float] = None

    # Bumped on every engine write; stale writers are rejected
    version: int = 1

    @field_validator("due_at", "created_at", "updated_at", "completed_at")
    @classmethod
    def _timestamps_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)

    @property
    def is_queued(self) -> bool:
        return self.queue_id is not None


class TransitionEvent(BaseModel):
    """One immutable stage and/or assignment change."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    work_item_id: str

    from_stage: Optional[str] = None    # None for creation
    to_stage: str
    from_queue_id: Optional[str] = None
    to_queue_id: Optional[str] = None
    from_assignee_id: Optional[str] = None
    to_assignee_id: Optional[str] = None

    reason: Optional[str] = None
    duration_in_previous_stage: float = Field(0.0, ge=0)  # hours
    change_data: Dict[str, Any] = Field(default_factory=dict)

    changed_by: str
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def is_assignment(self) -> bool:
        return self.from_stage == self.to_stage and self.from_assignee_id != self.to_assignee_id


class Note(BaseModel):
    """Append-only note attached to a work item."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    work_item_id: str
    type: NoteType = NoteType.GENERAL
    text: str

    internal: bool = False
    externally_visible: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)

    created_by: str
    created_at: datetime = Field(default_factory=utc_now)


class Queue(BaseModel):
    """
    A location-scoped holding area for unassigned work items of one stage.

    Owned by the administrative side; the engine only reads it.
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    code: str
    name: str
    description: Optional[str] = None
    department: Optional[str] = None
    location_id: str
    allowed_roles: FrozenSet[str] = frozenset()
    sla_hours: int = 24
    is_active: bool = True
    sort_order: int = 0


class AuditEntry(BaseModel):
    """Best-effort audit record written after a committed operation."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    action: str
    user_id: Optional[str] = None
    table_name: str = "work_items"
    record_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)


# =============================================================================
# INPUT MODELS
# =============================================================================

class WorkItemCreate(BaseModel):
    """Initial data accepted by WorkflowEngine.create."""
    model_config = ConfigDict(extra="forbid")

    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    priority: Priority = Priority.MEDIUM
    location_id: str = Field(..., min_length=1)
    location_code: Optional[str] = None   # Falls back to the configured default
    customer_name: Optional[str] = None
    estimated_value: float = Field(0.0, ge=0)
    attributes: Dict[str, Any] = Field(default_factory=dict)


class TransitionExtra(BaseModel):
    """Optional extra payload for a stage transition."""
    model_config = ConfigDict(extra="forbid")

    assignee_id: Optional[str] = None   # Hand straight to a person, skipping the queue
    due_at: Optional[datetime] = None   # Override the computed due date
    attributes: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("due_at")
    @classmethod
    def _due_at_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)


class NoteCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: NoteType = NoteType.GENERAL
    text: str = Field(..., min_length=1, max_length=5000)
    internal: bool = False
    externally_visible: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)


# =============================================================================
# QUERY MODELS
# =============================================================================

SORTABLE_FIELDS = {"created_at", "updated_at", "due_at", "display_number", "priority", "stage"}


class ListFilters(BaseModel):
    kind: Optional[WorkItemKind] = None
    stage: Optional[str] = None
    priority: Optional[Priority] = None
    assignee_id: Optional[str] = None
    location_id: Optional[str] = None
    aging_tier: Optional[AgingTier] = None
    queue_id: Optional[str] = None
    search: Optional[str] = None   # display_number / title / customer_name


class Pagination(BaseModel):
    page: int = Field(1, ge=1)
    limit: int = Field(20, ge=1, le=200)
    sort_by: str = "created_at"
    sort_order: str = Field("desc", pattern="^(asc|desc)$")

    @field_validator("sort_by")
    @classmethod
    def _known_sort_field(cls, value: str) -> str:
        if value not in SORTABLE_FIELDS:
            raise ValueError(f"sort_by must be one of {sorted(SORTABLE_FIELDS)}")
        return value

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


class Page(BaseModel):
    items: List[WorkItem]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0
