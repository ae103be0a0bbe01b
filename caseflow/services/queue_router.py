"""
CaseFlow Engine - Queue Router

Maps a work item's stage to the location-scoped queue that holds unassigned
items of that stage. Queue configuration is owned by the admin side; the
router only ever reads a snapshot of it.

Absence of a queue is not an error: terminal, rejected and on_hold stages
(and any stage whose queue is inactive or not configured for a location)
route to assignee-only work.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

from .models import Queue, WorkItemKind

logger = logging.getLogger(__name__)


# =============================================================================
# STAGE -> QUEUE CODE
# =============================================================================

STAGE_QUEUE_CODES: Dict[WorkItemKind, Dict[str, str]] = {
    WorkItemKind.CASE: {
        "enquiry": "ENQ",
        "estimation": "EST",
        "quotation": "QUO",
        "purchase_enquiry": "PEN",
        "po_pi": "POP",
        "grn": "GRN",
        "manufacturing": "MFG",
        "invoicing": "INV",
    },
    WorkItemKind.TICKET: {
        "support_ticket": "TSQ",
        "diagnosis": "TDQ",
    },
}


# Seeded for every location
DEFAULT_QUEUE_DEFINITIONS: List[Dict] = [
    {
        "code": "ENQ",
        "name": "Enquiry Queue",
        "description": "New customer enquiries awaiting initial review",
        "department": "Sales",
        "allowed_roles": ["Sales Admin", "Manager", "Director"],
        "sla_hours": 24,
        "sort_order": 1,
    },
    {
        "code": "EST",
        "name": "Estimation Queue",
        "description": "Cases requiring technical estimation",
        "department": "Engineering",
        "allowed_roles": ["Engineer", "Manager", "Director"],
        "sla_hours": 48,
        "sort_order": 2,
    },
    {
        "code": "QUO",
        "name": "Quotation Queue",
        "description": "Cases ready for quotation preparation",
        "department": "Sales",
        "allowed_roles": ["Sales Admin", "Manager", "Director"],
        "sla_hours": 24,
        "sort_order": 3,
    },
    {
        "code": "PEN",
        "name": "Purchase Enquiry Queue",
        "description": "Cases requiring material sourcing",
        "department": "Procurement",
        "allowed_roles": ["Engineer", "Manager", "Director"],
        "sla_hours": 72,
        "sort_order": 4,
    },
    {
        "code": "POP",
        "name": "PO/PI Queue",
        "description": "Purchase orders and proforma invoices",
        "department": "Finance",
        "allowed_roles": ["Sales Admin", "Manager", "Director"],
        "sla_hours": 48,
        "sort_order": 5,
    },
    {
        "code": "GRN",
        "name": "GRN Queue",
        "description": "Goods receipt and material verification",
        "department": "Warehouse",
        "allowed_roles": ["User", "Engineer", "Manager", "Director"],
        "sla_hours": 24,
        "sort_order": 6,
    },
    {
        "code": "MFG",
        "name": "Manufacturing Queue",
        "description": "Production and assembly tasks",
        "department": "Production",
        "allowed_roles": ["Engineer", "Manager", "Director"],
        "sla_hours": 168,
        "sort_order": 7,
    },
    {
        "code": "INV",
        "name": "Invoicing Queue",
        "description": "Final invoicing and delivery preparation",
        "department": "Finance",
        "allowed_roles": ["Sales Admin", "Manager", "Director"],
        "sla_hours": 24,
        "sort_order": 8,
    },
    {
        "code": "TSQ",
        "name": "Support Ticket Queue",
        "description": "New support tickets awaiting triage",
        "department": "Support",
        "allowed_roles": ["Support", "Engineer", "Manager", "Director"],
        "sla_hours": 24,
        "sort_order": 9,
    },
    {
        "code": "TDQ",
        "name": "Diagnosis Queue",
        "description": "Tickets awaiting technical diagnosis",
        "department": "Support",
        "allowed_roles": ["Engineer", "Manager", "Director"],
        "sla_hours": 48,
        "sort_order": 10,
    },
]


def queue_code_for(kind: WorkItemKind, stage: str) -> Optional[str]:
    return STAGE_QUEUE_CODES[WorkItemKind(kind)].get(stage)


# =============================================================================
# QUEUE SOURCES
# =============================================================================

class QueueSource(ABC):
    """Read-only view of the queue configuration table."""

    @abstractmethod
    def all(self) -> List[Queue]:
        """Every configured queue, active or not."""

    def get(self, queue_id: str) -> Optional[Queue]:
        for queue in self.all():
            if queue.id == queue_id:
                return queue
        return None

    def find(self, code: str, location_id: str) -> Optional[Queue]:
        for queue in self.all():
            if queue.code == code and queue.location_id == location_id:
                return queue
        return None


class StaticQueueSource(QueueSource):
    """In-memory queue table. Used by tests and by the server before load."""

    def __init__(self, queues: Optional[Iterable[Queue]] = None):
        self._queues: Dict[str, Queue] = {}
        for queue in queues or []:
            self.add(queue)

    def add(self, queue: Queue) -> Queue:
        existing = self.find(queue.code, queue.location_id)
        if existing is not None and existing.id != queue.id:
            raise ValueError(
                f"Queue {queue.code} already configured for location {queue.location_id}"
            )
        self._queues[queue.id] = queue
        return queue

    def all(self) -> List[Queue]:
        return list(self._queues.values())


class MongoQueueSource(QueueSource):
    """
    Queue table backed by the `case_queues` collection.

    load() takes a snapshot; routing never hits the database. Call load()
    again after the admin side edits queues.
    """

    COLLECTION = "case_queues"

    def __init__(self, db):
        self.db = db
        self._snapshot: List[Queue] = []

    async def load(self) -> List[Queue]:
        docs = await self.db[self.COLLECTION].find({}, {"_id": 0}).to_list(1000)
        self._snapshot = [Queue(**doc) for doc in docs]
        logger.info(f"Loaded {len(self._snapshot)} queues from {self.COLLECTION}")
        return self._snapshot

    def all(self) -> List[Queue]:
        return list(self._snapshot)

    async def upsert_default(self, queue: Queue) -> bool:
        """Insert a queue unless (code, location_id) exists. Returns True when inserted."""
        doc = queue.model_dump()
        doc["allowed_roles"] = sorted(queue.allowed_roles)
        result = await self.db[self.COLLECTION].update_one(
            {"code": queue.code, "location_id": queue.location_id},
            {"$setOnInsert": doc},
            upsert=True,
        )
        return result.upserted_id is not None


def build_default_queues(location_id: str) -> List[Queue]:
    return [
        Queue(
            code=definition["code"],
            name=definition["name"],
            description=definition["description"],
            department=definition["department"],
            location_id=location_id,
            allowed_roles=frozenset(definition["allowed_roles"]),
            sla_hours=definition["sla_hours"],
            sort_order=definition["sort_order"],
        )
        for definition in DEFAULT_QUEUE_DEFINITIONS
    ]


async def seed_default_queues(source: QueueSource, location_ids: Iterable[str]) -> int:
    """
    Create the default queues for each location. Idempotent: existing
    (code, location) pairs are left untouched. Returns the number created.
    """
    created = 0
    for location_id in location_ids:
        for queue in build_default_queues(location_id):
            if isinstance(source, MongoQueueSource):
                if await source.upsert_default(queue):
                    created += 1
            elif source.find(queue.code, location_id) is None:
                source.add(queue)
                created += 1

    if isinstance(source, MongoQueueSource):
        await source.load()

    logger.info(f"Seeded {created} default queues")
    return created


# =============================================================================
# ROUTER
# =============================================================================

class QueueRouter:
    """Pure lookups against a QueueSource."""

    def __init__(self, source: QueueSource):
        self.source = source

    def _active(self) -> List[Queue]:
        return [q for q in self.source.all() if q.is_active]

    def queue_for(self, kind: WorkItemKind, stage: str, location_id: str) -> Optional[Queue]:
        """The active queue for (stage, location), or None for assignee-only work."""
        code = queue_code_for(kind, stage)
        if code is None:
            return None
        for queue in self._active():
            if queue.code == code and queue.location_id == location_id:
                return queue
        return None

    def get(self, queue_id: str) -> Optional[Queue]:
        return self.source.get(queue_id)

    def visible_queues(self, roles: Iterable[str], location_id: Optional[str] = None) -> List[Queue]:
        """Active queues whose allowed_roles intersect the caller's roles."""
        role_set: FrozenSet[str] = frozenset(roles)
        visible = [
            q for q in self._active()
            if q.allowed_roles & role_set
            and (location_id is None or q.location_id == location_id)
        ]
        return sorted(visible, key=_queue_sort_key)

    def is_visible(self, queue: Queue, roles: Iterable[str]) -> bool:
        return bool(queue.allowed_roles & frozenset(roles))


def _queue_sort_key(queue: Queue) -> Tuple[str, int, str]:
    return (queue.location_id, queue.sort_order, queue.code)
