"""
CaseFlow Engine - Repository (Unit of Work)

Persistence boundary for the engine. WorkflowEngine never talks to a store
directly: every mutating operation runs as

    result = await repo.atomically(fn)

where fn receives a UnitOfWork and either completes (everything it wrote is
committed together) or raises (nothing it wrote is visible). Reads outside a
unit go straight to the repository.

Two implementations:
- InMemoryRepository (this module): staged writes, applied at commit. Used by
  tests and local runs; supports fault injection.
- MongoRepository (mongo_repository.py): motor client session transactions.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, TypeVar

from .errors import PersistenceError
from .models import (
    PRIORITY_RANK,
    AgingTier,
    AuditEntry,
    ListFilters,
    Note,
    Page,
    Pagination,
    TransitionEvent,
    WorkItem,
)
from .sequence import KeyedLock
from .transition_table import TERMINAL_STAGE

logger = logging.getLogger(__name__)

T = TypeVar("T")


# =============================================================================
# INTERFACES
# =============================================================================

class UnitOfWork(ABC):
    """Handle passed to the function run by Repository.atomically."""

    @abstractmethod
    async def get(self, work_item_id: str) -> Optional[WorkItem]:
        ...

    @abstractmethod
    async def insert(self, item: WorkItem) -> WorkItem:
        ...

    @abstractmethod
    async def save(self, item: WorkItem) -> WorkItem:
        """
        Write an updated work item. item.version must equal the stored
        version; the stored copy gets version + 1, which is returned.

        Raises:
            PersistenceError: on a version mismatch (someone else wrote first)
        """

    @abstractmethod
    async def last_event(self, work_item_id: str) -> Optional[TransitionEvent]:
        ...

    @abstractmethod
    async def append_event(self, event: TransitionEvent) -> TransitionEvent:
        ...

    @abstractmethod
    async def append_note(self, note: Note) -> Note:
        ...

    @abstractmethod
    async def increment_counter(self, scope: str) -> int:
        ...


class Repository(ABC):
    """Store for work items, their history, notes, counters and audit log."""

    @abstractmethod
    async def atomically(self, fn: Callable[[UnitOfWork], Awaitable[T]]) -> T:
        """
        Run fn(uow) as one all-or-nothing unit.

        fn may be re-run by stores that retry transient conflicts, so it must
        only touch state through the unit of work.
        """

    @abstractmethod
    async def get(self, work_item_id: str) -> Optional[WorkItem]:
        ...

    @abstractmethod
    async def find_items(self, filters: ListFilters) -> List[WorkItem]:
        """All items matching filters, unordered."""

    @abstractmethod
    async def list_items(self, filters: ListFilters, pagination: Pagination) -> Page:
        ...

    @abstractmethod
    def iter_open_items(self) -> AsyncIterator[WorkItem]:
        """Every non-terminal work item."""

    @abstractmethod
    async def queue_items(self, queue_ids: List[str]) -> List[WorkItem]:
        """Items sitting in any of the queues, critical first then oldest first."""

    @abstractmethod
    async def aging_counts(self, location_id: Optional[str] = None) -> Dict[str, int]:
        ...

    @abstractmethod
    async def history(self, work_item_id: str) -> List[TransitionEvent]:
        ...

    @abstractmethod
    async def notes(self, work_item_id: str, include_internal: bool = False) -> List[Note]:
        ...

    @abstractmethod
    async def update_aging(
        self,
        work_item_id: str,
        expected_version: int,
        aging_tier: AgingTier,
        sla_breached: bool,
    ) -> bool:
        """
        Conditionally write derived aging fields. Returns False when the
        item changed (or vanished) since it was read. Does not bump version.
        """

    @abstractmethod
    async def increment_counter(self, scope: str) -> int:
        """Atomic standalone increment, outside any unit of work."""

    @abstractmethod
    async def append_audit(self, entry: AuditEntry) -> AuditEntry:
        ...

    @abstractmethod
    async def audit_for_record(self, record_id: str, limit: int = 100) -> List[AuditEntry]:
        ...

    @abstractmethod
    async def audit_for_user(self, user_id: str, limit: int = 100) -> List[AuditEntry]:
        ...


# =============================================================================
# FILTERING / ORDERING HELPERS
# =============================================================================

def matches(item: WorkItem, filters: ListFilters) -> bool:
    if filters.kind is not None and item.kind != filters.kind:
        return False
    if filters.stage is not None and item.stage != filters.stage:
        return False
    if filters.priority is not None and item.priority != filters.priority:
        return False
    if filters.assignee_id is not None and item.assignee_id != filters.assignee_id:
        return False
    if filters.location_id is not None and item.location_id != filters.location_id:
        return False
    if filters.aging_tier is not None and item.aging_tier != filters.aging_tier:
        return False
    if filters.queue_id is not None and item.queue_id != filters.queue_id:
        return False
    if filters.search:
        needle = filters.search.lower()
        haystack = [item.display_number, item.title, item.customer_name or ""]
        if not any(needle in value.lower() for value in haystack):
            return False
    return True


def sort_value(item: WorkItem, field: str) -> Any:
    if field == "priority":
        return PRIORITY_RANK[item.priority]
    return getattr(item, field)


def sort_items(items: List[WorkItem], sort_by: str, descending: bool) -> List[WorkItem]:
    # Missing values (due_at) always go last
    present = [i for i in items if sort_value(i, sort_by) is not None]
    missing = [i for i in items if sort_value(i, sort_by) is None]
    present.sort(key=lambda i: (sort_value(i, sort_by), i.created_at), reverse=descending)
    return present + missing


def queue_order_key(item: WorkItem):
    return (-PRIORITY_RANK[item.priority], item.created_at)


def empty_aging_counts() -> Dict[str, int]:
    return {tier.value: 0 for tier in AgingTier}


# =============================================================================
# IN-MEMORY IMPLEMENTATION
# =============================================================================

class InMemoryUnitOfWork(UnitOfWork):
    def __init__(self, repo: "InMemoryRepository"):
        self._repo = repo
        self.items: Dict[str, WorkItem] = {}
        self.new_ids: set = set()
        self.events: List[TransitionEvent] = []
        self.notes: List[Note] = []
        self.counters: Dict[str, int] = {}
        self.held_scopes: List[str] = []

    async def get(self, work_item_id: str) -> Optional[WorkItem]:
        self._repo._check_fault("get")
        if work_item_id in self.items:
            return self.items[work_item_id].model_copy(deep=True)
        stored = self._repo._items.get(work_item_id)
        return stored.model_copy(deep=True) if stored else None

    async def insert(self, item: WorkItem) -> WorkItem:
        self._repo._check_fault("insert")
        if item.id in self._repo._items or item.id in self.items:
            raise PersistenceError(f"Work item {item.id} already exists")
        taken = {i.display_number for i in self._repo._items.values()}
        taken.update(i.display_number for i in self.items.values())
        if item.display_number in taken:
            raise PersistenceError(f"Display number {item.display_number} already exists")
        self.items[item.id] = item.model_copy(deep=True)
        self.new_ids.add(item.id)
        return item.model_copy(deep=True)

    async def save(self, item: WorkItem) -> WorkItem:
        self._repo._check_fault("save")
        current = self.items.get(item.id) or self._repo._items.get(item.id)
        if current is None:
            raise PersistenceError(f"Work item {item.id} does not exist")
        if current.version != item.version:
            raise PersistenceError(
                f"Version conflict on work item {item.id}",
                {"expected": item.version, "actual": current.version},
            )
        saved = item.model_copy(update={"version": item.version + 1}, deep=True)
        self.items[item.id] = saved
        return saved.model_copy(deep=True)

    async def last_event(self, work_item_id: str) -> Optional[TransitionEvent]:
        for event in reversed(self.events):
            if event.work_item_id == work_item_id:
                return event
        committed = self._repo._events.get(work_item_id)
        return committed[-1] if committed else None

    async def append_event(self, event: TransitionEvent) -> TransitionEvent:
        self._repo._check_fault("append_event")
        self.events.append(event)
        return event

    async def append_note(self, note: Note) -> Note:
        self._repo._check_fault("append_note")
        self.notes.append(note)
        return note

    async def increment_counter(self, scope: str) -> int:
        self._repo._check_fault("increment_counter")
        # Held until commit or rollback so standalone increments cannot interleave
        if scope not in self.held_scopes:
            await self._repo._counter_locks.acquire(scope)
            self.held_scopes.append(scope)
        value = self.counters.get(scope, self._repo._counters.get(scope, 0)) + 1
        self.counters[scope] = value
        return value


class InMemoryRepository(Repository):
    """
    Dict-backed repository.

    Units of work run one at a time under a single lock and stage their
    writes; commit applies them in one step, an exception discards them.

    Fault injection: inject_failure("append_event") makes the next call of
    that operation raise PersistenceError. Operations: get, insert, save,
    append_event, append_note, increment_counter, commit, update_aging,
    append_audit.
    """

    def __init__(self):
        self._items: Dict[str, WorkItem] = {}
        self._events: Dict[str, List[TransitionEvent]] = defaultdict(list)
        self._notes: Dict[str, List[Note]] = defaultdict(list)
        self._counters: Dict[str, int] = {}
        self._audit: List[AuditEntry] = []
        self._unit_lock = asyncio.Lock()
        self._counter_locks = KeyedLock()
        self._faults: Dict[str, int] = {}
        self.commits = 0
        self.rollbacks = 0

    # ---- fault injection ----------------------------------------------------

    def inject_failure(self, operation: str, times: int = 1):
        self._faults[operation] = self._faults.get(operation, 0) + times

    def _check_fault(self, operation: str):
        remaining = self._faults.get(operation, 0)
        if remaining > 0:
            self._faults[operation] = remaining - 1
            raise PersistenceError(f"Injected failure in {operation}")

    # ---- unit of work ---------------------------------------------------------

    async def atomically(self, fn: Callable[[UnitOfWork], Awaitable[T]]) -> T:
        async with self._unit_lock:
            uow = InMemoryUnitOfWork(self)
            try:
                try:
                    result = await fn(uow)
                    self._check_fault("commit")
                except BaseException:
                    self.rollbacks += 1
                    raise
                self._commit(uow)
                return result
            finally:
                for scope in uow.held_scopes:
                    self._counter_locks.release(scope)

    def _commit(self, uow: InMemoryUnitOfWork):
        for item_id, item in uow.items.items():
            self._items[item_id] = item
        for event in uow.events:
            self._events[event.work_item_id].append(event)
        for note in uow.notes:
            self._notes[note.work_item_id].append(note)
        self._counters.update(uow.counters)
        self.commits += 1

    # ---- reads ----------------------------------------------------------------

    async def get(self, work_item_id: str) -> Optional[WorkItem]:
        self._check_fault("get")
        item = self._items.get(work_item_id)
        return item.model_copy(deep=True) if item else None

    async def find_items(self, filters: ListFilters) -> List[WorkItem]:
        return [i.model_copy(deep=True) for i in self._items.values() if matches(i, filters)]

    async def list_items(self, filters: ListFilters, pagination: Pagination) -> Page:
        found = await self.find_items(filters)
        ordered = sort_items(found, pagination.sort_by, pagination.sort_order == "desc")
        window = ordered[pagination.offset:pagination.offset + pagination.limit]
        return Page(items=window, total=len(found), page=pagination.page, limit=pagination.limit)

    async def iter_open_items(self) -> AsyncIterator[WorkItem]:
        snapshot = [i for i in self._items.values() if i.stage != TERMINAL_STAGE]
        for item in snapshot:
            yield item.model_copy(deep=True)

    async def queue_items(self, queue_ids: List[str]) -> List[WorkItem]:
        wanted = set(queue_ids)
        found = [
            i.model_copy(deep=True) for i in self._items.values()
            if i.queue_id in wanted and i.stage != TERMINAL_STAGE
        ]
        return sorted(found, key=queue_order_key)

    async def aging_counts(self, location_id: Optional[str] = None) -> Dict[str, int]:
        counts = empty_aging_counts()
        for item in self._items.values():
            if item.stage == TERMINAL_STAGE:
                continue
            if location_id is not None and item.location_id != location_id:
                continue
            counts[AgingTier(item.aging_tier).value] += 1
        return counts

    async def history(self, work_item_id: str) -> List[TransitionEvent]:
        return list(self._events.get(work_item_id, []))

    async def notes(self, work_item_id: str, include_internal: bool = False) -> List[Note]:
        notes = self._notes.get(work_item_id, [])
        return [n for n in notes if include_internal or not n.internal]

    # ---- derived writes -------------------------------------------------------

    async def update_aging(
        self,
        work_item_id: str,
        expected_version: int,
        aging_tier: AgingTier,
        sla_breached: bool,
    ) -> bool:
        async with self._unit_lock:
            self._check_fault("update_aging")
            current = self._items.get(work_item_id)
            if current is None or current.version != expected_version:
                return False
            self._items[work_item_id] = current.model_copy(
                update={"aging_tier": aging_tier, "sla_breached": sla_breached}
            )
            return True

    async def increment_counter(self, scope: str) -> int:
        async with self._counter_locks.hold(scope):
            # Yield so concurrent callers actually interleave
            await asyncio.sleep(0)
            value = self._counters.get(scope, 0) + 1
            self._counters[scope] = value
            return value

    # ---- audit ----------------------------------------------------------------

    async def append_audit(self, entry: AuditEntry) -> AuditEntry:
        self._check_fault("append_audit")
        self._audit.append(entry)
        return entry

    async def audit_for_record(self, record_id: str, limit: int = 100) -> List[AuditEntry]:
        found = [e for e in self._audit if e.record_id == record_id]
        return list(reversed(found))[:limit]

    async def audit_for_user(self, user_id: str, limit: int = 100) -> List[AuditEntry]:
        found = [e for e in self._audit if e.user_id == user_id]
        return list(reversed(found))[:limit]
