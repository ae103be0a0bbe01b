"""
CaseFlow Engine - MongoDB Repository

motor-backed implementation of the Repository / UnitOfWork contract.

Collections:
- work_items            one document per Case/Ticket (unique id, display_number)
- transition_events     append-only history
- work_item_notes       append-only notes
- sequence_counters     {_id: scope, value: n}, atomic $inc
- audit_logs            best-effort audit trail

atomically() runs inside a client session transaction (requires a replica
set). Transient transaction errors are retried by the driver, so the unit
function may run more than once.
"""

import functools
import logging
import re
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, TypeVar

from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

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
from .repository import Repository, UnitOfWork, empty_aging_counts
from .transition_table import TERMINAL_STAGE

logger = logging.getLogger(__name__)

T = TypeVar("T")

NO_ID = {"_id": 0}


def translate_errors(operation: str):
    """Re-raise driver errors as PersistenceError."""
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except PyMongoError as e:
                logger.error(f"MongoDB {operation} failed: {e}")
                raise PersistenceError(f"{operation} failed: {e}") from e
        return wrapper
    return decorator


def to_document(model) -> Dict[str, Any]:
    doc = model.model_dump()
    for key, value in doc.items():
        if isinstance(value, Enum):
            doc[key] = value.value
    return doc


def work_item_document(item: WorkItem) -> Dict[str, Any]:
    doc = to_document(item)
    doc["priority_rank"] = PRIORITY_RANK[item.priority]
    return doc


def work_item_from(doc: Optional[Dict[str, Any]]) -> Optional[WorkItem]:
    if doc is None:
        return None
    doc.pop("_id", None)
    doc.pop("priority_rank", None)
    return WorkItem(**doc)


def build_query(filters: ListFilters) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    for field in ("kind", "stage", "priority", "assignee_id", "location_id", "aging_tier", "queue_id"):
        value = getattr(filters, field)
        if value is not None:
            query[field] = value.value if isinstance(value, Enum) else value
    if filters.search:
        pattern = {"$regex": re.escape(filters.search), "$options": "i"}
        query["$or"] = [
            {"display_number": pattern},
            {"title": pattern},
            {"customer_name": pattern},
        ]
    return query


# =============================================================================
# UNIT OF WORK
# =============================================================================

class MongoUnitOfWork(UnitOfWork):
    def __init__(self, db, session):
        self.db = db
        self.session = session

    async def get(self, work_item_id: str) -> Optional[WorkItem]:
        doc = await self.db.work_items.find_one({"id": work_item_id}, NO_ID, session=self.session)
        return work_item_from(doc)

    async def insert(self, item: WorkItem) -> WorkItem:
        try:
            await self.db.work_items.insert_one(work_item_document(item), session=self.session)
        except DuplicateKeyError as e:
            raise PersistenceError(f"Work item {item.display_number} already exists") from e
        return item

    async def save(self, item: WorkItem) -> WorkItem:
        saved = item.model_copy(update={"version": item.version + 1})
        result = await self.db.work_items.replace_one(
            {"id": item.id, "version": item.version},
            work_item_document(saved),
            session=self.session,
        )
        if result.matched_count == 0:
            raise PersistenceError(
                f"Version conflict on work item {item.id}",
                {"expected": item.version},
            )
        return saved

    async def last_event(self, work_item_id: str) -> Optional[TransitionEvent]:
        doc = await self.db.transition_events.find_one(
            {"work_item_id": work_item_id},
            NO_ID,
            sort=[("created_at", DESCENDING), ("_id", DESCENDING)],
            session=self.session,
        )
        return TransitionEvent(**doc) if doc else None

    async def append_event(self, event: TransitionEvent) -> TransitionEvent:
        await self.db.transition_events.insert_one(to_document(event), session=self.session)
        return event

    async def append_note(self, note: Note) -> Note:
        await self.db.work_item_notes.insert_one(to_document(note), session=self.session)
        return note

    async def increment_counter(self, scope: str) -> int:
        doc = await self.db.sequence_counters.find_one_and_update(
            {"_id": scope},
            {"$inc": {"value": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
            session=self.session,
        )
        return doc["value"]


# =============================================================================
# REPOSITORY
# =============================================================================

class MongoRepository(Repository):
    def __init__(self, client, db):
        self.client = client
        self.db = db

    async def create_indexes(self):
        await self.db.work_items.create_index("id", unique=True)
        await self.db.work_items.create_index("display_number", unique=True)
        await self.db.work_items.create_index([("location_id", ASCENDING), ("stage", ASCENDING)])
        await self.db.work_items.create_index([("queue_id", ASCENDING), ("priority_rank", DESCENDING), ("created_at", ASCENDING)])
        await self.db.work_items.create_index("assignee_id")
        await self.db.work_items.create_index("aging_tier")

        await self.db.transition_events.create_index([("work_item_id", ASCENDING), ("created_at", ASCENDING)])
        await self.db.work_item_notes.create_index([("work_item_id", ASCENDING), ("created_at", ASCENDING)])

        await self.db.audit_logs.create_index("record_id")
        await self.db.audit_logs.create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])

        await self.db.case_queues.create_index([("code", ASCENDING), ("location_id", ASCENDING)], unique=True)

        # Transactions cannot create collections on older servers
        existing = set(await self.db.list_collection_names())
        for name in ("sequence_counters", "transition_events", "work_item_notes"):
            if name not in existing:
                await self.db.create_collection(name)

        logger.info("Database indexes created")

    async def atomically(self, fn: Callable[[UnitOfWork], Awaitable[T]]) -> T:
        async def callback(session):
            return await fn(MongoUnitOfWork(self.db, session))

        try:
            async with await self.client.start_session() as session:
                return await session.with_transaction(callback)
        except PyMongoError as e:
            logger.error(f"MongoDB transaction failed: {e}")
            raise PersistenceError(f"Transaction failed: {e}") from e

    @translate_errors("get")
    async def get(self, work_item_id: str) -> Optional[WorkItem]:
        return work_item_from(await self.db.work_items.find_one({"id": work_item_id}, NO_ID))

    @translate_errors("find_items")
    async def find_items(self, filters: ListFilters) -> List[WorkItem]:
        cursor = self.db.work_items.find(build_query(filters), NO_ID)
        return [work_item_from(doc) async for doc in cursor]

    @translate_errors("list_items")
    async def list_items(self, filters: ListFilters, pagination: Pagination) -> Page:
        query = build_query(filters)
        sort_field = "priority_rank" if pagination.sort_by == "priority" else pagination.sort_by
        direction = DESCENDING if pagination.sort_order == "desc" else ASCENDING

        total = await self.db.work_items.count_documents(query)
        cursor = (
            self.db.work_items.find(query, NO_ID)
            .sort([(sort_field, direction), ("created_at", direction)])
            .skip(pagination.offset)
            .limit(pagination.limit)
        )
        items = [work_item_from(doc) async for doc in cursor]
        return Page(items=items, total=total, page=pagination.page, limit=pagination.limit)

    async def iter_open_items(self) -> AsyncIterator[WorkItem]:
        try:
            async for doc in self.db.work_items.find({"stage": {"$ne": TERMINAL_STAGE}}, NO_ID):
                yield work_item_from(doc)
        except PyMongoError as e:
            logger.error(f"MongoDB iter_open_items failed: {e}")
            raise PersistenceError(f"iter_open_items failed: {e}") from e

    @translate_errors("queue_items")
    async def queue_items(self, queue_ids: List[str]) -> List[WorkItem]:
        cursor = self.db.work_items.find(
            {"queue_id": {"$in": list(queue_ids)}, "stage": {"$ne": TERMINAL_STAGE}},
            NO_ID,
        ).sort([("priority_rank", DESCENDING), ("created_at", ASCENDING)])
        return [work_item_from(doc) async for doc in cursor]

    @translate_errors("aging_counts")
    async def aging_counts(self, location_id: Optional[str] = None) -> Dict[str, int]:
        match: Dict[str, Any] = {"stage": {"$ne": TERMINAL_STAGE}}
        if location_id is not None:
            match["location_id"] = location_id
        pipeline = [
            {"$match": match},
            {"$group": {"_id": "$aging_tier", "count": {"$sum": 1}}},
        ]
        counts = empty_aging_counts()
        async for row in self.db.work_items.aggregate(pipeline):
            if row["_id"] in counts:
                counts[row["_id"]] = row["count"]
        return counts

    @translate_errors("history")
    async def history(self, work_item_id: str) -> List[TransitionEvent]:
        cursor = self.db.transition_events.find({"work_item_id": work_item_id}, NO_ID).sort(
            [("created_at", ASCENDING), ("_id", ASCENDING)]
        )
        return [TransitionEvent(**doc) async for doc in cursor]

    @translate_errors("notes")
    async def notes(self, work_item_id: str, include_internal: bool = False) -> List[Note]:
        query: Dict[str, Any] = {"work_item_id": work_item_id}
        if not include_internal:
            query["internal"] = False
        cursor = self.db.work_item_notes.find(query, NO_ID).sort(
            [("created_at", ASCENDING), ("_id", ASCENDING)]
        )
        return [Note(**doc) async for doc in cursor]

    @translate_errors("update_aging")
    async def update_aging(
        self,
        work_item_id: str,
        expected_version: int,
        aging_tier: AgingTier,
        sla_breached: bool,
    ) -> bool:
        result = await self.db.work_items.update_one(
            {"id": work_item_id, "version": expected_version},
            {"$set": {"aging_tier": AgingTier(aging_tier).value, "sla_breached": sla_breached}},
        )
        return result.matched_count == 1

    @translate_errors("increment_counter")
    async def increment_counter(self, scope: str) -> int:
        doc = await self.db.sequence_counters.find_one_and_update(
            {"_id": scope},
            {"$inc": {"value": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return doc["value"]

    @translate_errors("append_audit")
    async def append_audit(self, entry: AuditEntry) -> AuditEntry:
        await self.db.audit_logs.insert_one(to_document(entry))
        return entry

    @translate_errors("audit_for_record")
    async def audit_for_record(self, record_id: str, limit: int = 100) -> List[AuditEntry]:
        cursor = self.db.audit_logs.find({"record_id": record_id}, NO_ID).sort("created_at", DESCENDING).limit(limit)
        return [AuditEntry(**doc) async for doc in cursor]

    @translate_errors("audit_for_user")
    async def audit_for_user(self, user_id: str, limit: int = 100) -> List[AuditEntry]:
        cursor = self.db.audit_logs.find({"user_id": user_id}, NO_ID).sort("created_at", DESCENDING).limit(limit)
        return [AuditEntry(**doc) async for doc in cursor]
