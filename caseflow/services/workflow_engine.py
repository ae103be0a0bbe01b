"""
CaseFlow Engine - Workflow Engine

Orchestrates the lifecycle of Cases and Tickets:

    create      allocate display number, enter the initial stage and queue
    transition  move along a TransitionTable edge, re-route, re-age
    assign      hand the item to one person, taking it out of its queue
    add_note    append a note

Every mutating operation runs as one repository unit of work: the work item
write, its TransitionEvent and its Note commit together or not at all.
Operations on the same work item are serialized with a per-item lock;
different items proceed in parallel. Once a unit has started it is shielded
from caller cancellation so it always commits or rolls back completely.

Notifications and audit records are written after commit and never fail the
operation. The engine does not authorize; callers check permissions first.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from .aging import AgingClassifier, due_at_for_priority
from .audit_service import AuditAction, AuditService
from .engine_config import EngineConfig
from .errors import InvalidTransition, InvariantViolation, NotFound, PersistenceError
from .history import HistoryRecorder, hours_between
from .models import (
    ListFilters,
    Note,
    NoteCreate,
    NoteType,
    Page,
    Pagination,
    TransitionEvent,
    TransitionExtra,
    WorkItem,
    WorkItemCreate,
    WorkItemKind,
    utc_now,
)
from .notification_service import NotificationEvent, NotificationService
from .queue_router import QueueRouter
from .repository import Repository, UnitOfWork
from .sequence import KeyedLock, SequenceAllocator
from .transition_table import TransitionTable, TicketStage
from . import workflow_metrics

logger = logging.getLogger(__name__)

KIND_LABELS = {
    WorkItemKind.CASE: "Case",
    WorkItemKind.TICKET: "Ticket",
}

# Ticket stages whose status notes carry a dedicated note type
TICKET_STAGE_NOTE_TYPES = {
    TicketStage.DIAGNOSIS.value: NoteType.DIAGNOSIS,
    TicketStage.RESOLUTION.value: NoteType.RESOLUTION,
}


def check_invariants(item: WorkItem):
    if item.is_queued and item.assignee_id is not None:
        raise InvariantViolation(
            f"Work item {item.display_number} cannot be both queued and assigned",
            {"queue_id": item.queue_id, "assignee_id": item.assignee_id},
        )


class WorkflowEngine:
    """
    Usage:
        engine = WorkflowEngine(repo, QueueRouter(source), config)
        case = await engine.create("case", WorkItemCreate(...), actor="user-1")
        case = await engine.transition(case.id, "estimation", actor="user-1")
    """

    def __init__(
        self,
        repo: Repository,
        router: QueueRouter,
        config: Optional[EngineConfig] = None,
        notifications: Optional[NotificationService] = None,
        audit: Optional[AuditService] = None,
        clock: Callable[[], datetime] = utc_now,
        history: Optional[HistoryRecorder] = None,
    ):
        self.repo = repo
        self.router = router
        self.config = config or EngineConfig()
        self.notifications = notifications or NotificationService()
        self.audit = audit or AuditService(repo)
        self.clock = clock
        self.history_recorder = history or HistoryRecorder()
        self.classifier = AgingClassifier(self.config.at_risk_threshold_hours)
        self.allocator = SequenceAllocator(
            repo,
            pad_width=self.config.sequence_pad_width,
            max_value=self.config.sequence_max,
        )
        self._locks = KeyedLock()

    # =========================================================================
    # UNIT EXECUTION
    # =========================================================================

    async def _run(self, operation: str, work_item_id: Optional[str], unit: Callable[[UnitOfWork], Awaitable[Any]]):
        async def serialized():
            if work_item_id is None:
                return await self.repo.atomically(unit)
            async with self._locks.hold(work_item_id):
                return await self.repo.atomically(unit)

        try:
            return await asyncio.shield(serialized())
        except PersistenceError as e:
            logger.error(f"{operation} failed for work item {work_item_id}: {e.message}")
            raise

    async def _notify(self, work_item_id: str, event: NotificationEvent, actor: str, payload: Dict[str, Any]):
        try:
            await self.notifications.dispatch(work_item_id, event.value, actor, payload)
        except Exception as e:
            logger.warning(f"Notification {event.value} for work item {work_item_id} failed: {e}")

    # =========================================================================
    # CREATE
    # =========================================================================

    async def create(self, kind: WorkItemKind, data: WorkItemCreate, actor: str) -> WorkItem:
        """
        Create a Case or Ticket in its kind's initial stage.

        The display number is allocated inside the same unit as the insert,
        so a failed create leaves no record and consumes no number.

        Raises:
            PersistenceError: the store failed; nothing was written
            SequenceExhausted: the (location, year) counter overflowed
        """
        kind = WorkItemKind(kind)
        now = self.clock()
        stage = TransitionTable.initial_stage(kind)
        location_code = data.location_code or self.config.default_location_code
        queue = self.router.queue_for(kind, stage, data.location_id)
        due_at = due_at_for_priority(data.priority, now, self.config.priority_hours)
        aging_tier, sla_breached = self.classifier.evaluate(due_at, now)
        label = KIND_LABELS[kind]

        async def unit(uow: UnitOfWork) -> WorkItem:
            display_number = await self.allocator.next(
                location_code, now.year, TransitionTable.display_prefix(kind), counter=uow
            )
            item = WorkItem(
                kind=kind,
                display_number=display_number,
                title=data.title,
                description=data.description,
                stage=stage,
                priority=data.priority,
                queue_id=queue.id if queue else None,
                due_at=due_at,
                aging_tier=aging_tier,
                sla_breached=sla_breached,
                customer_name=data.customer_name,
                estimated_value=data.estimated_value,
                attributes=dict(data.attributes),
                created_by=actor,
                location_id=data.location_id,
                created_at=now,
                updated_at=now,
            )
            check_invariants(item)
            item = await uow.insert(item)
            await self.history_recorder.record_creation(uow, item, actor, now)
            await self.history_recorder.record_system_note(
                uow,
                item.id,
                f"{label} {display_number} created",
                actor,
                now,
                metadata={"stage": stage, "priority": item.priority.value, "queue_id": item.queue_id},
            )
            return item

        item = await self._run("create", None, unit)
        logger.info(f"Created {kind.value} {item.display_number} ({item.id}) in {stage}, queue={item.queue_id}")

        await self._notify(item.id, NotificationEvent.CREATED, actor, {
            "display_number": item.display_number,
            "kind": kind.value,
            "stage": stage,
            "priority": item.priority.value,
            "queue_id": item.queue_id,
        })
        await self.audit.record(AuditAction.WORK_ITEM_CREATED, actor, item.id, {
            "display_number": item.display_number,
            "kind": kind.value,
            "stage": stage,
        }, created_at=now)
        return item

    # =========================================================================
    # TRANSITION
    # =========================================================================

    def _apply_transition(self, item: WorkItem, to_stage: str, extra: TransitionExtra, now: datetime) -> WorkItem:
        """The work item as it looks after entering to_stage. Pure."""
        updates: Dict[str, Any] = {"stage": to_stage, "updated_at": now}
        due_at = item.due_at

        if TransitionTable.is_terminal(item.kind, to_stage):
            updates["queue_id"] = None
            updates["assignee_id"] = None
            updates["completed_at"] = now
            updates["resolution_hours"] = hours_between(item.created_at, now)
        elif extra.assignee_id:
            updates["queue_id"] = None
            updates["assignee_id"] = extra.assignee_id
        else:
            queue = self.router.queue_for(item.kind, to_stage, item.location_id)
            if queue is not None:
                updates["queue_id"] = queue.id
                updates["assignee_id"] = None
                due_at = now + timedelta(hours=queue.sla_hours)
            else:
                updates["queue_id"] = None

        if extra.due_at is not None:
            due_at = extra.due_at
        updates["due_at"] = due_at
        updates["aging_tier"], updates["sla_breached"] = self.classifier.evaluate(due_at, now)

        if extra.attributes:
            updates["attributes"] = {**item.attributes, **extra.attributes}

        after = item.model_copy(update=updates, deep=True)
        check_invariants(after)
        return after

    async def transition(
        self,
        work_item_id: str,
        to_stage: str,
        actor: str,
        reason: Optional[str] = None,
        extra: Optional[TransitionExtra] = None,
    ) -> WorkItem:
        """
        Move a work item along one TransitionTable edge.

        Raises:
            NotFound: unknown work item
            InvalidTransition: the edge does not exist; nothing changes
            PersistenceError: the store failed; nothing changes, safe to retry
        """
        extra = extra or TransitionExtra()
        to_stage = to_stage.value if hasattr(to_stage, "value") else to_stage
        now = self.clock()

        async def unit(uow: UnitOfWork):
            before = await uow.get(work_item_id)
            if before is None:
                raise NotFound(f"Work item {work_item_id} not found", {"id": work_item_id})

            if not TransitionTable.allowed(before.kind, before.stage, to_stage):
                raise InvalidTransition(
                    f"Cannot move {before.display_number} from {before.stage} to {to_stage}",
                    {
                        "from_stage": before.stage,
                        "to_stage": to_stage,
                        "allowed": TransitionTable.next_stages(before.kind, before.stage),
                    },
                )

            after = self._apply_transition(before, to_stage, extra, now)
            change_data = extra.model_dump(mode="json", exclude_none=True)
            if not change_data.get("attributes"):
                change_data.pop("attributes", None)

            event = await self.history_recorder.record_change(
                uow, before, after, actor, now, reason=reason, change_data=change_data
            )
            saved = await uow.save(after)

            text = f"Stage changed from {before.stage} to {to_stage}"
            if reason:
                text = f"{text}: {reason}"
            note_type = NoteType.STATUS_CHANGE
            if saved.kind == WorkItemKind.TICKET:
                note_type = TICKET_STAGE_NOTE_TYPES.get(to_stage, NoteType.STATUS_CHANGE)
            await self.history_recorder.record_system_note(
                uow, saved.id, text, actor, now,
                note_type=note_type,
                metadata={
                    "from_stage": before.stage,
                    "to_stage": to_stage,
                    "duration_hours": event.duration_in_previous_stage,
                },
            )
            return before, saved, event

        try:
            before, item, event = await self._run("transition", work_item_id, unit)
        except InvalidTransition as e:
            logger.warning(f"Rejected transition for work item {work_item_id}: {e.message}")
            raise

        logger.info(
            "Work item %s: %s -> %s (actor=%s, queue=%s, assignee=%s)",
            item.display_number, before.stage, item.stage, actor, item.queue_id, item.assignee_id,
        )

        await self._notify(item.id, NotificationEvent.STAGE_CHANGED, actor, {
            "display_number": item.display_number,
            "from_stage": before.stage,
            "to_stage": item.stage,
            "queue_id": item.queue_id,
            "assignee_id": item.assignee_id,
            "reason": reason,
        })
        await self.audit.record(AuditAction.WORK_ITEM_STAGE_CHANGED, actor, item.id, {
            "display_number": item.display_number,
            "from_stage": before.stage,
            "to_stage": item.stage,
            "event_id": event.id,
        }, created_at=now)
        return item

    # =========================================================================
    # ASSIGN
    # =========================================================================

    async def assign(
        self,
        work_item_id: str,
        assignee_id: str,
        actor: str,
        reason: Optional[str] = None,
    ) -> WorkItem:
        """
        Hand a work item to one assignee, taking it out of its queue. The
        stage does not change. Re-assigning to the current assignee is a no-op.

        Raises:
            NotFound: unknown work item
            InvariantViolation: empty assignee, or the item is closed
        """
        if not assignee_id or not assignee_id.strip():
            raise InvariantViolation("assignee_id is required", {"id": work_item_id})
        assignee_id = assignee_id.strip()
        now = self.clock()

        async def unit(uow: UnitOfWork):
            before = await uow.get(work_item_id)
            if before is None:
                raise NotFound(f"Work item {work_item_id} not found", {"id": work_item_id})
            if TransitionTable.is_terminal(before.kind, before.stage):
                raise InvariantViolation(
                    f"Work item {before.display_number} is closed and cannot be assigned",
                    {"stage": before.stage},
                )
            if before.assignee_id == assignee_id and before.queue_id is None:
                return before, before, None

            after = before.model_copy(update={
                "assignee_id": assignee_id,
                "queue_id": None,
                "updated_at": now,
            })
            check_invariants(after)

            event = await self.history_recorder.record_change(
                uow, before, after, actor, now, reason=reason,
                change_data={"type": "assignment"},
            )
            saved = await uow.save(after)

            text = f"Assigned to {assignee_id}"
            if reason:
                text = f"{text}: {reason}"
            await self.history_recorder.record_system_note(
                uow, saved.id, text, actor, now,
                note_type=NoteType.ASSIGNMENT,
                metadata={
                    "from_assignee_id": before.assignee_id,
                    "to_assignee_id": assignee_id,
                    "from_queue_id": before.queue_id,
                },
            )
            return before, saved, event

        before, item, event = await self._run("assign", work_item_id, unit)
        if event is None:
            return item

        logger.info(
            "Work item %s assigned: %s -> %s (actor=%s)",
            item.display_number, before.assignee_id, item.assignee_id, actor,
        )
        await self._notify(item.id, NotificationEvent.ASSIGNED, actor, {
            "display_number": item.display_number,
            "from_assignee_id": before.assignee_id,
            "to_assignee_id": item.assignee_id,
            "from_queue_id": before.queue_id,
        })
        await self.audit.record(AuditAction.WORK_ITEM_ASSIGNED, actor, item.id, {
            "display_number": item.display_number,
            "from_assignee_id": before.assignee_id,
            "to_assignee_id": item.assignee_id,
        }, created_at=now)
        return item

    # =========================================================================
    # NOTES
    # =========================================================================

    async def add_note(self, work_item_id: str, data: NoteCreate, actor: str) -> Note:
        """Append a note; the work item only has its updated_at touched."""
        now = self.clock()

        async def unit(uow: UnitOfWork):
            item = await uow.get(work_item_id)
            if item is None:
                raise NotFound(f"Work item {work_item_id} not found", {"id": work_item_id})
            note = await self.history_recorder.record_note(uow, item.id, data, actor, now)
            saved = await uow.save(item.model_copy(update={"updated_at": now}))
            return saved, note

        item, note = await self._run("add_note", work_item_id, unit)
        logger.info(f"Note {note.type.value} added to {item.display_number} by {actor}")

        await self._notify(item.id, NotificationEvent.NOTE_ADDED, actor, {
            "display_number": item.display_number,
            "note_id": note.id,
            "note_type": note.type.value,
            "externally_visible": note.externally_visible,
        })
        await self.audit.record(AuditAction.WORK_ITEM_NOTE_ADDED, actor, item.id, {
            "note_id": note.id,
            "note_type": note.type.value,
        }, created_at=now)
        return note

    # =========================================================================
    # READS
    # =========================================================================

    async def get_by_id(self, work_item_id: str) -> WorkItem:
        item = await self.repo.get(work_item_id)
        if item is None:
            raise NotFound(f"Work item {work_item_id} not found", {"id": work_item_id})
        return item

    async def list(self, filters: Optional[ListFilters] = None, pagination: Optional[Pagination] = None) -> Page:
        return await self.repo.list_items(filters or ListFilters(), pagination or Pagination())

    async def queue_items(self, queue_id: str) -> List[WorkItem]:
        """Items waiting in one queue, critical first then oldest first."""
        if self.router.get(queue_id) is None:
            raise NotFound(f"Queue {queue_id} not found", {"queue_id": queue_id})
        return await self.repo.queue_items([queue_id])

    async def queue_items_for_roles(self, roles: Iterable[str], location_id: Optional[str] = None) -> List[WorkItem]:
        """Union of every queue the roles can see."""
        queues = self.router.visible_queues(roles, location_id)
        if not queues:
            return []
        return await self.repo.queue_items([q.id for q in queues])

    async def aging_summary(self, location_id: Optional[str] = None) -> Dict[str, int]:
        return await self.repo.aging_counts(location_id)

    async def history(self, work_item_id: str) -> List[TransitionEvent]:
        await self.get_by_id(work_item_id)
        return await self.repo.history(work_item_id)

    async def notes(self, work_item_id: str, include_internal: bool = False) -> List[Note]:
        await self.get_by_id(work_item_id)
        return await self.repo.notes(work_item_id, include_internal)

    async def next_stages(self, work_item_id: str) -> List[str]:
        item = await self.get_by_id(work_item_id)
        return TransitionTable.next_stages(item.kind, item.stage)

    async def stats(self, filters: Optional[ListFilters] = None) -> Dict[str, Any]:
        items = await self.repo.find_items(filters or ListFilters())
        return workflow_metrics.compute_stats(items)

    async def progress(self, work_item_id: str) -> Dict[str, Any]:
        item = await self.get_by_id(work_item_id)
        events = await self.repo.history(work_item_id)
        return {
            "work_item_id": item.id,
            "display_number": item.display_number,
            "progress": workflow_metrics.workflow_progress(item, events),
            "time_in_stage": workflow_metrics.time_in_stages(item, events, self.clock()),
            "priority_score": workflow_metrics.priority_score(item, self.clock()),
        }
