"""
CaseFlow Engine - History Recorder

Append-only writer for TransitionEvents and Notes. There is no update or
delete path: once an event is written it is the audit record.

duration_in_previous_stage is computed here, at append time, as the gap
between "now" and the previous event for the same work item (or its
creation). The value is frozen into the event and never recomputed.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional, Union

from .models import Note, NoteCreate, NoteType, TransitionEvent, WorkItem
from .repository import UnitOfWork

logger = logging.getLogger(__name__)

SECONDS_PER_HOUR = 3600.0


def hours_between(start: datetime, end: datetime) -> float:
    """Non-negative gap in hours. Clock skew never yields a negative duration."""
    return max(0.0, (end - start).total_seconds() / SECONDS_PER_HOUR)


class HistoryRecorder:
    """Builds and appends history entries through a unit of work."""

    async def duration_since_last(self, uow: UnitOfWork, item: WorkItem, now: datetime) -> float:
        last = await uow.last_event(item.id)
        start = last.created_at if last is not None else item.created_at
        return hours_between(start, now)

    async def append(self, uow: UnitOfWork, entry: Union[TransitionEvent, Note]):
        if isinstance(entry, TransitionEvent):
            return await uow.append_event(entry)
        if isinstance(entry, Note):
            return await uow.append_note(entry)
        raise TypeError(f"Cannot record {type(entry).__name__} in history")

    async def record_creation(self, uow: UnitOfWork, item: WorkItem, actor: str, now: datetime) -> TransitionEvent:
        event = TransitionEvent(
            work_item_id=item.id,
            from_stage=None,
            to_stage=item.stage,
            to_queue_id=item.queue_id,
            to_assignee_id=item.assignee_id,
            reason="created",
            duration_in_previous_stage=0.0,
            changed_by=actor,
            created_at=now,
        )
        return await self.append(uow, event)

    async def record_change(
        self,
        uow: UnitOfWork,
        before: WorkItem,
        after: WorkItem,
        actor: str,
        now: datetime,
        reason: Optional[str] = None,
        change_data: Optional[Dict[str, Any]] = None,
    ) -> TransitionEvent:
        """Append the event for a stage transition or reassignment of before -> after."""
        duration = await self.duration_since_last(uow, before, now)
        event = TransitionEvent(
            work_item_id=before.id,
            from_stage=before.stage,
            to_stage=after.stage,
            from_queue_id=before.queue_id,
            to_queue_id=after.queue_id,
            from_assignee_id=before.assignee_id,
            to_assignee_id=after.assignee_id,
            reason=reason,
            duration_in_previous_stage=duration,
            change_data=change_data or {},
            changed_by=actor,
            created_at=now,
        )
        return await self.append(uow, event)

    async def record_note(
        self,
        uow: UnitOfWork,
        work_item_id: str,
        data: NoteCreate,
        actor: str,
        now: datetime,
    ) -> Note:
        note = Note(
            work_item_id=work_item_id,
            type=data.type,
            text=data.text,
            internal=data.internal,
            externally_visible=data.externally_visible,
            metadata=dict(data.metadata),
            created_by=actor,
            created_at=now,
        )
        return await self.append(uow, note)

    async def record_system_note(
        self,
        uow: UnitOfWork,
        work_item_id: str,
        text: str,
        actor: str,
        now: datetime,
        note_type: NoteType = NoteType.SYSTEM,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Note:
        note = Note(
            work_item_id=work_item_id,
            type=note_type,
            text=text,
            internal=note_type == NoteType.INTERNAL,
            metadata=metadata or {},
            created_by=actor,
            created_at=now,
        )
        return await self.append(uow, note)
