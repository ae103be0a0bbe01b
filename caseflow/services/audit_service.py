"""
CaseFlow Engine - Audit Service

Best-effort audit trail written after an engine operation commits. A failed
audit write is logged and swallowed; the history tables remain the
authoritative record of what happened to a work item.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .models import AuditEntry, utc_now

logger = logging.getLogger(__name__)


class AuditAction(str, Enum):
    WORK_ITEM_CREATED = "work_item_created"
    WORK_ITEM_STAGE_CHANGED = "work_item_stage_changed"
    WORK_ITEM_ASSIGNED = "work_item_assigned"
    WORK_ITEM_NOTE_ADDED = "work_item_note_added"


class AuditService:
    def __init__(self, repo):
        self.repo = repo

    async def record(
        self,
        action: AuditAction,
        user_id: Optional[str],
        record_id: Optional[str],
        details: Optional[Dict[str, Any]] = None,
        created_at: Optional[datetime] = None,
    ) -> Optional[AuditEntry]:
        entry = AuditEntry(
            action=AuditAction(action).value,
            user_id=user_id,
            record_id=record_id,
            details=details or {},
            created_at=created_at or utc_now(),
        )
        try:
            return await self.repo.append_audit(entry)
        except Exception as e:
            logger.warning(f"Audit {entry.action} for {record_id} not written: {e}")
            return None

    async def for_record(self, record_id: str, limit: int = 100) -> List[AuditEntry]:
        return await self.repo.audit_for_record(record_id, limit)

    async def for_user(self, user_id: str, limit: int = 100) -> List[AuditEntry]:
        return await self.repo.audit_for_user(user_id, limit)
