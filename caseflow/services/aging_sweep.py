"""
CaseFlow Engine - Aging Sweep

Background worker that re-classifies every open work item against "now" and
persists tier drift (on_time -> at_risk -> breached) without user action.

Each record is read, classified and written back with a conditional update
on its version. A record touched by a live transition in between is skipped
(counted as a conflict) and picked up on the next run, so the sweep never
holds a lock across the whole table.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Callable, Dict, Optional

from .aging import AgingClassifier
from .engine_config import EngineConfig
from .errors import PersistenceError
from .models import AgingTier, utc_now
from .notification_service import NotificationEvent, NotificationService
from .repository import Repository

logger = logging.getLogger(__name__)


@dataclass
class AgingSweepResult:
    scanned: int = 0
    updated: int = 0
    newly_breached: int = 0
    conflicts: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def to_dict(self) -> Dict:
        result = asdict(self)
        for key in ("started_at", "finished_at"):
            if result[key] is not None:
                result[key] = result[key].isoformat()
        return result


class AgingSweep:
    def __init__(
        self,
        repo: Repository,
        config: Optional[EngineConfig] = None,
        notifications: Optional[NotificationService] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.repo = repo
        self.config = config or EngineConfig()
        self.notifications = notifications
        self.clock = clock
        self.classifier = AgingClassifier(self.config.at_risk_threshold_hours)
        self.last_result: Optional[AgingSweepResult] = None
        self._task: Optional[asyncio.Task] = None
        self._run_lock = asyncio.Lock()

    async def run_once(self) -> AgingSweepResult:
        """One pass over all open work items."""
        async with self._run_lock:
            now = self.clock()
            result = AgingSweepResult(started_at=now)

            async for item in self.repo.iter_open_items():
                result.scanned += 1
                tier, breached = self.classifier.evaluate(item.due_at, now)
                if tier == item.aging_tier and breached == item.sla_breached:
                    continue

                if not await self.repo.update_aging(item.id, item.version, tier, breached):
                    result.conflicts += 1
                    logger.warning(f"Aging sweep skipped {item.display_number}: changed since read")
                    continue

                result.updated += 1
                if tier == AgingTier.BREACHED and not item.sla_breached:
                    result.newly_breached += 1
                    await self._notify_overdue(item, now)

            result.finished_at = self.clock()
            self.last_result = result
            logger.info(
                "Aging sweep: scanned=%d updated=%d newly_breached=%d conflicts=%d",
                result.scanned, result.updated, result.newly_breached, result.conflicts,
            )
            return result

    async def _notify_overdue(self, item, now: datetime):
        if self.notifications is None or not self.config.overdue_notifications_enabled:
            return
        try:
            await self.notifications.dispatch(item.id, NotificationEvent.OVERDUE.value, None, {
                "display_number": item.display_number,
                "stage": item.stage,
                "due_at": item.due_at.isoformat() if item.due_at else None,
                "assignee_id": item.assignee_id,
                "queue_id": item.queue_id,
                "detected_at": now.isoformat(),
            })
        except Exception as e:
            logger.warning(f"Overdue notification for {item.display_number} failed: {e}")

    # =========================================================================
    # WORKER
    # =========================================================================

    async def _worker(self):
        interval = self.config.aging_sweep_interval_minutes
        logger.info("Aging sweep worker started (interval: %d minutes)", interval)
        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except PersistenceError as e:
                logger.error(f"Aging sweep failed: {e.message}")
            except Exception as e:
                logger.error(f"Aging sweep worker error: {e}")
            await asyncio.sleep(interval * 60)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        if not self.running:
            self._task = asyncio.create_task(self._worker())
        return self._task

    async def stop(self):
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                logger.info("Aging sweep worker stopped")
        self._task = None
