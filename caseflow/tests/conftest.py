"""
Shared fixtures: in-memory repository, default queues for two locations,
a controllable clock and a fully wired engine.
"""

from datetime import datetime, timedelta, timezone

import pytest

from caseflow.services.aging_sweep import AgingSweep
from caseflow.services.engine_config import EngineConfig
from caseflow.services.models import WorkItem, WorkItemCreate, WorkItemKind
from caseflow.services.notification_service import MockNotificationProvider, NotificationService
from caseflow.services.queue_router import QueueRouter, StaticQueueSource, build_default_queues
from caseflow.services.repository import InMemoryRepository
from caseflow.services.workflow_engine import WorkflowEngine

LOCATION = "loc-mng"
OTHER_LOCATION = "loc-cbe"
ACTOR = "user-1"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return EngineConfig()


@pytest.fixture
def queue_source():
    return StaticQueueSource(build_default_queues(LOCATION) + build_default_queues(OTHER_LOCATION))


@pytest.fixture
def router(queue_source):
    return QueueRouter(queue_source)


@pytest.fixture
def repo():
    return InMemoryRepository()


@pytest.fixture
def provider():
    return MockNotificationProvider()


@pytest.fixture
def notifications(provider):
    return NotificationService(provider)


@pytest.fixture
def engine(repo, router, config, notifications, clock):
    return WorkflowEngine(repo, router, config, notifications=notifications, clock=clock)


@pytest.fixture
def sweep(repo, config, notifications, clock):
    return AgingSweep(repo, config, notifications=notifications, clock=clock)


def case_data(**overrides) -> WorkItemCreate:
    values = {
        "title": "Control panel retrofit",
        "priority": "high",
        "location_id": LOCATION,
        "customer_name": "Acme Industries",
        "estimated_value": 25000,
    }
    values.update(overrides)
    return WorkItemCreate(**values)


async def seed_item(repo, kind: WorkItemKind, stage: str, clock, **overrides) -> WorkItem:
    """Insert a work item directly in any stage, bypassing the engine."""
    values = {
        "kind": kind,
        "display_number": f"SEED-{kind.value}-{stage}-{overrides.get('id', '')}",
        "title": f"Seeded {stage}",
        "stage": stage,
        "created_by": ACTOR,
        "location_id": LOCATION,
        "created_at": clock(),
        "updated_at": clock(),
        "due_at": clock() + timedelta(hours=72),
    }
    values.update(overrides)
    item = WorkItem(**values)

    async def insert(uow):
        return await uow.insert(item)

    return await repo.atomically(insert)
