"""
Unit tests for services/workflow_metrics.py
"""

from datetime import timedelta

import pytest

from caseflow.services.models import AgingTier, Priority, TransitionEvent, WorkItem, WorkItemKind
from caseflow.services.workflow_metrics import (
    compute_stats,
    priority_score,
    time_in_stages,
    workflow_progress,
)

from .conftest import ACTOR, FakeClock


def make_item(clock, **overrides) -> WorkItem:
    values = {
        "kind": WorkItemKind.CASE,
        "display_number": "MNG-2025-0001",
        "title": "Switchgear upgrade",
        "stage": "enquiry",
        "created_by": ACTOR,
        "location_id": "loc-mng",
        "created_at": clock(),
        "updated_at": clock(),
    }
    values.update(overrides)
    return WorkItem(**values)


def event(item, from_stage, to_stage, at, hours=0.0) -> TransitionEvent:
    return TransitionEvent(
        work_item_id=item.id, from_stage=from_stage, to_stage=to_stage,
        changed_by=ACTOR, created_at=at, duration_in_previous_stage=hours,
    )


class TestComputeStats:

    def test_empty(self):
        stats = compute_stats([])
        assert stats["total"] == 0
        assert stats["by_stage"]["enquiry"] == 0
        assert stats["by_stage"]["support_ticket"] == 0
        assert stats["by_aging"] == {"on_time": 0, "at_risk": 0, "breached": 0}
        assert stats["avg_completion_hours"] == 0.0

    def test_counts_and_completion(self):
        clock = FakeClock()
        items = [
            make_item(clock, stage="enquiry"),
            make_item(clock, stage="grn", aging_tier=AgingTier.BREACHED, sla_breached=True),
            make_item(clock, stage="closure", completed_at=clock() + timedelta(hours=30)),
            make_item(clock, stage="closure", completed_at=clock() + timedelta(hours=10)),
        ]

        stats = compute_stats(items)

        assert stats["total"] == 4
        assert stats["by_stage"]["closure"] == 2
        assert stats["by_stage"]["estimation"] == 0
        assert stats["by_aging"]["breached"] == 1
        assert stats["sla_breach_count"] == 1
        assert stats["avg_completion_hours"] == 20.0


class TestPriorityScore:

    def test_components_add_up(self):
        clock = FakeClock()
        item = make_item(clock, priority=Priority.HIGH, estimated_value=25000)
        # 75 priority + 2 days of age + 5 value
        assert priority_score(item, clock() + timedelta(hours=48)) == 82

    def test_age_is_capped(self):
        clock = FakeClock()
        item = make_item(clock, priority=Priority.LOW, aging_tier=AgingTier.BREACHED)
        assert priority_score(item, clock() + timedelta(days=365)) == 25 + 50 + 20

    def test_critical_outranks_low(self):
        clock = FakeClock()
        critical = make_item(clock, priority=Priority.CRITICAL)
        low = make_item(clock, priority=Priority.LOW, estimated_value=500000)
        assert priority_score(critical, clock()) > priority_score(low, clock())


class TestWorkflowProgress:

    def test_current_stage(self):
        clock = FakeClock()
        progress = workflow_progress(make_item(clock, stage="quotation"))
        statuses = {s["stage"]: s["status"] for s in progress["stages"]}
        assert statuses["enquiry"] == "completed"
        assert statuses["estimation"] == "completed"
        assert statuses["quotation"] == "current"
        assert statuses["closure"] == "pending"
        assert progress["percent_complete"] == pytest.approx(22.2)

    def test_on_hold_pauses_last_main_stage(self):
        clock = FakeClock()
        item = make_item(clock, stage="on_hold")
        events = [
            event(item, None, "enquiry", clock()),
            event(item, "enquiry", "estimation", clock()),
            event(item, "estimation", "on_hold", clock()),
        ]
        progress = workflow_progress(item, events)
        statuses = {s["stage"]: s["status"] for s in progress["stages"]}
        assert progress["current_stage"] == "on_hold"
        assert statuses["enquiry"] == "completed"
        assert statuses["estimation"] == "paused"

    def test_closed_item_is_complete(self):
        clock = FakeClock()
        progress = workflow_progress(make_item(clock, kind=WorkItemKind.TICKET, stage="closure"))
        assert progress["percent_complete"] == 100.0


class TestTimeInStages:

    def test_frozen_durations_plus_open_stage(self):
        clock = FakeClock()
        item = make_item(clock, stage="quotation")
        start = clock()
        events = [
            event(item, None, "enquiry", start),
            event(item, "enquiry", "estimation", start + timedelta(hours=5), hours=5),
            event(item, "estimation", "quotation", start + timedelta(hours=8), hours=3),
        ]

        result = time_in_stages(item, events, start + timedelta(hours=9, minutes=30))

        assert result == {"enquiry": 5.0, "estimation": 3.0, "quotation": 1.5}

    def test_revisited_stage_accumulates(self):
        clock = FakeClock()
        item = make_item(clock, stage="closure")
        start = clock()
        events = [
            event(item, None, "enquiry", start),
            event(item, "enquiry", "on_hold", start, hours=2),
            event(item, "on_hold", "enquiry", start, hours=4),
            event(item, "enquiry", "closure", start, hours=1),
        ]
        assert time_in_stages(item, events, start) == {"enquiry": 3.0, "on_hold": 4.0}
