"""
CaseFlow Engine - Workflow Metrics

Read-only calculations over work items and their history, used by the
dashboard endpoints:

- compute_stats: totals by stage and aging tier, breach count, mean
  completion time
- priority_score: queue ordering score (priority + aging + age + value)
- workflow_progress: completed / current / pending per main-path stage
- time_in_stages: hours spent per stage, from frozen event durations
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from .history import hours_between
from .models import AgingTier, Priority, TransitionEvent, WorkItem, WorkItemKind
from .transition_table import TransitionTable


# =============================================================================
# SCORE WEIGHTS
# =============================================================================

PRIORITY_WEIGHTS = {
    Priority.CRITICAL: 100,
    Priority.HIGH: 75,
    Priority.MEDIUM: 50,
    Priority.LOW: 25,
}

AGING_WEIGHTS = {
    AgingTier.BREACHED: 50,
    AgingTier.AT_RISK: 25,
    AgingTier.ON_TIME: 0,
}

MAX_AGE_POINTS = 20

# (threshold, points), checked highest first
VALUE_POINTS = [
    (100000, 15),
    (50000, 10),
    (10000, 5),
]


def compute_stats(items: List[WorkItem]) -> Dict[str, Any]:
    by_stage: Dict[str, int] = {}
    kinds = {item.kind for item in items} or set(WorkItemKind)
    for kind in kinds:
        for stage in TransitionTable.stages(kind):
            by_stage.setdefault(stage, 0)

    stats: Dict[str, Any] = {
        "total": len(items),
        "by_stage": by_stage,
        "by_aging": {tier.value: 0 for tier in AgingTier},
        "sla_breach_count": 0,
        "avg_completion_hours": 0.0,
    }

    completion_hours = []
    for item in items:
        by_stage[item.stage] = by_stage.get(item.stage, 0) + 1
        stats["by_aging"][AgingTier(item.aging_tier).value] += 1
        if item.sla_breached:
            stats["sla_breach_count"] += 1
        if TransitionTable.is_terminal(item.kind, item.stage) and item.completed_at:
            completion_hours.append(hours_between(item.created_at, item.completed_at))

    if completion_hours:
        stats["avg_completion_hours"] = round(sum(completion_hours) / len(completion_hours), 2)
    return stats


def priority_score(item: WorkItem, now: datetime) -> int:
    """Higher is more urgent. Age contributes at most MAX_AGE_POINTS."""
    score = float(PRIORITY_WEIGHTS.get(item.priority, 50))
    score += AGING_WEIGHTS.get(AgingTier(item.aging_tier), 0)
    score += min(hours_between(item.created_at, now) / 24, MAX_AGE_POINTS)
    for threshold, points in VALUE_POINTS:
        if item.estimated_value > threshold:
            score += points
            break
    return round(score)


def workflow_progress(item: WorkItem, events: Optional[List[TransitionEvent]] = None) -> Dict[str, Any]:
    """
    Status of each main-path stage. Items parked in on_hold or rejected
    report progress up to the last main-path stage they reached.
    """
    path = TransitionTable.main_path(item.kind)
    current = item.stage
    anchor = current
    if current not in path:
        anchor = None
        for event in reversed(events or []):
            if event.from_stage in path:
                anchor = event.from_stage
                break

    anchor_index = path.index(anchor) if anchor in path else -1
    terminal = TransitionTable.is_terminal(item.kind, current)

    stages = []
    for index, stage in enumerate(path):
        if terminal or index < anchor_index:
            status = "completed"
        elif index == anchor_index and current == stage:
            status = "current"
        elif index == anchor_index:
            status = "paused"
        else:
            status = "pending"
        stages.append({"stage": stage, "status": status})

    completed = sum(1 for s in stages if s["status"] == "completed")
    return {
        "current_stage": current,
        "stages": stages,
        "percent_complete": round(100.0 * completed / len(path), 1),
    }


def time_in_stages(item: WorkItem, events: List[TransitionEvent], now: datetime) -> Dict[str, float]:
    """Hours per stage. The open stage counts up to now; closure counts zero."""
    totals: Dict[str, float] = {}
    for event in events:
        if event.from_stage is not None:
            totals[event.from_stage] = totals.get(event.from_stage, 0.0) + event.duration_in_previous_stage

    if events and not TransitionTable.is_terminal(item.kind, item.stage):
        open_hours = hours_between(events[-1].created_at, now)
        totals[item.stage] = totals.get(item.stage, 0.0) + open_hours

    return {stage: round(hours, 2) for stage, hours in totals.items()}
