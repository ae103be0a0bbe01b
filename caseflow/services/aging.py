"""
CaseFlow Engine - Aging Classifier

Pure urgency classification of a work item against its due date:

    breached   due_at < now
    at_risk    due_at - now < threshold (24h by default)
    on_time    otherwise

No hidden state: callers pass "now" explicitly. The engine calls this on
every write and AgingSweep calls it periodically for drift.
"""

from datetime import datetime, timedelta
from typing import Optional, Tuple

from .models import AgingTier, Priority

DEFAULT_AT_RISK_THRESHOLD = timedelta(hours=24)


def classify(
    due_at: Optional[datetime],
    now: datetime,
    threshold: timedelta = DEFAULT_AT_RISK_THRESHOLD,
) -> AgingTier:
    # No due date means nothing to breach
    if due_at is None:
        return AgingTier.ON_TIME
    if due_at < now:
        return AgingTier.BREACHED
    if due_at - now < threshold:
        return AgingTier.AT_RISK
    return AgingTier.ON_TIME


def classify_with_flag(
    due_at: Optional[datetime],
    now: datetime,
    threshold: timedelta = DEFAULT_AT_RISK_THRESHOLD,
) -> Tuple[AgingTier, bool]:
    """(tier, sla_breached) as stored on the work item."""
    tier = classify(due_at, now, threshold)
    return tier, tier == AgingTier.BREACHED


class AgingClassifier:
    """classify() bound to a configured threshold."""

    def __init__(self, threshold_hours: int = 24):
        self.threshold = timedelta(hours=threshold_hours)

    def classify(self, due_at: Optional[datetime], now: datetime) -> AgingTier:
        return classify(due_at, now, self.threshold)

    def evaluate(self, due_at: Optional[datetime], now: datetime) -> Tuple[AgingTier, bool]:
        return classify_with_flag(due_at, now, self.threshold)


def due_at_for_priority(priority: Priority, created_at: datetime, priority_hours) -> datetime:
    """Initial due date from the priority -> hours policy."""
    return created_at + timedelta(hours=priority_hours[Priority(priority)])
