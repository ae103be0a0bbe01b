"""
CaseFlow Engine - Configuration

Runtime settings for the workflow engine, read from environment variables
(server.py loads .env first). Tests build EngineConfig directly.

Priority -> due-date hours and the at-risk threshold are fixed defaults in
the ERP today. They are kept configurable here so a location or tenant can
override them later without code changes.
"""

import os
from dataclasses import dataclass, field
from typing import Dict

from .models import Priority


# =============================================================================
# DEFAULTS
# =============================================================================

DEFAULT_PRIORITY_HOURS: Dict[Priority, int] = {
    Priority.CRITICAL: 4,
    Priority.HIGH: 24,
    Priority.MEDIUM: 72,
    Priority.LOW: 168,
}

DEFAULT_AT_RISK_THRESHOLD_HOURS = 24
DEFAULT_LOCATION_CODE = "MNG"
DEFAULT_SWEEP_INTERVAL_MINUTES = 5
DEFAULT_SEQUENCE_PAD_WIDTH = 4
DEFAULT_SEQUENCE_MAX = 999999


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() == "true"


def _env_int(name: str, default: int) -> int:
    return int(os.environ.get(name, str(default)))


@dataclass
class EngineConfig:
    """Settings shared by the engine, the sweep and the server."""
    priority_hours: Dict[Priority, int] = field(
        default_factory=lambda: dict(DEFAULT_PRIORITY_HOURS)
    )
    at_risk_threshold_hours: int = DEFAULT_AT_RISK_THRESHOLD_HOURS
    default_location_code: str = DEFAULT_LOCATION_CODE

    # Display numbers
    sequence_pad_width: int = DEFAULT_SEQUENCE_PAD_WIDTH
    sequence_max: int = DEFAULT_SEQUENCE_MAX

    # Aging sweep
    aging_sweep_enabled: bool = True
    aging_sweep_interval_minutes: int = DEFAULT_SWEEP_INTERVAL_MINUTES
    overdue_notifications_enabled: bool = True

    # Notifications
    notification_provider: str = "mock"
    notification_webhook_url: str = ""
    notification_timeout_seconds: float = 5.0

    # Persistence
    mongo_url: str = "mongodb://localhost:27017"
    db_name: str = "caseflow"

    def __post_init__(self):
        missing = [p.value for p in Priority if p not in self.priority_hours]
        if missing:
            raise ValueError(f"priority_hours missing entries for: {missing}")
        for priority, hours in self.priority_hours.items():
            if hours <= 0:
                raise ValueError(f"priority_hours[{priority.value}] must be positive, got {hours}")
        if self.at_risk_threshold_hours <= 0:
            raise ValueError("at_risk_threshold_hours must be positive")
        if self.aging_sweep_interval_minutes <= 0:
            raise ValueError("aging_sweep_interval_minutes must be positive")
        if self.sequence_max < 1:
            raise ValueError("sequence_max must be at least 1")

    def hours_for_priority(self, priority: Priority) -> int:
        return self.priority_hours[Priority(priority)]

    @classmethod
    def from_env(cls) -> "EngineConfig":
        priority_hours = {
            priority: _env_int(f"PRIORITY_HOURS_{priority.name}", hours)
            for priority, hours in DEFAULT_PRIORITY_HOURS.items()
        }
        return cls(
            priority_hours=priority_hours,
            at_risk_threshold_hours=_env_int("AT_RISK_THRESHOLD_HOURS", DEFAULT_AT_RISK_THRESHOLD_HOURS),
            default_location_code=os.environ.get("DEFAULT_LOCATION_CODE", DEFAULT_LOCATION_CODE),
            sequence_pad_width=_env_int("SEQUENCE_PAD_WIDTH", DEFAULT_SEQUENCE_PAD_WIDTH),
            sequence_max=_env_int("SEQUENCE_MAX", DEFAULT_SEQUENCE_MAX),
            aging_sweep_enabled=_env_bool("AGING_SWEEP_ENABLED", "true"),
            aging_sweep_interval_minutes=_env_int("AGING_SWEEP_INTERVAL_MINUTES", DEFAULT_SWEEP_INTERVAL_MINUTES),
            overdue_notifications_enabled=_env_bool("OVERDUE_NOTIFICATIONS_ENABLED", "true"),
            notification_provider=os.environ.get("NOTIFICATION_PROVIDER", "mock").lower(),
            notification_webhook_url=os.environ.get("NOTIFICATION_WEBHOOK_URL", ""),
            notification_timeout_seconds=float(os.environ.get("NOTIFICATION_TIMEOUT_SECONDS", "5")),
            mongo_url=os.environ.get("MONGO_URL", "mongodb://localhost:27017"),
            db_name=os.environ.get("DB_NAME", "caseflow"),
        )
