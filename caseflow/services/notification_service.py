"""
CaseFlow Engine - Notification Service

Fire-and-forget notification of work item events (created, stage changed,
assigned, note added, overdue). Delivery channels (email, SMS, in-app) live
outside the engine; this service hands each event to a provider:

- MockNotificationProvider: logs, keeps an in-memory list and, when a db is
  given, stores a copy in `notification_logs`
- WebhookNotificationProvider: POSTs the event as JSON to a configured URL

dispatch() never raises. Notification is not part of the consistency
boundary, so a failed delivery is logged and the triggering operation stands.
"""

import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)


class NotificationProviderType(str, Enum):
    """Supported notification providers."""
    MOCK = "mock"
    WEBHOOK = "webhook"


class NotificationEvent(str, Enum):
    CREATED = "created"
    STAGE_CHANGED = "stage_changed"
    ASSIGNED = "assigned"
    NOTE_ADDED = "note_added"
    OVERDUE = "overdue"


@dataclass
class NotificationMessage:
    """One dispatched event."""
    work_item_id: str
    event_kind: str
    actor: Optional[str]
    payload: Dict[str, Any] = field(default_factory=dict)
    message_id: str = field(default_factory=lambda: f"ntf_{uuid.uuid4().hex[:12]}")
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class NotificationResult:
    success: bool
    message_id: Optional[str] = None
    provider: str = "mock"
    error: Optional[str] = None


# =============================================================================
# MOCK PROVIDER
# =============================================================================

class MockNotificationProvider:
    """
    Records notifications instead of delivering them.

    Used in development and tests; the in-memory list is the assertion
    surface, the optional MongoDB copy is for manual verification.
    """

    def __init__(self, db=None):
        self.db = db
        self._sent: List[Dict[str, Any]] = []

    async def send(self, message: NotificationMessage) -> NotificationResult:
        record = message.to_dict()
        record["provider"] = "mock"

        logger.info(
            f"[MOCK NOTIFICATION] {message.event_kind} | work item {message.work_item_id} "
            f"| actor {message.actor} | ID: {message.message_id}"
        )
        self._sent.append(record)

        if self.db is not None:
            try:
                await self.db.notification_logs.insert_one(dict(record))
            except Exception as e:
                logger.warning(f"Failed to log notification to MongoDB: {e}")

        return NotificationResult(success=True, message_id=message.message_id, provider="mock")

    def get_sent(self) -> List[Dict[str, Any]]:
        return self._sent.copy()

    def clear_sent(self):
        self._sent.clear()


# =============================================================================
# WEBHOOK PROVIDER
# =============================================================================

class WebhookNotificationProvider:
    """POSTs each notification as JSON. Non-2xx responses raise."""

    def __init__(self, url: str, timeout_seconds: float = 5.0, client: Optional[httpx.AsyncClient] = None):
        if not url:
            raise ValueError("NOTIFICATION_WEBHOOK_URL is required for the webhook provider")
        self.url = url
        self.timeout_seconds = timeout_seconds
        self._client = client

    async def send(self, message: NotificationMessage) -> NotificationResult:
        if self._client is not None:
            response = await self._client.post(self.url, json=message.to_dict(), timeout=self.timeout_seconds)
        else:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(self.url, json=message.to_dict())
        response.raise_for_status()
        return NotificationResult(success=True, message_id=message.message_id, provider="webhook")


# =============================================================================
# NOTIFICATION SERVICE (Main Interface)
# =============================================================================

class NotificationService:
    """
    Usage:
        service = NotificationService(MockNotificationProvider())
        await service.dispatch(item.id, "stage_changed", "user-1", {...})
    """

    def __init__(self, provider=None):
        self.provider = provider or MockNotificationProvider()
        self.failures = 0

    @classmethod
    def from_config(cls, config, db=None) -> "NotificationService":
        provider_type = NotificationProviderType(config.notification_provider)
        if provider_type == NotificationProviderType.WEBHOOK:
            provider = WebhookNotificationProvider(
                config.notification_webhook_url,
                timeout_seconds=config.notification_timeout_seconds,
            )
        else:
            provider = MockNotificationProvider(db=db)
        logger.info(f"Notification provider: {provider_type.value}")
        return cls(provider)

    async def dispatch(
        self,
        work_item_id: str,
        event_kind: str,
        actor: Optional[str],
        payload: Optional[Dict[str, Any]] = None,
    ) -> Optional[NotificationResult]:
        """Hand the event to the provider. Returns None when delivery failed."""
        kind = event_kind.value if isinstance(event_kind, Enum) else event_kind
        message = NotificationMessage(
            work_item_id=work_item_id,
            event_kind=kind,
            actor=actor,
            payload=payload or {},
        )
        try:
            return await self.provider.send(message)
        except Exception as e:
            self.failures += 1
            logger.warning(f"Notification {kind} for work item {work_item_id} failed: {e}")
            return None
