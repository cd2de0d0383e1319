"""Billing event publishing to Google Cloud Pub/Sub.

Responsibilities:
- Format billing event messages
- Publish to the configured Pub/Sub topic after a transition commits
- Never let a publishing failure reach the caller

Email rendering and delivery live with whoever consumes the topic.
"""

from datetime import datetime
from enum import Enum
from threading import RLock
from typing import Any, Optional

from google.cloud import pubsub_v1
from pydantic import BaseModel, Field

from billing_engine.config import get_config
from billing_engine.logging_config import get_logger
from billing_engine.models import NotificationSettings, Subscription
from billing_engine.services.clock import get_clock

logger = get_logger(__name__)


class BillingEventType(str, Enum):
    """Billing events published for downstream consumers (emails, analytics)."""

    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    SUBSCRIPTION_RECOVERED = "subscription_recovered"
    PAYMENT_FAILED = "payment_failed"
    GRACE_PERIOD_WARNING = "grace_period_warning"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    SUBSCRIPTION_EXPIRED = "subscription_expired"
    SUBSCRIPTION_UNPAID = "subscription_unpaid"


class BillingEvent(BaseModel):
    """Message body published to Pub/Sub."""

    version: str = Field(default="1.0")
    event_type: BillingEventType
    subscription_id: str
    user_id: str
    customer_email: Optional[str] = None
    plan_id: str
    status: str
    event_time: datetime
    data: dict[str, Any] = Field(default_factory=dict)

    class Config:
        json_schema_extra = {
            "example": {
                "version": "1.0",
                "event_type": "subscription_activated",
                "subscription_id": "sub_1",
                "user_id": "user-123",
                "customer_email": "ada@example.com",
                "plan_id": "plan_pro_monthly",
                "status": "active",
                "event_time": "2026-01-01T00:00:00Z",
                "data": {"source": "webhook"},
            }
        }


class NotificationDispatcher:
    """Publishes billing events to Google Cloud Pub/Sub.

    Disabled unless ``notifications.enabled`` is set. Publishing is
    fire-and-forget: errors are logged and reported as ``False``.

    Args:
        settings: Notification settings (defaults to billing.yaml)
        publisher: Pub/Sub publisher client, created on demand when omitted
    """

    def __init__(
        self,
        settings: Optional[NotificationSettings] = None,
        publisher: Optional[pubsub_v1.PublisherClient] = None,
    ):
        self._lock = RLock()
        self._settings = settings or get_config().settings.notifications
        self._publisher = publisher
        self._topic_path: Optional[str] = None
        self._enabled = self._settings.enabled

        self._initialize()

    def _initialize(self) -> None:
        """Create the publisher client and resolve the topic path."""
        if not self._enabled:
            logger.info("notification_dispatcher_disabled")
            return

        try:
            if self._publisher is None:
                self._publisher = pubsub_v1.PublisherClient()
            self._topic_path = self._publisher.topic_path(
                self._settings.project_id, self._settings.topic
            )
            logger.info(
                "notification_dispatcher_initialized",
                project_id=self._settings.project_id,
                topic=self._settings.topic,
                topic_path=self._topic_path,
            )
        except Exception as e:
            logger.error(
                "notification_dispatcher_init_failed",
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            self._enabled = False

    def is_enabled(self) -> bool:
        return self._enabled and self._publisher is not None

    def publish(
        self,
        event_type: BillingEventType,
        subscription: Subscription,
        **data: Any,
    ) -> bool:
        """Publish a billing event for a subscription.

        Args:
            event_type: Event to publish
            subscription: Subscription after the committed transition
            **data: Extra event payload (source, days_remaining, ...)

        Returns:
            True if published, False if disabled or publishing failed
        """
        if not self.is_enabled():
            logger.debug(
                "notification_skipped",
                event_type=event_type.value,
                subscription_id=subscription.id,
            )
            return False

        event = BillingEvent(
            event_type=event_type,
            subscription_id=subscription.id,
            user_id=subscription.user_id,
            customer_email=subscription.customer_email,
            plan_id=subscription.plan_id,
            status=subscription.status.value,
            event_time=get_clock().now(),
            data=data,
        )

        with self._lock:
            try:
                future = self._publisher.publish(
                    self._topic_path,
                    event.model_dump_json().encode("utf-8"),
                    event_type=event_type.value,
                    subscription_id=subscription.id,
                )
                message_id = future.result(timeout=5.0)
            except Exception as e:
                logger.error(
                    "notification_publish_failed",
                    event_type=event_type.value,
                    subscription_id=subscription.id,
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )
                return False

        logger.info(
            "notification_published",
            event_type=event_type.value,
            subscription_id=subscription.id,
            message_id=message_id,
        )
        return True

    def shutdown(self) -> None:
        """Drop the publisher client."""
        with self._lock:
            if self._publisher:
                logger.info("notification_dispatcher_shutting_down")
                self._publisher = None
                self._topic_path = None


_dispatcher_instance: Optional[NotificationDispatcher] = None
_dispatcher_lock = RLock()


def get_notification_dispatcher() -> NotificationDispatcher:
    """Get or create the singleton NotificationDispatcher."""
    global _dispatcher_instance
    if _dispatcher_instance is None:
        with _dispatcher_lock:
            if _dispatcher_instance is None:
                _dispatcher_instance = NotificationDispatcher()
    return _dispatcher_instance


def reset_notification_dispatcher() -> None:
    """Reset the singleton NotificationDispatcher (for testing)."""
    global _dispatcher_instance
    with _dispatcher_lock:
        if _dispatcher_instance is not None:
            _dispatcher_instance.shutdown()
            _dispatcher_instance = None
