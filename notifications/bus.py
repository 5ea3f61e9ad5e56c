"""Best-effort event publishing.

Services receive a ``NotificationBus`` and publish after their transaction
commits through :func:`publish_on_commit`. Delivery failures are logged and
never reach the caller.

Topics: ``order:<id>``, ``restaurant:<id>``, ``user:<id>``, ``workers:pool``
and ``admin:withdrawals``.
"""
import logging
from typing import Any, Dict, List, Tuple

from django.conf import settings
from django.contrib.auth import get_user_model
from django.db import transaction
from django.utils.module_loading import import_string

from .services import NotificationService, NotificationTemplates

logger = logging.getLogger(__name__)

POOL_TOPIC = "workers:pool"
ADMIN_WITHDRAWALS_TOPIC = "admin:withdrawals"


def order_topic(order) -> str:
    return f"order:{order.id}"


def restaurant_topic(restaurant_id) -> str:
    return f"restaurant:{restaurant_id}"


def user_topic(user_id) -> str:
    return f"user:{user_id}"


def event_payload(event: str, **fields) -> Dict[str, Any]:
    """Build a JSON-safe payload; ``type`` doubles as the stored notification type."""
    payload = {"event": event, "type": event.replace(".", "_")}
    for key, value in fields.items():
        payload[key] = value if value is None or isinstance(value, (bool, int)) else str(value)
    return payload


class NotificationBus:
    def publish(self, topic: str, payload: Dict[str, Any]) -> None:  # pragma: no cover - interface
        raise NotImplementedError


class InMemoryNotificationBus(NotificationBus):
    """Keeps published events in a list. Used by tests and local shells."""

    def __init__(self):
        self.published: List[Tuple[str, Dict[str, Any]]] = []

    def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        self.published.append((topic, dict(payload)))

    def events(self, topic: str = None, event: str = None) -> List[Dict[str, Any]]:
        return [
            payload
            for published_topic, payload in self.published
            if (topic is None or published_topic == topic)
            and (event is None or payload.get("event") == event)
        ]


class PushNotificationBus(NotificationBus):
    """Fans each topic out to the users behind it as stored + pushed notifications."""

    def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        title, message = NotificationTemplates.render(payload)
        recipients = self._resolve_recipients(topic)
        if not recipients:
            logger.info("No recipients for topic=%s type=%s", topic, payload.get("type"))
            return
        for user in recipients:
            NotificationService.notify(
                user=user,
                notification_type=payload.get("type", ""),
                title=title,
                message=message,
                payload=payload,
            )

    def _resolve_recipients(self, topic: str):
        from dispatch.models import Worker
        from order.models import Order
        from restaurant.models import Restaurant

        User = get_user_model()
        name, _, key = topic.partition(":")

        if topic == POOL_TOPIC:
            owner_ids = Worker.objects.filter(is_available=True).values_list("owner_id", flat=True)
            return list(User.objects.filter(id__in=owner_ids, is_active=True))
        if topic == ADMIN_WITHDRAWALS_TOPIC:
            return list(User.objects.filter(is_staff=True, is_active=True))
        if name == "user":
            return list(User.objects.filter(id=key))
        if name == "restaurant":
            restaurant = Restaurant.objects.select_related("owner").filter(id=key).first()
            return [restaurant.owner] if restaurant else []
        if name == "order":
            order = Order.objects.select_related("customer").filter(id=key).first()
            return [order.customer] if order else []

        logger.warning("Unknown notification topic=%s", topic)
        return []


def get_notification_bus() -> NotificationBus:
    return import_string(settings.NOTIFICATION_BUS)()


def publish_on_commit(bus: NotificationBus, topic: str, payload: Dict[str, Any]) -> None:
    def _publish():
        try:
            bus.publish(topic, payload)
        except Exception:
            logger.exception("Notification publish failed topic=%s type=%s", topic, payload.get("type"))

    transaction.on_commit(_publish)
