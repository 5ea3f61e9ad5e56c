import json
import logging
from typing import Any, Dict, Optional, Tuple

from django.conf import settings
from django.db import transaction

from .models import DeviceToken, Notification

logger = logging.getLogger(__name__)


class NotificationService:
    _firebase_app_initialized = False

    @classmethod
    def _init_firebase(cls) -> bool:
        if cls._firebase_app_initialized:
            return True
        try:
            import firebase_admin
            from firebase_admin import credentials

            if firebase_admin._apps:
                cls._firebase_app_initialized = True
                return True

            service_account_path = getattr(settings, "FCM_SERVICE_ACCOUNT_FILE", "")
            service_account_json = getattr(settings, "FCM_SERVICE_ACCOUNT_JSON", "")
            project_id = getattr(settings, "FCM_PROJECT_ID", "")

            if service_account_json:
                cred = credentials.Certificate(json.loads(service_account_json))
                firebase_admin.initialize_app(cred, {"projectId": project_id} if project_id else None)
            elif service_account_path:
                cred = credentials.Certificate(service_account_path)
                firebase_admin.initialize_app(cred, {"projectId": project_id} if project_id else None)
            else:
                logger.info("FCM credentials are not configured. Push sending is disabled.")
                return False

            cls._firebase_app_initialized = True
            return True
        except Exception:
            logger.exception("Failed to initialize Firebase app")
            return False

    @classmethod
    @transaction.atomic
    def notify(
        cls,
        *,
        user,
        notification_type: str,
        title: str,
        message: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Notification:
        payload = payload or {}
        notification = Notification.objects.create(
            user=user,
            type=notification_type,
            title=title,
            message=message,
            payload=payload,
        )
        try:
            cls._send_push_to_user(user=user, title=title, message=message, payload=payload)
        except Exception:
            logger.exception("Push send failed for user=%s type=%s", user.id, notification_type)
        return notification

    @classmethod
    def _send_push_to_user(cls, *, user, title: str, message: str, payload: Dict[str, Any]) -> None:
        if not cls._init_firebase():
            return
        tokens = list(DeviceToken.objects.filter(user=user, is_active=True).values_list("token", flat=True))
        if not tokens:
            return

        from firebase_admin import messaging
        from firebase_admin.exceptions import FirebaseError

        for token in tokens:
            try:
                msg = messaging.Message(
                    notification=messaging.Notification(title=title, body=message),
                    data={k: str(v) for k, v in payload.items()},
                    token=token,
                )
                messaging.send(msg)
            except FirebaseError as exc:
                error_code = getattr(exc, "code", "") or str(exc)
                # Deactivate known invalid token scenarios.
                if "registration-token-not-registered" in error_code or "invalid-argument" in error_code:
                    DeviceToken.objects.filter(token=token).update(is_active=False)
                logger.warning("FCM send failed token=%s code=%s", token[:12], error_code)
            except Exception:
                logger.exception("Unexpected FCM error token=%s", token[:12])


class NotificationTemplates:
    """Title and body for each event published on the bus."""

    _TEMPLATES = {
        Notification.Type.NEW_ORDER: (
            "New Order Paid!",
            "Order #{reference} has been paid and is waiting for you.",
        ),
        Notification.Type.DELIVERY_CODE: (
            "Your Delivery Code",
            "Share code {delivery_code} with your rider to receive order #{reference}.",
        ),
        Notification.Type.ORDER_AVAILABLE: (
            "New Delivery Alert!",
            "Order #{reference} is ready for pickup near you.",
        ),
        Notification.Type.ORDER_CLAIMED: (
            "Rider Assigned",
            "A rider has accepted order #{reference}.",
        ),
        Notification.Type.ORDER_RELEASED: (
            "Rider Unassigned",
            "Order #{reference} is looking for a new rider.",
        ),
        Notification.Type.ORDER_PICKED_UP: (
            "Order On The Way",
            "Your order #{reference} has been picked up.",
        ),
        Notification.Type.ORDER_DELIVERED: (
            "Order Delivered",
            "Order #{reference} has been delivered.",
        ),
        Notification.Type.ORDER_CANCELLED: (
            "Order Cancelled",
            "Order #{reference} has been cancelled.",
        ),
        Notification.Type.WITHDRAWAL_REQUESTED: (
            "Withdrawal Requested",
            "A payout of {amount} is waiting for approval.",
        ),
        Notification.Type.WITHDRAWAL_RESOLVED: (
            "Withdrawal {status}",
            "Your payout of {amount} is now {status}.",
        ),
    }

    @classmethod
    def render(cls, payload: Dict[str, Any]) -> Tuple[str, str]:
        event_type = payload.get("type", "")
        title, message = cls._TEMPLATES.get(event_type, ("Update", "You have a new update."))
        values = _DefaultDict(payload)
        return title.format_map(values), message.format_map(values)


class _DefaultDict(dict):
    def __missing__(self, key):
        return ""
