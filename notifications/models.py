import uuid
from django.conf import settings
from django.db import models


class DeviceToken(models.Model):
    class DeviceType(models.TextChoices):
        WEB = "web", "Web"
        ANDROID = "android", "Android"
        IOS = "ios", "iOS"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="device_tokens")
    token = models.TextField(unique=True)
    device_type = models.CharField(max_length=20, choices=DeviceType.choices)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["user", "is_active"], name="notificatio_user_id_5e1c2b_idx"),
            models.Index(fields=["device_type"], name="notificatio_device__7a3d90_idx"),
        ]


class Notification(models.Model):
    class Type(models.TextChoices):
        NEW_ORDER = "new_order", "New Order"
        DELIVERY_CODE = "delivery_code", "Delivery Code"
        ORDER_AVAILABLE = "order_available", "Order Available"
        ORDER_CLAIMED = "order_claimed", "Order Claimed"
        ORDER_RELEASED = "order_released", "Order Released"
        ORDER_PICKED_UP = "order_picked_up", "Order Picked Up"
        ORDER_DELIVERED = "order_delivered", "Order Delivered"
        ORDER_CANCELLED = "order_cancelled", "Order Cancelled"
        WITHDRAWAL_REQUESTED = "withdrawal_requested", "Withdrawal Requested"
        WITHDRAWAL_RESOLVED = "withdrawal_resolved", "Withdrawal Resolved"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="notifications")
    type = models.CharField(max_length=50, choices=Type.choices)
    title = models.CharField(max_length=255)
    message = models.TextField()
    payload = models.JSONField(default=dict)
    is_read = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["user", "is_read"], name="notificatio_user_id_b8e4f1_idx"),
            models.Index(fields=["type"], name="notificatio_type_2c9a6e_idx"),
            models.Index(fields=["created_at"], name="notificatio_created_4f0b7d_idx"),
        ]
