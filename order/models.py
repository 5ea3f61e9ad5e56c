import uuid
from decimal import Decimal
from django.db import models
from django.conf import settings


class Order(models.Model):
    class Status(models.TextChoices):
        PENDING = "PENDING", "Pending"
        PREPARING = "PREPARING", "Preparing"
        READY_FOR_PICKUP = "READY_FOR_PICKUP", "Ready for Pickup"
        RIDER_ACCEPTED = "RIDER_ACCEPTED", "Rider Accepted"
        OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY", "Out for Delivery"
        DELIVERED = "DELIVERED", "Delivered"
        CANCELLED = "CANCELLED", "Cancelled"

    class PaymentStatus(models.TextChoices):
        PENDING = "PENDING", "Pending"
        PAID = "PAID", "Paid"
        FAILED = "FAILED", "Failed"
        REFUNDED = "REFUNDED", "Refunded"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    reference = models.CharField(max_length=32, unique=True)
    tracking_id = models.CharField(max_length=40, unique=True)

    customer = models.ForeignKey(settings.AUTH_USER_MODEL, related_name="orders", on_delete=models.PROTECT)
    restaurant = models.ForeignKey("restaurant.Restaurant", related_name="orders", on_delete=models.PROTECT)

    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING)
    payment_status = models.CharField(max_length=20, choices=PaymentStatus.choices, default=PaymentStatus.PENDING)

    total_amount = models.DecimalField(max_digits=12, decimal_places=2)
    delivery_fee = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    delivery_code = models.CharField(max_length=4, blank=True)

    assigned_worker = models.ForeignKey(
        "dispatch.Worker",
        related_name="orders",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
    )
    claimed_at = models.DateTimeField(null=True, blank=True)

    delivery_address = models.TextField()
    delivery_notes = models.TextField(blank=True)

    archived_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["status", "assigned_worker"], name="order_order_status_4b7e2d_idx"),
            models.Index(fields=["payment_status"], name="order_order_payment_9c1f3a_idx"),
        ]

    def __str__(self):
        return f"{self.reference} - {self.status}"
