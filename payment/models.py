# payment/models.py

import uuid
from django.conf import settings
from django.db import models
from django.db.models import Q


class LedgerImmutableError(Exception):
    """Raised when code tries to rewrite or delete a ledger entry."""


class Transaction(models.Model):
    """Append-only ledger entry.

    Only ``status`` may change after insert (PENDING -> SUCCESS | FAILED) and
    the ledger service does that with a conditional update. Rows are never
    deleted.
    """

    class Type(models.TextChoices):
        CREDIT = "CREDIT", "Credit"
        DEBIT = "DEBIT", "Debit"

    class Category(models.TextChoices):
        ORDER_EARNING = "ORDER_EARNING", "Order Earning"
        DELIVERY_FEE = "DELIVERY_FEE", "Delivery Fee"
        WITHDRAWAL = "WITHDRAWAL", "Withdrawal"

    class Status(models.TextChoices):
        PENDING = "PENDING", "Pending"
        SUCCESS = "SUCCESS", "Success"
        FAILED = "FAILED", "Failed"

    EARNING_CATEGORIES = (Category.ORDER_EARNING, Category.DELIVERY_FEE)

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    reference = models.CharField(max_length=100, unique=True)

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="ledger_transactions"
    )

    amount = models.DecimalField(max_digits=12, decimal_places=2)
    type = models.CharField(max_length=10, choices=Type.choices)
    category = models.CharField(max_length=30, choices=Category.choices)
    status = models.CharField(max_length=10, choices=Status.choices, default=Status.PENDING)

    order = models.ForeignKey(
        "order.Order",
        on_delete=models.PROTECT,
        related_name="ledger_transactions",
        null=True,
        blank=True
    )

    description = models.TextField(blank=True)
    metadata = models.JSONField(default=dict, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["order", "category", "user"],
                condition=Q(category__in=["ORDER_EARNING", "DELIVERY_FEE"]),
                name="uniq_earning_per_order_user",
            ),
            models.CheckConstraint(condition=Q(amount__gt=0), name="ledger_amount_positive"),
        ]
        indexes = [
            models.Index(fields=["user", "status"], name="payment_tx_user_status_idx"),
            models.Index(fields=["category", "status"], name="payment_tx_cat_status_idx"),
        ]

    def __str__(self):
        return f"{self.type} {self.amount} {self.category} ({self.status})"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            update_fields = kwargs.get("update_fields")
            if update_fields is None or not set(update_fields) <= {"status"}:
                raise LedgerImmutableError("Ledger entries are immutable; only status may change")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise LedgerImmutableError("Ledger entries cannot be deleted")


class WebhookLog(models.Model):

    provider = models.CharField(max_length=50)
    event_type = models.CharField(max_length=100)

    reference = models.CharField(max_length=150)
    payload = models.JSONField()

    processed = models.BooleanField(default=False)
    processing_attempts = models.IntegerField(default=0)

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [
            models.Index(fields=["reference"], name="payment_wh_reference_idx"),
            models.Index(fields=["processed"], name="payment_wh_processed_idx"),
        ]
