import uuid
from decimal import Decimal

from django.conf import settings
from django.db import models


class Worker(models.Model):
    """A rider or a logistics partner able to claim and deliver orders.

    ``wallet_balance`` is a cached projection of the owner's ledger balance,
    refreshed by ``reconcile_wallets``. Nothing reads it to make decisions.
    """

    class Kind(models.TextChoices):
        RIDER = "RIDER", "Rider"
        LOGISTICS_PARTNER = "LOGISTICS_PARTNER", "Logistics Partner"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    owner = models.ForeignKey(settings.AUTH_USER_MODEL, related_name="workers", on_delete=models.PROTECT)
    kind = models.CharField(max_length=30, choices=Kind.choices, default=Kind.RIDER)

    name = models.CharField(max_length=120)
    phone = models.CharField(max_length=20, blank=True)
    is_available = models.BooleanField(default=True)
    wallet_balance = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["name"]
        indexes = [
            models.Index(fields=["kind", "is_available"], name="dispatch_wo_kind_8f2c1a_idx"),
        ]

    def __str__(self):
        return f"{self.name} ({self.kind})"

    @property
    def is_rider(self):
        return self.kind == self.Kind.RIDER
