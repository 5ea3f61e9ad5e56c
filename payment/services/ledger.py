from __future__ import annotations

import logging
import uuid
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional

from django.db import transaction
from django.db.models import Q, Sum
from django.utils import timezone

from core.errors import DomainError, NotFound
from payment.models import Transaction

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


class AlreadyProcessed(DomainError):
    kind = "already_processed"
    status_code = 409
    default_message = "Transaction already processed"


def money(value: Any) -> Decimal:
    return Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def generate_reference(prefix: str) -> str:
    stamp = timezone.now().strftime("%Y%m%d%H%M%S")
    return f"{prefix}-{stamp}-{uuid.uuid4().hex[:10].upper()}"


class Ledger:
    """Writes ledger entries and derives balances from them.

    available = credits(SUCCESS) - debits(SUCCESS or PENDING). A pending
    debit holds funds until an admin resolves it; a FAILED debit drops out of
    the sum and the funds are available again.
    """

    @staticmethod
    def post(
        *,
        user,
        amount,
        entry_type: str,
        category: str,
        status: str = Transaction.Status.SUCCESS,
        order=None,
        description: str = "",
        metadata: Optional[Dict[str, Any]] = None,
        reference: Optional[str] = None,
    ) -> Transaction:
        amount = money(amount)
        if amount <= ZERO:
            raise ValueError("Ledger amounts must be positive")
        entry = Transaction.objects.create(
            user=user,
            amount=amount,
            type=entry_type,
            category=category,
            status=status,
            order=order,
            description=description,
            metadata=metadata or {},
            reference=reference or generate_reference("EARN" if entry_type == Transaction.Type.CREDIT else "DEBIT"),
        )
        logger.info(
            "Ledger %s %s %s for user=%s order=%s ref=%s",
            entry.type, entry.amount, entry.category, user.pk, getattr(order, "pk", None), entry.reference,
        )
        return entry

    @staticmethod
    @transaction.atomic
    def settle(transaction_id, new_status: str) -> Transaction:
        """Move a PENDING entry to SUCCESS or FAILED exactly once."""
        if new_status not in {Transaction.Status.SUCCESS, Transaction.Status.FAILED}:
            raise ValueError(f"Cannot settle a transaction to {new_status}")
        entry = Transaction.objects.select_for_update().filter(id=transaction_id).first()
        if not entry:
            raise NotFound("Transaction not found")
        updated = Transaction.objects.filter(id=entry.id, status=Transaction.Status.PENDING).update(status=new_status)
        if not updated:
            raise AlreadyProcessed(f"Transaction already processed ({entry.status})")
        entry.refresh_from_db(fields=["status"])
        return entry

    @staticmethod
    def _totals(user) -> Dict[str, Decimal]:
        totals = Transaction.objects.filter(user=user).aggregate(
            credits=Sum(
                "amount",
                filter=Q(type=Transaction.Type.CREDIT, status=Transaction.Status.SUCCESS),
            ),
            debits=Sum(
                "amount",
                filter=Q(
                    type=Transaction.Type.DEBIT,
                    status__in=[Transaction.Status.SUCCESS, Transaction.Status.PENDING],
                ),
            ),
        )
        return {
            "credits": money(totals["credits"] or ZERO),
            "debits": money(totals["debits"] or ZERO),
        }

    @classmethod
    def available_balance(cls, user) -> Decimal:
        totals = cls._totals(user)
        return totals["credits"] - totals["debits"]

    @classmethod
    def totals(cls, user) -> Dict[str, Decimal]:
        totals = cls._totals(user)
        return {
            "available_balance": totals["credits"] - totals["debits"],
            "total_earnings": totals["credits"],
            "withdrawn": totals["debits"],
        }

    @staticmethod
    def history(user, limit: int = 50):
        return Transaction.objects.filter(user=user).order_by("-created_at")[:limit]
