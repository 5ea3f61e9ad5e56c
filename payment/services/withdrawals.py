from __future__ import annotations

import logging
from decimal import InvalidOperation
from typing import Any, Dict, Optional

from django.conf import settings
from django.contrib.auth import get_user_model
from django.db import transaction

from core.errors import DomainError, NotFound
from notifications.bus import (
    ADMIN_WITHDRAWALS_TOPIC,
    NotificationBus,
    event_payload,
    get_notification_bus,
    publish_on_commit,
    user_topic,
)
from payment.models import Transaction

from .ledger import ZERO, AlreadyProcessed, Ledger, generate_reference, money

logger = logging.getLogger(__name__)


class InsufficientFunds(DomainError):
    kind = "insufficient_funds"
    default_message = "Insufficient funds"


class InvalidAmount(DomainError):
    kind = "invalid_amount"
    default_message = "Invalid withdrawal amount"


class InvalidAction(DomainError):
    kind = "invalid_action"
    default_message = "Action must be APPROVE or REJECT"


class WithdrawalWorkflow:
    APPROVE = "APPROVE"
    REJECT = "REJECT"

    def __init__(self, bus: Optional[NotificationBus] = None):
        self.bus = bus or get_notification_bus()

    def request_withdrawal(self, user, amount, bank_details: Optional[Dict[str, Any]] = None) -> Transaction:
        try:
            amount = money(amount)
        except (InvalidOperation, TypeError, ValueError) as exc:
            raise InvalidAmount("Amount must be a number") from exc
        if not amount.is_finite():
            raise InvalidAmount("Amount must be a number")
        if amount <= ZERO:
            raise InvalidAmount("Amount must be positive")
        minimum = money(settings.MINIMUM_WITHDRAWAL)
        if amount < minimum:
            raise InvalidAmount(f"Minimum withdrawal is {minimum}")

        with transaction.atomic():
            # Serializes withdrawals per user so the balance check below cannot go stale.
            get_user_model().objects.select_for_update().get(pk=user.pk)

            available = Ledger.available_balance(user)
            if amount > available:
                raise InsufficientFunds(f"Insufficient funds. Available: {available}")

            entry = Ledger.post(
                user=user,
                amount=amount,
                entry_type=Transaction.Type.DEBIT,
                category=Transaction.Category.WITHDRAWAL,
                status=Transaction.Status.PENDING,
                description="Withdrawal request",
                metadata={"bank_details": bank_details or {}},
                reference=generate_reference("PAYOUT"),
            )
            logger.info("Withdrawal requested user=%s amount=%s ref=%s", user.pk, amount, entry.reference)

            publish_on_commit(
                self.bus,
                ADMIN_WITHDRAWALS_TOPIC,
                event_payload(
                    "withdrawal.requested",
                    transaction_id=entry.id,
                    user_id=user.pk,
                    amount=entry.amount,
                    reference=entry.reference,
                ),
            )
        return entry

    def resolve(self, transaction_id, action: str) -> Transaction:
        action = (action or "").upper()
        if action not in {self.APPROVE, self.REJECT}:
            raise InvalidAction()
        new_status = Transaction.Status.SUCCESS if action == self.APPROVE else Transaction.Status.FAILED

        with transaction.atomic():
            entry = (
                Transaction.objects.select_for_update()
                .filter(id=transaction_id, category=Transaction.Category.WITHDRAWAL)
                .first()
            )
            if not entry:
                raise NotFound("Withdrawal not found")
            if entry.status != Transaction.Status.PENDING:
                raise AlreadyProcessed(f"Withdrawal already processed ({entry.status})")

            entry = Ledger.settle(entry.id, new_status)
            logger.info("Withdrawal %s resolved as %s", entry.reference, entry.status)

            publish_on_commit(
                self.bus,
                user_topic(entry.user_id),
                event_payload(
                    "withdrawal.resolved",
                    transaction_id=entry.id,
                    amount=entry.amount,
                    status=entry.status,
                    reference=entry.reference,
                ),
            )
        return entry

    @staticmethod
    def pending_withdrawals():
        return (
            Transaction.objects.filter(
                category=Transaction.Category.WITHDRAWAL,
                status=Transaction.Status.PENDING,
            )
            .select_related("user")
            .order_by("-created_at")
        )
