from __future__ import annotations

import logging
from decimal import Decimal
from typing import Optional, Tuple

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import Sum

from order.models import Order
from payment.models import Transaction

from .ledger import ZERO, Ledger, generate_reference, money

logger = logging.getLogger(__name__)

# Statuses in which a claimed order's delivery fee counts as pending for its worker.
WORKER_PENDING_STATUSES = (
    Order.Status.PREPARING,
    Order.Status.READY_FOR_PICKUP,
    Order.Status.RIDER_ACCEPTED,
    Order.Status.OUT_FOR_DELIVERY,
)
VENDOR_PENDING_STATUSES = (Order.Status.PREPARING, Order.Status.READY_FOR_PICKUP)


def vendor_share(total_amount, delivery_fee, platform_fee=None, share_pct=None) -> Decimal:
    """Restaurant's cut: (total - delivery fee - platform fee) * share, never negative."""
    platform_fee = settings.PLATFORM_FEE if platform_fee is None else platform_fee
    share_pct = settings.VENDOR_SHARE_PERCENTAGE if share_pct is None else share_pct
    food_revenue = Decimal(str(total_amount)) - Decimal(str(delivery_fee)) - Decimal(str(platform_fee))
    return max(ZERO, money(food_revenue * Decimal(str(share_pct))))


class EarningsDistributor:
    """Posts revenue shares to the ledger, at most once per order and recipient.

    The vendor share is held as a PENDING credit while the order is on the
    road and only becomes spendable once the order is delivered. Cancelling
    the order fails the held credit.
    """

    def distribute(self, order: Order) -> Tuple[Optional[Transaction], bool]:
        """Credit the vendor share for ``order``.

        Returns ``(entry, created)``. ``entry`` is None when the order is not
        paid, is cancelled, or the share is zero. Safe to call from every
        trigger point; a delivered order settles an earlier pending credit.
        """
        with transaction.atomic():
            order = (
                Order.objects.select_for_update()
                .select_related("restaurant__owner")
                .get(pk=order.pk)
            )
            if order.payment_status != Order.PaymentStatus.PAID or order.status == Order.Status.CANCELLED:
                return None, False

            share = vendor_share(order.total_amount, order.delivery_fee)
            if share <= ZERO:
                logger.info("Vendor share is zero for order=%s, nothing to distribute", order.reference)
                return None, False

            delivered = order.status == Order.Status.DELIVERED
            entry, created = self._post_once(
                user=order.restaurant.owner,
                order=order,
                amount=share,
                category=Transaction.Category.ORDER_EARNING,
                description=f"Earnings for Order #{order.reference}",
                status=Transaction.Status.SUCCESS if delivered else Transaction.Status.PENDING,
            )
            if delivered and entry.status == Transaction.Status.PENDING:
                entry = Ledger.settle(entry.id, Transaction.Status.SUCCESS)
                logger.info("Vendor earnings %s released for order=%s", entry.reference, order.reference)
            return entry, created

    @staticmethod
    def void(order: Order) -> int:
        """Fail every earning still held for ``order``. Returns the number voided."""
        held = Transaction.objects.filter(
            order=order,
            category__in=[Transaction.Category.ORDER_EARNING, Transaction.Category.DELIVERY_FEE],
            status=Transaction.Status.PENDING,
        ).values_list("id", flat=True)
        voided = 0
        for entry_id in list(held):
            Ledger.settle(entry_id, Transaction.Status.FAILED)
            voided += 1
        if voided:
            logger.info("Voided %s held earning(s) for order=%s", voided, order.reference)
        return voided

    def credit_delivery_fee(self, order: Order, worker) -> Tuple[Optional[Transaction], bool]:
        if money(order.delivery_fee) <= ZERO:
            return None, False
        with transaction.atomic():
            return self._post_once(
                user=worker.owner,
                order=order,
                amount=order.delivery_fee,
                category=Transaction.Category.DELIVERY_FEE,
                description=f"Delivery fee for Order #{order.reference}",
            )

    @staticmethod
    def _post_once(
        *, user, order, amount, category, description, status=Transaction.Status.SUCCESS
    ) -> Tuple[Transaction, bool]:
        existing = Transaction.objects.filter(order=order, category=category, user=user).first()
        if existing:
            return existing, False
        try:
            with transaction.atomic():
                entry = Ledger.post(
                    user=user,
                    amount=amount,
                    entry_type=Transaction.Type.CREDIT,
                    category=category,
                    status=status,
                    order=order,
                    description=description,
                    reference=generate_reference(f"EARN-{order.reference[:8].upper()}"),
                )
        except IntegrityError:
            # Lost a race with a concurrent distributor; the winner's row stands.
            return Transaction.objects.get(order=order, category=category, user=user), False
        return entry, True

    @staticmethod
    def pending_balance(user) -> Decimal:
        """Money in flight: held credits plus shares not yet posted."""
        held = Transaction.objects.filter(
            user=user,
            type=Transaction.Type.CREDIT,
            status=Transaction.Status.PENDING,
        ).aggregate(total=Sum("amount"))["total"]

        worker_fees = sum(
            (
                money(fee)
                for fee in Order.objects.filter(
                    assigned_worker__owner=user,
                    status__in=WORKER_PENDING_STATUSES,
                ).values_list("delivery_fee", flat=True)
            ),
            ZERO,
        )

        vendor_orders = (
            Order.objects.filter(
                restaurant__owner=user,
                status__in=VENDOR_PENDING_STATUSES,
                payment_status=Order.PaymentStatus.PAID,
            )
            .exclude(
                ledger_transactions__category=Transaction.Category.ORDER_EARNING,
            )
            .values_list("total_amount", "delivery_fee")
        )
        vendor_pending = sum((vendor_share(total, fee) for total, fee in vendor_orders), ZERO)
        return money(held or ZERO) + worker_fees + vendor_pending


def wallet_summary(user) -> dict:
    totals = Ledger.totals(user)
    return {
        "available_balance": totals["available_balance"],
        "pending_balance": EarningsDistributor.pending_balance(user),
        "total_earnings": totals["total_earnings"],
        "withdrawn": totals["withdrawn"],
        "currency": settings.LEDGER_CURRENCY,
    }
