from __future__ import annotations

import logging
from datetime import timedelta
from typing import List, Optional

from django.conf import settings
from django.db import transaction
from django.db.models import Q
from django.utils import timezone
from rest_framework import status as http_status

from core.errors import DomainError, NotFound, Unauthorized
from notifications.bus import (
    POOL_TOPIC,
    NotificationBus,
    event_payload,
    get_notification_bus,
    order_topic,
    publish_on_commit,
)
from order.models import Order
from order.state_machine import OrderStateMachine
from payment.services.earnings import EarningsDistributor, wallet_summary

from .models import Worker

logger = logging.getLogger(__name__)

Status = Order.Status

CLAIMABLE_STATUSES = {
    Worker.Kind.RIDER: (Status.READY_FOR_PICKUP,),
    Worker.Kind.LOGISTICS_PARTNER: (Status.PREPARING, Status.READY_FOR_PICKUP),
}
# Claimed but not yet picked up.
RELEASABLE_STATUSES = {
    Worker.Kind.RIDER: (Status.RIDER_ACCEPTED,),
    Worker.Kind.LOGISTICS_PARTNER: (Status.PREPARING, Status.READY_FOR_PICKUP),
}
ACTIVE_STATUSES = (
    Status.PREPARING,
    Status.READY_FOR_PICKUP,
    Status.RIDER_ACCEPTED,
    Status.OUT_FOR_DELIVERY,
)
HISTORY_STATUSES = (Status.DELIVERED, Status.CANCELLED)


class NotEligible(DomainError):
    kind = "not_eligible"
    default_message = "Order is not available for claiming"


class AlreadyClaimed(DomainError):
    kind = "already_claimed"
    status_code = http_status.HTTP_409_CONFLICT
    default_message = "Order has already been taken by another worker"


class WorkerBusy(DomainError):
    kind = "worker_busy"
    status_code = http_status.HTTP_409_CONFLICT
    default_message = "Worker is offline or already on a delivery"


class InvalidStage(DomainError):
    kind = "invalid_stage"
    status_code = http_status.HTTP_409_CONFLICT
    default_message = "Order is not at a stage that allows this action"


class InvalidCode(DomainError):
    kind = "invalid_code"
    default_message = "Incorrect delivery code"


class DispatchService:
    """Assigns paid orders to workers and walks them through pickup and delivery.

    Every mutation locks the worker row before the order row so concurrent
    claims, releases and deliveries serialize in the same order.
    """

    def __init__(
        self,
        bus: Optional[NotificationBus] = None,
        distributor: Optional[EarningsDistributor] = None,
    ):
        self.bus = bus or get_notification_bus()
        self.distributor = distributor or EarningsDistributor()

    # -----------------------------
    # Locking helpers
    # -----------------------------
    @staticmethod
    def _lock_worker(worker_id) -> Worker:
        worker = Worker.objects.select_for_update().filter(id=worker_id).first()
        if not worker:
            raise NotFound("Worker not found")
        return worker

    @staticmethod
    def _lock_order(order_id) -> Order:
        order = Order.objects.select_for_update().filter(id=order_id).first()
        if not order:
            raise NotFound("Order not found")
        return order

    @staticmethod
    def _has_active_order(worker: Worker, exclude_order_id=None) -> bool:
        qs = Order.objects.filter(assigned_worker=worker, status__in=ACTIVE_STATUSES)
        if exclude_order_id is not None:
            qs = qs.exclude(id=exclude_order_id)
        return qs.exists()

    # -----------------------------
    # Claim / release
    # -----------------------------
    def claim(self, worker_id, order_id) -> Order:
        with transaction.atomic():
            worker = self._lock_worker(worker_id)
            order = self._lock_order(order_id)

            if order.assigned_worker_id == worker.id:
                return order
            if order.assigned_worker_id:
                raise AlreadyClaimed()
            if order.payment_status != Order.PaymentStatus.PAID:
                raise NotEligible("Order has not been paid")
            if order.status not in CLAIMABLE_STATUSES[worker.kind]:
                raise NotEligible(f"Order in status {order.status} cannot be claimed")
            if not worker.is_available or self._has_active_order(worker):
                raise WorkerBusy()

            read_status = order.status
            target = Status.RIDER_ACCEPTED if worker.is_rider else read_status
            OrderStateMachine.validate_transition(read_status, target)

            now = timezone.now()
            updated = Order.objects.filter(
                id=order.id,
                assigned_worker__isnull=True,
                status=read_status,
            ).update(assigned_worker=worker, claimed_at=now, status=target, updated_at=now)
            if not updated:
                raise AlreadyClaimed()

            Worker.objects.filter(id=worker.id).update(is_available=False, updated_at=now)
            order.refresh_from_db()
            logger.info("Worker %s claimed order=%s", worker.id, order.reference)

            publish_on_commit(
                self.bus,
                order_topic(order),
                event_payload(
                    "order.claimed",
                    order_id=order.id,
                    reference=order.reference,
                    worker_id=worker.id,
                    worker_name=worker.name,
                ),
            )
        return order

    def release(self, worker_id, order_id, reason: str = "") -> Order:
        with transaction.atomic():
            worker = self._lock_worker(worker_id)
            order = self._lock_order(order_id)

            if order.assigned_worker_id != worker.id:
                raise Unauthorized("This order is not assigned to you")
            if order.status not in RELEASABLE_STATUSES[worker.kind]:
                raise InvalidStage(f"Cannot release an order in status {order.status}")

            target = Status.READY_FOR_PICKUP if worker.is_rider else order.status
            OrderStateMachine.validate_transition(order.status, target)

            order.assigned_worker = None
            order.claimed_at = None
            order.status = target
            order.save(update_fields=["assigned_worker", "claimed_at", "status", "updated_at"])
            worker.is_available = True
            worker.save(update_fields=["is_available", "updated_at"])
            logger.info("Worker %s released order=%s reason=%s", worker.id, order.reference, reason or "-")

            publish_on_commit(
                self.bus,
                order_topic(order),
                event_payload("order.released", order_id=order.id, reference=order.reference, reason=reason),
            )
            publish_on_commit(
                self.bus,
                POOL_TOPIC,
                event_payload(
                    "order.available",
                    order_id=order.id,
                    reference=order.reference,
                    restaurant_id=order.restaurant_id,
                    delivery_fee=order.delivery_fee,
                ),
            )
        return order

    def release_expired_claims(self, now=None, minutes: Optional[int] = None) -> List[str]:
        """Hand claims that were never picked up back to the pool."""
        now = now or timezone.now()
        ttl = settings.DISPATCH_CLAIM_TTL_MINUTES if minutes is None else minutes
        cutoff = now - timedelta(minutes=ttl)

        stale = Order.objects.filter(
            Q(assigned_worker__kind=Worker.Kind.RIDER, status__in=RELEASABLE_STATUSES[Worker.Kind.RIDER])
            | Q(
                assigned_worker__kind=Worker.Kind.LOGISTICS_PARTNER,
                status__in=RELEASABLE_STATUSES[Worker.Kind.LOGISTICS_PARTNER],
            ),
            claimed_at__lt=cutoff,
        ).values_list("id", "assigned_worker_id")

        released = []
        for order_id, worker_id in stale:
            try:
                self.release(worker_id, order_id, reason="claim expired")
            except (InvalidStage, Unauthorized):
                # Picked up or released between the scan and the lock.
                continue
            released.append(str(order_id))
        if released:
            logger.info("Released %s expired claims", len(released))
        return released

    # -----------------------------
    # Pickup / delivery
    # -----------------------------
    def confirm_pickup(self, worker_id, order_id) -> Order:
        with transaction.atomic():
            order = self._lock_order(order_id)
            if order.assigned_worker_id is None or str(order.assigned_worker_id) != str(worker_id):
                raise Unauthorized("This order is not assigned to you")

            OrderStateMachine.validate_transition(order.status, Status.OUT_FOR_DELIVERY)
            if order.status == Status.OUT_FOR_DELIVERY:
                return order

            order.status = Status.OUT_FOR_DELIVERY
            order.save(update_fields=["status", "updated_at"])
            logger.info("Order %s picked up by worker=%s", order.reference, worker_id)

            if order.payment_status == Order.PaymentStatus.PAID:
                self.distributor.distribute(order)

            publish_on_commit(
                self.bus,
                order_topic(order),
                event_payload("order.picked_up", order_id=order.id, reference=order.reference),
            )
        return order

    def confirm_delivery(self, worker_id, order_id, code) -> Order:
        with transaction.atomic():
            worker = self._lock_worker(worker_id)
            order = self._lock_order(order_id)

            if order.assigned_worker_id != worker.id:
                raise Unauthorized("This order is not assigned to you")
            if order.status == Status.DELIVERED:
                raise InvalidStage("Order already delivered")
            if not order.delivery_code:
                raise InvalidStage("No delivery code was generated for this order")
            if str(code or "").strip() != order.delivery_code:
                raise InvalidCode()

            OrderStateMachine.validate_transition(order.status, Status.DELIVERED)
            now = timezone.now()
            order.status = Status.DELIVERED
            order.archived_at = now
            order.save(update_fields=["status", "archived_at", "updated_at"])

            self.distributor.credit_delivery_fee(order, worker)
            worker.is_available = True
            worker.save(update_fields=["is_available", "updated_at"])
            if order.payment_status == Order.PaymentStatus.PAID:
                self.distributor.distribute(order)
            logger.info("Order %s delivered by worker=%s", order.reference, worker.id)

            publish_on_commit(
                self.bus,
                order_topic(order),
                event_payload("order.delivered", order_id=order.id, reference=order.reference),
            )
        return order

    # -----------------------------
    # Worker views
    # -----------------------------
    def set_availability(self, worker_id, online: bool) -> Worker:
        with transaction.atomic():
            worker = self._lock_worker(worker_id)
            if online and self._has_active_order(worker):
                raise WorkerBusy("Finish your active delivery before going online")
            worker.is_available = bool(online)
            worker.save(update_fields=["is_available", "updated_at"])
        logger.info("Worker %s is now %s", worker.id, "online" if online else "offline")
        return worker

    def available_orders(self, worker_id):
        worker = Worker.objects.filter(id=worker_id).first()
        if not worker:
            raise NotFound("Worker not found")
        if not worker.is_available or self._has_active_order(worker):
            return Order.objects.none()
        return (
            Order.objects.filter(
                assigned_worker__isnull=True,
                payment_status=Order.PaymentStatus.PAID,
                status__in=CLAIMABLE_STATUSES[worker.kind],
            )
            .select_related("restaurant")
            .order_by("created_at")
        )

    @staticmethod
    def active_order(worker_id) -> Optional[Order]:
        return (
            Order.objects.select_related("restaurant", "customer")
            .filter(assigned_worker_id=worker_id, status__in=ACTIVE_STATUSES)
            .first()
        )

    @staticmethod
    def delivery_history(worker_id):
        return (
            Order.objects.select_related("restaurant")
            .filter(assigned_worker_id=worker_id, status__in=HISTORY_STATUSES)
            .order_by("-updated_at")
        )

    @staticmethod
    def dashboard(worker_id) -> dict:
        """Worker overview: balances, delivered job count and current work."""
        worker = Worker.objects.select_related("owner").filter(id=worker_id).first()
        if not worker:
            raise NotFound("Worker not found")
        summary = wallet_summary(worker.owner)
        return {
            "worker": worker,
            "available_balance": summary["available_balance"],
            "pending_balance": summary["pending_balance"],
            "total_jobs": Order.objects.filter(assigned_worker=worker, status=Status.DELIVERED).count(),
            "active_orders": (
                Order.objects.select_related("restaurant")
                .filter(assigned_worker=worker, status__in=ACTIVE_STATUSES)
                .order_by("-created_at")
            ),
        }

    # -----------------------------
    # Logistics partner task links
    # -----------------------------
    @staticmethod
    def rider_task(tracking_id: str) -> Order:
        order = (
            Order.objects.select_related("restaurant", "assigned_worker")
            .filter(
                tracking_id=tracking_id,
                assigned_worker__kind=Worker.Kind.LOGISTICS_PARTNER,
            )
            .first()
        )
        if not order:
            raise NotFound("Task not found")
        return order

    def complete_by_tracking(self, tracking_id: str, code) -> Order:
        order = self.rider_task(tracking_id)
        return self.confirm_delivery(order.assigned_worker_id, order.id, code)
