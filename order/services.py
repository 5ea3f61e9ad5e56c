import logging
import secrets
import uuid
from typing import Optional

from django.conf import settings
from django.db import transaction
from django.utils import timezone
from rest_framework import status as http_status

from core.errors import DomainError, NotFound, Unauthorized
from dispatch.models import Worker
from notifications.bus import (
    POOL_TOPIC,
    NotificationBus,
    event_payload,
    get_notification_bus,
    order_topic,
    publish_on_commit,
    restaurant_topic,
)
from payment.services.earnings import EarningsDistributor
from payment.services.gateway import BasePaymentGateway, get_payment_gateway

from .models import Order
from .state_machine import OrderStateMachine

logger = logging.getLogger(__name__)


class InvalidPaymentEvent(DomainError):
    kind = "invalid_payment_event"
    default_message = "Unknown payment event result"


class OrderBusy(DomainError):
    kind = "order_busy"
    status_code = http_status.HTTP_409_CONFLICT
    default_message = "Order is being updated, try again"


class _AssignmentMoved(Exception):
    pass


class OrderService:
    VENDOR_STATUSES = (Order.Status.PREPARING, Order.Status.READY_FOR_PICKUP, Order.Status.CANCELLED)
    PAYMENT_SUCCESS = "success"
    PAYMENT_FAILED = "failed"
    LOCK_ATTEMPTS = 3

    def __init__(self, bus: Optional[NotificationBus] = None, gateway: Optional[BasePaymentGateway] = None):
        self.bus = bus or get_notification_bus()
        self._gateway = gateway

    @property
    def gateway(self) -> BasePaymentGateway:
        if self._gateway is None:
            self._gateway = get_payment_gateway()
        return self._gateway

    @staticmethod
    def _generate_reference():
        while True:
            candidate = uuid.uuid4().hex[:24]
            if not Order.objects.filter(reference=candidate).exists():
                return candidate

    @staticmethod
    def _generate_tracking_id():
        while True:
            candidate = f"TRK-{uuid.uuid4().hex[:10].upper()}"
            if not Order.objects.filter(tracking_id=candidate).exists():
                return candidate

    @staticmethod
    def _generate_delivery_code():
        return str(1000 + secrets.randbelow(9000))

    @transaction.atomic
    def create_order(
        self,
        customer,
        restaurant,
        total_amount,
        delivery_address,
        delivery_fee=None,
        delivery_notes="",
    ) -> Order:
        order = Order.objects.create(
            reference=self._generate_reference(),
            tracking_id=self._generate_tracking_id(),
            customer=customer,
            restaurant=restaurant,
            total_amount=total_amount,
            delivery_fee=settings.DEFAULT_DELIVERY_FEE if delivery_fee is None else delivery_fee,
            delivery_code=self._generate_delivery_code(),
            delivery_address=delivery_address,
            delivery_notes=delivery_notes or "",
        )
        logger.info("Order %s created for restaurant=%s", order.reference, restaurant.pk)
        return order

    def apply_payment_event(self, reference: str, result: str) -> Order:
        """Apply a gateway callback. Replays of an applied event change nothing."""
        result = (result or "").lower()
        if result not in {self.PAYMENT_SUCCESS, self.PAYMENT_FAILED}:
            raise InvalidPaymentEvent(f"Unknown payment result '{result}'")

        with transaction.atomic():
            order = Order.objects.select_for_update().filter(reference=reference).first()
            if not order:
                raise NotFound("Order not found")

            if result == self.PAYMENT_FAILED:
                if order.payment_status not in (Order.PaymentStatus.PAID, Order.PaymentStatus.REFUNDED):
                    order.payment_status = Order.PaymentStatus.FAILED
                    order.save(update_fields=["payment_status", "updated_at"])
                    logger.info("Payment failed for order=%s", order.reference)
                return order

            if order.payment_status in (Order.PaymentStatus.PAID, Order.PaymentStatus.REFUNDED):
                logger.info("Duplicate payment success for order=%s ignored", order.reference)
                return order

            if order.status == Order.Status.CANCELLED:
                # Paid after cancellation; hand the money straight back.
                refund = self.gateway.refund(order)
                order.payment_status = Order.PaymentStatus.REFUNDED
                order.save(update_fields=["payment_status", "updated_at"])
                logger.warning(
                    "Payment arrived for cancelled order=%s, refund %s issued", order.reference, refund.refund_id
                )
                return order

            order.payment_status = Order.PaymentStatus.PAID
            if order.status == Order.Status.PENDING:
                OrderStateMachine.validate_transition(order.status, Order.Status.PREPARING)
                order.status = Order.Status.PREPARING
            order.save(update_fields=["payment_status", "status", "updated_at"])
            logger.info("Payment confirmed for order=%s", order.reference)

            publish_on_commit(
                self.bus,
                restaurant_topic(order.restaurant_id),
                event_payload(
                    "new.order",
                    order_id=order.id,
                    reference=order.reference,
                    total_amount=order.total_amount,
                ),
            )
            publish_on_commit(
                self.bus,
                order_topic(order),
                event_payload(
                    "delivery.code",
                    order_id=order.id,
                    reference=order.reference,
                    delivery_code=order.delivery_code,
                ),
            )
        return order

    def update_status(self, order_id, status: str, actor=None) -> Order:
        if status not in self.VENDOR_STATUSES:
            allowed = ", ".join(self.VENDOR_STATUSES)
            raise Unauthorized(f"Restaurants may only set: {allowed}")

        for _ in range(self.LOCK_ATTEMPTS):
            try:
                return self._apply_status(order_id, status, actor)
            except _AssignmentMoved:
                logger.info("Worker assignment on order=%s moved while locking, retrying", order_id)
        raise OrderBusy()

    @staticmethod
    def _assigned_worker_id(order_id):
        return Order.objects.filter(id=order_id).values_list("assigned_worker_id", flat=True).first()

    def _apply_status(self, order_id, status: str, actor) -> Order:
        with transaction.atomic():
            # Worker before order, the same lock order dispatch uses.
            worker_id = self._assigned_worker_id(order_id)
            worker = None
            if worker_id:
                worker = Worker.objects.select_for_update().filter(id=worker_id).first()
            order = (
                Order.objects.select_for_update()
                .select_related("restaurant")
                .filter(id=order_id)
                .first()
            )
            if not order:
                raise NotFound("Order not found")
            if order.assigned_worker_id != worker_id:
                raise _AssignmentMoved()
            if actor is not None and not actor.is_staff and order.restaurant.owner_id != actor.pk:
                raise Unauthorized("Unauthorized access to this order")

            OrderStateMachine.validate_transition(order.status, status)
            if order.status == status:
                return order

            update_fields = ["status", "updated_at"]
            if status == Order.Status.CANCELLED:
                update_fields += self._cancel(order, worker)
            order.status = status
            order.save(update_fields=update_fields)
            logger.info("Order %s moved to %s", order.reference, status)

            if status == Order.Status.READY_FOR_PICKUP:
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
            elif status == Order.Status.CANCELLED:
                publish_on_commit(
                    self.bus,
                    order_topic(order),
                    event_payload("order.cancelled", order_id=order.id, reference=order.reference),
                )
        return order

    def _cancel(self, order: Order, worker: Optional[Worker]):
        """Refund, void held earnings and free the worker; returns extra fields to save."""
        update_fields = ["archived_at"]
        if order.payment_status == Order.PaymentStatus.PAID:
            # A gateway failure raises and rolls the cancellation back.
            refund = self.gateway.refund(order)
            logger.info("Refund %s issued for order=%s", refund.refund_id, order.reference)
            order.payment_status = Order.PaymentStatus.REFUNDED
            update_fields.append("payment_status")

        EarningsDistributor.void(order)
        if worker is not None:
            worker.is_available = True
            worker.save(update_fields=["is_available", "updated_at"])
        order.archived_at = timezone.now()
        return update_fields

    @staticmethod
    def get_by_tracking_id(tracking_id: str) -> Order:
        order = (
            Order.objects.select_related("restaurant", "assigned_worker")
            .filter(tracking_id=tracking_id)
            .first()
        )
        if not order:
            raise NotFound("Order not found")
        return order

    @staticmethod
    def vendor_orders(owner):
        """Paid (or refunded) orders of the restaurants ``owner`` runs, newest first."""
        return (
            Order.objects.select_related("restaurant", "customer", "assigned_worker")
            .filter(
                restaurant__owner=owner,
                payment_status__in=[Order.PaymentStatus.PAID, Order.PaymentStatus.REFUNDED],
            )
            .order_by("-created_at")
        )

    @staticmethod
    def customer_orders(customer):
        return (
            Order.objects.select_related("restaurant", "assigned_worker")
            .filter(customer=customer)
            .order_by("-created_at")
        )
