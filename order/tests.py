import uuid
from decimal import Decimal
from unittest.mock import Mock, patch

from django.test import TestCase, override_settings
from rest_framework.test import APIClient

from account.models import User
from core.errors import ExternalServiceFailure, NotFound, Unauthorized
from dispatch.models import Worker
from notifications.bus import POOL_TOPIC, InMemoryNotificationBus, order_topic, restaurant_topic
from order.models import Order
from order.services import InvalidPaymentEvent, OrderBusy, OrderService
from order.state_machine import InvalidTransition, OrderStateMachine
from payment.models import Transaction
from payment.services.gateway import RefundResult
from restaurant.models import Restaurant

Status = Order.Status


class OrderStateMachineTests(TestCase):
    EDGES = {
        (Status.PENDING, Status.PREPARING),
        (Status.PENDING, Status.CANCELLED),
        (Status.PREPARING, Status.READY_FOR_PICKUP),
        (Status.PREPARING, Status.OUT_FOR_DELIVERY),
        (Status.PREPARING, Status.CANCELLED),
        (Status.READY_FOR_PICKUP, Status.RIDER_ACCEPTED),
        (Status.READY_FOR_PICKUP, Status.OUT_FOR_DELIVERY),
        (Status.READY_FOR_PICKUP, Status.CANCELLED),
        (Status.RIDER_ACCEPTED, Status.OUT_FOR_DELIVERY),
        (Status.RIDER_ACCEPTED, Status.READY_FOR_PICKUP),
        (Status.RIDER_ACCEPTED, Status.CANCELLED),
        (Status.OUT_FOR_DELIVERY, Status.DELIVERED),
        (Status.OUT_FOR_DELIVERY, Status.CANCELLED),
    }

    def test_every_pair_matches_the_transition_table(self):
        for current in Status.values:
            for target in Status.values:
                with self.subTest(current=current, target=target):
                    if current == target or (current, target) in self.EDGES:
                        OrderStateMachine.validate_transition(current, target)
                    else:
                        with self.assertRaises(InvalidTransition):
                            OrderStateMachine.validate_transition(current, target)

    def test_error_message_lists_allowed_targets(self):
        with self.assertRaisesMessage(InvalidTransition, "Allowed transitions: [CANCELLED, PREPARING]"):
            OrderStateMachine.validate_transition(Status.PENDING, Status.DELIVERED)

    def test_terminal_statuses(self):
        self.assertTrue(OrderStateMachine.is_terminal(Status.DELIVERED))
        self.assertTrue(OrderStateMachine.is_terminal(Status.CANCELLED))
        self.assertFalse(OrderStateMachine.is_terminal(Status.OUT_FOR_DELIVERY))


class OrderFixtureMixin:
    def setUp(self):
        self.bus = InMemoryNotificationBus()
        self.vendor = User.objects.create_user(email="vendor@example.com", password="Pass123!", role=User.Role.VENDOR)
        self.customer = User.objects.create_user(
            email="customer@example.com", password="Pass123!", role=User.Role.CUSTOMER
        )
        self.restaurant = Restaurant.objects.create(name="Mama Put", owner=self.vendor, address="12 Allen Avenue")
        self.service = OrderService(bus=self.bus)
        self.order = self.service.create_order(
            customer=self.customer,
            restaurant=self.restaurant,
            total_amount=Decimal("3800.00"),
            delivery_address="4 Bode Thomas Street",
            delivery_fee=Decimal("700.00"),
        )


class OrderCreationTests(OrderFixtureMixin, TestCase):
    def test_create_order_generates_identifiers(self):
        self.assertEqual(len(self.order.reference), 24)
        self.assertTrue(self.order.tracking_id.startswith("TRK-"))
        self.assertEqual(len(self.order.delivery_code), 4)
        self.assertTrue(self.order.delivery_code.isdigit())
        self.assertEqual(self.order.status, Status.PENDING)
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.PENDING)

    @override_settings(DEFAULT_DELIVERY_FEE=Decimal("450"))
    def test_create_order_uses_default_delivery_fee(self):
        order = self.service.create_order(
            customer=self.customer,
            restaurant=self.restaurant,
            total_amount=Decimal("2000.00"),
            delivery_address="Yaba",
        )
        order.refresh_from_db()
        self.assertEqual(order.delivery_fee, Decimal("450.00"))

    def test_get_by_tracking_id(self):
        self.assertEqual(self.service.get_by_tracking_id(self.order.tracking_id).id, self.order.id)
        with self.assertRaises(NotFound):
            self.service.get_by_tracking_id("TRK-UNKNOWN")


class PaymentEventTests(OrderFixtureMixin, TestCase):
    def test_success_marks_paid_and_starts_preparation(self):
        with self.captureOnCommitCallbacks(execute=True):
            order = self.service.apply_payment_event(self.order.reference, "success")

        self.assertEqual(order.payment_status, Order.PaymentStatus.PAID)
        self.assertEqual(order.status, Status.PREPARING)
        self.assertEqual(len(self.bus.events(restaurant_topic(self.restaurant.id), "new.order")), 1)
        code_events = self.bus.events(order_topic(order), "delivery.code")
        self.assertEqual(code_events[0]["delivery_code"], order.delivery_code)

    def test_replayed_success_is_a_no_op(self):
        with self.captureOnCommitCallbacks(execute=True):
            self.service.apply_payment_event(self.order.reference, "success")
        with self.captureOnCommitCallbacks(execute=True):
            order = self.service.apply_payment_event(self.order.reference, "SUCCESS")

        self.assertEqual(order.status, Status.PREPARING)
        self.assertEqual(len(self.bus.events(event="new.order")), 1)

    def test_failure_marks_failed(self):
        order = self.service.apply_payment_event(self.order.reference, "failed")
        self.assertEqual(order.payment_status, Order.PaymentStatus.FAILED)
        self.assertEqual(order.status, Status.PENDING)

    def test_failure_after_success_keeps_paid(self):
        self.service.apply_payment_event(self.order.reference, "success")
        order = self.service.apply_payment_event(self.order.reference, "failed")
        self.assertEqual(order.payment_status, Order.PaymentStatus.PAID)

    def test_payment_after_cancellation_is_refunded(self):
        gateway = Mock()
        gateway.refund.return_value = RefundResult(refund_id="RF-2", status="SUCCESS", raw_response={})
        service = OrderService(bus=self.bus, gateway=gateway)
        service.update_status(self.order.id, Status.CANCELLED, actor=self.vendor)

        with self.captureOnCommitCallbacks(execute=True):
            order = service.apply_payment_event(self.order.reference, "success")

        gateway.refund.assert_called_once()
        self.assertEqual(order.status, Status.CANCELLED)
        self.assertEqual(order.payment_status, Order.PaymentStatus.REFUNDED)
        self.assertEqual(self.bus.events(event="new.order"), [])

        service.apply_payment_event(self.order.reference, "success")
        service.apply_payment_event(self.order.reference, "failed")
        order.refresh_from_db()
        gateway.refund.assert_called_once()
        self.assertEqual(order.payment_status, Order.PaymentStatus.REFUNDED)

    def test_unknown_reference_and_result(self):
        with self.assertRaises(NotFound):
            self.service.apply_payment_event("missing", "success")
        with self.assertRaises(InvalidPaymentEvent):
            self.service.apply_payment_event(self.order.reference, "pending")


class VendorStatusUpdateTests(OrderFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.gateway = Mock()
        self.gateway.refund.return_value = RefundResult(refund_id="RF-1", status="SUCCESS", raw_response={})
        self.service = OrderService(bus=self.bus, gateway=self.gateway)
        self.service.apply_payment_event(self.order.reference, "success")

    def test_ready_for_pickup_broadcasts_to_worker_pool(self):
        with self.captureOnCommitCallbacks(execute=True):
            order = self.service.update_status(self.order.id, Status.READY_FOR_PICKUP, actor=self.vendor)

        self.assertEqual(order.status, Status.READY_FOR_PICKUP)
        events = self.bus.events(POOL_TOPIC, "order.available")
        self.assertEqual(events[0]["order_id"], str(self.order.id))

    def test_vendor_cannot_set_dispatch_statuses(self):
        with self.assertRaises(Unauthorized):
            self.service.update_status(self.order.id, Status.OUT_FOR_DELIVERY, actor=self.vendor)

    def test_other_vendor_is_rejected(self):
        stranger = User.objects.create_user(email="other@example.com", password="Pass123!", role=User.Role.VENDOR)
        with self.assertRaises(Unauthorized):
            self.service.update_status(self.order.id, Status.READY_FOR_PICKUP, actor=stranger)

    def test_staff_may_update_any_order(self):
        admin = User.objects.create_superuser(email="admin@example.com", password="Pass123!")
        order = self.service.update_status(self.order.id, Status.READY_FOR_PICKUP, actor=admin)
        self.assertEqual(order.status, Status.READY_FOR_PICKUP)

    def test_cancel_paid_order_refunds_without_ledger_entry(self):
        order = self.service.update_status(self.order.id, Status.CANCELLED, actor=self.vendor)

        self.gateway.refund.assert_called_once()
        self.assertEqual(order.status, Status.CANCELLED)
        self.assertEqual(order.payment_status, Order.PaymentStatus.REFUNDED)
        self.assertIsNotNone(order.archived_at)
        self.assertFalse(Transaction.objects.exists())

    def test_refund_failure_aborts_cancellation(self):
        self.gateway.refund.side_effect = ExternalServiceFailure("gateway down")

        with self.assertRaises(ExternalServiceFailure):
            self.service.update_status(self.order.id, Status.CANCELLED, actor=self.vendor)

        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Status.PREPARING)
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.PAID)

    def test_cancel_frees_claimed_worker(self):
        rider_user = User.objects.create_user(email="rider@example.com", password="Pass123!", role=User.Role.RIDER)
        worker = Worker.objects.create(owner=rider_user, name="Tunde", is_available=False)
        Order.objects.filter(id=self.order.id).update(assigned_worker=worker)

        self.service.update_status(self.order.id, Status.CANCELLED, actor=self.vendor)

        worker.refresh_from_db()
        self.assertTrue(worker.is_available)

    def test_cancel_locks_worker_assigned_at_lock_time(self):
        rider_user = User.objects.create_user(email="rider@example.com", password="Pass123!", role=User.Role.RIDER)
        worker = Worker.objects.create(owner=rider_user, name="Tunde", is_available=False)
        Order.objects.filter(id=self.order.id).update(assigned_worker=worker)

        # The first read sees no assignment; the claim lands before the order lock.
        with patch.object(OrderService, "_assigned_worker_id", side_effect=[None, worker.id]) as read:
            order = self.service.update_status(self.order.id, Status.CANCELLED, actor=self.vendor)

        self.assertEqual(read.call_count, 2)
        self.assertEqual(order.status, Status.CANCELLED)
        worker.refresh_from_db()
        self.assertTrue(worker.is_available)

    def test_assignment_that_keeps_moving_reports_busy(self):
        with patch.object(OrderService, "_assigned_worker_id", return_value=uuid.uuid4()):
            with self.assertRaises(OrderBusy):
                self.service.update_status(self.order.id, Status.CANCELLED, actor=self.vendor)

        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Status.PREPARING)

    def test_terminal_order_cannot_be_reopened(self):
        self.service.update_status(self.order.id, Status.CANCELLED, actor=self.vendor)
        with self.assertRaises(InvalidTransition):
            self.service.update_status(self.order.id, Status.PREPARING, actor=self.vendor)


class OrderListingTests(OrderFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.unpaid = self.service.create_order(
            customer=self.customer,
            restaurant=self.restaurant,
            total_amount=Decimal("1500.00"),
            delivery_address="Yaba",
        )
        self.service.apply_payment_event(self.order.reference, "success")

    def test_vendor_orders_are_paid_orders_of_own_restaurant(self):
        stranger = User.objects.create_user(email="other@example.com", password="Pass123!", role=User.Role.VENDOR)
        Restaurant.objects.create(name="Elsewhere", owner=stranger)

        self.assertEqual([o.id for o in OrderService.vendor_orders(self.vendor)], [self.order.id])
        self.assertEqual(list(OrderService.vendor_orders(stranger)), [])

    def test_refunded_orders_stay_on_vendor_list(self):
        Order.objects.filter(id=self.order.id).update(payment_status=Order.PaymentStatus.REFUNDED)
        self.assertEqual([o.id for o in OrderService.vendor_orders(self.vendor)], [self.order.id])

    def test_customer_orders_newest_first(self):
        self.assertEqual(
            [o.id for o in OrderService.customer_orders(self.customer)],
            [self.unpaid.id, self.order.id],
        )


@override_settings(NOTIFICATION_BUS="notifications.bus.InMemoryNotificationBus")
class OrderApiTests(OrderFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.client = APIClient()

    def test_vendor_patches_status(self):
        self.service.apply_payment_event(self.order.reference, "success")
        self.client.force_authenticate(user=self.vendor)

        response = self.client.patch(
            f"/order/{self.order.id}/status/",
            {"status": Status.READY_FOR_PICKUP},
            format="json",
        )

        self.assertEqual(response.status_code, 200, response.data)
        self.assertEqual(response.data["status"], Status.READY_FOR_PICKUP)

    def test_invalid_transition_maps_to_error_payload(self):
        self.client.force_authenticate(user=self.vendor)

        response = self.client.patch(
            f"/order/{self.order.id}/status/",
            {"status": Status.READY_FOR_PICKUP},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["kind"], "invalid_transition")

    def test_status_update_requires_authentication(self):
        response = self.client.patch(f"/order/{self.order.id}/status/", {"status": Status.PREPARING}, format="json")
        self.assertEqual(response.status_code, 401)

    def test_tracking_is_public(self):
        response = self.client.get(f"/order/track/{self.order.tracking_id}/")

        self.assertEqual(response.status_code, 200, response.data)
        self.assertEqual(response.data["reference"], self.order.reference)
        self.assertNotIn("delivery_code", response.data)

    def test_unknown_tracking_id_is_404(self):
        response = self.client.get("/order/track/TRK-NOPE/")
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.data["kind"], "not_found")

    def test_vendor_and_customer_lists(self):
        self.service.apply_payment_event(self.order.reference, "success")

        self.client.force_authenticate(user=self.vendor)
        vendor_rows = self.client.get("/order/vendor/").data
        self.client.force_authenticate(user=self.customer)
        customer_rows = self.client.get("/order/mine/").data

        self.assertEqual([row["id"] for row in vendor_rows], [str(self.order.id)])
        self.assertEqual([row["id"] for row in customer_rows], [str(self.order.id)])
