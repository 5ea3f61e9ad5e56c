import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from decimal import Decimal
from io import StringIO
from unittest.mock import Mock, patch

from django.core.management import call_command
from django.db import connection
from django.test import TestCase, TransactionTestCase, override_settings, skipUnlessDBFeature
from django.utils import timezone
from rest_framework.test import APIClient

from account.models import User
from core.errors import NotFound, Unauthorized
from dispatch.models import Worker
from dispatch.services import (
    AlreadyClaimed,
    DispatchService,
    InvalidCode,
    InvalidStage,
    NotEligible,
    WorkerBusy,
)
from notifications.bus import POOL_TOPIC, InMemoryNotificationBus, order_topic
from order.models import Order
from order.services import OrderService
from order.state_machine import InvalidTransition
from payment.models import Transaction
from payment.services.earnings import EarningsDistributor
from payment.services.gateway import RefundResult
from payment.services.ledger import Ledger
from restaurant.models import Restaurant

Status = Order.Status


def create_paid_order(restaurant, customer, status=Status.READY_FOR_PICKUP, delivery_fee=Decimal("700.00")):
    order = OrderService(bus=InMemoryNotificationBus()).create_order(
        customer=customer,
        restaurant=restaurant,
        total_amount=Decimal("3800.00"),
        delivery_address="4 Bode Thomas Street",
        delivery_fee=delivery_fee,
    )
    Order.objects.filter(id=order.id).update(status=status, payment_status=Order.PaymentStatus.PAID)
    order.refresh_from_db()
    return order


class DispatchFixtureMixin:
    def setUp(self):
        self.bus = InMemoryNotificationBus()
        self.service = DispatchService(bus=self.bus)
        self.vendor = User.objects.create_user(email="vendor@example.com", password="Pass123!", role=User.Role.VENDOR)
        self.customer = User.objects.create_user(
            email="customer@example.com", password="Pass123!", role=User.Role.CUSTOMER
        )
        self.restaurant = Restaurant.objects.create(name="Mama Put", owner=self.vendor)
        self.rider_a_user = User.objects.create_user(email="a@example.com", password="Pass123!", role=User.Role.RIDER)
        self.rider_b_user = User.objects.create_user(email="b@example.com", password="Pass123!", role=User.Role.RIDER)
        self.rider_a = Worker.objects.create(owner=self.rider_a_user, name="Rider A")
        self.rider_b = Worker.objects.create(owner=self.rider_b_user, name="Rider B")
        self.order = create_paid_order(self.restaurant, self.customer)

    def earnings(self, category, user):
        return Transaction.objects.filter(order=self.order, category=category, user=user)


class ClaimTests(DispatchFixtureMixin, TestCase):
    def test_rider_claim_assigns_and_accepts(self):
        with self.captureOnCommitCallbacks(execute=True):
            order = self.service.claim(self.rider_a.id, self.order.id)

        self.rider_a.refresh_from_db()
        self.assertEqual(order.assigned_worker_id, self.rider_a.id)
        self.assertEqual(order.status, Status.RIDER_ACCEPTED)
        self.assertIsNotNone(order.claimed_at)
        self.assertFalse(self.rider_a.is_available)
        events = self.bus.events(order_topic(order), "order.claimed")
        self.assertEqual(events[0]["worker_id"], str(self.rider_a.id))

    def test_second_claim_fails(self):
        self.service.claim(self.rider_a.id, self.order.id)

        with self.assertRaises(AlreadyClaimed):
            self.service.claim(self.rider_b.id, self.order.id)

        self.order.refresh_from_db()
        self.rider_b.refresh_from_db()
        self.assertEqual(self.order.assigned_worker_id, self.rider_a.id)
        self.assertTrue(self.rider_b.is_available)

    def test_same_worker_reclaim_returns_order_unchanged(self):
        first = self.service.claim(self.rider_a.id, self.order.id)
        again = self.service.claim(self.rider_a.id, self.order.id)

        self.assertEqual(again.assigned_worker_id, self.rider_a.id)
        self.assertEqual(again.claimed_at, first.claimed_at)

    def test_lost_update_is_reported_as_already_claimed(self):
        stale = Order.objects.get(id=self.order.id)
        Order.objects.filter(id=self.order.id).update(assigned_worker=self.rider_b, status=Status.RIDER_ACCEPTED)

        with patch.object(DispatchService, "_lock_order", return_value=stale):
            with self.assertRaises(AlreadyClaimed):
                self.service.claim(self.rider_a.id, self.order.id)

        self.rider_a.refresh_from_db()
        self.order.refresh_from_db()
        self.assertTrue(self.rider_a.is_available)
        self.assertEqual(self.order.assigned_worker_id, self.rider_b.id)

    def test_unpaid_order_is_not_eligible(self):
        Order.objects.filter(id=self.order.id).update(payment_status=Order.PaymentStatus.PENDING)
        with self.assertRaises(NotEligible):
            self.service.claim(self.rider_a.id, self.order.id)

    def test_rider_cannot_claim_order_still_preparing(self):
        Order.objects.filter(id=self.order.id).update(status=Status.PREPARING)
        with self.assertRaises(NotEligible):
            self.service.claim(self.rider_a.id, self.order.id)

    def test_logistics_partner_claims_preparing_order_without_status_change(self):
        partner_user = User.objects.create_user(email="fleet@example.com", password="Pass123!", role=User.Role.LOGISTICS)
        partner = Worker.objects.create(owner=partner_user, name="Fleet", kind=Worker.Kind.LOGISTICS_PARTNER)
        Order.objects.filter(id=self.order.id).update(status=Status.PREPARING)

        order = self.service.claim(partner.id, self.order.id)

        self.assertEqual(order.status, Status.PREPARING)
        self.assertEqual(order.assigned_worker_id, partner.id)

    def test_offline_worker_is_busy(self):
        Worker.objects.filter(id=self.rider_a.id).update(is_available=False)
        with self.assertRaises(WorkerBusy):
            self.service.claim(self.rider_a.id, self.order.id)

    def test_worker_with_active_order_is_busy(self):
        self.service.claim(self.rider_a.id, self.order.id)
        Worker.objects.filter(id=self.rider_a.id).update(is_available=True)
        second = create_paid_order(self.restaurant, self.customer)

        with self.assertRaises(WorkerBusy):
            self.service.claim(self.rider_a.id, second.id)

    def test_unknown_order_or_worker(self):
        with self.assertRaises(NotFound):
            self.service.claim(self.rider_a.id, "00000000-0000-0000-0000-000000000000")


@skipUnlessDBFeature("has_select_for_update")
class ConcurrentClaimTests(DispatchFixtureMixin, TransactionTestCase):
    def test_exactly_one_of_two_simultaneous_claims_wins(self):
        barrier = threading.Barrier(2)

        def attempt(worker_id):
            try:
                barrier.wait(timeout=5)
                self.service.claim(worker_id, self.order.id)
                return "claimed"
            except AlreadyClaimed:
                return "lost"
            finally:
                connection.close()

        with ThreadPoolExecutor(max_workers=2) as pool:
            results = list(pool.map(attempt, [self.rider_a.id, self.rider_b.id]))

        self.assertEqual(sorted(results), ["claimed", "lost"])
        self.order.refresh_from_db()
        self.assertIn(self.order.assigned_worker_id, {self.rider_a.id, self.rider_b.id})


@skipUnlessDBFeature("has_select_for_update")
class ConcurrentCancelTests(DispatchFixtureMixin, TransactionTestCase):
    def test_vendor_cancel_racing_delivery_does_not_deadlock(self):
        gateway = Mock()
        gateway.refund.return_value = RefundResult(refund_id="RF-1", status="SUCCESS", raw_response={})
        self.service.claim(self.rider_a.id, self.order.id)
        self.service.confirm_pickup(self.rider_a.id, self.order.id)
        barrier = threading.Barrier(2)

        def deliver():
            try:
                barrier.wait(timeout=5)
                self.service.confirm_delivery(self.rider_a.id, self.order.id, self.order.delivery_code)
                return "delivered"
            except (InvalidStage, InvalidTransition):
                return "too late"
            finally:
                connection.close()

        def cancel():
            try:
                barrier.wait(timeout=5)
                OrderService(bus=self.bus, gateway=gateway).update_status(
                    self.order.id, Status.CANCELLED, actor=self.vendor
                )
                return "cancelled"
            except InvalidTransition:
                return "too late"
            finally:
                connection.close()

        with ThreadPoolExecutor(max_workers=2) as pool:
            results = [future.result() for future in [pool.submit(deliver), pool.submit(cancel)]]

        self.assertEqual(results.count("too late"), 1)
        self.order.refresh_from_db()
        self.rider_a.refresh_from_db()
        self.assertIn(self.order.status, {Status.DELIVERED, Status.CANCELLED})
        self.assertTrue(self.rider_a.is_available)
        earning = self.earnings(Transaction.Category.ORDER_EARNING, self.vendor).get()
        expected = Transaction.Status.SUCCESS if self.order.status == Status.DELIVERED else Transaction.Status.FAILED
        self.assertEqual(earning.status, expected)


class ReleaseTests(DispatchFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.service.claim(self.rider_a.id, self.order.id)

    def test_release_returns_order_to_pool(self):
        with self.captureOnCommitCallbacks(execute=True):
            order = self.service.release(self.rider_a.id, self.order.id, "bike broke down")

        self.rider_a.refresh_from_db()
        self.assertIsNone(order.assigned_worker_id)
        self.assertIsNone(order.claimed_at)
        self.assertEqual(order.status, Status.READY_FOR_PICKUP)
        self.assertTrue(self.rider_a.is_available)
        self.assertEqual(len(self.bus.events(order_topic(order), "order.released")), 1)
        self.assertEqual(len(self.bus.events(POOL_TOPIC, "order.available")), 1)

    def test_released_order_can_be_claimed_by_another_rider(self):
        self.service.release(self.rider_a.id, self.order.id)
        order = self.service.claim(self.rider_b.id, self.order.id)
        self.assertEqual(order.assigned_worker_id, self.rider_b.id)

    def test_only_assigned_worker_may_release(self):
        with self.assertRaises(Unauthorized):
            self.service.release(self.rider_b.id, self.order.id)

    def test_cannot_release_after_pickup(self):
        self.service.confirm_pickup(self.rider_a.id, self.order.id)
        with self.assertRaises(InvalidStage):
            self.service.release(self.rider_a.id, self.order.id)

    def test_expired_claims_are_released(self):
        Order.objects.filter(id=self.order.id).update(claimed_at=timezone.now() - timedelta(minutes=45))

        released = self.service.release_expired_claims()

        self.assertEqual(released, [str(self.order.id)])
        self.order.refresh_from_db()
        self.assertIsNone(self.order.assigned_worker_id)

    def test_fresh_claims_are_kept(self):
        self.assertEqual(self.service.release_expired_claims(), [])
        self.order.refresh_from_db()
        self.assertEqual(self.order.assigned_worker_id, self.rider_a.id)

    @override_settings(NOTIFICATION_BUS="notifications.bus.InMemoryNotificationBus")
    def test_release_stale_claims_command(self):
        Order.objects.filter(id=self.order.id).update(claimed_at=timezone.now() - timedelta(minutes=15))
        out = StringIO()

        call_command("release_stale_claims", minutes=10, stdout=out)

        self.assertIn("Released 1 stale claim(s)", out.getvalue())


class PickupAndDeliveryTests(DispatchFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.service.claim(self.rider_a.id, self.order.id)

    def test_pickup_distributes_vendor_share_once(self):
        order = self.service.confirm_pickup(self.rider_a.id, self.order.id)
        self.service.confirm_pickup(self.rider_a.id, self.order.id)

        self.assertEqual(order.status, Status.OUT_FOR_DELIVERY)
        earnings = self.earnings(Transaction.Category.ORDER_EARNING, self.vendor)
        self.assertEqual(earnings.count(), 1)
        self.assertEqual(earnings.get().amount, Decimal("2337.50"))
        self.assertEqual(earnings.get().status, Transaction.Status.PENDING)
        self.assertEqual(Ledger.available_balance(self.vendor), Decimal("0.00"))

    def test_pickup_by_other_worker_is_rejected(self):
        with self.assertRaises(Unauthorized):
            self.service.confirm_pickup(self.rider_b.id, self.order.id)

    def test_full_delivery_flow(self):
        with self.assertRaises(AlreadyClaimed):
            self.service.claim(self.rider_b.id, self.order.id)
        self.service.confirm_pickup(self.rider_a.id, self.order.id)

        with self.captureOnCommitCallbacks(execute=True):
            order = self.service.confirm_delivery(self.rider_a.id, self.order.id, self.order.delivery_code)

        self.rider_a.refresh_from_db()
        self.assertEqual(order.status, Status.DELIVERED)
        self.assertIsNotNone(order.archived_at)
        self.assertTrue(self.rider_a.is_available)
        fees = self.earnings(Transaction.Category.DELIVERY_FEE, self.rider_a_user)
        self.assertEqual(fees.count(), 1)
        self.assertEqual(fees.get().amount, Decimal("700.00"))
        self.assertEqual(fees.get().status, Transaction.Status.SUCCESS)
        self.assertEqual(self.earnings(Transaction.Category.ORDER_EARNING, self.vendor).count(), 1)
        self.assertEqual(len(self.bus.events(order_topic(order), "order.delivered")), 1)
        self.assertEqual(Ledger.available_balance(self.vendor), Decimal("2337.50"))

    def test_wrong_code_is_rejected(self):
        self.service.confirm_pickup(self.rider_a.id, self.order.id)
        wrong = "0000" if self.order.delivery_code != "0000" else "1111"

        with self.assertRaises(InvalidCode):
            self.service.confirm_delivery(self.rider_a.id, self.order.id, wrong)

        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Status.OUT_FOR_DELIVERY)

    def test_foreign_worker_cannot_deliver(self):
        self.service.confirm_pickup(self.rider_a.id, self.order.id)
        with self.assertRaises(Unauthorized):
            self.service.confirm_delivery(self.rider_b.id, self.order.id, self.order.delivery_code)

    def test_second_delivery_is_invalid_stage(self):
        self.service.confirm_pickup(self.rider_a.id, self.order.id)
        self.service.confirm_delivery(self.rider_a.id, self.order.id, self.order.delivery_code)

        with self.assertRaises(InvalidStage):
            self.service.confirm_delivery(self.rider_a.id, self.order.id, self.order.delivery_code)
        self.assertEqual(self.earnings(Transaction.Category.DELIVERY_FEE, self.rider_a_user).count(), 1)

    def test_missing_delivery_code_is_invalid_stage(self):
        Order.objects.filter(id=self.order.id).update(delivery_code="")
        with self.assertRaises(InvalidStage):
            self.service.confirm_delivery(self.rider_a.id, self.order.id, "1234")

    def test_delivery_requires_pickup_first(self):
        with self.assertRaises(InvalidTransition):
            self.service.confirm_delivery(self.rider_a.id, self.order.id, self.order.delivery_code)

    def test_zero_delivery_fee_posts_no_credit(self):
        Order.objects.filter(id=self.order.id).update(delivery_fee=Decimal("0.00"))
        self.service.confirm_pickup(self.rider_a.id, self.order.id)
        self.service.confirm_delivery(self.rider_a.id, self.order.id, self.order.delivery_code)

        self.assertFalse(self.earnings(Transaction.Category.DELIVERY_FEE, self.rider_a_user).exists())

    def test_cancel_after_pickup_voids_vendor_earning(self):
        gateway = Mock()
        gateway.refund.return_value = RefundResult(refund_id="RF-9", status="SUCCESS", raw_response={})
        self.service.confirm_pickup(self.rider_a.id, self.order.id)

        order = OrderService(bus=self.bus, gateway=gateway).update_status(
            self.order.id, Status.CANCELLED, actor=self.vendor
        )

        self.assertEqual(order.payment_status, Order.PaymentStatus.REFUNDED)
        earning = self.earnings(Transaction.Category.ORDER_EARNING, self.vendor).get()
        self.assertEqual(earning.status, Transaction.Status.FAILED)
        self.assertEqual(Ledger.available_balance(self.vendor), Decimal("0.00"))
        self.assertEqual(EarningsDistributor.pending_balance(self.vendor), Decimal("0.00"))
        self.rider_a.refresh_from_db()
        self.assertTrue(self.rider_a.is_available)


class WorkerViewTests(DispatchFixtureMixin, TestCase):
    def test_available_orders_for_idle_rider(self):
        create_paid_order(self.restaurant, self.customer, status=Status.PREPARING)

        ids = [order.id for order in self.service.available_orders(self.rider_a.id)]

        self.assertEqual(ids, [self.order.id])

    def test_no_pool_while_offline(self):
        self.service.set_availability(self.rider_a.id, False)
        self.assertEqual(list(self.service.available_orders(self.rider_a.id)), [])

    def test_cannot_go_online_with_active_order(self):
        self.service.claim(self.rider_a.id, self.order.id)
        with self.assertRaises(WorkerBusy):
            self.service.set_availability(self.rider_a.id, True)

    def test_active_order_and_history(self):
        self.assertIsNone(self.service.active_order(self.rider_a.id))
        self.service.claim(self.rider_a.id, self.order.id)
        self.assertEqual(self.service.active_order(self.rider_a.id).id, self.order.id)

        self.service.confirm_pickup(self.rider_a.id, self.order.id)
        self.service.confirm_delivery(self.rider_a.id, self.order.id, self.order.delivery_code)

        self.assertIsNone(self.service.active_order(self.rider_a.id))
        self.assertEqual([o.id for o in self.service.delivery_history(self.rider_a.id)], [self.order.id])


    def test_dashboard_counts_jobs_and_lists_active_orders(self):
        self.service.claim(self.rider_a.id, self.order.id)
        self.service.confirm_pickup(self.rider_a.id, self.order.id)
        self.service.confirm_delivery(self.rider_a.id, self.order.id, self.order.delivery_code)
        second = create_paid_order(self.restaurant, self.customer)
        self.service.claim(self.rider_a.id, second.id)

        dashboard = self.service.dashboard(self.rider_a.id)

        self.assertEqual(dashboard["worker"].id, self.rider_a.id)
        self.assertEqual(dashboard["total_jobs"], 1)
        self.assertEqual([o.id for o in dashboard["active_orders"]], [second.id])
        self.assertEqual(dashboard["available_balance"], Decimal("700.00"))
        self.assertEqual(dashboard["pending_balance"], Decimal("700.00"))

    def test_dashboard_unknown_worker(self):
        with self.assertRaises(NotFound):
            self.service.dashboard("00000000-0000-0000-0000-000000000000")


class LogisticsTaskTests(DispatchFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        partner_user = User.objects.create_user(email="fleet@example.com", password="Pass123!", role=User.Role.LOGISTICS)
        self.partner = Worker.objects.create(owner=partner_user, name="Fleet", kind=Worker.Kind.LOGISTICS_PARTNER)
        self.service.claim(self.partner.id, self.order.id)

    def test_rider_task_by_tracking_id(self):
        task = self.service.rider_task(self.order.tracking_id)
        self.assertEqual(task.id, self.order.id)

    def test_rider_task_hidden_for_rider_orders(self):
        other = create_paid_order(self.restaurant, self.customer)
        self.service.claim(self.rider_a.id, other.id)
        with self.assertRaises(NotFound):
            self.service.rider_task(other.tracking_id)

    def test_complete_by_tracking(self):
        self.service.confirm_pickup(self.partner.id, self.order.id)

        order = self.service.complete_by_tracking(self.order.tracking_id, self.order.delivery_code)

        self.assertEqual(order.status, Status.DELIVERED)
        self.assertEqual(self.earnings(Transaction.Category.DELIVERY_FEE, self.partner.owner).count(), 1)


@override_settings(NOTIFICATION_BUS="notifications.bus.InMemoryNotificationBus")
class DispatchApiTests(DispatchFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.client = APIClient()
        self.client.force_authenticate(user=self.rider_a_user)

    def test_claim_and_conflict(self):
        response = self.client.post(f"/dispatch/orders/{self.order.id}/claim/")
        self.assertEqual(response.status_code, 200, response.data)
        self.assertEqual(response.data["status"], Status.RIDER_ACCEPTED)

        self.client.force_authenticate(user=self.rider_b_user)
        response = self.client.post(f"/dispatch/orders/{self.order.id}/claim/")
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.data["kind"], "already_claimed")

    def test_wrong_code_maps_to_invalid_code(self):
        self.service.claim(self.rider_a.id, self.order.id)
        self.service.confirm_pickup(self.rider_a.id, self.order.id)
        wrong = "0000" if self.order.delivery_code != "0000" else "1111"

        response = self.client.post(f"/dispatch/orders/{self.order.id}/deliver/", {"code": wrong}, format="json")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["kind"], "invalid_code")

    def test_available_orders_endpoint(self):
        response = self.client.get("/dispatch/orders/available/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual([row["id"] for row in response.data], [str(self.order.id)])

    def test_user_without_worker_profile_is_forbidden(self):
        self.client.force_authenticate(user=self.customer)
        response = self.client.get("/dispatch/orders/active/")
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.data["kind"], "unauthorized")

    def test_dashboard_endpoint(self):
        self.service.claim(self.rider_a.id, self.order.id)

        response = self.client.get("/dispatch/dashboard/")

        self.assertEqual(response.status_code, 200, response.data)
        self.assertEqual(response.data["worker"]["name"], "Rider A")
        self.assertEqual(response.data["total_jobs"], 0)
        self.assertEqual(response.data["pending_balance"], "700.00")
        self.assertEqual([row["id"] for row in response.data["active_orders"]], [str(self.order.id)])
