from decimal import Decimal
from io import StringIO
from unittest.mock import Mock, patch

import requests
from django.core.management import call_command
from django.test import TestCase, override_settings
from rest_framework.test import APIClient

from account.models import User
from core.errors import ExternalServiceFailure, NotFound
from dispatch.models import Worker
from notifications.bus import ADMIN_WITHDRAWALS_TOPIC, InMemoryNotificationBus, user_topic
from order.models import Order
from order.services import OrderService
from payment.models import LedgerImmutableError, Transaction, WebhookLog
from payment.services.earnings import EarningsDistributor, vendor_share, wallet_summary
from payment.services.gateway import HttpPaymentGateway
from payment.services.ledger import AlreadyProcessed, Ledger
from payment.services.withdrawals import InsufficientFunds, InvalidAction, InvalidAmount, WithdrawalWorkflow
from restaurant.models import Restaurant


def credit(user, amount, category=Transaction.Category.DELIVERY_FEE):
    return Ledger.post(
        user=user,
        amount=amount,
        entry_type=Transaction.Type.CREDIT,
        category=category,
        status=Transaction.Status.SUCCESS,
    )


class LedgerTests(TestCase):
    def setUp(self):
        self.user = User.objects.create_user(email="rider@example.com", password="Pass123!", role=User.Role.RIDER)

    def test_available_balance_counts_pending_debits(self):
        credit(self.user, "3000")
        Ledger.post(
            user=self.user,
            amount="500",
            entry_type=Transaction.Type.DEBIT,
            category=Transaction.Category.WITHDRAWAL,
            status=Transaction.Status.PENDING,
        )
        Ledger.post(
            user=self.user,
            amount="200",
            entry_type=Transaction.Type.DEBIT,
            category=Transaction.Category.WITHDRAWAL,
            status=Transaction.Status.FAILED,
        )

        self.assertEqual(Ledger.available_balance(self.user), Decimal("2500.00"))

    def test_non_positive_amounts_are_rejected(self):
        with self.assertRaises(ValueError):
            credit(self.user, "0")

    def test_entries_are_immutable(self):
        entry = credit(self.user, "100")

        entry.amount = Decimal("1000")
        with self.assertRaises(LedgerImmutableError):
            entry.save()
        with self.assertRaises(LedgerImmutableError):
            entry.delete()

    def test_settle_only_once(self):
        entry = Ledger.post(
            user=self.user,
            amount="150",
            entry_type=Transaction.Type.DEBIT,
            category=Transaction.Category.WITHDRAWAL,
            status=Transaction.Status.PENDING,
        )

        Ledger.settle(entry.id, Transaction.Status.SUCCESS)
        with self.assertRaises(AlreadyProcessed):
            Ledger.settle(entry.id, Transaction.Status.FAILED)


class EarningsFixtureMixin:
    def setUp(self):
        self.vendor = User.objects.create_user(email="vendor@example.com", password="Pass123!", role=User.Role.VENDOR)
        self.customer = User.objects.create_user(
            email="customer@example.com", password="Pass123!", role=User.Role.CUSTOMER
        )
        self.restaurant = Restaurant.objects.create(name="Mama Put", owner=self.vendor)
        self.order = OrderService(bus=InMemoryNotificationBus()).create_order(
            customer=self.customer,
            restaurant=self.restaurant,
            total_amount=Decimal("3800.00"),
            delivery_address="4 Bode Thomas Street",
            delivery_fee=Decimal("700.00"),
        )
        self.distributor = EarningsDistributor()

    def mark_paid(self, status=Order.Status.PREPARING):
        Order.objects.filter(id=self.order.id).update(payment_status=Order.PaymentStatus.PAID, status=status)
        self.order.refresh_from_db()


class EarningsDistributorTests(EarningsFixtureMixin, TestCase):
    def test_vendor_share_formula(self):
        self.assertEqual(vendor_share(Decimal("3800"), Decimal("700"), Decimal("350"), Decimal("0.85")), Decimal("2337.50"))
        self.assertEqual(vendor_share(Decimal("3800"), Decimal("700")), Decimal("2337.50"))

    def test_vendor_share_never_negative(self):
        self.assertEqual(vendor_share(Decimal("500"), Decimal("400")), Decimal("0.00"))

    def test_distribute_twice_posts_one_credit(self):
        self.mark_paid()

        first, created = self.distributor.distribute(self.order)
        second, created_again = self.distributor.distribute(self.order)

        self.assertTrue(created)
        self.assertFalse(created_again)
        self.assertEqual(first.id, second.id)
        self.assertEqual(
            Transaction.objects.filter(order=self.order, category=Transaction.Category.ORDER_EARNING).count(), 1
        )
        self.assertEqual(first.amount, Decimal("2337.50"))
        self.assertEqual(first.user, self.vendor)

    def test_unpaid_order_is_not_distributed(self):
        entry, created = self.distributor.distribute(self.order)

        self.assertIsNone(entry)
        self.assertFalse(created)
        self.assertFalse(Transaction.objects.exists())

    def test_zero_share_is_not_distributed(self):
        Order.objects.filter(id=self.order.id).update(total_amount=Decimal("900.00"))
        self.mark_paid()

        entry, _ = self.distributor.distribute(self.order)

        self.assertIsNone(entry)

    def test_duplicate_insert_race_returns_existing_row(self):
        self.mark_paid()
        winner, _ = self.distributor.distribute(self.order)

        # Simulate the pre-check missing the concurrent winner.
        with patch.object(Transaction.objects, "filter") as filtered:
            filtered.return_value.first.return_value = None
            entry, created = self.distributor._post_once(
                user=self.vendor,
                order=self.order,
                amount=Decimal("2337.50"),
                category=Transaction.Category.ORDER_EARNING,
                description="race",
            )

        self.assertFalse(created)
        self.assertEqual(entry.id, winner.id)

    def test_earning_is_held_until_delivery(self):
        self.mark_paid(status=Order.Status.OUT_FOR_DELIVERY)

        held, created = self.distributor.distribute(self.order)

        self.assertTrue(created)
        self.assertEqual(held.status, Transaction.Status.PENDING)
        self.assertEqual(Ledger.available_balance(self.vendor), Decimal("0.00"))

        Order.objects.filter(id=self.order.id).update(status=Order.Status.DELIVERED)
        released, created_again = self.distributor.distribute(self.order)

        self.assertFalse(created_again)
        self.assertEqual(released.id, held.id)
        self.assertEqual(released.status, Transaction.Status.SUCCESS)
        self.assertEqual(Ledger.available_balance(self.vendor), Decimal("2337.50"))

    def test_void_fails_held_earnings(self):
        self.mark_paid(status=Order.Status.OUT_FOR_DELIVERY)
        held, _ = self.distributor.distribute(self.order)

        self.assertEqual(EarningsDistributor.void(self.order), 1)

        held.refresh_from_db()
        self.assertEqual(held.status, Transaction.Status.FAILED)
        self.assertEqual(EarningsDistributor.void(self.order), 0)
        self.assertEqual(wallet_summary(self.vendor)["pending_balance"], Decimal("0.00"))

    def test_cancelled_order_is_not_distributed(self):
        self.mark_paid(status=Order.Status.CANCELLED)
        entry, created = self.distributor.distribute(self.order)

        self.assertIsNone(entry)
        self.assertFalse(created)

    def test_wallet_summary(self):
        self.mark_paid()
        summary = wallet_summary(self.vendor)
        self.assertEqual(summary["pending_balance"], Decimal("2337.50"))
        self.assertEqual(summary["available_balance"], Decimal("0.00"))

        Order.objects.filter(id=self.order.id).update(status=Order.Status.OUT_FOR_DELIVERY)
        self.distributor.distribute(self.order)
        summary = wallet_summary(self.vendor)

        self.assertEqual(summary["pending_balance"], Decimal("2337.50"))
        self.assertEqual(summary["available_balance"], Decimal("0.00"))

        Order.objects.filter(id=self.order.id).update(status=Order.Status.DELIVERED)
        self.distributor.distribute(self.order)
        summary = wallet_summary(self.vendor)

        self.assertEqual(summary["pending_balance"], Decimal("0.00"))
        self.assertEqual(summary["available_balance"], Decimal("2337.50"))
        self.assertEqual(summary["total_earnings"], Decimal("2337.50"))
        self.assertEqual(summary["currency"], "NGN")

    def test_worker_pending_balance_tracks_active_orders(self):
        rider_user = User.objects.create_user(email="rider@example.com", password="Pass123!", role=User.Role.RIDER)
        worker = Worker.objects.create(owner=rider_user, name="Tunde", is_available=False)
        Order.objects.filter(id=self.order.id).update(assigned_worker=worker, status=Order.Status.RIDER_ACCEPTED)

        self.assertEqual(EarningsDistributor.pending_balance(rider_user), Decimal("700.00"))


class WithdrawalWorkflowTests(TestCase):
    def setUp(self):
        self.bus = InMemoryNotificationBus()
        self.workflow = WithdrawalWorkflow(bus=self.bus)
        self.user = User.objects.create_user(email="rider@example.com", password="Pass123!", role=User.Role.RIDER)
        credit(self.user, "3000")
        self.bank = {"bank_name": "GTBank", "account_number": "0123456789", "account_name": "Tunde A"}

    def test_request_creates_pending_debit(self):
        with self.captureOnCommitCallbacks(execute=True):
            entry = self.workflow.request_withdrawal(self.user, Decimal("1000"), self.bank)

        self.assertEqual(entry.status, Transaction.Status.PENDING)
        self.assertEqual(entry.type, Transaction.Type.DEBIT)
        self.assertEqual(entry.category, Transaction.Category.WITHDRAWAL)
        self.assertTrue(entry.reference.startswith("PAYOUT-"))
        self.assertEqual(entry.metadata["bank_details"]["bank_name"], "GTBank")
        self.assertEqual(Ledger.available_balance(self.user), Decimal("2000.00"))
        self.assertEqual(len(self.bus.events(ADMIN_WITHDRAWALS_TOPIC, "withdrawal.requested")), 1)

    def test_overdraw_is_rejected_without_writing(self):
        with self.assertRaises(InsufficientFunds):
            self.workflow.request_withdrawal(self.user, Decimal("5000"), self.bank)

        self.assertFalse(Transaction.objects.filter(category=Transaction.Category.WITHDRAWAL).exists())

    def test_sequential_requests_cannot_overdraw(self):
        self.workflow.request_withdrawal(self.user, Decimal("2000"), self.bank)
        with self.assertRaises(InsufficientFunds):
            self.workflow.request_withdrawal(self.user, Decimal("1500"), self.bank)
        self.assertGreaterEqual(Ledger.available_balance(self.user), Decimal("0.00"))

    def test_invalid_amounts(self):
        for amount in (Decimal("0"), Decimal("-50"), Decimal("99.99"), "abc", "NaN", "Infinity"):
            with self.subTest(amount=amount):
                with self.assertRaises(InvalidAmount):
                    self.workflow.request_withdrawal(self.user, amount, self.bank)

    def test_reject_restores_balance_exactly(self):
        before = Ledger.available_balance(self.user)
        entry = self.workflow.request_withdrawal(self.user, Decimal("1234.56"), self.bank)

        with self.captureOnCommitCallbacks(execute=True):
            resolved = self.workflow.resolve(entry.id, "REJECT")

        self.assertEqual(resolved.status, Transaction.Status.FAILED)
        self.assertEqual(Ledger.available_balance(self.user), before)
        event = self.bus.events(user_topic(self.user.id), "withdrawal.resolved")[0]
        self.assertEqual(event["status"], Transaction.Status.FAILED)

    def test_approve_keeps_funds_debited(self):
        entry = self.workflow.request_withdrawal(self.user, Decimal("1000"), self.bank)

        resolved = self.workflow.resolve(entry.id, "approve")

        self.assertEqual(resolved.status, Transaction.Status.SUCCESS)
        self.assertEqual(Ledger.available_balance(self.user), Decimal("2000.00"))

    def test_resolve_errors(self):
        entry = self.workflow.request_withdrawal(self.user, Decimal("1000"), self.bank)

        with self.assertRaises(InvalidAction):
            self.workflow.resolve(entry.id, "HOLD")
        with self.assertRaises(NotFound):
            self.workflow.resolve("00000000-0000-0000-0000-000000000000", "APPROVE")

        self.workflow.resolve(entry.id, "APPROVE")
        with self.assertRaises(AlreadyProcessed):
            self.workflow.resolve(entry.id, "REJECT")

    def test_pending_withdrawals_lists_only_pending(self):
        first = self.workflow.request_withdrawal(self.user, Decimal("500"), self.bank)
        second = self.workflow.request_withdrawal(self.user, Decimal("600"), self.bank)
        self.workflow.resolve(first.id, "APPROVE")

        self.assertEqual([entry.id for entry in self.workflow.pending_withdrawals()], [second.id])


class HttpPaymentGatewayTests(EarningsFixtureMixin, TestCase):
    def test_mock_flow_without_base_url(self):
        result = HttpPaymentGateway(base_url="").refund(self.order)
        self.assertTrue(result.refund_id.startswith("MOCK-RF-"))
        self.assertTrue(result.raw_response["mock"])

    @patch("payment.services.gateway.requests.post")
    def test_posts_refund_with_bearer_key(self, mock_post):
        mock_post.return_value = Mock(ok=True, json=Mock(return_value={"id": "RF-77", "status": "success"}))

        result = HttpPaymentGateway(base_url="https://pay.example.com/", secret_key="sk_test").refund(self.order)

        self.assertEqual(result.refund_id, "RF-77")
        self.assertEqual(result.status, "SUCCESS")
        args, kwargs = mock_post.call_args
        self.assertEqual(args[0], "https://pay.example.com/refunds")
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer sk_test")
        self.assertEqual(kwargs["json"]["reference"], self.order.reference)

    @patch("payment.services.gateway.requests.post")
    def test_gateway_errors_raise_external_failure(self, mock_post):
        gateway = HttpPaymentGateway(base_url="https://pay.example.com", secret_key="sk_test")

        mock_post.return_value = Mock(ok=False, text="boom", json=Mock(side_effect=ValueError))
        with self.assertRaises(ExternalServiceFailure):
            gateway.refund(self.order)

        mock_post.side_effect = requests.ConnectionError("down")
        with self.assertRaises(ExternalServiceFailure):
            gateway.refund(self.order)


@override_settings(NOTIFICATION_BUS="notifications.bus.InMemoryNotificationBus", PAYMENT_WEBHOOK_SECRET="s3cret")
class PaymentWebhookTests(EarningsFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.client = APIClient(HTTP_X_WEBHOOK_SECRET="s3cret")

    def test_success_event_marks_order_paid(self):
        response = self.client.post(
            "/payment/webhook/",
            {"reference": self.order.reference, "result": "success"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.PAID)
        self.assertEqual(self.order.status, Order.Status.PREPARING)
        self.assertTrue(WebhookLog.objects.get(reference=self.order.reference).processed)

    def test_unknown_reference_is_logged_unprocessed(self):
        response = self.client.post("/payment/webhook/", {"reference": "nope", "result": "success"}, format="json")

        self.assertEqual(response.status_code, 404)
        log = WebhookLog.objects.get(reference="nope")
        self.assertFalse(log.processed)
        self.assertEqual(log.event_type, "PAYMENT_SYNC_FAILED")

    def test_invalid_json(self):
        response = self.client.generic("POST", "/payment/webhook/", "not-json", content_type="application/json")

        self.assertEqual(response.status_code, 400)
        self.assertTrue(WebhookLog.objects.filter(event_type="INVALID_JSON").exists())

    def test_secret_header_is_enforced(self):
        payload = {"reference": self.order.reference, "result": "success"}

        rejected = APIClient().post("/payment/webhook/", payload, format="json")
        forged = APIClient().post("/payment/webhook/", payload, format="json", HTTP_X_WEBHOOK_SECRET="guess")
        accepted = self.client.post("/payment/webhook/", payload, format="json")

        self.assertEqual(rejected.status_code, 403)
        self.assertEqual(forged.status_code, 403)
        self.assertEqual(accepted.status_code, 200)

    @override_settings(PAYMENT_WEBHOOK_SECRET="", DEBUG=False)
    def test_unsigned_webhooks_refused_outside_debug(self):
        response = APIClient().post(
            "/payment/webhook/",
            {"reference": self.order.reference, "result": "success"},
            format="json",
        )

        self.assertEqual(response.status_code, 403)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, Order.PaymentStatus.PENDING)
        self.assertFalse(WebhookLog.objects.exists())

    @override_settings(PAYMENT_WEBHOOK_SECRET="", DEBUG=True)
    def test_unsigned_webhooks_allowed_in_debug(self):
        response = APIClient().post(
            "/payment/webhook/",
            {"reference": self.order.reference, "result": "success"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)


@override_settings(NOTIFICATION_BUS="notifications.bus.InMemoryNotificationBus")
class WalletApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user = User.objects.create_user(email="rider@example.com", password="Pass123!", role=User.Role.RIDER)
        self.admin = User.objects.create_superuser(email="admin@example.com", password="Pass123!")
        credit(self.user, "3000")

    def request_withdrawal(self, amount):
        self.client.force_authenticate(user=self.user)
        return self.client.post(
            "/payment/withdrawals/",
            {"amount": amount, "bank_name": "GTBank", "account_number": "0123456789", "account_name": "Tunde A"},
            format="json",
        )

    def test_wallet_summary_and_history(self):
        self.client.force_authenticate(user=self.user)

        response = self.client.get("/payment/wallet/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(Decimal(response.data["available_balance"]), Decimal("3000.00"))
        self.assertEqual(len(response.data["history"]), 1)

    def test_insufficient_funds_payload(self):
        response = self.request_withdrawal("5000.00")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["kind"], "insufficient_funds")

    def test_admin_resolves_pending_withdrawal(self):
        created = self.request_withdrawal("1000.00")
        self.assertEqual(created.status_code, 201, created.data)

        self.client.force_authenticate(user=self.admin)
        pending = self.client.get("/payment/withdrawals/pending/")
        self.assertEqual([row["id"] for row in pending.data], [created.data["id"]])

        resolved = self.client.post(
            f"/payment/withdrawals/{created.data['id']}/resolve/", {"action": "REJECT"}, format="json"
        )
        self.assertEqual(resolved.status_code, 200)
        self.assertEqual(resolved.data["status"], Transaction.Status.FAILED)

        again = self.client.post(
            f"/payment/withdrawals/{created.data['id']}/resolve/", {"action": "APPROVE"}, format="json"
        )
        self.assertEqual(again.status_code, 409)
        self.assertEqual(again.data["kind"], "already_processed")

    def test_non_staff_cannot_resolve(self):
        created = self.request_withdrawal("1000.00")
        response = self.client.post(
            f"/payment/withdrawals/{created.data['id']}/resolve/", {"action": "APPROVE"}, format="json"
        )
        self.assertEqual(response.status_code, 403)


class ReconcileWalletsCommandTests(TestCase):
    def test_refreshes_cached_balances(self):
        user = User.objects.create_user(email="rider@example.com", password="Pass123!", role=User.Role.RIDER)
        worker = Worker.objects.create(owner=user, name="Tunde")
        credit(user, "700")
        out = StringIO()

        call_command("reconcile_wallets", stdout=out)

        worker.refresh_from_db()
        self.assertEqual(worker.wallet_balance, Decimal("700.00"))
        self.assertIn("Reconciled 1 wallet(s)", out.getvalue())
