import uuid
from decimal import Decimal
from unittest.mock import patch

from django.test import TestCase, override_settings

from account.models import User
from dispatch.models import Worker
from order.services import OrderService
from restaurant.models import Restaurant

from .bus import (
    ADMIN_WITHDRAWALS_TOPIC,
    POOL_TOPIC,
    InMemoryNotificationBus,
    NotificationBus,
    PushNotificationBus,
    event_payload,
    get_notification_bus,
    order_topic,
    publish_on_commit,
    restaurant_topic,
    user_topic,
)
from .models import Notification
from .services import NotificationService, NotificationTemplates


class EventPayloadTests(TestCase):
    def test_payload_is_json_safe(self):
        order_id = uuid.uuid4()
        payload = event_payload("order.claimed", order_id=order_id, amount=Decimal("12.50"), attempts=2, note=None)

        self.assertEqual(payload["event"], "order.claimed")
        self.assertEqual(payload["type"], Notification.Type.ORDER_CLAIMED)
        self.assertEqual(payload["order_id"], str(order_id))
        self.assertEqual(payload["amount"], "12.50")
        self.assertEqual(payload["attempts"], 2)
        self.assertIsNone(payload["note"])

    def test_templates_fill_missing_keys_with_blanks(self):
        title, message = NotificationTemplates.render(event_payload("withdrawal.resolved", amount="500.00"))
        self.assertEqual(title, "Withdrawal ")
        self.assertIn("500.00", message)

    def test_unknown_event_gets_generic_template(self):
        self.assertEqual(NotificationTemplates.render({"type": "mystery"}), ("Update", "You have a new update."))


class InMemoryBusTests(TestCase):
    def test_filters_by_topic_and_event(self):
        bus = InMemoryNotificationBus()
        bus.publish(POOL_TOPIC, event_payload("order.available", reference="abc"))
        bus.publish("order:1", event_payload("order.claimed", reference="abc"))

        self.assertEqual(len(bus.events()), 2)
        self.assertEqual(len(bus.events(topic=POOL_TOPIC)), 1)
        self.assertEqual(bus.events(event="order.claimed")[0]["reference"], "abc")

    @override_settings(NOTIFICATION_BUS="notifications.bus.InMemoryNotificationBus")
    def test_bus_is_resolved_from_settings(self):
        self.assertIsInstance(get_notification_bus(), InMemoryNotificationBus)

    def test_publish_waits_for_commit(self):
        bus = InMemoryNotificationBus()
        with self.captureOnCommitCallbacks(execute=False) as callbacks:
            publish_on_commit(bus, POOL_TOPIC, event_payload("order.available"))
            self.assertEqual(bus.published, [])

        self.assertEqual(len(callbacks), 1)

    def test_publish_failures_are_swallowed(self):
        class BrokenBus(NotificationBus):
            def publish(self, topic, payload):
                raise RuntimeError("broker down")

        with self.assertLogs("notifications.bus", level="ERROR") as logs:
            with self.captureOnCommitCallbacks(execute=True):
                publish_on_commit(BrokenBus(), POOL_TOPIC, event_payload("order.available"))

        self.assertIn("Notification publish failed", logs.output[0])


class PushNotificationBusTests(TestCase):
    def setUp(self):
        self.bus = PushNotificationBus()
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
        )

    def test_order_topic_notifies_customer(self):
        self.bus.publish(order_topic(self.order), event_payload("order.delivered", reference=self.order.reference))

        note = Notification.objects.get(user=self.customer)
        self.assertEqual(note.type, Notification.Type.ORDER_DELIVERED)
        self.assertIn(self.order.reference, note.message)

    def test_restaurant_topic_notifies_owner(self):
        self.bus.publish(restaurant_topic(self.restaurant.id), event_payload("new.order", reference="r1"))
        self.assertTrue(Notification.objects.filter(user=self.vendor, type=Notification.Type.NEW_ORDER).exists())

    def test_pool_topic_reaches_available_workers_only(self):
        online = User.objects.create_user(email="on@example.com", password="Pass123!", role=User.Role.RIDER)
        offline = User.objects.create_user(email="off@example.com", password="Pass123!", role=User.Role.RIDER)
        Worker.objects.create(owner=online, name="On", is_available=True)
        Worker.objects.create(owner=offline, name="Off", is_available=False)

        self.bus.publish(POOL_TOPIC, event_payload("order.available", reference="r1"))

        self.assertEqual(list(Notification.objects.values_list("user_id", flat=True)), [online.id])

    def test_admin_and_user_topics(self):
        admin = User.objects.create_superuser(email="admin@example.com", password="Pass123!")

        self.bus.publish(ADMIN_WITHDRAWALS_TOPIC, event_payload("withdrawal.requested", amount="100.00"))
        self.bus.publish(user_topic(self.customer.id), event_payload("withdrawal.resolved", status="SUCCESS"))

        self.assertTrue(Notification.objects.filter(user=admin, type=Notification.Type.WITHDRAWAL_REQUESTED).exists())
        self.assertTrue(Notification.objects.filter(user=self.customer, type=Notification.Type.WITHDRAWAL_RESOLVED).exists())

    def test_unknown_topic_is_ignored(self):
        self.bus.publish("galaxy:1", event_payload("order.delivered"))
        self.assertFalse(Notification.objects.exists())

    def test_push_errors_do_not_lose_stored_notification(self):
        with patch.object(NotificationService, "_send_push_to_user", side_effect=RuntimeError("fcm down")):
            note = NotificationService.notify(
                user=self.customer,
                notification_type=Notification.Type.ORDER_PICKED_UP,
                title="Order On The Way",
                message="Picked up",
            )

        self.assertTrue(Notification.objects.filter(id=note.id).exists())
