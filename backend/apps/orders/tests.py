# apps/orders/tests.py
from decimal import Decimal
from datetime import timedelta
from unittest.mock import MagicMock, patch

from django.test import TestCase, override_settings
from django.contrib.auth import get_user_model
from django.core import mail
from django.core.cache import cache
from django.utils import timezone
from rest_framework.test import APIClient

from apps.audit.models import AuditLog
from apps.inventory.models import StockItem
from apps.orders.models import Order, generate_order_number, to_minor_units
from apps.orders.services import OrderService
from apps.orders.tasks import send_order_confirmation_email, release_expired_reservations
from apps.payments.models import Payment
from apps.payments.settlement import SettlementEngine
from apps.utils.exceptions import BusinessLogicException

User = get_user_model()


class MoneyHelpersTestCase(TestCase):
    def test_to_minor_units_rounds_half_up(self):
        self.assertEqual(to_minor_units(Decimal("1499.00")), 149900)
        self.assertEqual(to_minor_units("10.005"), 1001)
        self.assertEqual(to_minor_units(Decimal("0.01")), 1)

    def test_order_number_format(self):
        number = generate_order_number()
        self.assertTrue(number.startswith("JW"))
        self.assertEqual(len(number), 14)


@override_settings(SHIPPING_CHARGE=Decimal("99.00"), FREE_SHIPPING_THRESHOLD=Decimal("2000.00"))
class OrderServiceTestCase(TestCase):
    def setUp(self):
        self.user = User.objects.create_user(email="buyer@example.com", password="pass")
        self.ring = StockItem.objects.create(sku="RING-1", name="Gold Ring", price=Decimal("1500.00"), total_stock=5)
        self.studs = StockItem.objects.create(sku="STUD-1", name="Studs", price=Decimal("250.00"), total_stock=5)

    def test_create_then_cancel_releases_stock(self):
        """
        Test: Create -> Reserve -> Cancel -> Release
        """
        order = OrderService.create_order(
            user=self.user,
            items_data=[{"sku": "RING-1", "quantity": 2}],
        )

        self.assertEqual(order.subtotal, Decimal("3000.00"))
        self.assertEqual(order.shipping_charge, Decimal("0.00"))
        self.assertEqual(order.total_minor, 300000)
        self.assertTrue(order.stock_reserved)
        self.ring.refresh_from_db()
        self.assertEqual(self.ring.available_stock, 3)
        self.assertTrue(AuditLog.objects.filter(action="order_created", reference_id=order.order_number).exists())

        OrderService.cancel_order(order)
        order.refresh_from_db()
        self.assertEqual(order.status, "CANCELLED")
        self.assertIsNotNone(order.cancelled_at)
        self.assertTrue(order.is_terminal)

        self.ring.refresh_from_db()
        self.assertEqual(self.ring.reserved_stock, 0)
        self.assertEqual(self.ring.available_stock, 5)

    def test_shipping_below_threshold(self):
        order = OrderService.create_order(
            user=self.user,
            items_data=[{"sku": "STUD-1", "quantity": 1}, {"sku": "STUD-1", "quantity": 1}],
        )
        self.assertEqual(order.items.get().quantity, 2)
        self.assertEqual(order.total_amount, Decimal("599.00"))

    def test_create_order_out_of_stock(self):
        with self.assertRaises(BusinessLogicException) as ctx:
            OrderService.create_order(user=self.user, items_data=[{"sku": "RING-1", "quantity": 6}])
        self.assertEqual(ctx.exception.code, "stock_out")
        self.assertFalse(Order.objects.exists())

    def test_unknown_sku(self):
        with self.assertRaises(BusinessLogicException) as ctx:
            OrderService.create_order(user=self.user, items_data=[{"sku": "NOPE", "quantity": 1}])
        self.assertEqual(ctx.exception.code, "unknown_sku")

    def test_cannot_cancel_shipped(self):
        order = OrderService.create_order(user=self.user, items_data=[{"sku": "RING-1", "quantity": 1}])
        Order.objects.filter(id=order.id).update(status="SHIPPED")
        with self.assertRaises(BusinessLogicException):
            OrderService.cancel_order(order)


class OrderAPITestCase(TestCase):
    def setUp(self):
        cache.clear()
        self.client = APIClient()
        self.user = User.objects.create_user(email="buyer@example.com", password="pass")
        self.other = User.objects.create_user(email="other@example.com", password="pass")
        self.client.force_authenticate(user=self.user)
        StockItem.objects.create(sku="RING-1", name="Gold Ring", price=Decimal("1500.00"), total_stock=5)

    def _create(self, key="k-1", quantity=1):
        return self.client.post(
            "/api/v1/orders/",
            {"items": [{"sku": "RING-1", "quantity": quantity}]},
            format="json",
            HTTP_IDEMPOTENCY_KEY=key,
        )

    def test_create_and_fetch(self):
        res = self._create()
        self.assertEqual(res.status_code, 201)
        order_id = res.data["order"]["id"]
        self.assertEqual(res.data["order"]["status"], "PENDING")
        self.assertEqual(res.data["order"]["payment_status"], "PENDING")

        detail = self.client.get(f"/api/v1/orders/{order_id}/")
        self.assertEqual(detail.status_code, 200)
        self.assertEqual(detail.data["items"][0]["sku"], "RING-1")
        self.assertIsNone(detail.data["latest_payment"])

        listing = self.client.get("/api/v1/orders/")
        self.assertEqual(listing.data["count"], 1)

    def test_create_is_idempotent_per_key(self):
        first = self._create(key="same")
        second = self._create(key="same")
        self.assertEqual(first.data["order"]["id"], second.data["order"]["id"])
        self.assertEqual(Order.objects.count(), 1)

    def test_create_requires_idempotency_key(self):
        res = self.client.post("/api/v1/orders/", {"items": [{"sku": "RING-1", "quantity": 1}]}, format="json")
        self.assertEqual(res.status_code, 400)

    def test_stock_out_maps_to_error_envelope(self):
        res = self._create(quantity=9)
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.data["error"]["code"], "stock_out")

    def test_other_user_cannot_see_order(self):
        order_id = self._create().data["order"]["id"]
        self.client.force_authenticate(user=self.other)
        self.assertEqual(self.client.get(f"/api/v1/orders/{order_id}/").status_code, 404)
        self.assertEqual(self.client.post(f"/api/v1/orders/{order_id}/cancel/").status_code, 404)

    def test_cancel(self):
        order_id = self._create().data["order"]["id"]
        res = self.client.post(f"/api/v1/orders/{order_id}/cancel/")
        self.assertEqual(res.status_code, 200)
        self.assertEqual(Order.objects.get(id=order_id).status, "CANCELLED")

    def test_paid_order_cannot_be_cancelled(self):
        order = Order.objects.get(id=self._create().data["order"]["id"])
        Payment.objects.create(order=order, transaction_id="order_PAID1", amount=order.total_minor)
        SettlementEngine(notifier=MagicMock()).apply_settlement("order_PAID1", Payment.CAPTURED, order.total_minor)

        res = self.client.post(f"/api/v1/orders/{order.id}/cancel/")

        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.data["error"]["code"], "invalid_state")
        order.refresh_from_db()
        self.assertEqual(order.status, "CONFIRMED")
        self.assertEqual(order.payment_status, "PAID")
        self.assertIsNone(order.cancelled_at)
        self.assertFalse(AuditLog.objects.filter(action="order_cancelled").exists())


class OrderTasksTestCase(TestCase):
    def setUp(self):
        self.user = User.objects.create_user(email="buyer@example.com", password="pass")
        self.ring = StockItem.objects.create(sku="RING-1", name="Gold Ring", price=Decimal("1500.00"), total_stock=5)
        self.order = OrderService.create_order(user=self.user, items_data=[{"sku": "RING-1", "quantity": 1}])

    def test_confirmation_email(self):
        result = send_order_confirmation_email(self.order.id)
        self.assertEqual(result, "Sent")
        self.assertEqual(len(mail.outbox), 1)
        self.assertIn(self.order.order_number, mail.outbox[0].subject)
        self.assertEqual(mail.outbox[0].to, ["buyer@example.com"])

    def test_confirmation_email_missing_order(self):
        self.assertEqual(send_order_confirmation_email(999999), "Order Not Found")

    @override_settings(INVENTORY_RESERVATION_MINUTES=30)
    def test_release_expired_reservations(self):
        Order.objects.filter(id=self.order.id).update(created_at=timezone.now() - timedelta(minutes=45))

        self.assertEqual(release_expired_reservations(), 1)

        self.order.refresh_from_db()
        self.ring.refresh_from_db()
        self.assertFalse(self.order.stock_reserved)
        self.assertEqual(self.ring.reserved_stock, 0)

    @override_settings(INVENTORY_RESERVATION_MINUTES=30)
    def test_fresh_reservations_kept(self):
        self.assertEqual(release_expired_reservations(), 0)
        self.ring.refresh_from_db()
        self.assertEqual(self.ring.reserved_stock, 1)
