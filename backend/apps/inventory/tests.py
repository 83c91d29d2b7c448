# apps/inventory/tests.py
from decimal import Decimal

from django.test import TestCase
from django.contrib.auth import get_user_model
from django.core.exceptions import ValidationError

from apps.inventory.models import StockItem, InventoryTransaction
from apps.inventory.services import InventoryService
from apps.orders.models import Order, OrderItem
from apps.utils.exceptions import BusinessLogicException

User = get_user_model()

class InventoryServiceTestCase(TestCase):
    def setUp(self):
        self.user = User.objects.create_user(email="buyer@example.com", password="pass")
        self.ring = StockItem.objects.create(sku="RING-1", name="Gold Ring", price=Decimal("1500.00"), total_stock=10)
        self.chain = StockItem.objects.create(sku="CHAIN-1", name="Silver Chain", price=Decimal("800.00"), total_stock=3)

        self.order = Order.objects.create(user=self.user, total_amount=Decimal("3800.00"))
        OrderItem.objects.create(order=self.order, item=self.ring, sku="RING-1", product_name="Gold Ring", quantity=2, price=Decimal("1500.00"))
        OrderItem.objects.create(order=self.order, item=self.chain, sku="CHAIN-1", product_name="Silver Chain", quantity=1, price=Decimal("800.00"))

    def _refresh(self):
        self.ring.refresh_from_db()
        self.chain.refresh_from_db()
        self.order.refresh_from_db()

    def test_add_stock(self):
        InventoryService.add_stock(self.ring, 5, "grn_123")
        self.ring.refresh_from_db()
        self.assertEqual(self.ring.total_stock, 15)
        self.assertTrue(InventoryTransaction.objects.filter(item=self.ring, transaction_type="add", quantity=5).exists())

    def test_add_stock_rejects_non_positive(self):
        with self.assertRaises(ValidationError):
            InventoryService.add_stock(self.ring, 0)

    def test_reserve_for_order(self):
        self.assertTrue(InventoryService.reserve_for_order(self.order))
        self._refresh()

        self.assertTrue(self.order.stock_reserved)
        self.assertEqual(self.ring.reserved_stock, 2)
        self.assertEqual(self.ring.available_stock, 8)
        self.assertEqual(self.chain.available_stock, 2)

        # Second call is a no-op
        self.assertFalse(InventoryService.reserve_for_order(self.order))
        self.ring.refresh_from_db()
        self.assertEqual(self.ring.reserved_stock, 2)

    def test_reserve_insufficient_reserves_nothing(self):
        self.chain.total_stock = 0
        self.chain.save()

        with self.assertRaises(BusinessLogicException) as ctx:
            InventoryService.reserve_for_order(self.order)
        self.assertEqual(ctx.exception.code, "stock_out")

        self._refresh()
        self.assertEqual(self.ring.reserved_stock, 0)
        self.assertFalse(self.order.stock_reserved)

    def test_release_for_order(self):
        InventoryService.reserve_for_order(self.order)
        self.assertTrue(InventoryService.release_for_order(self.order))
        self._refresh()

        self.assertFalse(self.order.stock_reserved)
        self.assertEqual(self.ring.reserved_stock, 0)
        self.assertEqual(self.ring.total_stock, 10)
        self.assertFalse(InventoryService.release_for_order(self.order))

    def test_commit_for_order(self):
        InventoryService.reserve_for_order(self.order)
        InventoryService.commit_for_order(self.order)
        self._refresh()

        self.assertFalse(self.order.stock_reserved)
        self.assertEqual(self.ring.total_stock, 8)
        self.assertEqual(self.ring.reserved_stock, 0)
        self.assertEqual(self.chain.total_stock, 2)
        self.assertEqual(
            InventoryTransaction.objects.filter(reference=f"order:{self.order.order_number}", transaction_type="commit").count(),
            2,
        )

    def test_commit_after_release_never_goes_negative(self):
        InventoryService.reserve_for_order(self.order)
        InventoryService.release_for_order(self.order)
        self.chain.total_stock = 0
        self.chain.save()

        InventoryService.commit_for_order(self.order)
        self._refresh()

        self.assertEqual(self.chain.total_stock, 0)
        self.assertEqual(self.ring.total_stock, 8)
