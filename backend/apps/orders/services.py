import logging
from decimal import Decimal

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from apps.inventory.models import StockItem
from apps.inventory.services import InventoryService
from apps.audit.services import AuditService
from apps.utils.exceptions import BusinessLogicException

from .models import Order, OrderItem

logger = logging.getLogger(__name__)


class OrderService:

    @staticmethod
    def shipping_for(subtotal: Decimal) -> Decimal:
        if subtotal >= settings.FREE_SHIPPING_THRESHOLD:
            return Decimal("0.00")
        return settings.SHIPPING_CHARGE

    @staticmethod
    @transaction.atomic
    def create_order(user, items_data, shipping_address=None):
        """
        Creates a PENDING order priced from current stock records and reserves
        its stock. `items_data` is a list of {"sku", "quantity"} dicts.
        """
        if not items_data:
            raise BusinessLogicException("Order has no items", code="empty_order")

        quantities = {}
        for line in items_data:
            quantities[line["sku"]] = quantities.get(line["sku"], 0) + int(line["quantity"])

        stock = {s.sku: s for s in StockItem.objects.filter(sku__in=quantities)}
        missing = sorted(set(quantities) - set(stock))
        if missing:
            raise BusinessLogicException(f"Items not found: {', '.join(missing)}", code="unknown_sku")

        subtotal = sum((stock[sku].price * qty for sku, qty in quantities.items()), Decimal("0.00"))
        shipping = OrderService.shipping_for(subtotal)

        order = Order.objects.create(
            user=user,
            subtotal=subtotal,
            shipping_charge=shipping,
            total_amount=subtotal + shipping,
            shipping_address_json=shipping_address or {},
        )
        OrderItem.objects.bulk_create([
            OrderItem(
                order=order,
                item=stock[sku],
                sku=sku,
                product_name=stock[sku].name,
                quantity=qty,
                price=stock[sku].price,
            )
            for sku, qty in sorted(quantities.items())
        ])

        InventoryService.reserve_for_order(order)
        AuditService.order_created(order)

        logger.info(f"Order {order.order_number} created for user {user.id}: total {order.total_amount}")
        return order

    @staticmethod
    @transaction.atomic
    def cancel_order(order):
        # Pessimistic Lock: settlement locks the same row
        order = Order.objects.select_for_update().get(id=order.id)

        # Paid orders need a refund first, which happens outside this service
        if order.status != "PENDING" or order.payment_status == "PAID":
            raise BusinessLogicException(
                f"Cannot cancel order in state: {order.status}/{order.payment_status}",
                code="invalid_state",
            )

        order.status = "CANCELLED"
        order.cancelled_at = timezone.now()
        order.save(update_fields=["status", "cancelled_at", "updated_at"])

        InventoryService.release_for_order(order, reason="order_cancel")

        AuditService.order_cancelled(order)
        return order
