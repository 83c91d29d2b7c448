# apps/inventory/services.py
import logging
from django.db import transaction
from django.db.models import F
from django.core.exceptions import ValidationError

from .models import StockItem, InventoryTransaction
from apps.utils.exceptions import BusinessLogicException

logger = logging.getLogger(__name__)


class InventoryService:
    """
    Stock reservations for orders awaiting payment.

    Lifecycle per order: reserve_for_order at checkout, then exactly one of
    commit_for_order (payment captured) or release_for_order (payment failed /
    reservation expired). `Order.stock_reserved` records which side we are on,
    so commit and release are safe to call on an order that holds nothing.
    Callers hold the Order row lock; StockItem rows are always locked in id
    order to avoid deadlocks between concurrent checkouts.
    """

    @staticmethod
    def _quantities(order):
        quantities = {}
        for line in order.items.all():
            quantities[line.item_id] = quantities.get(line.item_id, 0) + line.quantity
        return quantities

    @staticmethod
    def _lock(item_ids):
        return {
            item.id: item
            for item in StockItem.objects.select_for_update().filter(id__in=sorted(item_ids)).order_by("id")
        }

    @staticmethod
    @transaction.atomic
    def reserve_for_order(order):
        """
        Bulk Stock Reservation with Deadlock Protection.
        Raises BusinessLogicException(code="stock_out") without reserving anything
        if any line cannot be covered.
        """
        if order.stock_reserved:
            return False

        quantities = InventoryService._quantities(order)
        locked = InventoryService._lock(quantities)

        for item_id in sorted(quantities):
            item = locked[item_id]
            if item.available_stock < quantities[item_id]:
                raise BusinessLogicException(
                    f"Insufficient stock for {item.sku}. Requested: {quantities[item_id]}, Available: {item.available_stock}",
                    code="stock_out"
                )

        for item_id in sorted(quantities):
            StockItem.objects.filter(id=item_id).update(reserved_stock=F("reserved_stock") + quantities[item_id])
            InventoryTransaction.objects.create(
                item_id=item_id,
                transaction_type="reserve",
                quantity=quantities[item_id],
                reference=f"order:{order.order_number}",
            )

        order.stock_reserved = True
        order.save(update_fields=["stock_reserved", "updated_at"])
        return True

    @staticmethod
    @transaction.atomic
    def release_for_order(order, reason="payment_failed"):
        """
        Rollback mechanism for failed payments or expired reservations.
        Returns reserved quantities to available stock.
        """
        if not order.stock_reserved:
            return False

        quantities = InventoryService._quantities(order)
        locked = InventoryService._lock(quantities)

        for item_id in sorted(quantities):
            release_qty = min(locked[item_id].reserved_stock, quantities[item_id])
            if release_qty:
                StockItem.objects.filter(id=item_id).update(reserved_stock=F("reserved_stock") - release_qty)
            InventoryTransaction.objects.create(
                item_id=item_id,
                transaction_type="release",
                quantity=release_qty,
                reference=f"{reason}:{order.order_number}",
            )

        order.stock_reserved = False
        order.save(update_fields=["stock_reserved", "updated_at"])
        return True

    @staticmethod
    @transaction.atomic
    def commit_for_order(order):
        """
        Finalizes a sale: decrements total stock (and the reservation, if held).

        The money is already captured when this runs, so a shortfall is logged
        for fulfilment follow-up instead of failing the settlement.
        """
        quantities = InventoryService._quantities(order)
        locked = InventoryService._lock(quantities)

        for item_id in sorted(quantities):
            item = locked[item_id]
            qty = quantities[item_id]
            sellable = min(qty, item.total_stock)
            if sellable < qty:
                logger.error(
                    f"Oversold {item.sku} on order {order.order_number}: needed {qty}, had {item.total_stock}"
                )

            updates = {"total_stock": F("total_stock") - sellable}
            if order.stock_reserved:
                updates["reserved_stock"] = F("reserved_stock") - min(qty, item.reserved_stock, sellable)
            StockItem.objects.filter(id=item_id).update(**updates)

            InventoryTransaction.objects.create(
                item_id=item_id,
                transaction_type="commit",
                quantity=-sellable,
                reference=f"order:{order.order_number}",
            )

        if order.stock_reserved:
            order.stock_reserved = False
            order.save(update_fields=["stock_reserved", "updated_at"])

    @staticmethod
    @transaction.atomic
    def add_stock(item: StockItem, quantity: int, reference=""):
        if quantity <= 0:
            raise ValidationError("Quantity must be positive")

        StockItem.objects.filter(id=item.id).update(total_stock=F("total_stock") + quantity)

        InventoryTransaction.objects.create(
            item=item,
            transaction_type="add",
            quantity=quantity,
            reference=reference,
        )
