from decimal import Decimal, ROUND_HALF_UP

from django.conf import settings
from django.db import models
from django.utils import timezone
from django.utils.crypto import get_random_string

User = settings.AUTH_USER_MODEL

ORDER_NUMBER_CHARS = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


def generate_order_number(prefix="JW"):
    # e.g. JW250214K7Q2XM
    return f"{prefix}{timezone.now():%y%m%d}{get_random_string(6, allowed_chars=ORDER_NUMBER_CHARS)}"


def to_minor_units(amount) -> int:
    """Rupees (Decimal/str) -> integer paise, ROUND_HALF_UP."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class Order(models.Model):
    STATUS_CHOICES = (
        ("PENDING", "Pending"),
        ("CONFIRMED", "Confirmed"),
        ("PROCESSING", "Processing"),
        ("SHIPPED", "Shipped"),
        ("DELIVERED", "Delivered"),
        ("CANCELLED", "Cancelled"),
        ("RETURNED", "Returned"),
    )

    PAYMENT_STATUS_CHOICES = (
        ("PENDING", "Pending"),
        ("PAID", "Paid"),
        ("FAILED", "Failed"),
    )

    TERMINAL_STATUSES = ("CANCELLED", "RETURNED")

    order_number = models.CharField(max_length=20, unique=True, default=generate_order_number, editable=False)
    user = models.ForeignKey(User, on_delete=models.PROTECT, related_name="orders")

    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="PENDING", db_index=True)
    payment_status = models.CharField(max_length=20, choices=PAYMENT_STATUS_CHOICES, default="PENDING", db_index=True)

    # Presentation amounts in rupees. Settlement works on Payment.amount (paise).
    subtotal = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    discount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    shipping_charge = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    total_amount = models.DecimalField(max_digits=12, decimal_places=2)

    # Snapshot of address at time of order (Preserves history even if user updates profile)
    shipping_address_json = models.JSONField(default=dict, blank=True, help_text="Snapshot of address")

    # True while InventoryService holds reserved stock for this order
    stock_reserved = models.BooleanField(default=False)

    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(auto_now=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        indexes = [
            # Optimize "My Orders" history
            models.Index(fields=['user', '-created_at']),
            # Optimize admin dashboards / reconciliation sweeps
            models.Index(fields=['status', 'payment_status', 'created_at']),
        ]

    @property
    def total_minor(self) -> int:
        return to_minor_units(self.total_amount)

    @property
    def is_terminal(self) -> bool:
        return self.status in self.TERMINAL_STATUSES

    def __str__(self):
        return f"Order {self.order_number} ({self.status}/{self.payment_status})"


class OrderItem(models.Model):
    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name="items")
    item = models.ForeignKey('inventory.StockItem', on_delete=models.PROTECT, related_name="order_lines")

    # Denormalized fields to preserve order history even if the catalog changes
    sku = models.CharField(max_length=100)
    product_name = models.CharField(max_length=255)
    quantity = models.PositiveIntegerField()
    price = models.DecimalField(max_digits=10, decimal_places=2)

    @property
    def line_total(self):
        return self.price * self.quantity

    def __str__(self):
        return f"{self.sku} x {self.quantity}"
