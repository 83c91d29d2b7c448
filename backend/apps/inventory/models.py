# apps/inventory/models.py
from django.db import models
from django.utils import timezone
from django.core.exceptions import ValidationError


class StockItem(models.Model):
    """
    Sellable piece, uniquely identified by SKU.
    `reserved_stock` is held by orders awaiting payment.
    """
    sku = models.CharField(max_length=100, unique=True)
    name = models.CharField(max_length=255)
    price = models.DecimalField(max_digits=10, decimal_places=2, default="0.00")

    total_stock = models.PositiveIntegerField(default=0)
    reserved_stock = models.PositiveIntegerField(default=0)

    updated_at = models.DateTimeField(auto_now=True)

    @property
    def available_stock(self):
        return self.total_stock - self.reserved_stock

    def clean(self):
        if self.total_stock < self.reserved_stock:
            raise ValidationError("Total stock cannot be less than reserved stock.")

    def __str__(self):
        return f"{self.sku} ({self.available_stock} available)"


class InventoryTransaction(models.Model):
    """
    Immutable ledger of all stock movements.
    """
    TRANSACTION_TYPE_CHOICES = (
        ("add", "Add Stock"),
        ("reserve", "Reserve Stock"),
        ("release", "Release Stock"),
        ("commit", "Commit Stock"),
    )

    item = models.ForeignKey(
        StockItem,
        on_delete=models.CASCADE,
        related_name="transactions"
    )

    transaction_type = models.CharField(max_length=20, choices=TRANSACTION_TYPE_CHOICES)
    quantity = models.IntegerField()
    reference = models.CharField(max_length=100, blank=True)
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        indexes = [models.Index(fields=["reference"])]

    def __str__(self):
        return f"{self.transaction_type} {self.quantity} for {self.item.sku}"
