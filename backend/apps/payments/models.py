# apps/payments/models.py
from django.db import models
from django.db.models import Q
from django.utils import timezone
from apps.orders.models import Order


class Payment(models.Model):
    """
    One payment attempt against an order, keyed by the gateway's order id.

    Status moves PENDING -> CAPTURED or PENDING -> FAILED exactly once, and
    only through apps.payments.settlement. REFUNDED is bookkeeping set
    outside settlement.
    """
    PENDING = "PENDING"
    CAPTURED = "CAPTURED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"

    STATUS_CHOICES = (
        (PENDING, "Pending"),
        (CAPTURED, "Captured"),
        (FAILED, "Failed"),
        (REFUNDED, "Refunded"),
    )
    TERMINAL_STATUSES = (CAPTURED, FAILED, REFUNDED)

    SOURCE_CHOICES = (
        ("webhook", "Webhook"),
        ("client", "Client Confirmation"),
        ("reconciliation", "Reconciliation"),
    )

    order = models.ForeignKey(
        Order,
        on_delete=models.PROTECT,
        related_name="payments",
    )

    provider = models.CharField(max_length=50, default="razorpay")
    # Gateway order id (order_XXXX). Echoed by every webhook and client callback.
    transaction_id = models.CharField(max_length=100, unique=True)
    provider_payment_id = models.CharField(max_length=100, blank=True, db_index=True)

    # Integer minor units (paise)
    amount = models.PositiveBigIntegerField()
    currency = models.CharField(max_length=3, default="INR")
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=PENDING, db_index=True)
    method = models.CharField(max_length=30, blank=True)

    gateway_payload = models.JSONField(default=dict, blank=True)
    settled_via = models.CharField(max_length=20, choices=SOURCE_CHOICES, blank=True)

    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(auto_now=True)
    settled_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["order"],
                condition=Q(status="CAPTURED"),
                name="one_captured_payment_per_order",
            ),
            models.CheckConstraint(condition=Q(amount__gt=0), name="payment_amount_positive"),
        ]
        indexes = [
            # Reconciliation sweep
            models.Index(fields=["status", "created_at"]),
        ]

    @property
    def is_terminal(self):
        return self.status in self.TERMINAL_STATUSES

    def __str__(self):
        return f"Payment {self.transaction_id} ({self.status})"
