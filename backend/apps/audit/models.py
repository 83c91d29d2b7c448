from django.db import models
from django.conf import settings
from django.utils import timezone


class AuditLogQuerySet(models.QuerySet):
    def anomalies(self, reason=None):
        qs = self.filter(action="settlement_anomaly")
        if reason:
            qs = qs.filter(metadata__reason=reason)
        return qs

    def for_reference(self, reference_id):
        return self.filter(reference_id=reference_id)

    def update(self, **kwargs):
        raise RuntimeError("Audit logs are immutable (bulk update blocked)")

    def delete(self):
        raise RuntimeError("Audit logs are immutable (bulk delete blocked)")


class AuditLog(models.Model):
    """
    Append-only trail of order and payment events.
    Settlement anomalies are recorded here even when the settlement itself rolls back.
    """
    ACTION_CHOICES = (
        ("order_created", "Order Created"),
        ("order_cancelled", "Order Cancelled"),
        ("payment_initiated", "Payment Initiated"),
        ("payment_captured", "Payment Captured"),
        ("payment_failed", "Payment Failed"),
        ("settlement_anomaly", "Settlement Anomaly"),
    )

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
    )
    action = models.CharField(max_length=50, choices=ACTION_CHOICES)
    reference_id = models.CharField(
        max_length=100,
        help_text="Order number / gateway transaction id",
    )
    metadata = models.JSONField(default=dict)
    created_at = models.DateTimeField(default=timezone.now)

    objects = AuditLogQuerySet.as_manager()

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["action"]),
            models.Index(fields=["reference_id"]),
        ]

    @property
    def reason(self):
        return (self.metadata or {}).get("reason", "")

    def save(self, *args, **kwargs):
        if self.pk:
            raise RuntimeError("Audit logs are immutable (update blocked)")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise RuntimeError("Audit logs are immutable (delete blocked)")

    def __str__(self):
        return f"{self.action} | {self.reference_id}"
