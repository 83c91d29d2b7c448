from django.utils import timezone
from .models import AuditLog

class AuditService:
    """
    Centralized Audit Logging.
    Writes immutable logs for compliance and debugging.
    Called inside the caller's transaction, so a rolled-back settlement leaves no trail.
    """

    @staticmethod
    def log(action, reference_id, user, metadata):
        AuditLog.objects.create(
            user=user,
            action=action,
            reference_id=reference_id,
            metadata=metadata,
            created_at=timezone.now()
        )


    @staticmethod
    def order_created(order):
        AuditService.log(
            action="order_created",
            reference_id=order.order_number,
            user=order.user,
            metadata={
                "order_id": order.id,
                "amount": str(order.total_amount),
                "items": order.items.count(),
            },
        )

    @staticmethod
    def order_cancelled(order):
        AuditService.log(
            action="order_cancelled",
            reference_id=order.order_number,
            user=order.user,
            metadata={"order_id": order.id, "payment_status": order.payment_status},
        )

    @staticmethod
    def payment_initiated(payment):
        AuditService.log(
            action="payment_initiated",
            reference_id=payment.transaction_id,
            user=payment.order.user,
            metadata={
                "order_id": payment.order_id,
                "amount": payment.amount,
                "currency": payment.currency,
            },
        )

    @staticmethod
    def payment_captured(payment, order):
        AuditService.log(
            action="payment_captured",
            reference_id=payment.transaction_id,
            user=order.user,
            metadata={
                "order_id": order.id,
                "order_number": order.order_number,
                "amount": payment.amount,
                "provider_payment_id": payment.provider_payment_id,
                "source": payment.settled_via,
            },
        )

    @staticmethod
    def payment_failed(payment, order):
        AuditService.log(
            action="payment_failed",
            reference_id=payment.transaction_id,
            user=order.user,
            metadata={
                "order_id": order.id,
                "order_number": order.order_number,
                "source": payment.settled_via,
            },
        )

    @staticmethod
    def settlement_anomaly(transaction_id, reason, metadata=None, user=None):
        AuditService.log(
            action="settlement_anomaly",
            reference_id=transaction_id,
            user=user,
            metadata={"reason": reason, **(metadata or {})},
        )
