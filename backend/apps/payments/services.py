# apps/payments/services.py
import logging
from datetime import timedelta

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from apps.audit.services import AuditService
from apps.inventory.services import InventoryService
from apps.orders.models import Order
from apps.utils.exceptions import BusinessLogicException

from .models import Payment
from .settlement import SettlementEngine

logger = logging.getLogger(__name__)


class PaymentService:

    @staticmethod
    @transaction.atomic
    def create_payment(order, gateway):
        """
        Creates a payment intent on the Gateway.
        Idempotent: Returns the open PENDING attempt if the order already has one.
        """
        # Lock Order to prevent concurrent clicks
        order = Order.objects.select_for_update().get(id=order.id)

        if order.payment_status == "PAID":
            raise BusinessLogicException("Order is already paid", code="already_paid")
        if order.status != "PENDING":
            raise BusinessLogicException(
                f"Order is {order.status}, cannot initiate payment",
                code="invalid_state",
            )

        # 1. Idempotency Check
        existing = order.payments.filter(status=Payment.PENDING).order_by("-created_at").first()
        if existing:
            return existing

        # 2. Stock may have been released by an earlier failed attempt
        InventoryService.reserve_for_order(order)

        # 3. Gateway call (circuit breaker inside)
        razorpay_order = gateway.create_order(
            amount=order.total_minor,
            currency=settings.PAYMENT_CURRENCY,
            receipt=order.order_number,
            notes={"order_id": str(order.id), "order_number": order.order_number},
        )

        # 4. Create Local Record
        payment = Payment.objects.create(
            order=order,
            transaction_id=razorpay_order["id"],
            amount=order.total_minor,
            currency=settings.PAYMENT_CURRENCY,
            status=Payment.PENDING,
        )
        AuditService.payment_initiated(payment)
        logger.info(f"Payment {payment.transaction_id} created for order {order.order_number}")
        return payment


class ReconciliationService:
    """
    Safety net for lost webhooks: asks the gateway about PENDING payments
    that have been waiting too long and feeds the answer through settlement.
    Checkouts nobody attempted within the reservation window are failed so
    their stock goes back on sale.
    """

    def __init__(self, gateway, engine=None):
        self.gateway = gateway
        self.engine = engine or SettlementEngine()

    def stale_payments(self):
        cutoff = timezone.now() - timedelta(minutes=settings.PAYMENT_RECONCILE_AFTER_MINUTES)
        return Payment.objects.filter(status=Payment.PENDING, created_at__lt=cutoff).order_by("created_at")

    def reconcile_stuck_payments(self):
        stats = {"checked": 0, "captured": 0, "failed": 0, "errors": 0}

        for payment in self.stale_payments():
            stats["checked"] += 1
            try:
                result = self.reconcile(payment)
            except BusinessLogicException as e:
                stats["errors"] += 1
                logger.error(f"Reconciliation of {payment.transaction_id} failed: {e.code}")
                continue
            except Exception:
                stats["errors"] += 1
                logger.exception(f"Reconciliation error for {payment.transaction_id}")
                continue

            if result is not None and result.applied:
                stats["captured" if result.outcome == Payment.CAPTURED else "failed"] += 1

        if stats["checked"]:
            logger.info(f"Reconciliation finished: {stats}")
        return stats

    def reconcile(self, payment):
        """
        Returns the SettlementResult, or None when the gateway has nothing final yet.
        """
        gateway_order = self.gateway.fetch_order(payment.transaction_id)
        gateway_status = gateway_order.get("status")

        if gateway_status == "paid":
            attempts = self.gateway.fetch_order_payments(payment.transaction_id)
            captured = next((a for a in attempts if a.get("status") == "captured"), {})
            logger.info(f"Reconciling paid payment {payment.transaction_id}")
            return self.engine.settle(
                payment.transaction_id,
                Payment.CAPTURED,
                gateway_order.get("amount_paid"),
                provider_payment_id=captured.get("id", ""),
                method=captured.get("method") or "",
                payload={"reconciled_order": gateway_order},
                source="reconciliation",
            )

        if gateway_status == "attempted":
            attempts = self.gateway.fetch_order_payments(payment.transaction_id)
            if attempts and all(a.get("status") == "failed" for a in attempts):
                last = attempts[-1]
                return self.engine.settle(
                    payment.transaction_id,
                    Payment.FAILED,
                    payment.amount,
                    provider_payment_id=last.get("id", ""),
                    method=last.get("method") or "",
                    payload={"reconciled_order": gateway_order},
                    source="reconciliation",
                )

        if gateway_status == "created" and self.is_abandoned(payment):
            # Checkout never opened (or was closed) past the reservation window
            if not self.gateway.fetch_order_payments(payment.transaction_id):
                logger.info(f"Failing abandoned checkout {payment.transaction_id}")
                return self.engine.settle(
                    payment.transaction_id,
                    Payment.FAILED,
                    payment.amount,
                    payload={"reconciled_order": gateway_order, "reason": "abandoned"},
                    source="reconciliation",
                )

        return None

    def is_abandoned(self, payment):
        cutoff = timezone.now() - timedelta(minutes=settings.INVENTORY_RESERVATION_MINUTES)
        return payment.created_at < cutoff
