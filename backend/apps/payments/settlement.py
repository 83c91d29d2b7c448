# apps/payments/settlement.py
"""
The payment settlement state machine.

A Payment moves PENDING -> CAPTURED or PENDING -> FAILED exactly once. Every
path that learns about a payment outcome (webhook, client confirmation,
reconciliation) calls SettlementEngine.apply_settlement, so repeated or
concurrent deliveries for one transaction converge on a single transition:
the first writer applies it, everyone else sees `applied=False`.

Lock order is Payment -> Order -> StockItem on every path.
"""
import logging
from dataclasses import dataclass

from django.conf import settings
from django.db import transaction, DatabaseError, InterfaceError, OperationalError
from django.utils import timezone

from apps.audit.services import AuditService
from apps.inventory.services import InventoryService
from apps.orders.models import Order
from apps.utils.resilience import with_retry

from .exceptions import (
    AmountMismatch,
    ConflictingSettlement,
    SettlementAnomaly,
    TransientStoreError,
    UnknownTransaction,
)
from .models import Payment
from .store import PaymentStore

logger = logging.getLogger(__name__)

OUTCOMES = (Payment.CAPTURED, Payment.FAILED)


@dataclass(frozen=True)
class SettlementResult:
    outcome: str
    payment: Payment
    order: Order
    applied: bool


def queue_confirmation_email(order_id):
    from apps.orders.tasks import send_order_confirmation_email
    send_order_confirmation_email.delay(order_id)


def is_transient(exc) -> bool:
    return isinstance(exc, TransientStoreError)


class SettlementEngine:

    def __init__(self, store=None, inventory=InventoryService, audit=AuditService, notifier=None):
        self.store = store or PaymentStore()
        self.inventory = inventory
        self.audit = audit
        self.notifier = notifier or queue_confirmation_email

    def settle(self, transaction_id, outcome, amount, **kwargs):
        """apply_settlement with the configured bounded retry on TransientStoreError."""
        return with_retry(
            lambda: self.apply_settlement(transaction_id, outcome, amount, **kwargs),
            max_attempts=settings.SETTLEMENT_MAX_ATTEMPTS,
            is_retryable=is_transient,
            delay=settings.SETTLEMENT_RETRY_DELAY,
            label=f"settlement of {transaction_id}",
        )

    def apply_settlement(self, transaction_id, outcome, amount, *, provider_payment_id="",
                         method="", payload=None, source="webhook") -> SettlementResult:
        if outcome not in OUTCOMES:
            raise ValueError(f"Unsupported settlement outcome: {outcome}")

        try:
            with transaction.atomic():
                payment = self.store.lock_payment(transaction_id)
                if payment is None:
                    raise UnknownTransaction(
                        f"No payment for transaction {transaction_id}",
                        transaction_id,
                        metadata={"outcome": outcome, "amount": amount},
                    )
                return self._transition(
                    payment, outcome, amount,
                    provider_payment_id=provider_payment_id,
                    method=method,
                    payload=payload,
                    source=source,
                )
        except SettlementAnomaly as exc:
            self._record_anomaly(exc, source)
            raise
        except (OperationalError, InterfaceError) as exc:
            logger.error(f"Settlement of {transaction_id} hit a store error: {exc}")
            raise TransientStoreError("Payment store temporarily unavailable") from exc

    def _transition(self, payment, outcome, amount, *, provider_payment_id, method, payload, source):
        order = self.store.lock_order(payment.order_id)

        if payment.status == outcome:
            return self._replay(payment, order, source)

        if payment.status != Payment.PENDING:
            raise ConflictingSettlement(
                f"Payment {payment.transaction_id} is {payment.status}, refusing {outcome}",
                payment.transaction_id,
                metadata={"current": payment.status, "requested": outcome, "order_id": order.id},
            )

        if outcome == Payment.CAPTURED:
            self._check_capture(payment, order, amount)

        fields = {"settled_via": source, "settled_at": timezone.now()}
        if provider_payment_id:
            fields["provider_payment_id"] = provider_payment_id
        if method:
            fields["method"] = method
        if payload is not None:
            fields["gateway_payload"] = payload

        if not self.store.compare_and_set_status(payment, outcome, **fields):
            # Lost the race to another writer between our read and our update
            current = self.store.reload_payment(payment.pk)
            if current.status == outcome:
                return self._replay(current, order, source)
            raise ConflictingSettlement(
                f"Payment {payment.transaction_id} became {current.status} while applying {outcome}",
                payment.transaction_id,
                metadata={"current": current.status, "requested": outcome, "order_id": order.id},
            )

        payment = self.store.reload_payment(payment.pk)
        if outcome == Payment.CAPTURED:
            self._on_captured(payment, order)
        else:
            self._on_failed(payment, order)

        return SettlementResult(outcome=outcome, payment=payment, order=order, applied=True)

    def _check_capture(self, payment, order, amount):
        if order.is_terminal:
            raise ConflictingSettlement(
                f"Capture for {payment.transaction_id} on {order.status} order {order.order_number}",
                payment.transaction_id,
                metadata={"order_id": order.id, "order_status": order.status, "action": "manual_refund_review"},
            )

        if amount != payment.amount:
            raise AmountMismatch(
                f"Captured amount {amount} does not match expected {payment.amount}",
                payment.transaction_id,
                metadata={"expected": payment.amount, "received": amount, "order_id": order.id},
            )

        if self.store.has_other_capture(payment):
            raise ConflictingSettlement(
                f"Order {order.order_number} already has a captured payment",
                payment.transaction_id,
                metadata={"order_id": order.id, "action": "manual_refund_review"},
            )

    def _replay(self, payment, order, source):
        logger.info(f"Settlement replay for {payment.transaction_id} ({payment.status}) via {source}")
        return SettlementResult(outcome=payment.status, payment=payment, order=order, applied=False)

    def _on_captured(self, payment, order):
        order.payment_status = "PAID"
        update_fields = ["payment_status", "updated_at"]
        # Only the first step of fulfilment belongs to us
        if order.status == "PENDING":
            order.status = "CONFIRMED"
            update_fields.append("status")
        order.save(update_fields=update_fields)

        self.inventory.commit_for_order(order)
        self.audit.payment_captured(payment, order)

        order_id = order.id
        transaction.on_commit(lambda: self.notifier(order_id))

        logger.info(
            f"Payment {payment.transaction_id} CAPTURED via {payment.settled_via}: "
            f"order {order.order_number} {order.status}/{order.payment_status}"
        )

    def _on_failed(self, payment, order):
        if order.payment_status != "PAID" and not order.is_terminal:
            order.payment_status = "FAILED"
            order.save(update_fields=["payment_status", "updated_at"])

        if order.payment_status != "PAID":
            self.inventory.release_for_order(order, reason="payment_failed")

        self.audit.payment_failed(payment, order)
        logger.info(f"Payment {payment.transaction_id} FAILED via {payment.settled_via}: order {order.order_number}")

    def _record_anomaly(self, exc, source):
        if isinstance(exc, UnknownTransaction):
            logger.error(f"Settlement anomaly {exc.code} for {exc.transaction_id} via {source}")
        else:
            logger.critical(f"Settlement anomaly {exc.code} for {exc.transaction_id} via {source}: {exc.message}")

        try:
            with transaction.atomic():
                self.audit.settlement_anomaly(
                    exc.transaction_id,
                    exc.code,
                    {**exc.metadata, "source": source},
                )
        except DatabaseError as e:
            logger.error(f"Could not audit settlement anomaly for {exc.transaction_id}: {e}")
