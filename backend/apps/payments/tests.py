# apps/payments/tests.py
import json
import threading
from decimal import Decimal
from datetime import timedelta
from unittest import skipUnless
from unittest.mock import MagicMock, patch

from django.apps import apps as django_apps
from django.conf import settings
from django.contrib.auth import get_user_model
from django.core import mail
from django.core.cache import cache
from django.db import OperationalError, connection
from django.test import TestCase, TransactionTestCase, override_settings
from django.utils import timezone
from rest_framework.test import APIClient

from apps.audit.models import AuditLog
from apps.inventory.models import StockItem, InventoryTransaction
from apps.inventory.services import InventoryService
from apps.orders.models import Order, OrderItem
from apps.utils.resilience import with_retry

from .events import IgnoredEvent, PaymentCaptured, PaymentFailed, parse_webhook_event
from .exceptions import (
    AmountMismatch,
    ConflictingSettlement,
    GatewayConfigurationError,
    GatewayError,
    MalformedEvent,
    TransientStoreError,
    UnknownTransaction,
)
from .gateway import RazorpayGateway
from .models import Payment
from .services import PaymentService, ReconciliationService
from .settlement import SettlementEngine
from .signatures import compute_signature, verify_webhook_signature
from .store import PaymentStore
from .tasks import reconcile_pending_payments

User = get_user_model()

WEBHOOK_URL = "/api/v1/payments/webhook/"
VERIFY_URL = "/api/v1/payments/verify/"
TID = "order_ABC123"


def payment_event(event="payment.captured", tid=TID, amount=5103, pay_id="pay_001", status="captured"):
    return json.dumps({
        "entity": "event",
        "event": event,
        "payload": {
            "payment": {
                "entity": {
                    "id": pay_id,
                    "order_id": tid,
                    "amount": amount,
                    "currency": "INR",
                    "status": status,
                    "method": "upi",
                    "captured": status == "captured",
                }
            }
        },
    }).encode("utf-8")


class SettlementFixtureMixin:
    """One order for Rs. 51.03 (5103 paise) with stock reserved and a PENDING payment."""

    def setUp(self):
        cache.clear()
        self.user = User.objects.create_user(email="buyer@example.com", password="pass")
        self.item = StockItem.objects.create(sku="EAR-1", name="Pearl Earrings", price=Decimal("51.03"), total_stock=5)
        self.order = self.make_order()
        self.payment = self.make_payment(self.order)

    def make_order(self, user=None, status="PENDING"):
        order = Order.objects.create(
            user=user or self.user,
            subtotal=Decimal("51.03"),
            total_amount=Decimal("51.03"),
            status=status,
        )
        OrderItem.objects.create(
            order=order, item=self.item, sku=self.item.sku,
            product_name=self.item.name, quantity=1, price=self.item.price,
        )
        InventoryService.reserve_for_order(order)
        return order

    def make_payment(self, order, tid=TID, amount=5103):
        return Payment.objects.create(order=order, transaction_id=tid, amount=amount)

    def assert_untouched(self):
        self.payment.refresh_from_db()
        self.order.refresh_from_db()
        self.assertEqual(self.payment.status, Payment.PENDING)
        self.assertEqual(self.order.status, "PENDING")
        self.assertEqual(self.order.payment_status, "PENDING")


class SignatureTestCase(TestCase):
    SECRET = "whsec"

    def test_valid_webhook_signature(self):
        body = payment_event()
        self.assertTrue(verify_webhook_signature(body, compute_signature(body, self.SECRET), self.SECRET))

    def test_single_byte_tamper_rejected(self):
        body = payment_event()
        signature = compute_signature(body, self.SECRET)
        tampered = body.replace(b"5103", b"5104")
        self.assertFalse(verify_webhook_signature(tampered, signature, self.SECRET))

    def test_fails_closed_without_secret_or_signature(self):
        body = payment_event()
        signature = compute_signature(body, self.SECRET)
        self.assertFalse(verify_webhook_signature(body, signature, ""))
        self.assertFalse(verify_webhook_signature(body, signature, None))
        self.assertFalse(verify_webhook_signature(body, None, self.SECRET))
        self.assertFalse(verify_webhook_signature(body, "", self.SECRET))

    def test_reserialized_body_rejected(self):
        body = b'{"event":"payment.captured",  "payload":{}}'
        signature = compute_signature(body, self.SECRET)
        reserialized = json.dumps(json.loads(body)).encode("utf-8")
        self.assertFalse(verify_webhook_signature(reserialized, signature, self.SECRET))


class EventDecodingTestCase(TestCase):
    def test_captured(self):
        event = parse_webhook_event(payment_event())
        self.assertIsInstance(event, PaymentCaptured)
        self.assertEqual(event.transaction_id, TID)
        self.assertEqual(event.amount, 5103)
        self.assertEqual(event.provider_payment_id, "pay_001")
        self.assertEqual(event.method, "upi")
        self.assertEqual(event.outcome, Payment.CAPTURED)

    def test_failed(self):
        event = parse_webhook_event(payment_event(event="payment.failed", status="failed"))
        self.assertIsInstance(event, PaymentFailed)
        self.assertEqual(event.outcome, Payment.FAILED)

    def test_order_paid_is_a_capture(self):
        body = json.dumps({
            "event": "order.paid",
            "payload": {
                "order": {"entity": {"id": TID, "amount": 5103, "amount_paid": 5103, "status": "paid"}},
                "payment": {"entity": {"id": "pay_9", "order_id": TID, "amount": 5103, "method": "card"}},
            },
        }).encode("utf-8")
        event = parse_webhook_event(body)
        self.assertIsInstance(event, PaymentCaptured)
        self.assertEqual(event.event_type, "order.paid")
        self.assertEqual(event.provider_payment_id, "pay_9")

    def test_unrelated_event_ignored(self):
        body = json.dumps({"event": "refund.created", "payload": {}}).encode("utf-8")
        self.assertEqual(parse_webhook_event(body), IgnoredEvent(event_type="refund.created"))

    def test_malformed_bodies(self):
        bad_bodies = [
            b"not json",
            b"[]",
            json.dumps({"payload": {}}).encode("utf-8"),
            json.dumps({"event": "payment.captured", "payload": {}}).encode("utf-8"),
            payment_event(amount="51.03"),
            payment_event(amount=0),
            json.dumps({"event": "payment.captured", "payload": {"payment": {"entity": {"id": "pay_1", "amount": 1}}}}).encode("utf-8"),
        ]
        for body in bad_bodies:
            with self.subTest(body=body):
                with self.assertRaises(MalformedEvent):
                    parse_webhook_event(body)


class RetryCombinatorTestCase(TestCase):
    def test_retries_only_retryable(self):
        op = MagicMock(side_effect=[TransientStoreError("x"), "ok"])
        result = with_retry(op, max_attempts=2, is_retryable=lambda e: isinstance(e, TransientStoreError))
        self.assertEqual(result, "ok")
        self.assertEqual(op.call_count, 2)

    def test_non_retryable_raised_immediately(self):
        op = MagicMock(side_effect=ValueError("boom"))
        with self.assertRaises(ValueError):
            with_retry(op, max_attempts=3, is_retryable=lambda e: isinstance(e, TransientStoreError))
        self.assertEqual(op.call_count, 1)

    def test_gives_up_after_max_attempts(self):
        op = MagicMock(side_effect=TransientStoreError("x"))
        with self.assertRaises(TransientStoreError):
            with_retry(op, max_attempts=2, is_retryable=lambda e: True)
        self.assertEqual(op.call_count, 2)

    def test_rejects_zero_attempts(self):
        with self.assertRaises(ValueError):
            with_retry(lambda: None, max_attempts=0)


class SettlementEngineTestCase(SettlementFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.notifier = MagicMock()
        self.engine = SettlementEngine(notifier=self.notifier)

    def capture(self, engine=None, amount=5103, **kwargs):
        return (engine or self.engine).apply_settlement(TID, Payment.CAPTURED, amount, **kwargs)

    def test_capture_settles_payment_order_and_stock(self):
        with self.captureOnCommitCallbacks(execute=True):
            result = self.capture(provider_payment_id="pay_001", method="upi", payload={"k": "v"})

        self.assertTrue(result.applied)
        self.assertEqual(result.outcome, Payment.CAPTURED)

        self.payment.refresh_from_db()
        self.order.refresh_from_db()
        self.item.refresh_from_db()
        self.assertEqual(self.payment.status, Payment.CAPTURED)
        self.assertEqual(self.payment.provider_payment_id, "pay_001")
        self.assertEqual(self.payment.gateway_payload, {"k": "v"})
        self.assertEqual(self.payment.settled_via, "webhook")
        self.assertIsNotNone(self.payment.settled_at)
        self.assertEqual(self.order.payment_status, "PAID")
        self.assertEqual(self.order.status, "CONFIRMED")
        self.assertEqual(self.item.total_stock, 4)
        self.assertEqual(self.item.reserved_stock, 0)
        self.assertTrue(AuditLog.objects.filter(action="payment_captured", reference_id=TID).exists())
        self.notifier.assert_called_once_with(self.order.id)

    def test_replay_is_noop(self):
        with self.captureOnCommitCallbacks(execute=True):
            first = self.capture()
            second = self.capture()

        self.assertTrue(first.applied)
        self.assertFalse(second.applied)
        self.assertEqual(second.outcome, Payment.CAPTURED)

        self.item.refresh_from_db()
        self.assertEqual(self.item.total_stock, 4)
        self.assertEqual(AuditLog.objects.filter(action="payment_captured").count(), 1)
        self.notifier.assert_called_once()

    def test_failed_replay_is_noop(self):
        self.engine.apply_settlement(TID, Payment.FAILED, 5103)
        result = self.engine.apply_settlement(TID, Payment.FAILED, 5103)
        self.assertFalse(result.applied)
        self.assertEqual(AuditLog.objects.filter(action="payment_failed").count(), 1)

    def test_failed_after_capture_is_conflict(self):
        self.capture()

        with self.assertRaises(ConflictingSettlement):
            self.engine.apply_settlement(TID, Payment.FAILED, 5103)

        self.payment.refresh_from_db()
        self.order.refresh_from_db()
        self.assertEqual(self.payment.status, Payment.CAPTURED)
        self.assertEqual(self.order.payment_status, "PAID")
        anomaly = AuditLog.objects.get(action="settlement_anomaly")
        self.assertEqual(anomaly.metadata["reason"], "conflicting_settlement")
        self.assertEqual(anomaly.metadata["current"], Payment.CAPTURED)

    def test_capture_after_failure_is_conflict(self):
        self.engine.apply_settlement(TID, Payment.FAILED, 5103)

        with self.assertRaises(ConflictingSettlement):
            self.capture()

        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, Payment.FAILED)

    def test_unknown_transaction(self):
        with self.assertRaises(UnknownTransaction):
            self.engine.apply_settlement("order_NOPE", Payment.CAPTURED, 5103)

        self.assertFalse(Payment.objects.filter(transaction_id="order_NOPE").exists())
        self.assertTrue(AuditLog.objects.filter(action="settlement_anomaly", reference_id="order_NOPE").exists())
        self.assert_untouched()

    def test_amount_mismatch(self):
        with self.assertRaises(AmountMismatch) as ctx:
            self.capture(amount=5100)

        self.assertEqual(ctx.exception.metadata["expected"], 5103)
        self.assert_untouched()

    def test_failure_releases_stock_and_keeps_order_open(self):
        result = self.engine.apply_settlement(TID, Payment.FAILED, 5103, source="client")
        self.assertTrue(result.applied)

        self.payment.refresh_from_db()
        self.order.refresh_from_db()
        self.item.refresh_from_db()
        self.assertEqual(self.payment.status, Payment.FAILED)
        self.assertEqual(self.order.payment_status, "FAILED")
        self.assertEqual(self.order.status, "PENDING")
        self.assertFalse(self.order.stock_reserved)
        self.assertEqual(self.item.reserved_stock, 0)
        self.assertEqual(self.item.total_stock, 5)
        self.notifier.assert_not_called()

    def test_capture_on_cancelled_order_is_conflict(self):
        Order.objects.filter(id=self.order.id).update(status="CANCELLED")

        with self.assertRaises(ConflictingSettlement) as ctx:
            self.capture()

        self.assertEqual(ctx.exception.metadata["action"], "manual_refund_review")
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, Payment.PENDING)

    def test_failure_on_cancelled_order_leaves_order_alone(self):
        Order.objects.filter(id=self.order.id).update(status="CANCELLED")

        self.engine.apply_settlement(TID, Payment.FAILED, 5103)

        self.payment.refresh_from_db()
        self.order.refresh_from_db()
        self.assertEqual(self.payment.status, Payment.FAILED)
        self.assertEqual(self.order.status, "CANCELLED")
        self.assertEqual(self.order.payment_status, "PENDING")

    def test_capture_keeps_advanced_order_status(self):
        Order.objects.filter(id=self.order.id).update(status="PROCESSING")

        self.capture()

        self.order.refresh_from_db()
        self.assertEqual(self.order.status, "PROCESSING")
        self.assertEqual(self.order.payment_status, "PAID")

    def test_second_attempt_capture_on_paid_order_is_conflict(self):
        second = self.make_payment(self.order, tid="order_SECOND")
        self.capture()

        with self.assertRaises(ConflictingSettlement):
            self.engine.apply_settlement("order_SECOND", Payment.CAPTURED, 5103)

        second.refresh_from_db()
        self.assertEqual(second.status, Payment.PENDING)

    def test_failed_attempt_does_not_unpay_order(self):
        second = self.make_payment(self.order, tid="order_SECOND")
        self.capture()

        self.engine.apply_settlement("order_SECOND", Payment.FAILED, 5103)

        second.refresh_from_db()
        self.order.refresh_from_db()
        self.assertEqual(second.status, Payment.FAILED)
        self.assertEqual(self.order.payment_status, "PAID")

    def test_race_loser_observes_noop(self):
        """
        Two callers both read PENDING; the second one's conditional update
        matches nothing and it must report a replay, not apply again.
        """
        stale = Payment.objects.get(pk=self.payment.pk)

        with self.captureOnCommitCallbacks(execute=True):
            winner = self.capture()

            store = PaymentStore()
            with patch.object(store, "lock_payment", return_value=stale):
                loser = self.capture(engine=SettlementEngine(store=store, notifier=self.notifier), source="client")

        self.assertTrue(winner.applied)
        self.assertFalse(loser.applied)
        self.assertEqual(loser.outcome, Payment.CAPTURED)

        self.item.refresh_from_db()
        self.assertEqual(self.item.total_stock, 4)
        self.assertEqual(InventoryTransaction.objects.filter(transaction_type="commit").count(), 1)
        self.assertEqual(AuditLog.objects.filter(action="payment_captured").count(), 1)
        self.notifier.assert_called_once()

        self.payment.refresh_from_db()
        self.assertEqual(self.payment.settled_via, "webhook")

    def test_race_loser_with_other_outcome_is_conflict(self):
        stale = Payment.objects.get(pk=self.payment.pk)
        self.engine.apply_settlement(TID, Payment.FAILED, 5103)

        store = PaymentStore()
        with patch.object(store, "lock_payment", return_value=stale):
            with self.assertRaises(ConflictingSettlement):
                self.capture(engine=SettlementEngine(store=store, notifier=self.notifier))

        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, Payment.FAILED)

    def test_store_error_becomes_transient(self):
        store = PaymentStore()
        with patch.object(store, "lock_payment", side_effect=OperationalError("could not obtain lock")):
            with self.assertRaises(TransientStoreError):
                self.capture(engine=SettlementEngine(store=store, notifier=self.notifier))
        self.assert_untouched()

    @override_settings(SETTLEMENT_MAX_ATTEMPTS=2, SETTLEMENT_RETRY_DELAY=0)
    def test_settle_retries_transient_once(self):
        store = PaymentStore()
        locked = Payment.objects.get(pk=self.payment.pk)
        with patch.object(store, "lock_payment", side_effect=[OperationalError("deadlock"), locked]) as lock:
            result = SettlementEngine(store=store, notifier=self.notifier).settle(TID, Payment.CAPTURED, 5103)

        self.assertTrue(result.applied)
        self.assertEqual(lock.call_count, 2)

    @override_settings(SETTLEMENT_MAX_ATTEMPTS=2, SETTLEMENT_RETRY_DELAY=0)
    def test_settle_gives_up_after_bounded_retries(self):
        store = PaymentStore()
        with patch.object(store, "lock_payment", side_effect=OperationalError("down")) as lock:
            with self.assertRaises(TransientStoreError):
                SettlementEngine(store=store, notifier=self.notifier).settle(TID, Payment.CAPTURED, 5103)
        self.assertEqual(lock.call_count, 2)

    def test_settle_does_not_retry_anomalies(self):
        store = PaymentStore()
        with patch.object(store, "lock_payment", return_value=None) as lock:
            with self.assertRaises(UnknownTransaction):
                SettlementEngine(store=store).settle(TID, Payment.CAPTURED, 5103)
        self.assertEqual(lock.call_count, 1)

    def test_rejects_unknown_outcome(self):
        with self.assertRaises(ValueError):
            self.engine.apply_settlement(TID, Payment.REFUNDED, 5103)


class WebhookAPITestCase(SettlementFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.client = APIClient()

    def deliver(self, body, signature=None, **headers):
        if signature is None:
            signature = compute_signature(body, settings.RAZORPAY_WEBHOOK_SECRET)
        return self.client.post(
            WEBHOOK_URL,
            data=body,
            content_type="application/json",
            HTTP_X_RAZORPAY_SIGNATURE=signature,
            **headers,
        )

    def confirm(self, payment_id="pay_001"):
        self.client.force_authenticate(user=self.user)
        signature = compute_signature(f"{TID}|{payment_id}".encode("utf-8"), settings.RAZORPAY_KEY_SECRET)
        response = self.client.post(
            VERIFY_URL,
            {"razorpay_order_id": TID, "razorpay_payment_id": payment_id, "razorpay_signature": signature},
            format="json",
            HTTP_IDEMPOTENCY_KEY=f"verify-{payment_id}",
        )
        self.client.force_authenticate(user=None)
        return response

    def assert_settled(self):
        self.payment.refresh_from_db()
        self.order.refresh_from_db()
        self.assertEqual(self.payment.status, Payment.CAPTURED)
        self.assertEqual(self.order.payment_status, "PAID")
        self.assertEqual(self.order.status, "CONFIRMED")

    def test_capture_end_to_end(self):
        with self.captureOnCommitCallbacks(execute=True):
            response = self.deliver(payment_event())

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data, {"status": "processed", "outcome": Payment.CAPTURED})
        self.assert_settled()
        self.assertEqual(self.payment.method, "upi")
        self.assertEqual(self.payment.gateway_payload["event"], "payment.captured")
        self.assertEqual(len(mail.outbox), 1)

    def test_duplicate_delivery_is_noop(self):
        body = payment_event()
        with self.captureOnCommitCallbacks(execute=True):
            first = self.deliver(body)
            second = self.deliver(body)

        self.assertEqual(first.status_code, 200)
        self.assertEqual(second.status_code, 200)
        self.assertEqual(second.data["status"], "duplicate")
        self.assert_settled()
        self.assertEqual(AuditLog.objects.filter(action="payment_captured").count(), 1)
        self.assertEqual(len(mail.outbox), 1)

    def test_duplicate_event_id_served_from_cache(self):
        body = payment_event()
        first = self.deliver(body, HTTP_X_RAZORPAY_EVENT_ID="evt_1")
        with patch.object(SettlementEngine, "apply_settlement") as apply:
            second = self.deliver(body, HTTP_X_RAZORPAY_EVENT_ID="evt_1")

        apply.assert_not_called()
        self.assertEqual(second.status_code, 200)
        self.assertEqual(second.data, first.data)

    def test_client_confirmation_then_webhook(self):
        with self.captureOnCommitCallbacks(execute=True):
            confirmed = self.confirm()
            late_webhook = self.deliver(payment_event())

        self.assertEqual(confirmed.status_code, 200)
        self.assertTrue(confirmed.data["applied"])
        self.assertEqual(late_webhook.data["status"], "duplicate")
        self.assert_settled()
        self.assertEqual(self.payment.settled_via, "client")
        self.assertEqual(len(mail.outbox), 1)

    def test_tampered_body_rejected(self):
        body = payment_event()
        signature = compute_signature(body, settings.RAZORPAY_WEBHOOK_SECRET)

        response = self.deliver(body.replace(b"5103", b"5104"), signature=signature)

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.data["error"]["code"], "invalid_signature")
        self.assert_untouched()

    def test_missing_signature_rejected(self):
        response = self.deliver(payment_event(), signature="")
        self.assertEqual(response.status_code, 401)
        self.assert_untouched()

    @override_settings(RAZORPAY_WEBHOOK_SECRET="")
    def test_missing_secret_fails_closed(self):
        body = payment_event()
        response = self.deliver(body, signature=compute_signature(body, "anything"))

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.data["error"]["code"], "config_error")
        self.assert_untouched()

    def test_payment_failed_event(self):
        response = self.deliver(payment_event(event="payment.failed", status="failed"))

        self.assertEqual(response.status_code, 200)
        self.payment.refresh_from_db()
        self.order.refresh_from_db()
        self.assertEqual(self.payment.status, Payment.FAILED)
        self.assertEqual(self.order.payment_status, "FAILED")
        self.assertEqual(self.order.status, "PENDING")

    def test_failed_after_capture_rejected_without_mutation(self):
        self.deliver(payment_event())
        response = self.deliver(payment_event(event="payment.failed", status="failed", pay_id="pay_002"))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data, {"status": "rejected", "code": "conflicting_settlement"})
        self.assert_settled()

    def test_unknown_transaction_acknowledged(self):
        response = self.deliver(payment_event(tid="order_UNKNOWN"))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["code"], "unknown_transaction")
        self.assertTrue(AuditLog.objects.filter(action="settlement_anomaly", reference_id="order_UNKNOWN").exists())

    def test_amount_mismatch_acknowledged(self):
        response = self.deliver(payment_event(amount=100))

        self.assertEqual(response.data, {"status": "rejected", "code": "amount_mismatch"})
        self.assert_untouched()

    def test_irrelevant_event_ignored(self):
        body = json.dumps({"event": "payment.authorized", "payload": {}}).encode("utf-8")
        response = self.deliver(body)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["status"], "ignored")
        self.assert_untouched()

    def test_signed_garbage_is_malformed(self):
        response = self.deliver(b'{"event": "payment.captured"')
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["error"]["code"], "malformed_event")

    @override_settings(SETTLEMENT_RETRY_DELAY=0)
    def test_store_outage_returns_503(self):
        with patch.object(PaymentStore, "lock_payment", side_effect=OperationalError("down")) as lock:
            response = self.deliver(payment_event())

        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.data["error"]["code"], "store_unavailable")
        self.assertEqual(lock.call_count, settings.SETTLEMENT_MAX_ATTEMPTS)
        self.assert_untouched()

        # Gateway redelivers once the store is back
        retried = self.deliver(payment_event())
        self.assertEqual(retried.data["status"], "processed")

    def test_webhook_bypasses_kill_switch(self):
        cache.set("config:kill_switch:active", True)
        response = self.deliver(payment_event())
        self.assertEqual(response.status_code, 200)
        self.assert_settled()


class ClientConfirmationAPITestCase(SettlementFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.client = APIClient()
        self.client.force_authenticate(user=self.user)

    def verify(self, payment_id="pay_001", signature=None, key="k1", tid=TID):
        if signature is None:
            signature = compute_signature(f"{tid}|{payment_id}".encode("utf-8"), settings.RAZORPAY_KEY_SECRET)
        return self.client.post(
            VERIFY_URL,
            {"razorpay_order_id": tid, "razorpay_payment_id": payment_id, "razorpay_signature": signature},
            format="json",
            HTTP_IDEMPOTENCY_KEY=key,
        )

    def test_success(self):
        response = self.verify()

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["status"], "success")
        self.assertTrue(response.data["applied"])
        self.assertEqual(response.data["order_status"], "CONFIRMED")
        self.assertEqual(response.data["payment_status"], "PAID")
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.provider_payment_id, "pay_001")
        self.assertEqual(self.payment.settled_via, "client")

    def test_after_webhook_is_noop(self):
        SettlementEngine(notifier=MagicMock()).apply_settlement(TID, Payment.CAPTURED, 5103)

        response = self.verify()

        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.data["applied"])
        self.assertEqual(response.data["payment_status"], "PAID")

    def test_bad_signature(self):
        response = self.verify(signature="0" * 64)

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["error"]["code"], "invalid_signature")
        self.assert_untouched()

    def test_other_users_payment_looks_missing(self):
        intruder = User.objects.create_user(email="intruder@example.com", password="pass")
        self.client.force_authenticate(user=intruder)

        response = self.verify()

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.data["error"]["code"], "unknown_transaction")
        self.assert_untouched()

    def test_unknown_transaction(self):
        response = self.verify(tid="order_MISSING")
        self.assertEqual(response.status_code, 404)

    def test_requires_authentication(self):
        self.client.force_authenticate(user=None)
        response = self.verify()
        self.assertEqual(response.status_code, 401)
        self.assert_untouched()

    @override_settings(RAZORPAY_KEY_SECRET="")
    def test_missing_key_secret_fails_closed(self):
        signature = compute_signature(f"{TID}|pay_001".encode("utf-8"), "test-key-secret")
        response = self.verify(signature=signature)

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.data["error"]["code"], "config_error")
        self.assert_untouched()

    def test_confirmation_for_failed_payment_conflicts(self):
        SettlementEngine(notifier=MagicMock()).apply_settlement(TID, Payment.FAILED, 5103)

        response = self.verify()

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.data["error"]["code"], "conflicting_settlement")

    def test_conflict_body_hides_internal_state(self):
        SettlementEngine(notifier=MagicMock()).apply_settlement(TID, Payment.FAILED, 5103)

        response = self.verify()

        self.assertEqual(response.status_code, 409)
        error = response.data["error"]
        self.assertEqual(error["message"], "Payment cannot be settled in its current state")
        self.assertNotIn("FAILED", error["message"])
        self.assertNotIn(TID, error["message"])
        self.assertEqual(error["type"], "ConflictingSettlement")

    @override_settings(SETTLEMENT_RETRY_DELAY=0)
    def test_store_outage_body_is_generic(self):
        with patch.object(PaymentStore, "lock_payment", side_effect=OperationalError("could not connect to server at 10.0.0.5")):
            response = self.verify()

        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.data["error"]["code"], "store_unavailable")
        self.assertEqual(response.data["error"]["message"], "Temporarily unavailable, retry later")
        self.assertNotIn("10.0.0.5", str(response.data))

    def test_missing_fields(self):
        response = self.client.post(VERIFY_URL, {"razorpay_order_id": TID}, format="json", HTTP_IDEMPOTENCY_KEY="k9")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["error"]["code"], "validation_error")


class FakeGateway:
    def __init__(self, order_id="order_NEW1", gateway_order=None, attempts=None, error=None):
        self.order_id = order_id
        self.gateway_order = gateway_order or {}
        self.attempts = attempts or []
        self.error = error
        self.created = []
        self.fetched = 0

    def create_order(self, amount, currency, receipt, notes=None):
        if self.error:
            raise self.error
        self.created.append({"amount": amount, "currency": currency, "receipt": receipt})
        return {"id": self.order_id, "amount": amount, "currency": currency, "status": "created"}

    def fetch_order(self, transaction_id):
        self.fetched += 1
        if self.error:
            raise self.error
        return self.gateway_order

    def fetch_order_payments(self, transaction_id):
        return self.attempts


class CreatePaymentAPITestCase(TestCase):
    def setUp(self):
        cache.clear()
        self.client = APIClient()
        self.user = User.objects.create_user(email="buyer@example.com", password="pass")
        self.client.force_authenticate(user=self.user)
        self.item = StockItem.objects.create(sku="EAR-1", name="Pearl Earrings", price=Decimal("51.03"), total_stock=5)
        self.order = Order.objects.create(user=self.user, subtotal=Decimal("51.03"), total_amount=Decimal("51.03"))
        OrderItem.objects.create(order=self.order, item=self.item, sku="EAR-1", product_name="Pearl Earrings", quantity=1, price=Decimal("51.03"))
        InventoryService.reserve_for_order(self.order)
        self.gateway = FakeGateway()
        patcher = patch.object(django_apps.get_app_config("payments"), "gateway", self.gateway)
        patcher.start()
        self.addCleanup(patcher.stop)

    def create(self, order_id=None):
        return self.client.post(f"/api/v1/payments/create/{order_id or self.order.id}/")

    def test_creates_pending_payment_in_paise(self):
        response = self.create()

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.data["id"], "order_NEW1")
        self.assertEqual(response.data["amount"], 5103)
        self.assertEqual(response.data["key"], settings.RAZORPAY_KEY_ID)
        self.assertEqual(self.gateway.created, [{"amount": 5103, "currency": "INR", "receipt": self.order.order_number}])

        payment = Payment.objects.get(transaction_id="order_NEW1")
        self.assertEqual(payment.status, Payment.PENDING)
        self.assertEqual(payment.amount, 5103)
        self.assertTrue(AuditLog.objects.filter(action="payment_initiated", reference_id="order_NEW1").exists())

    def test_repeat_returns_open_attempt(self):
        first = self.create()
        second = self.create()

        self.assertEqual(first.data["id"], second.data["id"])
        self.assertEqual(len(self.gateway.created), 1)
        self.assertEqual(Payment.objects.count(), 1)

    def test_paid_order_rejected(self):
        Order.objects.filter(id=self.order.id).update(payment_status="PAID", status="CONFIRMED")
        response = self.create()
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["error"]["code"], "already_paid")

    def test_cancelled_order_rejected(self):
        Order.objects.filter(id=self.order.id).update(status="CANCELLED")
        response = self.create()
        self.assertEqual(response.data["error"]["code"], "invalid_state")

    def test_other_users_order_not_found(self):
        other = User.objects.create_user(email="other@example.com", password="pass")
        self.client.force_authenticate(user=other)
        self.assertEqual(self.create().status_code, 404)

    def test_gateway_failure(self):
        self.gateway.error = GatewayError("Payment Gateway Error")
        response = self.create()

        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.data["error"]["code"], "gateway_error")
        self.assertFalse(Payment.objects.exists())

    def test_retry_after_failed_attempt_reserves_again(self):
        self.create()
        SettlementEngine(notifier=MagicMock()).apply_settlement("order_NEW1", Payment.FAILED, 5103)
        self.item.refresh_from_db()
        self.assertEqual(self.item.reserved_stock, 0)

        self.gateway.order_id = "order_NEW2"
        response = self.create()

        self.assertEqual(response.data["id"], "order_NEW2")
        self.item.refresh_from_db()
        self.order.refresh_from_db()
        self.assertEqual(self.item.reserved_stock, 1)
        self.assertTrue(self.order.stock_reserved)

    def test_status_polling(self):
        self.create()
        response = self.client.get(f"/api/v1/payments/status/{self.order.id}/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["order_status"], "PENDING")
        self.assertEqual(response.data["payment"]["transaction_id"], "order_NEW1")
        self.assertEqual(response.data["payment"]["status"], Payment.PENDING)

    def test_create_payment_service_direct(self):
        payment = PaymentService.create_payment(self.order, gateway=FakeGateway(order_id="order_DIRECT"))
        self.assertEqual(payment.transaction_id, "order_DIRECT")


class ReconciliationTestCase(SettlementFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        Payment.objects.filter(pk=self.payment.pk).update(created_at=timezone.now() - timedelta(minutes=30))
        self.engine = SettlementEngine(notifier=MagicMock())

    def service(self, **gateway_kwargs):
        return ReconciliationService(gateway=FakeGateway(**gateway_kwargs), engine=self.engine)

    def test_paid_order_captured(self):
        service = self.service(
            gateway_order={"id": TID, "status": "paid", "amount_paid": 5103},
            attempts=[
                {"id": "pay_failed", "status": "failed", "method": "card"},
                {"id": "pay_ok", "status": "captured", "method": "upi"},
            ],
        )

        stats = service.reconcile_stuck_payments()

        self.assertEqual(stats, {"checked": 1, "captured": 1, "failed": 0, "errors": 0})
        self.payment.refresh_from_db()
        self.order.refresh_from_db()
        self.assertEqual(self.payment.status, Payment.CAPTURED)
        self.assertEqual(self.payment.provider_payment_id, "pay_ok")
        self.assertEqual(self.payment.settled_via, "reconciliation")
        self.assertEqual(self.order.payment_status, "PAID")

    def test_all_attempts_failed(self):
        service = self.service(
            gateway_order={"id": TID, "status": "attempted", "amount_paid": 0},
            attempts=[{"id": "pay_1", "status": "failed"}, {"id": "pay_2", "status": "failed"}],
        )

        stats = service.reconcile_stuck_payments()

        self.assertEqual(stats["failed"], 1)
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, Payment.FAILED)
        self.assertEqual(self.payment.provider_payment_id, "pay_2")

    def test_attempt_in_progress_left_alone(self):
        service = self.service(
            gateway_order={"id": TID, "status": "attempted"},
            attempts=[{"id": "pay_1", "status": "failed"}, {"id": "pay_2", "status": "authorized"}],
        )
        self.assertIsNone(service.reconcile(self.payment))
        self.assert_untouched()

    def test_unpaid_left_alone(self):
        # Stale enough to poll, still inside the reservation window
        Payment.objects.filter(pk=self.payment.pk).update(created_at=timezone.now() - timedelta(minutes=20))
        service = self.service(gateway_order={"id": TID, "status": "created"})
        stats = service.reconcile_stuck_payments()
        self.assertEqual(stats, {"checked": 1, "captured": 0, "failed": 0, "errors": 0})
        self.assert_untouched()

    def test_abandoned_checkout_fails_and_releases_stock(self):
        Payment.objects.filter(pk=self.payment.pk).update(created_at=timezone.now() - timedelta(days=3))
        gateway = FakeGateway(gateway_order={"id": TID, "status": "created", "amount_paid": 0})
        service = ReconciliationService(gateway=gateway, engine=self.engine)

        stats = service.reconcile_stuck_payments()

        self.assertEqual(stats, {"checked": 1, "captured": 0, "failed": 1, "errors": 0})
        self.payment.refresh_from_db()
        self.order.refresh_from_db()
        self.item.refresh_from_db()
        self.assertEqual(self.payment.status, Payment.FAILED)
        self.assertEqual(self.payment.settled_via, "reconciliation")
        self.assertEqual(self.order.payment_status, "FAILED")
        self.assertFalse(self.order.stock_reserved)
        self.assertEqual(self.item.reserved_stock, 0)

        # Settled attempts are not polled again
        self.assertEqual(service.reconcile_stuck_payments()["checked"], 0)
        self.assertEqual(gateway.fetched, 1)

    def test_created_order_with_attempts_left_alone(self):
        Payment.objects.filter(pk=self.payment.pk).update(created_at=timezone.now() - timedelta(days=3))
        service = self.service(
            gateway_order={"id": TID, "status": "created"},
            attempts=[{"id": "pay_1", "status": "authorized"}],
        )
        self.assertIsNone(service.reconcile(Payment.objects.get(pk=self.payment.pk)))
        self.assert_untouched()

    def test_recent_payments_skipped(self):
        Payment.objects.filter(pk=self.payment.pk).update(created_at=timezone.now())
        service = self.service(gateway_order={"id": TID, "status": "paid", "amount_paid": 5103})
        self.assertEqual(service.reconcile_stuck_payments()["checked"], 0)

    def test_gateway_errors_counted(self):
        service = self.service(error=GatewayError("Payment Gateway Error"))
        stats = service.reconcile_stuck_payments()
        self.assertEqual(stats["errors"], 1)
        self.assert_untouched()

    def test_already_settled_by_webhook_is_noop(self):
        self.engine.apply_settlement(TID, Payment.CAPTURED, 5103)
        result = self.service(gateway_order={"id": TID, "status": "paid", "amount_paid": 5103}).reconcile(self.payment)
        self.assertFalse(result.applied)

    def test_task_uses_configured_gateway(self):
        gateway = FakeGateway(gateway_order={"id": TID, "status": "paid", "amount_paid": 5103})
        with patch.object(django_apps.get_app_config("payments"), "gateway", gateway):
            stats = reconcile_pending_payments()
        self.assertEqual(stats["captured"], 1)

    def test_task_skips_without_gateway(self):
        with patch.object(django_apps.get_app_config("payments"), "gateway", None):
            self.assertEqual(reconcile_pending_payments(), {"skipped": True})


class GatewayTestCase(TestCase):
    def setUp(self):
        cache.clear()
        self.client_mock = MagicMock()
        self.gateway = RazorpayGateway("rzp_test", "secret", client=self.client_mock)

    def test_create_order_payload(self):
        self.client_mock.order.create.return_value = {"id": "order_X"}

        result = self.gateway.create_order(5103, "INR", "JW1", {"order_id": "1"})

        self.assertEqual(result, {"id": "order_X"})
        self.client_mock.order.create.assert_called_once_with(
            {"amount": 5103, "currency": "INR", "receipt": "JW1", "notes": {"order_id": "1"}}
        )

    def test_fetch_order_payments_items(self):
        self.client_mock.order.payments.return_value = {"count": 1, "items": [{"id": "pay_1"}]}
        self.assertEqual(self.gateway.fetch_order_payments("order_X"), [{"id": "pay_1"}])

    def test_circuit_opens_after_repeated_failures(self):
        self.client_mock.order.fetch.side_effect = ConnectionError("timeout")

        for _ in range(5):
            with self.assertRaises(GatewayError) as ctx:
                self.gateway.fetch_order("order_X")
            self.assertEqual(ctx.exception.code, "gateway_error")

        with self.assertRaises(GatewayError) as ctx:
            self.gateway.fetch_order("order_X")
        self.assertEqual(ctx.exception.code, "gateway_down")
        self.assertEqual(self.client_mock.order.fetch.call_count, 5)

    def test_missing_credentials(self):
        with self.assertRaises(GatewayConfigurationError):
            RazorpayGateway("", "secret")

    def test_checkout_signature(self):
        gateway = RazorpayGateway("rzp_test", "keysecret")
        signature = compute_signature(b"order_1|pay_1", "keysecret")

        self.assertTrue(gateway.verify_checkout_signature("order_1", "pay_1", signature))
        self.assertFalse(gateway.verify_checkout_signature("order_1", "pay_2", signature))
        self.assertFalse(gateway.verify_checkout_signature("order_1", "pay_1", "0" * 64))
        self.assertFalse(gateway.verify_checkout_signature("order_1", "pay_1", ""))
        self.assertFalse(gateway.verify_checkout_signature("", "pay_1", signature))

    def test_checkout_signature_checked_by_sdk(self):
        self.assertTrue(self.gateway.verify_checkout_signature("order_1", "pay_1", "sig"))
        self.client_mock.utility.verify_payment_signature.assert_called_once_with({
            "razorpay_order_id": "order_1",
            "razorpay_payment_id": "pay_1",
            "razorpay_signature": "sig",
        })

    def test_unconfigured_process_gateway(self):
        config = django_apps.get_app_config("payments")
        with patch.object(config, "gateway", None):
            with self.assertRaises(GatewayConfigurationError):
                config.get_gateway()

    def test_configured_at_startup(self):
        gateway = django_apps.get_app_config("payments").get_gateway()
        self.assertIsInstance(gateway, RazorpayGateway)
        self.assertEqual(gateway.key_id, settings.RAZORPAY_KEY_ID)

    def test_verify_view_without_gateway(self):
        user = User.objects.create_user(email="buyer@example.com", password="pass")
        item = StockItem.objects.create(sku="EAR-1", name="Pearl Earrings", price=Decimal("51.03"), total_stock=5)
        order = Order.objects.create(user=user, subtotal=item.price, total_amount=item.price)
        Payment.objects.create(order=order, transaction_id=TID, amount=5103)
        client = APIClient()
        client.force_authenticate(user=user)

        with patch.object(django_apps.get_app_config("payments"), "gateway", None):
            response = client.post(
                VERIFY_URL,
                {"razorpay_order_id": TID, "razorpay_payment_id": "pay_1", "razorpay_signature": "sig"},
                format="json",
                HTTP_IDEMPOTENCY_KEY="k1",
            )

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.data["error"]["code"], "config_error")


@skipUnless(connection.vendor == "postgresql", "row locks need PostgreSQL (set TEST_DATABASE_URL)")
class ConcurrentSettlementTestCase(TransactionTestCase):
    """
    Two callers settle the same transaction at once on a real database.
    Exactly one applies; the other sees the committed result as a replay.
    """

    def setUp(self):
        cache.clear()
        self.user = User.objects.create_user(email="buyer@example.com", password="pass")
        self.item = StockItem.objects.create(sku="EAR-1", name="Pearl Earrings", price=Decimal("51.03"), total_stock=5)
        self.order = Order.objects.create(user=self.user, subtotal=self.item.price, total_amount=self.item.price)
        OrderItem.objects.create(
            order=self.order, item=self.item, sku=self.item.sku,
            product_name=self.item.name, quantity=1, price=self.item.price,
        )
        InventoryService.reserve_for_order(self.order)
        Payment.objects.create(order=self.order, transaction_id=TID, amount=5103)

    def settle_concurrently(self, callers=2):
        barrier = threading.Barrier(callers)
        results, errors = [], []

        def settle(source):
            try:
                barrier.wait()
                results.append(
                    SettlementEngine(notifier=MagicMock()).settle(TID, Payment.CAPTURED, 5103, source=source)
                )
            except Exception as e:
                errors.append(e)
            finally:
                connection.close()

        threads = [threading.Thread(target=settle, args=(s,)) for s in ("webhook", "client")[:callers]]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)
        return results, errors

    def test_single_winner(self):
        results, errors = self.settle_concurrently()

        self.assertEqual(errors, [])
        self.assertEqual(sorted(r.applied for r in results), [False, True])
        self.assertEqual(Payment.objects.get(transaction_id=TID).status, Payment.CAPTURED)
        self.assertEqual(InventoryTransaction.objects.filter(transaction_type="commit").count(), 1)
        self.assertEqual(AuditLog.objects.filter(action="payment_captured", reference_id=TID).count(), 1)

        self.item.refresh_from_db()
        self.assertEqual(self.item.total_stock, 4)
        self.assertEqual(self.item.reserved_stock, 0)
