# apps/payments/gateway.py
import logging

import razorpay
from django.conf import settings

from apps.utils.resilience import CircuitBreaker, CircuitBreakerOpenException

from .exceptions import GatewayConfigurationError, GatewayError

logger = logging.getLogger(__name__)


class RazorpayGateway:
    """
    Thin wrapper over the Razorpay SDK for the calls this service makes:
    creating a gateway order at checkout, checking the Checkout callback
    signature and reading the order back during reconciliation.
    Remote calls go through the shared "razorpay" circuit breaker.
    """

    def __init__(self, key_id, key_secret, client=None):
        if not (key_id and key_secret):
            raise GatewayConfigurationError("Razorpay credentials are not configured")
        self.key_id = key_id
        self.client = client or razorpay.Client(auth=(key_id, key_secret))
        self.breaker = CircuitBreaker(service_name="razorpay", failure_threshold=5, recovery_timeout=30)

    @classmethod
    def from_settings(cls):
        return cls(settings.RAZORPAY_KEY_ID, settings.RAZORPAY_KEY_SECRET)

    def _call(self, label, func, *args):
        try:
            return self.breaker(func)(*args)
        except CircuitBreakerOpenException:
            raise GatewayError("Payment system busy. Please try later.", code="gateway_down")
        except Exception as e:
            logger.error(f"Razorpay {label} failed: {e}")
            raise GatewayError("Payment Gateway Error")

    def create_order(self, amount, currency, receipt, notes=None):
        data = {
            "amount": amount,
            "currency": currency,
            "receipt": receipt,
            "notes": notes or {},
        }
        return self._call("order.create", self.client.order.create, data)

    def fetch_order(self, transaction_id):
        return self._call("order.fetch", self.client.order.fetch, transaction_id)

    def fetch_order_payments(self, transaction_id):
        response = self._call("order.payments", self.client.order.payments, transaction_id)
        return response.get("items", [])

    def verify_checkout_signature(self, order_id, payment_id, signature) -> bool:
        """
        Checkout callback check, done locally by the SDK against the key secret.
        """
        if not (order_id and payment_id and signature):
            return False
        try:
            self.client.utility.verify_payment_signature({
                "razorpay_order_id": order_id,
                "razorpay_payment_id": payment_id,
                "razorpay_signature": signature,
            })
        except razorpay.errors.SignatureVerificationError:
            return False
        return True
