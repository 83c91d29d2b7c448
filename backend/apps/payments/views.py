# apps/payments/views.py
import logging
from django.apps import apps
from rest_framework.views import APIView
from rest_framework.response import Response
from rest_framework.permissions import IsAuthenticated, AllowAny
from rest_framework import status
from django.conf import settings
from django.shortcuts import get_object_or_404

from apps.utils.exceptions import error_payload
from apps.utils.idempotency import idempotent
from apps.orders.models import Order

from .events import IgnoredEvent, parse_webhook_event
from .exceptions import (
    GatewayConfigurationError,
    InvalidSignature,
    MalformedEvent,
    SettlementAnomaly,
    TransientStoreError,
    UnknownTransaction,
)
from .models import Payment
from .serializers import ClientConfirmationSerializer, PaymentSerializer
from .services import PaymentService
from .settlement import SettlementEngine
from .signatures import verify_webhook_signature

logger = logging.getLogger(__name__)


class SettlementViewMixin:
    engine_class = SettlementEngine

    def get_engine(self):
        return self.engine_class()


class CreatePaymentAPIView(APIView):
    """
    Initiates a Payment Intent (Order) with the Gateway.
    Returns the options Checkout.js needs to open the payment modal.
    """
    permission_classes = [IsAuthenticated]

    def post(self, request, order_id):
        # Ensure Order belongs to User; state checks live in the service
        order = get_object_or_404(Order, id=order_id, user=request.user)

        payment = PaymentService.create_payment(order, apps.get_app_config("payments").get_gateway())

        return Response({
            "id": payment.transaction_id,
            "amount": payment.amount,
            "currency": payment.currency,
            "key": settings.RAZORPAY_KEY_ID,
            "name": settings.STORE_NAME,
            "description": f"Order #{order.order_number}",
            "order_number": order.order_number,
        }, status=status.HTTP_201_CREATED)


class PaymentStatusAPIView(APIView):
    """
    Polled by checkout while the confirmation is in flight.
    """
    permission_classes = [IsAuthenticated]

    def get(self, request, order_id):
        order = get_object_or_404(Order, id=order_id, user=request.user)
        payment = order.payments.order_by("-created_at").first()

        return Response({
            "order_number": order.order_number,
            "order_status": order.status,
            "payment_status": order.payment_status,
            "payment": PaymentSerializer(payment).data if payment else None,
        })


class RazorpayVerifyAPIView(SettlementViewMixin, APIView):
    """
    Step 2: Verify the Checkout callback signature, then settle as CAPTURED.
    The webhook is the source of truth; this path only gets there first.
    """
    permission_classes = [IsAuthenticated]

    @idempotent(timeout=300)
    def post(self, request):
        serializer = ClientConfirmationSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        transaction_id = data["razorpay_order_id"]

        payment = Payment.objects.select_related("order").filter(transaction_id=transaction_id).first()

        # Same answer for "missing" and "not yours"
        if payment is None or payment.order.user_id != request.user.id:
            logger.warning(f"Client confirmation for unknown transaction {transaction_id} by user {request.user.id}")
            raise UnknownTransaction("Payment not found", transaction_id)

        secret = settings.RAZORPAY_KEY_SECRET
        if not secret:
            logger.error("RAZORPAY_KEY_SECRET not set: cannot verify client confirmation")
            raise GatewayConfigurationError("Payment verification unavailable")

        # We never trust the frontend's word; the signature must match our key secret
        gateway = apps.get_app_config("payments").get_gateway()
        if not gateway.verify_checkout_signature(
            transaction_id, data["razorpay_payment_id"], data["razorpay_signature"]
        ):
            logger.warning(f"Client signature mismatch for {transaction_id}")
            raise InvalidSignature("Payment signature verification failed")

        result = self.get_engine().settle(
            transaction_id,
            Payment.CAPTURED,
            payment.amount,
            provider_payment_id=data["razorpay_payment_id"],
            source="client",
        )

        return Response({
            "status": "success",
            "applied": result.applied,
            "order_number": result.order.order_number,
            "order_status": result.order.status,
            "payment_status": result.order.payment_status,
        })


class RazorpayWebhookAPIView(SettlementViewMixin, APIView):
    """
    Async Handler for Payment Confirmations.
    CRITICAL: This is the source of truth if the frontend network fails.

    Responses are for the gateway's retry logic: 2xx means "do not resend",
    5xx means "resend later". Anomalies get a 2xx because a resend cannot fix them.
    """
    permission_classes = [AllowAny] # Webhooks are public but signed
    authentication_classes = []     # Disable JWT for this endpoint

    @idempotent(timeout=3600, header="X-Razorpay-Event-Id", required=False, scope="razorpay_webhook")
    def post(self, request):
        # 1. Configuration: no secret, no processing
        secret = settings.RAZORPAY_WEBHOOK_SECRET
        if not secret:
            logger.error("RAZORPAY_WEBHOOK_SECRET not set")
            return Response(
                error_payload("config_error", "Webhook not configured", "GatewayConfigurationError"),
                status=status.HTTP_500_INTERNAL_SERVER_ERROR,
            )

        # 2. Security Check (HMAC over the bytes exactly as received)
        raw_body = getattr(request, "raw_body", None)
        if raw_body is None:
            raw_body = request.body
        signature = request.headers.get("X-Razorpay-Signature")
        if not verify_webhook_signature(raw_body, signature, secret):
            logger.warning(
                "Webhook Signature Mismatch",
                extra={"metadata": {"event_id": request.headers.get("X-Razorpay-Event-Id"), "signature": signature}},
            )
            return Response(
                error_payload("invalid_signature", "Invalid signature", "InvalidSignature"),
                status=status.HTTP_401_UNAUTHORIZED,
            )

        # 3. Decode the verified body
        try:
            event = parse_webhook_event(raw_body)
        except MalformedEvent as e:
            logger.warning(f"Malformed webhook: {e.message}")
            return Response(
                error_payload(e.code, "Malformed event", "MalformedEvent"),
                status=status.HTTP_400_BAD_REQUEST,
            )

        if isinstance(event, IgnoredEvent):
            logger.info(f"Webhook: ignoring {event.event_type}")
            return Response({"status": "ignored", "event": event.event_type})

        # 4. Settle
        try:
            result = self.get_engine().settle(
                event.transaction_id,
                event.outcome,
                event.amount,
                provider_payment_id=event.provider_payment_id,
                method=event.method,
                payload=event.payload,
                source="webhook",
            )
        except SettlementAnomaly as e:
            # Logged and audited by the engine
            return Response({"status": "rejected", "code": e.code})
        except TransientStoreError as e:
            logger.error(f"Webhook settlement of {event.transaction_id} deferred to gateway retry")
            return Response(
                error_payload(e.code, "Temporarily unavailable", "TransientStoreError"),
                status=status.HTTP_503_SERVICE_UNAVAILABLE,
            )
        except Exception:
            logger.exception(f"Webhook processing error for {event.transaction_id}")
            return Response(
                error_payload("internal_error", "Internal error", "ServerError"),
                status=status.HTTP_500_INTERNAL_SERVER_ERROR,
            )

        return Response({
            "status": "processed" if result.applied else "duplicate",
            "outcome": result.outcome,
        })
