# apps/payments/events.py
"""
Typed decoding of Razorpay webhook envelopes.

The verified raw body is decoded once into one of PaymentCaptured,
PaymentFailed or IgnoredEvent. Anything the gateway sends that does not fit
the expected shape for a relevant event raises MalformedEvent here, so the
settlement engine only ever sees well-formed, typed input.
"""
import json
from dataclasses import dataclass, field
from typing import Union

from rest_framework import serializers

from .exceptions import MalformedEvent
from .models import Payment

CAPTURE_EVENTS = ("payment.captured", "order.paid")
FAILURE_EVENTS = ("payment.failed",)


@dataclass(frozen=True)
class PaymentCaptured:
    transaction_id: str
    amount: int
    provider_payment_id: str = ""
    method: str = ""
    event_type: str = "payment.captured"
    payload: dict = field(default_factory=dict, compare=False, repr=False)

    outcome = Payment.CAPTURED


@dataclass(frozen=True)
class PaymentFailed:
    transaction_id: str
    amount: int
    provider_payment_id: str = ""
    method: str = ""
    error_code: str = ""
    event_type: str = "payment.failed"
    payload: dict = field(default_factory=dict, compare=False, repr=False)

    outcome = Payment.FAILED


@dataclass(frozen=True)
class IgnoredEvent:
    event_type: str


WebhookEvent = Union[PaymentCaptured, PaymentFailed, IgnoredEvent]


class EnvelopeSerializer(serializers.Serializer):
    event = serializers.CharField(max_length=100)
    payload = serializers.DictField(required=False, default=dict)


class PaymentEntitySerializer(serializers.Serializer):
    id = serializers.CharField(max_length=100)
    order_id = serializers.CharField(max_length=100)
    amount = serializers.IntegerField(min_value=1)
    currency = serializers.CharField(max_length=3, required=False, default="INR")
    method = serializers.CharField(max_length=30, required=False, allow_blank=True, allow_null=True, default="")
    error_code = serializers.CharField(required=False, allow_blank=True, allow_null=True, default="")


class OrderEntitySerializer(serializers.Serializer):
    id = serializers.CharField(max_length=100)
    amount_paid = serializers.IntegerField(min_value=1)


def _entity(payload, name):
    container = payload.get(name)
    if not isinstance(container, dict) or not isinstance(container.get("entity"), dict):
        return None
    return container["entity"]


def _validated(serializer_class, data, event_type):
    serializer = serializer_class(data=data)
    if not serializer.is_valid():
        raise MalformedEvent(f"Invalid {event_type} payload: {sorted(serializer.errors)}")
    return serializer.validated_data


def parse_webhook_event(raw_body: bytes) -> WebhookEvent:
    try:
        document = json.loads(raw_body)
    except (TypeError, ValueError) as e:
        raise MalformedEvent(f"Webhook body is not valid JSON: {e}")

    if not isinstance(document, dict):
        raise MalformedEvent("Webhook body must be a JSON object")

    envelope = _validated(EnvelopeSerializer, document, "envelope")
    event_type = envelope["event"]
    payload = envelope["payload"]

    if event_type not in CAPTURE_EVENTS + FAILURE_EVENTS:
        return IgnoredEvent(event_type=event_type)

    payment_data = _entity(payload, "payment")

    if event_type == "order.paid":
        order_data = _entity(payload, "order")
        if order_data is None:
            raise MalformedEvent("order.paid without order entity")
        order = _validated(OrderEntitySerializer, order_data, event_type)
        payment = {}
        if payment_data is not None:
            payment = _validated(PaymentEntitySerializer, payment_data, event_type)
        return PaymentCaptured(
            transaction_id=order["id"],
            amount=order["amount_paid"],
            provider_payment_id=payment.get("id", ""),
            method=payment.get("method") or "",
            event_type=event_type,
            payload=document,
        )

    if payment_data is None:
        raise MalformedEvent(f"{event_type} without payment entity")
    payment = _validated(PaymentEntitySerializer, payment_data, event_type)

    if event_type in CAPTURE_EVENTS:
        return PaymentCaptured(
            transaction_id=payment["order_id"],
            amount=payment["amount"],
            provider_payment_id=payment["id"],
            method=payment["method"] or "",
            event_type=event_type,
            payload=document,
        )

    return PaymentFailed(
        transaction_id=payment["order_id"],
        amount=payment["amount"],
        provider_payment_id=payment["id"],
        method=payment["method"] or "",
        error_code=payment["error_code"] or "",
        event_type=event_type,
        payload=document,
    )
