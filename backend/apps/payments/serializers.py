# apps/payments/serializers.py
from rest_framework import serializers
from .models import Payment

class PaymentSerializer(serializers.ModelSerializer):
    class Meta:
        model = Payment
        fields = (
            "id",
            "transaction_id",
            "amount",
            "currency",
            "status",
            "method",
            "provider",
            "provider_payment_id",
            "settled_via",
            "created_at",
            "settled_at",
        )
        read_only_fields = fields


class ClientConfirmationSerializer(serializers.Serializer):
    razorpay_order_id = serializers.CharField(max_length=100)
    razorpay_payment_id = serializers.CharField(max_length=100)
    razorpay_signature = serializers.CharField(max_length=256)
