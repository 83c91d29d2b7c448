# apps/orders/serializers.py
from rest_framework import serializers
from .models import Order, OrderItem


class OrderItemSerializer(serializers.ModelSerializer):
    line_total = serializers.DecimalField(max_digits=12, decimal_places=2, read_only=True)

    class Meta:
        model = OrderItem
        fields = ("sku", "product_name", "quantity", "price", "line_total")


class OrderSerializer(serializers.ModelSerializer):
    items = OrderItemSerializer(many=True, read_only=True)
    latest_payment = serializers.SerializerMethodField()

    class Meta:
        model = Order
        fields = (
            "id",
            "order_number",
            "status",
            "payment_status",
            "subtotal",
            "discount",
            "shipping_charge",
            "total_amount",
            "items",
            "shipping_address_json",
            "latest_payment",
            "created_at",
            "cancelled_at",
        )
        read_only_fields = fields

    def get_latest_payment(self, obj):
        payment = obj.payments.order_by("-created_at").first()
        if payment is None:
            return None
        return {
            "id": payment.id,
            "status": payment.status,
            "amount": payment.amount,
            "currency": payment.currency,
        }


class OrderListSerializer(serializers.ModelSerializer):
    item_count = serializers.SerializerMethodField()

    class Meta:
        model = Order
        fields = ("id", "order_number", "status", "payment_status", "total_amount", "created_at", "item_count")

    def get_item_count(self, obj):
        return obj.items.count()


class OrderLineInputSerializer(serializers.Serializer):
    sku = serializers.CharField(max_length=100)
    quantity = serializers.IntegerField(min_value=1, max_value=20)


class CreateOrderSerializer(serializers.Serializer):
    items = OrderLineInputSerializer(many=True, allow_empty=False)
    shipping_address = serializers.DictField(required=False, default=dict)
