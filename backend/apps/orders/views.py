# apps/orders/views.py
from django.shortcuts import get_object_or_404
from rest_framework import generics, status
from rest_framework.views import APIView
from rest_framework.response import Response
from rest_framework.permissions import IsAuthenticated
from rest_framework.pagination import PageNumberPagination
from django_filters.rest_framework import DjangoFilterBackend

from apps.utils.idempotency import idempotent

from .models import Order
from .services import OrderService
from .serializers import OrderSerializer, OrderListSerializer, CreateOrderSerializer


class StandardResultsSetPagination(PageNumberPagination):
    page_size = 20
    page_size_query_param = 'page_size'
    max_page_size = 100


class OrderListCreateAPIView(generics.ListAPIView):
    """
    GET: the customer's order history.
    POST: checkout step 1. Prices the items, reserves stock and creates a
    PENDING order. Payment is initiated separately via /payments/create/<order_id>/.
    """
    permission_classes = [IsAuthenticated]
    serializer_class = OrderListSerializer
    pagination_class = StandardResultsSetPagination
    filter_backends = [DjangoFilterBackend]
    filterset_fields = ['status', 'payment_status']

    def get_queryset(self):
        return Order.objects.filter(user=self.request.user)\
            .prefetch_related("items")\
            .order_by("-created_at")

    @idempotent(timeout=86400)
    def post(self, request):
        serializer = CreateOrderSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        order = OrderService.create_order(
            user=request.user,
            items_data=data["items"],
            shipping_address=data.get("shipping_address"),
        )
        return Response({"order": OrderSerializer(order).data}, status=status.HTTP_201_CREATED)


class OrderDetailAPIView(generics.RetrieveAPIView):
    permission_classes = [IsAuthenticated]
    serializer_class = OrderSerializer
    lookup_field = 'id'

    def get_queryset(self):
        return Order.objects.filter(user=self.request.user).prefetch_related("items", "payments")


class CancelOrderAPIView(APIView):
    permission_classes = [IsAuthenticated]

    def post(self, request, order_id):
        order = get_object_or_404(Order, id=order_id, user=request.user)
        order = OrderService.cancel_order(order)
        return Response({"status": "order cancelled", "order_number": order.order_number})
