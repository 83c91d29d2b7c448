# apps/orders/urls.py
from django.urls import path
from .views import OrderListCreateAPIView, OrderDetailAPIView, CancelOrderAPIView

urlpatterns = [
    path("", OrderListCreateAPIView.as_view()),
    path("<int:id>/", OrderDetailAPIView.as_view()),
    path("<int:order_id>/cancel/", CancelOrderAPIView.as_view()),
]
