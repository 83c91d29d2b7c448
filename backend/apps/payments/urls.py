# apps/payments/urls.py
from django.urls import path
from .views import (
    CreatePaymentAPIView,
    PaymentStatusAPIView,
    RazorpayVerifyAPIView,
    RazorpayWebhookAPIView
)

urlpatterns = [
    path("create/<int:order_id>/", CreatePaymentAPIView.as_view()),
    path("status/<int:order_id>/", PaymentStatusAPIView.as_view()),
    path("verify/", RazorpayVerifyAPIView.as_view()),
    path("webhook/", RazorpayWebhookAPIView.as_view()),
]
