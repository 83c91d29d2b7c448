# apps/orders/tasks.py
import logging
from datetime import timedelta

from celery import shared_task
from django.conf import settings
from django.core.mail import send_mail
from django.db import transaction
from django.utils import timezone

from .models import Order

logger = logging.getLogger(__name__)


@shared_task(
    bind=True,
    max_retries=5,
    default_retry_delay=60,
    autoretry_for=(Exception,),
    retry_backoff=True, # Exponential Backoff
    retry_backoff_max=600 # Cap wait time at 10 mins
)
def send_order_confirmation_email(self, order_id):
    """
    Background task to send the order confirmation email.
    Scheduled by settlement after commit, so it only ever sees PAID orders.
    DoesNotExist is non-recoverable and is not retried.
    """
    try:
        order = Order.objects.select_related("user").get(id=order_id)
    except Order.DoesNotExist:
        logger.error(f"Order {order_id} not found for email task. Skipping.")
        return "Order Not Found"

    if not order.user.email:
        return "No Recipient"

    send_mail(
        subject=f"Order Confirmed - {order.order_number}",
        message=(
            f"Thank you for shopping with {settings.STORE_NAME}!\n\n"
            f"Your payment of Rs. {order.total_amount} for order {order.order_number} "
            f"was received and your order is confirmed."
        ),
        from_email=settings.DEFAULT_FROM_EMAIL,
        recipient_list=[order.user.email],
        fail_silently=False,
    )
    logger.info(f"Confirmation email sent for Order {order.order_number}")
    return "Sent"


@shared_task
def release_expired_reservations():
    """
    Frees stock held by unpaid orders once the reservation window passes.
    Orders with a payment attempt still PENDING are left to reconciliation.
    """
    from apps.inventory.services import InventoryService

    cutoff = timezone.now() - timedelta(minutes=settings.INVENTORY_RESERVATION_MINUTES)
    candidates = Order.objects.filter(
        stock_reserved=True,
        status="PENDING",
        created_at__lt=cutoff,
    ).exclude(payment_status="PAID").exclude(payments__status="PENDING").values_list("id", flat=True)

    released = 0
    for order_id in list(candidates):
        try:
            with transaction.atomic():
                order = Order.objects.select_for_update().get(id=order_id)
                if order.payment_status == "PAID" or order.payments.filter(status="PENDING").exists():
                    continue
                if InventoryService.release_for_order(order, reason="reservation_expired"):
                    released += 1
        except Exception as e:
            logger.error(f"Reservation release failed for order {order_id}: {e}")

    if released:
        logger.info(f"Released stock for {released} expired orders")
    return released
