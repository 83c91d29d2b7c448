# apps/payments/store.py
from django.utils import timezone

from apps.orders.models import Order

from .models import Payment


class PaymentStore:
    """
    Row-level access to Payment and Order for settlement.
    Every method expects to run inside the caller's transaction.
    """

    def lock_payment(self, transaction_id):
        # PESSIMISTIC LOCK: concurrent deliveries for one transaction queue here
        return Payment.objects.select_for_update().filter(transaction_id=transaction_id).first()

    def reload_payment(self, payment_id):
        return Payment.objects.get(pk=payment_id)

    def lock_order(self, order_id):
        return Order.objects.select_for_update().get(pk=order_id)

    def compare_and_set_status(self, payment, new_status, **fields) -> bool:
        """
        Moves `payment` out of PENDING only if it is still PENDING in the database.
        Returns False when another writer got there first.
        """
        updated = Payment.objects.filter(pk=payment.pk, status=Payment.PENDING).update(
            status=new_status,
            updated_at=timezone.now(),
            **fields,
        )
        return updated == 1

    def has_other_capture(self, payment) -> bool:
        return Payment.objects.filter(
            order_id=payment.order_id,
            status=Payment.CAPTURED,
        ).exclude(pk=payment.pk).exists()
