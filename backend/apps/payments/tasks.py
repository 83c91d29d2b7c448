# apps/payments/tasks.py
from celery import shared_task
from celery.utils.log import get_task_logger

logger = get_task_logger(__name__)

@shared_task
def reconcile_pending_payments():
    """
    Beat-driven safety net for webhooks that never arrived.
    Each payment is settled independently; one bad row never stops the sweep.
    """
    from django.apps import apps
    from .services import ReconciliationService
    from .exceptions import GatewayConfigurationError

    try:
        service = ReconciliationService(apps.get_app_config("payments").get_gateway())
    except GatewayConfigurationError as e:
        logger.error(f"Reconciliation skipped: {e.message}")
        return {"skipped": True}

    return service.reconcile_stuck_payments()
