# config/celery.py
import os
import logging
from celery import Celery
from celery.schedules import crontab
from celery.signals import before_task_publish, task_prerun, task_failure
from kombu import Queue

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'config.settings')

app = Celery('jewel_store')
app.config_from_object('django.conf:settings', namespace='CELERY')

# ------------------------------------------------------------------------------
# QUEUES
# high_priority: customer-visible (confirmation mail) and money (reconciliation)
# low_priority: housekeeping that may lag without harm
# ------------------------------------------------------------------------------
app.conf.task_queues = (
    Queue('default', routing_key='default'),
    Queue('high_priority', routing_key='high_priority'),
    Queue('low_priority', routing_key='low_priority'),
)
app.conf.task_default_queue = 'default'
app.conf.task_default_exchange = 'default'
app.conf.task_default_routing_key = 'default'

# A reconciliation run killed mid-sweep is simply redone; settlement is idempotent
app.conf.task_acks_late = True
app.conf.worker_prefetch_multiplier = 1
app.conf.task_reject_on_worker_lost = True
app.conf.broker_connection_retry_on_startup = True

app.autodiscover_tasks()

# ------------------------------------------------------------------------------
# TRACING: the web request's correlation id follows the task onto the worker
# ------------------------------------------------------------------------------
from apps.core.middleware import get_correlation_id, _correlation_id


@before_task_publish.connect
def transfer_correlation_id(headers=None, **kwargs):
    if headers is None:
        return
    request_id = get_correlation_id()
    if request_id:
        headers['X-Request-ID'] = request_id


@task_prerun.connect
def restore_correlation_id(task=None, **kwargs):
    request_headers = getattr(task.request, 'headers', None) or {}
    request_id = request_headers.get('X-Request-ID') or getattr(task.request, 'X-Request-ID', None)
    if request_id:
        _correlation_id.set(request_id)


@task_prerun.connect
def close_old_connections(**kwargs):
    """
    Workers hold connections across tasks; drop the stale ones
    before a task takes row locks.
    """
    from django.db import close_old_connections
    close_old_connections()


# ------------------------------------------------------------------------------
# DEAD LETTER LOGGING
# Arguments go through `metadata` so the JSON formatter masks them
# ------------------------------------------------------------------------------
logger = logging.getLogger('celery.dlq')


@task_failure.connect
def handle_task_failure(sender=None, task_id=None, exception=None, args=None, kwargs=None, **opts):
    task_name = sender.name if sender else 'unknown_task'
    logger.critical(
        f"[DLQ] Task failed permanently: {task_name} ({task_id}): {exception}",
        extra={'metadata': {'task_name': task_name, 'task_id': task_id, 'args': args, 'kwargs': kwargs}},
    )


# ------------------------------------------------------------------------------
# BEAT SCHEDULE (synced into django_celery_beat's DatabaseScheduler)
# ------------------------------------------------------------------------------
app.conf.beat_schedule = {
    'reconcile-pending-payments-every-10-mins': {
        'task': 'apps.payments.tasks.reconcile_pending_payments',
        'schedule': crontab(minute='*/10'),
    },
    'release-expired-reservations-every-5-mins': {
        'task': 'apps.orders.tasks.release_expired_reservations',
        'schedule': crontab(minute='*/5'),
    },
    'beat-heartbeat': {
        'task': 'apps.core.tasks.beat_heartbeat',
        'schedule': crontab(minute='*'),
    },
}

app.conf.task_routes = {
    'apps.orders.tasks.send_order_confirmation_email': {'queue': 'high_priority'},
    'apps.payments.tasks.reconcile_pending_payments': {'queue': 'high_priority'},
    'apps.orders.tasks.release_expired_reservations': {'queue': 'low_priority'},
    'apps.core.tasks.*': {'queue': 'default'},
}
