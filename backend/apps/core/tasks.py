# apps/core/tasks.py
from celery import shared_task
from django.core.cache import cache
from django.utils import timezone


@shared_task
def beat_heartbeat():
    """
    Liveness Signal: Writes timestamp to the cache.
    The HealthCheck endpoint checks this to ensure the Scheduler is alive.
    """
    cache.set("celery_beat_health", timezone.now().timestamp(), timeout=120)
    return "Beat Alive"
