import time
import logging
from django.http import JsonResponse
from django.db import connection
from django.core.cache import cache
from rest_framework.views import APIView
from rest_framework.response import Response
from rest_framework.permissions import AllowAny
from django.conf import settings

logger = logging.getLogger(__name__)

def health_check(request):
    """
    Liveness Probe.
    Returns 200 if DB/cache are up.
    Returns 503 ONLY if critical infrastructure is unreachable.
    """
    status_data = {
        "status": "ok",
        "services": {"db": "ok", "redis": "ok", "beat": "ok"}
    }

    # 1. Check Database (Critical)
    try:
        with connection.cursor() as cursor:
            cursor.execute("SELECT 1")
    except Exception as e:
        logger.critical(f"Health Check DB Fail: {e}")
        status_data["status"] = "error"
        status_data["services"]["db"] = "unreachable"
        return JsonResponse(status_data, status=503)

    # 2. Check Cache (Critical: idempotency keys and circuit breakers live here)
    try:
        cache.set("health_ping", "pong", timeout=5)
        if cache.get("health_ping") != "pong":
            raise RuntimeError("Cache R/W mismatch")
    except Exception as e:
        logger.critical(f"Health Check Redis Fail: {e}")
        status_data["status"] = "error"
        status_data["services"]["redis"] = "unreachable"
        return JsonResponse(status_data, status=503)

    # 3. Check Celery Beat (reconciliation runs on beat). Degraded, not down.
    try:
        last_beat = cache.get("celery_beat_health")
        if last_beat is None:
            status_data["services"]["beat"] = "warming_up"
        elif time.time() - float(last_beat) > 90:
            status_data["services"]["beat"] = "stuck"
            status_data["status"] = "degraded"
    except Exception:
        status_data["services"]["beat"] = "unknown"

    return JsonResponse(status_data, status=200)


class AppConfigAPIView(APIView):
    """
    Public Bootstrap Endpoint for the storefront.
    Exposes only publishable values (the Razorpay key id, never the secret).
    """
    permission_classes = [AllowAny]
    authentication_classes = []

    def get(self, request):
        maintenance_mode = cache.get("config:kill_switch:active", False)

        return Response({
            "maintenance_mode": bool(maintenance_mode),
            "payments": {
                "provider": "razorpay",
                "key": settings.RAZORPAY_KEY_ID,
                "currency": settings.PAYMENT_CURRENCY,
            },
            "store": {
                "name": settings.STORE_NAME,
                "support_email": settings.STORE_SUPPORT_EMAIL,
            },
        })
