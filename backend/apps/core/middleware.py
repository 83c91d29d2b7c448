import uuid
import logging
from contextvars import ContextVar
from django.conf import settings
from django.http import JsonResponse
from django.core.cache import cache

logger = logging.getLogger(__name__)

# ContextVar for Request ID (Async Safe)
_correlation_id = ContextVar("correlation_id", default=None)

def get_correlation_id():
    return _correlation_id.get()

class CorrelationIDMiddleware:
    """
    Attaches a unique Request ID (Trace ID) to every request.
    """
    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        request_id = request.headers.get('X-Request-ID') or str(uuid.uuid4())
        token = _correlation_id.set(request_id)
        request.correlation_id = request_id

        try:
            response = self.get_response(request)
            response['X-Request-ID'] = request_id
            return response
        finally:
            _correlation_id.reset(token)

class RawBodyMiddleware:
    """
    Captures the untouched request bytes for signed endpoints.

    Gateway signatures are computed over the exact body the gateway sent, so
    the bytes are pinned on `request.raw_body` before any parser (DRF, form
    parsing, other middleware) reads the stream. Other routes are untouched.
    """
    def __init__(self, get_response):
        self.get_response = get_response
        self.paths = tuple(getattr(settings, "RAW_BODY_PATHS", ()))

    def __call__(self, request):
        if request.method == "POST" and request.path.startswith(self.paths):
            request.raw_body = request.body
        return self.get_response(request)

class GlobalKillSwitchMiddleware:
    """
    Emergency Stop for maintenance or critical incidents.
    KILL_SWITCH_EXEMPT_PATHS (payment callbacks) always pass through.
    """
    def __init__(self, get_response):
        self.get_response = get_response
        self.exempt_paths = tuple(getattr(settings, "KILL_SWITCH_EXEMPT_PATHS", ()))

    def __call__(self, request):
        if request.method in ["POST", "PUT", "PATCH", "DELETE"] and not request.path.startswith(self.exempt_paths):
            try:
                if cache.get("config:kill_switch:active"):
                    return JsonResponse(
                        {"error": {"code": "maintenance_mode", "message": "System under maintenance."}},
                        status=503
                    )
            except Exception as e:
                # Fail Closed: If the cache is down, block writes to prevent corruption
                logger.error(f"Kill switch check failed: {e}")
                return JsonResponse({"error": "System error"}, status=503)
        return self.get_response(request)
