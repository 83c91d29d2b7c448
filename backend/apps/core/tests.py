# apps/core/tests.py
import logging
import json

from django.test import TestCase, RequestFactory, override_settings
from django.core.cache import cache
from django.http import JsonResponse
from apps.core.middleware import CorrelationIDMiddleware, GlobalKillSwitchMiddleware, RawBodyMiddleware, _correlation_id
from apps.utils.logging import GDPRJsonFormatter, CorrelationIdFilter

class MiddlewareTestCase(TestCase):
    def setUp(self):
        self.factory = RequestFactory()
        self.get_response = lambda req: JsonResponse({"status": "ok"})
        cache.clear()

    def test_correlation_id_generation(self):
        middleware = CorrelationIDMiddleware(self.get_response)
        request = self.factory.get("/")
        response = middleware(request)

        self.assertTrue(response.has_header("X-Request-ID"))
        self.assertIsNotNone(request.correlation_id)

    def test_correlation_id_propagated(self):
        middleware = CorrelationIDMiddleware(self.get_response)
        request = self.factory.get("/", HTTP_X_REQUEST_ID="req-42")
        response = middleware(request)

        self.assertEqual(response["X-Request-ID"], "req-42")
        self.assertIsNone(_correlation_id.get())

    def test_kill_switch_active(self):
        cache.set("config:kill_switch:active", True)
        middleware = GlobalKillSwitchMiddleware(self.get_response)

        # POST request should be blocked (State Changing)
        request = self.factory.post("/api/v1/orders/")
        response = middleware(request)
        self.assertEqual(response.status_code, 503)

        # GET request should pass (Read Only)
        request_get = self.factory.get("/api/v1/orders/")
        response_get = middleware(request_get)
        self.assertEqual(response_get.status_code, 200)

    @override_settings(KILL_SWITCH_EXEMPT_PATHS=("/api/v1/payments/webhook/",))
    def test_kill_switch_lets_webhooks_through(self):
        cache.set("config:kill_switch:active", True)
        middleware = GlobalKillSwitchMiddleware(self.get_response)

        response = middleware(self.factory.post("/api/v1/payments/webhook/"))
        self.assertEqual(response.status_code, 200)

    def test_kill_switch_inactive(self):
        cache.delete("config:kill_switch:active")
        middleware = GlobalKillSwitchMiddleware(self.get_response)

        request = self.factory.post("/")
        response = middleware(request)
        self.assertEqual(response.status_code, 200)

    @override_settings(RAW_BODY_PATHS=("/api/v1/payments/webhook/",))
    def test_raw_body_captured_for_signed_paths(self):
        middleware = RawBodyMiddleware(self.get_response)
        body = b'{"event":  "payment.captured"}'

        request = self.factory.post("/api/v1/payments/webhook/", data=body, content_type="application/json")
        middleware(request)
        self.assertEqual(request.raw_body, body)

        other = self.factory.post("/api/v1/orders/", data=body, content_type="application/json")
        middleware(other)
        self.assertFalse(hasattr(other, "raw_body"))

class LoggingTestCase(TestCase):
    def _record(self, msg, metadata=None):
        record = logging.LogRecord("apps.payments", logging.WARNING, __file__, 1, msg, None, None)
        if metadata is not None:
            record.metadata = metadata
        CorrelationIdFilter().filter(record)
        return record

    def test_json_output_masks_secrets(self):
        record = self._record(
            "webhook rejected",
            metadata={"razorpay_signature": "abc123", "nested": {"secret": "s3"}, "order": "JW1"},
        )
        output = json.loads(GDPRJsonFormatter().format(record))

        self.assertEqual(output["level"], "WARNING")
        self.assertEqual(output["correlation_id"], "N/A")
        self.assertEqual(output["metadata"]["razorpay_signature"], "***MASKED***")
        self.assertEqual(output["metadata"]["nested"]["secret"], "***MASKED***")
        self.assertEqual(output["metadata"]["order"], "JW1")

    def test_filter_uses_request_correlation_id(self):
        token = _correlation_id.set("req-7")
        try:
            record = self._record("hello")
        finally:
            _correlation_id.reset(token)
        self.assertEqual(record.correlation_id, "req-7")

class HealthCheckTestCase(TestCase):
    def test_health_check_ok(self):
        cache.clear()
        response = self.client.get("/health/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["services"]["beat"], "warming_up")

    def test_app_config_exposes_only_public_key(self):
        response = self.client.get("/api/config/")
        self.assertEqual(response.status_code, 200)
        payments = response.json()["payments"]
        self.assertEqual(payments["provider"], "razorpay")
        self.assertNotIn("secret", json.dumps(response.json()).lower())
