import logging

from django.apps import AppConfig

logger = logging.getLogger(__name__)


class PaymentsConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "apps.payments"

    # Built once in ready(); None when credentials were missing at startup
    gateway = None

    def ready(self):
        from .exceptions import GatewayConfigurationError
        from .gateway import RazorpayGateway

        try:
            self.gateway = RazorpayGateway.from_settings()
        except GatewayConfigurationError:
            # Checkout and reconciliation refuse to run; webhooks need only the webhook secret
            logger.error("Razorpay credentials missing: gateway calls disabled")

    def get_gateway(self):
        from .exceptions import GatewayConfigurationError

        if self.gateway is None:
            raise GatewayConfigurationError("Payment Gateway not configured")
        return self.gateway
