# apps/payments/exceptions.py
from rest_framework import status

from apps.utils.exceptions import BusinessLogicException


class InvalidSignature(BusinessLogicException):
    http_status = status.HTTP_400_BAD_REQUEST
    default_code = "invalid_signature"


class MalformedEvent(BusinessLogicException):
    http_status = status.HTTP_400_BAD_REQUEST
    default_code = "malformed_event"


class SettlementAnomaly(BusinessLogicException):
    """
    Settlement refused to mutate anything. Needs a human, not a retry.
    The message names internal state and is only logged.
    """
    http_status = status.HTTP_409_CONFLICT
    public_message = "Payment could not be settled"

    def __init__(self, message, transaction_id, code=None, metadata=None):
        super().__init__(message, code=code)
        self.transaction_id = transaction_id
        self.metadata = metadata or {}


class UnknownTransaction(SettlementAnomaly):
    http_status = status.HTTP_404_NOT_FOUND
    default_code = "unknown_transaction"
    public_message = "Payment not found"


class ConflictingSettlement(SettlementAnomaly):
    default_code = "conflicting_settlement"
    public_message = "Payment cannot be settled in its current state"


class AmountMismatch(SettlementAnomaly):
    default_code = "amount_mismatch"
    public_message = "Payment amount does not match"


class TransientStoreError(BusinessLogicException):
    http_status = status.HTTP_503_SERVICE_UNAVAILABLE
    default_code = "store_unavailable"
    public_message = "Temporarily unavailable, retry later"


class GatewayConfigurationError(BusinessLogicException):
    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_code = "config_error"


class GatewayError(BusinessLogicException):
    http_status = status.HTTP_503_SERVICE_UNAVAILABLE
    default_code = "gateway_error"
