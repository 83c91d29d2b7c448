import logging

from rest_framework.views import exception_handler
from rest_framework.response import Response
from rest_framework import status

logger = logging.getLogger(__name__)


class BusinessLogicException(Exception):
    """
    Base class for domain-specific errors (e.g., UnknownTransaction, AmountMismatch).
    These are expected operational errors, not 500s.
    Subclasses pick their HTTP status via `http_status`.
    """
    http_status = status.HTTP_400_BAD_REQUEST
    default_code = "invalid_request"
    # Set on subclasses whose message carries internal state
    public_message = None

    def __init__(self, message, code=None, http_status=None):
        self.message = message
        self.code = code or self.default_code
        if http_status is not None:
            self.http_status = http_status
        super().__init__(message)


def error_payload(code, message, error_type="BusinessLogicError"):
    return {
        "error": {
            "code": code,
            "message": message,
            "type": error_type,
        }
    }


def custom_exception_handler(exc, context):
    """
    Custom DRF Exception Handler.
    Maps BusinessLogicException to its HTTP status with a standard error structure.
    Exceptions with a `public_message` answer with it; their detailed
    message stays in the server log.
    """
    response = exception_handler(exc, context)

    if isinstance(exc, BusinessLogicException):
        view = context.get("view")
        logger.info(
            f"{type(exc).__name__} in {type(view).__name__ if view else 'unknown view'}: {exc.code} ({exc.message})"
        )
        return Response(
            error_payload(exc.code, exc.public_message or exc.message, type(exc).__name__),
            status=exc.http_status,
        )

    if response is not None and response.status_code == 400:
        if "error" not in response.data:
            response.data = {
                "error": {
                    "code": "validation_error",
                    "details": response.data
                }
            }

    return response
