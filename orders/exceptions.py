"""Errors raised by the cart, checkout and order workflow."""
from rest_framework import status
from rest_framework.exceptions import APIException
from rest_framework.views import exception_handler


class MedLinkError(APIException):
    """Base error; rendered as {"error": message, "code": code, **payload}."""
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = 'The request could not be processed.'
    default_code = 'error'

    def __init__(self, message=None, code=None, payload=None):
        super().__init__(detail=message, code=code)
        self.message = str(self.detail)
        self.code = code or self.default_code
        self.payload = payload or {}

    def to_dict(self):
        rv = dict(self.payload)
        rv['error'] = self.message
        rv['code'] = self.code
        return rv


class ValidationError(MedLinkError):
    default_detail = 'Invalid input.'
    default_code = 'validation_error'


class InvalidTransitionError(MedLinkError):
    status_code = status.HTTP_409_CONFLICT
    default_code = 'invalid_transition'

    def __init__(self, current_status, requested_status, message=None):
        self.current_status = current_status
        self.requested_status = requested_status
        message = message or f"Cannot change status from '{current_status}' to '{requested_status}'."
        super().__init__(
            message,
            payload={'current_status': current_status, 'requested_status': requested_status},
        )


class ConflictError(MedLinkError):
    """A uniqueness guard tripped; the caller should treat it as already done."""
    status_code = status.HTTP_409_CONFLICT
    default_detail = 'This has already been done.'
    default_code = 'conflict'


class StateConflictError(MedLinkError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = 'Your cart changed during payment, please review it.'
    default_code = 'cart_changed'


class PaymentClosedError(MedLinkError):
    """The gateway captured a payment for a checkout that had already failed or expired."""
    status_code = status.HTTP_409_CONFLICT
    default_detail = 'This checkout was closed before the payment arrived; it will be refunded.'
    default_code = 'payment_closed'


class ExternalServiceError(MedLinkError):
    status_code = status.HTTP_502_BAD_GATEWAY
    default_detail = 'The payment service is unavailable, please try again.'
    default_code = 'external_service_error'


class GatewayTimeout(ExternalServiceError):
    status_code = status.HTTP_504_GATEWAY_TIMEOUT
    default_detail = 'The payment service did not answer in time, please try again.'
    default_code = 'gateway_timeout'


def api_exception_handler(exc, context):
    response = exception_handler(exc, context)
    if response is not None and isinstance(exc, MedLinkError):
        response.data = exc.to_dict()
    return response
