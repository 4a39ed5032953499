"""Error kinds raised by the payment core; the HTTP layer maps them by status_code."""


class PaymentError(Exception):
    status_code = 500
    code = "payment_error"
    retryable = False

    def __init__(self, message: str | None = None):
        self.message = message or self.__class__.__name__
        super().__init__(self.message)


class ConfigurationError(PaymentError):
    status_code = 503
    code = "configuration_error"


class ValidationError(PaymentError):
    status_code = 400
    code = "validation_error"


class GatewayUnsupported(ValidationError):
    code = "gateway_unsupported"


class RefundExceedsAmount(ValidationError):
    code = "refund_exceeds_amount"


class AuthorizationError(PaymentError):
    status_code = 403
    code = "forbidden"


class UnauthorizedOrder(AuthorizationError):
    code = "unauthorized_order"


class NotFound(PaymentError):
    status_code = 404
    code = "not_found"


class OrderNotFound(NotFound):
    code = "order_not_found"


class StateError(PaymentError):
    status_code = 409
    code = "invalid_state"


class RefundNotSupported(StateError):
    code = "refund_not_supported"


class ConflictError(PaymentError):
    status_code = 409
    code = "conflict"
    retryable = True


class VerificationFailed(PaymentError):
    status_code = 422
    code = "verification_failed"


class SignatureError(VerificationFailed):
    code = "invalid_signature"


class AdapterError(PaymentError):
    status_code = 502
    code = "gateway_error"


class GatewayTimeout(AdapterError):
    status_code = 504
    code = "gateway_timeout"
    retryable = True
