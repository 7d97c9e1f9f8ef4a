class PaymentGatewayError(Exception):
    """Base class for payment gateway errors."""


class ConfigurationError(PaymentGatewayError):
    """Required gateway credentials are missing. Raised before any network call."""


class AuthError(PaymentGatewayError):
    """The provider rejected a token exchange."""

    def __init__(self, message, response_body=None):
        super().__init__(message)
        self.response_body = response_body


class GatewayError(PaymentGatewayError):
    """The provider returned a non-success response."""

    def __init__(self, message, status_code=None, response_body=None):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body


class SignatureError(PaymentGatewayError):
    """A webhook failed its authenticity check."""


class UnknownGatewayError(PaymentGatewayError):
    pass


class PaymentNotFound(PaymentGatewayError):
    pass


class RefundNotAllowed(PaymentGatewayError):
    pass
