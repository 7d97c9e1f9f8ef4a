from .base import (
    FeeBreakdown,
    IntentResult,
    PaymentGateway,
    PaymentResult,
    PaymentStatus,
    RefundResult,
    RefundStatus,
    WebhookAction,
    WebhookResult,
)
from .checksum import ChecksumService
from .config import GatewayConfig
from .exceptions import (
    AuthError,
    ConfigurationError,
    GatewayError,
    PaymentGatewayError,
    PaymentNotFound,
    RefundNotAllowed,
    SignatureError,
    UnknownGatewayError,
)
from .factory import GatewayKind, build_gateways, get_gateway, get_gateways
