import logging
from enum import Enum
from functools import lru_cache

from django.conf import settings

from .clickpesa import ClickPesaGateway
from .config import DEFAULT_TIMEOUT, GatewayConfig
from .exceptions import UnknownGatewayError
from .paypal import PayPalGateway
from .stripe import StripeGateway

logger = logging.getLogger(__name__)


class GatewayKind(str, Enum):
    STRIPE = "stripe"
    PAYPAL = "paypal"
    CLICKPESA = "clickpesa"

    @classmethod
    def parse(cls, value):
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            raise UnknownGatewayError(f"Unknown payment gateway: {value}") from None


GATEWAY_CLASSES = {
    GatewayKind.STRIPE: StripeGateway,
    GatewayKind.PAYPAL: PayPalGateway,
    GatewayKind.CLICKPESA: ClickPesaGateway,
}


def build_gateways(gateway_settings, timeout=DEFAULT_TIMEOUT):
    """Instantiate every enabled gateway from a PAYMENT_GATEWAYS-style dict."""
    gateways = {}
    for kind, gateway_class in GATEWAY_CLASSES.items():
        config = GatewayConfig.from_dict(kind.value, gateway_settings.get(kind.value), timeout=timeout)
        if not config.enabled:
            logger.info("Payment gateway %s is disabled", kind.value)
            continue
        gateways[kind.value] = gateway_class(config)
    return gateways


@lru_cache(maxsize=None)
def get_gateways():
    return build_gateways(
        getattr(settings, "PAYMENT_GATEWAYS", {}),
        timeout=getattr(settings, "PAYMENT_HTTP_TIMEOUT", DEFAULT_TIMEOUT),
    )


def get_gateway(name, gateways=None):
    kind = GatewayKind.parse(name)
    gateways = get_gateways() if gateways is None else gateways
    gateway = gateways.get(kind.value)
    if gateway is None:
        raise UnknownGatewayError(f"Payment gateway not enabled: {kind.value}")
    return gateway
