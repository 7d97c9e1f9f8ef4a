from decimal import Decimal
from types import SimpleNamespace
from unittest import mock

import pytest
import requests
from django.core.cache import cache

from apps.core.services.payments.clickpesa import ClickPesaGateway
from apps.core.services.payments.config import GatewayConfig
from apps.core.services.payments.factory import get_gateways
from apps.core.services.payments.paypal import PayPalGateway
from apps.core.services.payments.stripe import StripeGateway

from tests.utils import CLICKPESA_SETTINGS, PAYPAL_SETTINGS, STRIPE_SETTINGS, make_response


@pytest.fixture(autouse=True)
def _isolate_gateway_state():
    cache.clear()
    get_gateways.cache_clear()
    yield
    get_gateways.cache_clear()

@pytest.fixture
def http_session():
    session = mock.Mock(spec=requests.Session)
    session.post.return_value = make_response(200, {"success": True, "token": "Bearer test-token"})
    return session

@pytest.fixture
def clickpesa(http_session):
    return ClickPesaGateway(GatewayConfig.from_dict("clickpesa", CLICKPESA_SETTINGS), session=http_session)

@pytest.fixture
def stripe_gateway():
    gateway = StripeGateway(GatewayConfig.from_dict("stripe", STRIPE_SETTINGS))
    gateway.client = mock.Mock()
    return gateway

@pytest.fixture
def paypal_gateway():
    return PayPalGateway(GatewayConfig.from_dict("paypal", PAYPAL_SETTINGS))

@pytest.fixture
def gateways(clickpesa, stripe_gateway, paypal_gateway):
    return {"clickpesa": clickpesa, "stripe": stripe_gateway, "paypal": paypal_gateway}

@pytest.fixture
def fake_payment():
    """Just enough of a Payment for adapter tests that never touch the database."""
    return SimpleNamespace(
        pk="8d1f7c1e-0000-4000-8000-000000000001",
        payment_number="PAY-2026-000001",
        amount=Decimal("100.00"),
        currency="USD",
        gateway_payment_id="",
        gateway_transaction_id="",
        invoice=SimpleNamespace(invoice_number="INV-2026-0001"),
    )
