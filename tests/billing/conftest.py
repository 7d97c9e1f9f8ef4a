from decimal import Decimal

import pytest

from apps.billing.models import Invoice, Payment
from apps.billing.services import PaymentGatewayService

from tests.utils import make_response


@pytest.fixture
def service(gateways):
    return PaymentGatewayService(gateways=gateways)


@pytest.fixture
def invoice(db):
    return Invoice.objects.create(
        invoice_number="INV-2026-0001",
        currency="TZS",
        total_amount=Decimal("10000"),
        status="sent",
    )


@pytest.fixture
def usd_invoice(db):
    return Invoice.objects.create(
        invoice_number="INV-2026-0002",
        currency="USD",
        total_amount=Decimal("100.00"),
        paid_amount=Decimal("100.00"),
        status="paid",
    )


@pytest.fixture
def completed_stripe_payment(usd_invoice):
    """A settled card payment that fully paid ``usd_invoice``."""
    return Payment.objects.create(
        payment_number="PAY-2026-000100",
        invoice=usd_invoice,
        status="completed",
        gateway="stripe",
        currency="USD",
        amount=Decimal("100.00"),
        fee_amount=Decimal("3.20"),
        gateway_payment_id="pi_1",
        gateway_transaction_id="ch_1",
    )


@pytest.fixture
def processing_payment(invoice):
    return Payment.objects.create(
        payment_number="PAY-2026-000200",
        invoice=invoice,
        status="processing",
        gateway="clickpesa",
        currency="TZS",
        amount=Decimal("10000"),
        gateway_payment_id="PAY1700000000AB12CD",
        gateway_transaction_id="CP-TX-1",
    )


@pytest.fixture
def staff_user(django_user_model):
    return django_user_model.objects.create_user(username="accounts", password="pass", is_staff=True)


@pytest.fixture
def staff_client(client, staff_user):
    client.force_login(staff_user)
    return client


@pytest.fixture
def ussd_push(http_session):
    """Script the ClickPesa preview + initiate round trip to end in ``status``."""
    def script(status="PROCESSING", transaction_id="CP-TX-1"):
        http_session.request.side_effect = [
            make_response(200, {"activeMethods": [{"name": "M-PESA"}]}),
            make_response(200, {"id": transaction_id, "status": status}),
        ]
    return script
