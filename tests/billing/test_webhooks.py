import json
from decimal import Decimal
from unittest import mock

import pytest
from django.urls import reverse

from apps.billing.models import Payment, WebhookEvent
from apps.billing.services import PaymentGatewayService
from apps.core.services.payments import ChecksumService

from tests.utils import flip_last_char, stripe_signature_header

pytestmark = pytest.mark.django_db


def _url(gateway):
    return reverse("billing_webhooks:payment_webhook", args=[gateway])


def _post_clickpesa(client, payload, signature=None, **extra):
    if signature is None:
        signature = ChecksumService("checksum-secret").sign(payload)
    return client.post(
        _url("clickpesa"),
        data=json.dumps(payload),
        content_type="application/json",
        HTTP_X_CLICKPESA_SIGNATURE=signature,
        **extra,
    )


def _success_payload(payment):
    return {
        "status": "SUCCESS",
        "orderReference": payment.gateway_payment_id,
        "id": payment.gateway_transaction_id,
        "collectedAmount": 10000,
        "collectedCurrency": "TZS",
    }


class TestClickPesaWebhook:
    def test_signed_success_completes_payment(self, client, processing_payment, invoice):
        response = _post_clickpesa(client, _success_payload(processing_payment), REMOTE_ADDR="196.41.0.10")

        assert response.status_code == 200
        assert response.json() == {
            "status": "processed",
            "action": "payment_completed",
            "payment_status": "completed",
        }
        processing_payment.refresh_from_db()
        assert processing_payment.status == "completed"
        invoice.refresh_from_db()
        assert invoice.paid_amount == Decimal("10000")
        assert invoice.status == "paid"

        event = WebhookEvent.objects.get()
        assert event.provider == "clickpesa"
        assert event.status == "processed"
        assert event.payment == processing_payment
        assert event.ip_address == "196.41.0.10"
        assert event.headers["X-Clickpesa-Signature"] == "[redacted]"

    def test_redelivery_does_not_double_credit(self, client, processing_payment, invoice):
        payload = _success_payload(processing_payment)

        first = _post_clickpesa(client, payload)
        second = _post_clickpesa(client, payload)

        assert first.status_code == 200
        assert second.status_code == 200
        invoice.refresh_from_db()
        assert invoice.paid_amount == Decimal("10000")
        assert invoice.balance_due == Decimal("0")

    def test_tampered_signature_is_rejected(self, client, processing_payment, invoice):
        payload = _success_payload(processing_payment)
        signature = flip_last_char(ChecksumService("checksum-secret").sign(payload))

        response = _post_clickpesa(client, payload, signature=signature)

        assert response.status_code == 401
        processing_payment.refresh_from_db()
        assert processing_payment.status == "processing"
        invoice.refresh_from_db()
        assert invoice.paid_amount == Decimal("0")
        event = WebhookEvent.objects.get()
        assert event.status == "failed"
        assert event.event_type == "verification_failed"

    def test_failure_notification(self, client, processing_payment):
        payload = {
            "status": "FAILED",
            "orderReference": processing_payment.gateway_payment_id,
            "errorMessage": "Payer did not enter PIN",
        }

        response = _post_clickpesa(client, payload)

        assert response.json()["payment_status"] == "failed"
        processing_payment.refresh_from_db()
        assert processing_payment.failure_reason == "Payer did not enter PIN"

    def test_unknown_status_is_ignored(self, client, processing_payment):
        payload = {"status": "ON_HOLD", "orderReference": processing_payment.gateway_payment_id}

        response = _post_clickpesa(client, payload)

        assert response.status_code == 200
        assert response.json()["status"] == "ignored"
        processing_payment.refresh_from_db()
        assert processing_payment.status == "processing"

    def test_unsigned_delivery_accepted_by_default(self, client, processing_payment):
        response = client.post(
            _url("clickpesa"), data=json.dumps(_success_payload(processing_payment)), content_type="application/json"
        )

        assert response.status_code == 200

    def test_unsigned_delivery_rejected_when_required(self, client, settings, processing_payment):
        settings.PAYMENT_WEBHOOK_REQUIRE_SIGNATURE = True

        response = client.post(
            _url("clickpesa"), data=json.dumps(_success_payload(processing_payment)), content_type="application/json"
        )

        assert response.status_code == 401
        processing_payment.refresh_from_db()
        assert processing_payment.status == "processing"

    def test_unknown_reference(self, client):
        response = _post_clickpesa(client, {"status": "SUCCESS", "orderReference": "PAY999"})

        assert response.status_code == 200
        assert response.json() == {"status": "payment_not_found"}
        assert WebhookEvent.objects.get().status == "ignored"

    def test_missing_reference(self, client):
        response = _post_clickpesa(client, {"status": "SUCCESS"})

        assert response.status_code == 400
        assert WebhookEvent.objects.get().status == "failed"

    def test_processing_error_returns_500(self, client, processing_payment):
        with mock.patch.object(PaymentGatewayService, "apply_webhook", side_effect=RuntimeError("db down")):
            response = _post_clickpesa(client, _success_payload(processing_payment))

        assert response.status_code == 500
        event = WebhookEvent.objects.get()
        assert event.status == "failed"
        assert event.error_message == "db down"


class TestMalformedDeliveries:
    def test_invalid_json(self, client):
        response = client.post(_url("clickpesa"), data="{not json", content_type="application/json")

        assert response.status_code == 400
        assert not WebhookEvent.objects.exists()

    def test_non_object_body(self, client):
        response = client.post(_url("clickpesa"), data="[1, 2]", content_type="application/json")

        assert response.status_code == 400

    def test_unknown_gateway(self, client):
        response = client.post(_url("square"), data="{}", content_type="application/json")

        assert response.status_code == 400

    def test_get_not_allowed(self, client):
        assert client.get(_url("clickpesa")).status_code == 405


class TestStripeWebhook:
    @pytest.fixture
    def card_payment(self, usd_invoice):
        usd_invoice.paid_amount = Decimal("0")
        usd_invoice.balance_due = Decimal("100.00")
        usd_invoice.status = "sent"
        usd_invoice.save()
        return Payment.objects.create(
            payment_number="PAY-2026-000300",
            invoice=usd_invoice,
            status="processing",
            gateway="stripe",
            currency="USD",
            amount=Decimal("100.00"),
            gateway_payment_id="pi_3",
        )

    def _post(self, client, event, secret="whsec_test_secret"):
        body = json.dumps(event).encode()
        return client.post(
            _url("stripe"),
            data=body,
            content_type="application/json",
            HTTP_STRIPE_SIGNATURE=stripe_signature_header(body, secret),
        )

    def _event(self, event_id="evt_1"):
        return {
            "id": event_id,
            "type": "payment_intent.succeeded",
            "data": {"object": {"id": "pi_3", "object": "payment_intent", "latest_charge": "ch_3"}},
        }

    def test_succeeded_event(self, client, card_payment, usd_invoice):
        response = self._post(client, self._event())

        assert response.status_code == 200
        card_payment.refresh_from_db()
        assert card_payment.status == "completed"
        assert card_payment.gateway_transaction_id == "ch_3"
        usd_invoice.refresh_from_db()
        assert usd_invoice.status == "paid"

    def test_duplicate_event_id(self, client, card_payment):
        self._post(client, self._event())

        response = self._post(client, self._event())

        assert response.json() == {"status": "already_processed"}
        assert WebhookEvent.objects.filter(event_id="evt_1").count() == 1

    def test_bad_signature(self, client, card_payment):
        response = self._post(client, self._event(), secret="whsec_wrong")

        assert response.status_code == 401
        card_payment.refresh_from_db()
        assert card_payment.status == "processing"
