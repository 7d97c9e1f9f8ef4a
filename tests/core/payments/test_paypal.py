import json
from decimal import Decimal
from unittest import mock

import paypalrestsdk
import pytest
import requests

from apps.core.services.payments import (
    GatewayError,
    PaymentStatus,
    RefundStatus,
    SignatureError,
    WebhookAction,
)

APPROVAL = {"paypal_payment_id": "PAYID-1", "payer_id": "PAYER-1"}


def _executed_payment(sale_state="completed"):
    paypal_payment = mock.Mock()
    paypal_payment.execute.return_value = True
    paypal_payment.to_dict.return_value = {
        "id": "PAYID-1",
        "state": "approved",
        "transactions": [{"related_resources": [{"sale": {"id": "SALE-1", "state": sale_state}}]}],
    }
    return paypal_payment


class TestProcessPayment:
    def test_executes_approved_payment(self, paypal_gateway, fake_payment):
        paypal_payment = _executed_payment()

        with mock.patch.object(paypalrestsdk.Payment, "find", return_value=paypal_payment) as find:
            result = paypal_gateway.process_payment(fake_payment, APPROVAL)

        find.assert_called_once_with("PAYID-1", api=paypal_gateway.api)
        paypal_payment.execute.assert_called_once_with({"payer_id": "PAYER-1"})
        assert result.status == PaymentStatus.COMPLETED
        assert result.transaction_id == "SALE-1"
        assert result.payment_id == "PAYID-1"
        assert result.fee_amount == Decimal("3.20")

    def test_pending_sale(self, paypal_gateway, fake_payment):
        with mock.patch.object(paypalrestsdk.Payment, "find", return_value=_executed_payment("pending")):
            result = paypal_gateway.process_payment(fake_payment, APPROVAL)

        assert result.status == PaymentStatus.PROCESSING

    def test_execution_rejected(self, paypal_gateway, fake_payment):
        paypal_payment = mock.Mock()
        paypal_payment.execute.return_value = False
        paypal_payment.error = {"name": "INSTRUMENT_DECLINED", "message": "The instrument was declined"}

        with mock.patch.object(paypalrestsdk.Payment, "find", return_value=paypal_payment):
            result = paypal_gateway.process_payment(fake_payment, APPROVAL)

        assert not result.success
        assert result.error_message == "The instrument was declined"

    def test_timeout(self, paypal_gateway, fake_payment):
        with mock.patch.object(paypalrestsdk.Payment, "find", side_effect=requests.Timeout()):
            result = paypal_gateway.process_payment(fake_payment, APPROVAL)

        assert result.error_message == "Gateway request timed out after 5s"

    def test_sdk_http_calls_carry_timeout(self, paypal_gateway, fake_payment):
        with mock.patch("requests.request", side_effect=requests.Timeout("read timed out")) as request:
            result = paypal_gateway.process_payment(fake_payment, APPROVAL)

        assert request.call_args.kwargs["timeout"] == 5
        assert result.status == PaymentStatus.FAILED
        assert result.error_message == "Gateway request timed out after 5s"

    def test_missing_approval_ids(self, paypal_gateway, fake_payment):
        with mock.patch.object(paypalrestsdk.Payment, "find") as find:
            result = paypal_gateway.process_payment(fake_payment, {"payer_id": "PAYER-1"})

        assert result.error_message == "Validation failed: PayPal payment id is required"
        find.assert_not_called()


class TestWebhooks:
    def test_sale_completed(self, paypal_gateway):
        payload = {
            "id": "WH-EVT-1",
            "event_type": "PAYMENT.SALE.COMPLETED",
            "resource": {"id": "SALE-1", "parent_payment": "PAYID-1", "state": "completed"},
        }

        result = paypal_gateway.handle_webhook(payload)

        assert result.action == WebhookAction.PAYMENT_COMPLETED
        assert result.reference == "PAYID-1"
        assert result.transaction_id == "SALE-1"
        assert paypal_gateway.extract_event_id(payload) == "WH-EVT-1"

    def test_capture_declined(self, paypal_gateway):
        payload = {
            "event_type": "PAYMENT.CAPTURE.DECLINED",
            "resource": {
                "id": "CAP-1",
                "status_details": {"reason": "DECLINED_BY_RISK_FRAUD_FILTERS"},
                "supplementary_data": {"related_ids": {"order_id": "ORDER-1"}},
            },
        }

        result = paypal_gateway.handle_webhook(payload)

        assert result.status == PaymentStatus.FAILED
        assert result.reference == "ORDER-1"
        assert result.failure_reason == "DECLINED_BY_RISK_FRAUD_FILTERS"

    def test_unhandled_event(self, paypal_gateway):
        result = paypal_gateway.handle_webhook({"event_type": "BILLING.PLAN.CREATED", "resource": {}})

        assert result.action == WebhookAction.IGNORED


class TestVerifyWebhook:
    body = json.dumps({"id": "WH-EVT-1", "event_type": "PAYMENT.SALE.COMPLETED"}).encode()
    headers = {
        "Paypal-Transmission-Id": "tx-1",
        "Paypal-Transmission-Time": "2026-10-19T10:00:00Z",
        "Paypal-Transmission-Sig": "c2lnbmF0dXJl",
        "Paypal-Cert-Url": "https://api.sandbox.paypal.com/v1/notifications/certs/CERT-1",
        "Paypal-Auth-Algo": "SHA256withRSA",
    }

    def test_verified(self, paypal_gateway):
        with mock.patch.object(paypalrestsdk.WebhookEvent, "verify", return_value=True) as verify:
            assert paypal_gateway.verify_webhook(self.headers, self.body, {}) is True

        verify.assert_called_once_with(
            webhook_id="WH-TEST",
            event_body=self.body.decode(),
            transmission_id="tx-1",
            timestamp="2026-10-19T10:00:00Z",
            cert_url="https://api.sandbox.paypal.com/v1/notifications/certs/CERT-1",
            actual_sig="c2lnbmF0dXJl",
            auth_algo="SHA256withRSA",
        )

    def test_rejected(self, paypal_gateway):
        with mock.patch.object(paypalrestsdk.WebhookEvent, "verify", return_value=False):
            with pytest.raises(SignatureError):
                paypal_gateway.verify_webhook(self.headers, self.body, {})

    def test_certificate_error(self, paypal_gateway):
        with mock.patch.object(paypalrestsdk.WebhookEvent, "verify", side_effect=ValueError("bad cert")):
            with pytest.raises(SignatureError, match="bad cert"):
                paypal_gateway.verify_webhook(self.headers, self.body, {})

    def test_unsigned(self, paypal_gateway):
        assert paypal_gateway.verify_webhook({}, self.body, {}) is None


class TestRefunds:
    def test_refunds_the_sale(self, paypal_gateway, fake_payment):
        fake_payment.gateway_transaction_id = "SALE-1"
        refund = mock.Mock()
        refund.success.return_value = True
        refund.to_dict.return_value = {"id": "RF-1", "state": "completed"}
        sale = mock.Mock()
        sale.refund.return_value = refund

        with mock.patch.object(paypalrestsdk.Sale, "find", return_value=sale) as find:
            result = paypal_gateway.process_refund(fake_payment, Decimal("40"), "Returned goods")

        find.assert_called_once_with("SALE-1", api=paypal_gateway.api)
        sale.refund.assert_called_once_with({
            "amount": {"total": "40.00", "currency": "USD"},
            "description": "Returned goods",
        })
        assert result.status == RefundStatus.COMPLETED
        assert result.refund_id == "RF-1"

    def test_refund_rejected(self, paypal_gateway, fake_payment):
        refund = mock.Mock()
        refund.success.return_value = False
        refund.error = {"name": "TRANSACTION_REFUSED", "message": "Refund refused"}
        sale = mock.Mock()
        sale.refund.return_value = refund

        with mock.patch.object(paypalrestsdk.Sale, "find", return_value=sale):
            result = paypal_gateway.process_refund(fake_payment, Decimal("40"))

        assert result.status == RefundStatus.FAILED
        assert result.error_message == "Refund refused"


class TestStatusAndConnection:
    def test_query_status(self, paypal_gateway):
        with mock.patch.object(paypalrestsdk.Payment, "find", return_value=_executed_payment("denied")):
            assert paypal_gateway.query_payment_status("PAYID-1") == PaymentStatus.FAILED

    def test_query_status_transport_error(self, paypal_gateway):
        error = requests.ConnectionError("connection reset")
        with mock.patch.object(paypalrestsdk.Payment, "find", side_effect=error):
            with pytest.raises(GatewayError):
                paypal_gateway.query_payment_status("PAYID-1")

    def test_connection(self, paypal_gateway):
        with mock.patch.object(paypal_gateway.api, "get_access_token", return_value="A21AA"):
            assert paypal_gateway.test_connection() == (True, "Connection successful")
