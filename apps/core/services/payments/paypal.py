import logging
from decimal import Decimal
from functools import cached_property

import paypalrestsdk
import requests

from .base import (
    IntentResult,
    PaymentGateway,
    PaymentResult,
    PaymentStatus,
    RefundResult,
    RefundStatus,
    compute_fees,
    to_decimal,
)
from .exceptions import ConfigurationError, GatewayError, SignatureError
from .utils import get_header, to_plain_dict

logger = logging.getLogger(__name__)

ZERO_DECIMAL_CURRENCIES = ("JPY", "HUF", "TWD")


def _error_message(error, default):
    if isinstance(error, dict):
        return error.get("message") or error.get("name") or default
    return str(error) if error else default


class TimeoutApi(paypalrestsdk.Api):
    """SDK client whose HTTP calls always carry a timeout."""

    def __init__(self, options=None, timeout=None, **kwargs):
        super().__init__(options, **kwargs)
        self.timeout = timeout

    def http_call(self, url, method, **kwargs):
        kwargs.setdefault("timeout", self.timeout)
        return super().http_call(url, method, **kwargs)


class PayPalGateway(PaymentGateway):
    name = "paypal"
    display_name = "PayPal"
    REQUIRED_FIELDS = ("client_id", "client_secret")
    SUPPORTED_CURRENCIES = ("USD", "EUR", "GBP", "CAD", "AUD", "JPY", "CHF", "SEK", "NOK", "DKK")
    PAYMENT_METHODS = {
        "paypal": "PayPal",
        "card": "Credit/Debit Card",
        "bank": "Bank Account",
    }
    STATUS_MAP = {
        "completed": PaymentStatus.COMPLETED,
        "approved": PaymentStatus.COMPLETED,
        "failed": PaymentStatus.FAILED,
        "cancelled": PaymentStatus.FAILED,
        "canceled": PaymentStatus.FAILED,
        "declined": PaymentStatus.FAILED,
        "denied": PaymentStatus.FAILED,
        "pending": PaymentStatus.PROCESSING,
        "processing": PaymentStatus.PROCESSING,
        "created": PaymentStatus.PROCESSING,
    }
    EVENT_STATUSES = {
        "PAYMENT.SALE.COMPLETED": PaymentStatus.COMPLETED,
        "PAYMENT.SALE.DENIED": PaymentStatus.FAILED,
        "PAYMENT.SALE.PENDING": PaymentStatus.PROCESSING,
        "PAYMENT.CAPTURE.COMPLETED": PaymentStatus.COMPLETED,
        "PAYMENT.CAPTURE.DENIED": PaymentStatus.FAILED,
        "PAYMENT.CAPTURE.DECLINED": PaymentStatus.FAILED,
        "PAYMENT.CAPTURE.PENDING": PaymentStatus.PROCESSING,
    }
    REFUND_STATUS_MAP = {
        "completed": RefundStatus.COMPLETED,
        "pending": RefundStatus.PENDING,
        "failed": RefundStatus.FAILED,
        "cancelled": RefundStatus.FAILED,
    }
    USD_FEE_PERCENTAGE = Decimal("2.9")
    INTERNATIONAL_FEE_PERCENTAGE = Decimal("4.4")
    FIXED_FEE = Decimal("0.30")
    TRANSMISSION_HEADERS = {
        "transmission_id": "PAYPAL-TRANSMISSION-ID",
        "timestamp": "PAYPAL-TRANSMISSION-TIME",
        "actual_sig": "PAYPAL-TRANSMISSION-SIG",
        "cert_url": "PAYPAL-CERT-URL",
        "auth_algo": "PAYPAL-AUTH-ALGO",
    }

    @cached_property
    def api(self):
        return TimeoutApi({
            "mode": "live" if self.config.is_live else "sandbox",
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
        }, timeout=self.config.timeout)

    @property
    def transport_errors(self):
        return (paypalrestsdk.exceptions.ConnectionError, requests.RequestException)

    @staticmethod
    def format_amount(amount, currency):
        amount = to_decimal(amount)
        if currency.upper() in ZERO_DECIMAL_CURRENCIES:
            return str(amount.quantize(Decimal("1")))
        return str(amount.quantize(Decimal("0.01")))

    def validate_method_data(self, data):
        errors = []
        if not data.get("paypal_payment_id"):
            errors.append("PayPal payment id is required")
        if not data.get("payer_id"):
            errors.append("PayPal payer id is required")
        return errors

    def calculate_fees(self, amount, currency="USD"):
        percentage = (
            self.USD_FEE_PERCENTAGE if currency == "USD" else self.INTERNATIONAL_FEE_PERCENTAGE
        )
        return compute_fees(amount, percentage, self.FIXED_FEE)

    @staticmethod
    def _first_sale(paypal_payment):
        for transaction in paypal_payment.get("transactions") or []:
            for related in transaction.get("related_resources") or []:
                if "sale" in related:
                    return related["sale"]
        return {}

    def process_payment(self, payment, data):
        """Execute a PayPal payment the payer already approved on paypal.com."""
        try:
            self.ensure_configured()
        except ConfigurationError as e:
            logger.error("PayPal payment not attempted: %s", e)
            return PaymentResult.failed(str(e))

        errors = self.validate({**data, "amount": payment.amount, "currency": payment.currency})
        if errors:
            return PaymentResult.failed("Validation failed: " + ", ".join(errors))

        try:
            paypal_payment = paypalrestsdk.Payment.find(data["paypal_payment_id"], api=self.api)
            executed = paypal_payment.execute({"payer_id": data["payer_id"]})
        except requests.Timeout:
            logger.error("PayPal execution timed out for payment %s", payment.pk)
            return PaymentResult.failed(f"Gateway request timed out after {self.config.timeout}s")
        except self.transport_errors as e:
            logger.exception("PayPal payment failed for payment %s", payment.pk)
            return PaymentResult.failed(str(e))

        if not executed:
            message = _error_message(paypal_payment.error, "PayPal payment execution failed")
            logger.warning("PayPal rejected payment %s: %s", payment.pk, message)
            return PaymentResult.failed(message, raw_response={"error": paypal_payment.error})

        raw = to_plain_dict(paypal_payment)
        sale = self._first_sale(raw)
        status = self.map_status(sale.get("state") or raw.get("state")) or PaymentStatus.PROCESSING
        if status == PaymentStatus.FAILED:
            result = PaymentResult.failed(sale.get("reason_code") or "Payment failed", raw_response=raw)
            result.payment_id = raw.get("id")
            return result

        fees = self.calculate_fees(payment.amount, payment.currency)
        return PaymentResult(
            status=status,
            transaction_id=sale.get("id") or raw.get("id"),
            payment_id=raw.get("id"),
            fee_amount=fees.fee_amount,
            net_amount=fees.net_amount,
            raw_response=raw,
        )

    def create_payment_intent(self, data):
        self.ensure_configured()
        currency = data["currency"].upper()
        paypal_payment = paypalrestsdk.Payment({
            "intent": "sale",
            "payer": {"payment_method": "paypal"},
            "transactions": [{
                "amount": {"total": self.format_amount(data["amount"], currency), "currency": currency},
                "description": data.get("description") or "Invoice payment",
                "custom": str(data.get("metadata", {}).get("invoice_id", "")),
            }],
            "redirect_urls": {
                "return_url": data["return_url"],
                "cancel_url": data["cancel_url"],
            },
        }, api=self.api)

        try:
            created = paypal_payment.create()
        except self.transport_errors as e:
            logger.exception("PayPal payment creation failed")
            raise GatewayError(f"PayPal payment creation failed: {e}") from e
        if not created:
            raise GatewayError(
                _error_message(paypal_payment.error, "PayPal payment creation failed"),
                response_body=paypal_payment.error,
            )

        approval_url = next(
            (link.href for link in paypal_payment.links if link.rel == "approval_url"), None
        )
        return IntentResult(
            reference=paypal_payment.id,
            amount=to_decimal(data["amount"]),
            currency=currency,
            redirect_url=approval_url,
        )

    def handle_webhook(self, payload):
        event_type = payload.get("event_type", "")
        resource = payload.get("resource") or {}
        status = self.EVENT_STATUSES.get(event_type)
        if status is None:
            logger.info("Ignoring PayPal event %s", event_type)

        failure_reason = None
        if status == PaymentStatus.FAILED:
            failure_reason = (
                resource.get("reason_code")
                or (resource.get("status_details") or {}).get("reason")
                or "Payment denied"
            )

        return self.webhook_result(
            status,
            reference=self.extract_reference(payload),
            transaction_id=resource.get("id"),
            event_type=event_type,
            failure_reason=failure_reason,
        )

    def extract_reference(self, payload):
        resource = payload.get("resource") or {}
        related_ids = (resource.get("supplementary_data") or {}).get("related_ids") or {}
        return resource.get("parent_payment") or related_ids.get("order_id") or resource.get("id") or None

    def extract_event_id(self, payload):
        return payload.get("id") or None

    def verify_webhook(self, headers, body, payload):
        values = {key: get_header(headers, header, "") for key, header in self.TRANSMISSION_HEADERS.items()}
        if not values["actual_sig"]:
            return None
        if not self.config.webhook_id:
            raise SignatureError("PayPal webhook id not configured")

        event_body = body.decode("utf-8") if isinstance(body, bytes) else body
        try:
            verified = paypalrestsdk.WebhookEvent.verify(
                webhook_id=self.config.webhook_id,
                event_body=event_body,
                transmission_id=values["transmission_id"],
                timestamp=values["timestamp"],
                cert_url=values["cert_url"],
                actual_sig=values["actual_sig"],
                auth_algo=values["auth_algo"] or "sha256",
            )
        except Exception as e:
            raise SignatureError(f"PayPal webhook verification failed: {e}") from e
        if not verified:
            raise SignatureError("PayPal webhook verification failed")
        return True

    def process_refund(self, payment, amount, reason=None):
        try:
            self.ensure_configured()
        except ConfigurationError as e:
            return RefundResult(status=RefundStatus.FAILED, error_message=str(e))

        try:
            sale = paypalrestsdk.Sale.find(payment.gateway_transaction_id, api=self.api)
            refund = sale.refund({
                "amount": {
                    "total": self.format_amount(amount, payment.currency),
                    "currency": payment.currency,
                },
                "description": reason or "",
            })
        except self.transport_errors as e:
            logger.exception("PayPal refund failed for payment %s", payment.pk)
            return RefundResult(
                status=RefundStatus.FAILED, error_message=str(e), raw_response={"error": str(e)}
            )

        if not refund.success():
            message = _error_message(refund.error, "PayPal refund failed")
            return RefundResult(
                status=RefundStatus.FAILED, error_message=message, raw_response={"error": refund.error}
            )

        raw = to_plain_dict(refund)
        return RefundResult(
            status=self.REFUND_STATUS_MAP.get(raw.get("state"), RefundStatus.COMPLETED),
            refund_id=raw.get("id"),
            raw_response=raw,
        )

    def query_payment_status(self, reference):
        self.ensure_configured()
        try:
            raw = to_plain_dict(paypalrestsdk.Payment.find(reference, api=self.api))
        except self.transport_errors as e:
            raise GatewayError(f"PayPal status lookup failed: {e}") from e
        sale = self._first_sale(raw)
        return self.map_status(sale.get("state") or raw.get("state"))

    def test_connection(self):
        try:
            self.ensure_configured()
            self.api.get_access_token()
            return True, "Connection successful"
        except ConfigurationError as e:
            return False, str(e)
        except self.transport_errors as e:
            return False, str(e)
