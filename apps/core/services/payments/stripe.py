import logging
from decimal import ROUND_HALF_UP, Decimal
from functools import cached_property

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

ZERO_DECIMAL_CURRENCIES = (
    "BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA",
    "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
)
STRIPE_REFUND_REASONS = ("duplicate", "fraudulent", "requested_by_customer")


class StripeGateway(PaymentGateway):
    name = "stripe"
    display_name = "Stripe"
    REQUIRED_FIELDS = ("public_key", "secret_key")
    SUPPORTED_CURRENCIES = ("USD", "EUR", "GBP", "CAD", "AUD", "JPY")
    PAYMENT_METHODS = {
        "card": "Credit/Debit Card",
        "bank_transfer": "Bank Transfer",
        "apple_pay": "Apple Pay",
        "google_pay": "Google Pay",
    }
    STATUS_MAP = {
        "succeeded": PaymentStatus.COMPLETED,
        "canceled": PaymentStatus.FAILED,
        "cancelled": PaymentStatus.FAILED,
        "failed": PaymentStatus.FAILED,
        "requires_payment_method": PaymentStatus.FAILED,
        "processing": PaymentStatus.PROCESSING,
        "pending": PaymentStatus.PROCESSING,
        "requires_action": PaymentStatus.PROCESSING,
        "requires_confirmation": PaymentStatus.PROCESSING,
        "requires_capture": PaymentStatus.PROCESSING,
    }
    EVENT_STATUSES = {
        "payment_intent.succeeded": PaymentStatus.COMPLETED,
        "payment_intent.payment_failed": PaymentStatus.FAILED,
        "payment_intent.canceled": PaymentStatus.FAILED,
        "payment_intent.processing": PaymentStatus.PROCESSING,
    }
    REFUND_STATUS_MAP = {
        "succeeded": RefundStatus.COMPLETED,
        "pending": RefundStatus.PENDING,
        "requires_action": RefundStatus.PENDING,
        "failed": RefundStatus.FAILED,
        "canceled": RefundStatus.FAILED,
    }
    FEE_PERCENTAGE = Decimal("2.9")
    FIXED_FEE = Decimal("0.30")
    SIGNATURE_HEADER = "Stripe-Signature"

    def __init__(self, config):
        super().__init__(config)
        import stripe
        self.stripe = stripe

    @cached_property
    def client(self):
        return self.stripe.StripeClient(
            self.config.secret_key,
            http_client=self.stripe.RequestsClient(timeout=self.config.timeout),
        )

    @staticmethod
    def to_minor_units(amount, currency):
        amount = to_decimal(amount)
        if currency.upper() not in ZERO_DECIMAL_CURRENCIES:
            amount = amount * 100
        return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    def calculate_fees(self, amount, currency="USD"):
        return compute_fees(amount, self.FEE_PERCENTAGE, self.FIXED_FEE)

    def _connection_error_message(self, error):
        if "timed out" in str(error).lower():
            return f"Gateway request timed out after {self.config.timeout}s"
        return f"Could not reach Stripe: {error}"

    def process_payment(self, payment, data):
        try:
            self.ensure_configured()
        except ConfigurationError as e:
            logger.error("Stripe payment not attempted: %s", e)
            return PaymentResult.failed(str(e))

        errors = self.validate({**data, "amount": payment.amount, "currency": payment.currency})
        if not data.get("payment_method"):
            errors.append("A Stripe payment method is required")
        if errors:
            return PaymentResult.failed("Validation failed: " + ", ".join(errors))

        params = {
            "amount": self.to_minor_units(payment.amount, payment.currency),
            "currency": payment.currency.lower(),
            "payment_method": data["payment_method"],
            "confirm": True,
            "automatic_payment_methods": {"enabled": True, "allow_redirects": "never"},
            "description": f"Payment {payment.payment_number}",
            "metadata": {
                "payment_id": str(payment.pk),
                "payment_number": payment.payment_number,
                "invoice_number": payment.invoice.invoice_number,
            },
        }
        try:
            intent = self.client.payment_intents.create(
                params=params, options={"idempotency_key": f"payment-{payment.pk}"}
            )
        except self.stripe.CardError as e:
            logger.warning("Stripe declined payment %s: %s", payment.pk, e)
            return PaymentResult.failed(
                e.user_message or str(e), raw_response={"error": str(e), "code": e.code}
            )
        except self.stripe.APIConnectionError as e:
            logger.error("Stripe connection failed for payment %s: %s", payment.pk, e)
            return PaymentResult.failed(self._connection_error_message(e))
        except self.stripe.StripeError as e:
            logger.exception("Stripe payment failed for payment %s", payment.pk)
            return PaymentResult.failed(str(e))

        intent = to_plain_dict(intent)
        status = self.map_status(intent.get("status")) or PaymentStatus.PROCESSING
        if status == PaymentStatus.FAILED:
            error = intent.get("last_payment_error") or {}
            result = PaymentResult.failed(error.get("message") or "Payment failed", raw_response=intent)
            result.payment_id = intent.get("id")
            return result

        fees = self.calculate_fees(payment.amount, payment.currency)
        return PaymentResult(
            status=status,
            transaction_id=intent.get("latest_charge") or intent.get("id"),
            payment_id=intent.get("id"),
            fee_amount=fees.fee_amount,
            net_amount=fees.net_amount,
            raw_response=intent,
        )

    def create_payment_intent(self, data):
        """Hosted Checkout Session; the payer is redirected to ``redirect_url``."""
        self.ensure_configured()
        currency = data["currency"]
        params = {
            "mode": "payment",
            "line_items": [{
                "quantity": 1,
                "price_data": {
                    "currency": currency.lower(),
                    "unit_amount": self.to_minor_units(data["amount"], currency),
                    "product_data": {"name": data.get("description") or "Invoice payment"},
                },
            }],
            "success_url": data["return_url"],
            "cancel_url": data["cancel_url"],
            "metadata": data.get("metadata", {}),
            "payment_intent_data": {"metadata": data.get("metadata", {})},
        }
        if data.get("customer_email"):
            params["customer_email"] = data["customer_email"]

        try:
            session = to_plain_dict(self.client.checkout.sessions.create(params=params))
        except self.stripe.StripeError as e:
            logger.exception("Stripe checkout session creation failed")
            raise GatewayError(f"Stripe checkout session creation failed: {e}") from e

        return IntentResult(
            reference=session["id"],
            amount=to_decimal(data["amount"]),
            currency=currency,
            redirect_url=session.get("url"),
            extra={"session_id": session["id"], "payment_intent": session.get("payment_intent")},
        )

    @staticmethod
    def _event_object(payload):
        return (payload.get("data") or {}).get("object") or {}

    def handle_webhook(self, payload):
        event_type = payload.get("type", "")
        intent = self._event_object(payload)
        status = self.EVENT_STATUSES.get(event_type)
        if status is None:
            logger.info("Ignoring Stripe event %s", event_type)

        failure_reason = None
        if status == PaymentStatus.FAILED:
            error = intent.get("last_payment_error") or {}
            failure_reason = (
                error.get("message") or intent.get("cancellation_reason") or "Payment failed"
            )

        return self.webhook_result(
            status,
            reference=self.extract_reference(payload),
            transaction_id=intent.get("latest_charge"),
            event_type=event_type,
            failure_reason=failure_reason,
        )

    def extract_reference(self, payload):
        return self._event_object(payload).get("id") or None

    def extract_event_id(self, payload):
        return payload.get("id") or None

    def verify_webhook(self, headers, body, payload):
        signature = get_header(headers, self.SIGNATURE_HEADER)
        if not signature:
            return None
        if not self.config.webhook_secret:
            raise SignatureError("Stripe webhook secret not configured")

        try:
            self.stripe.Webhook.construct_event(body, signature, self.config.webhook_secret)
        except self.stripe.SignatureVerificationError as e:
            raise SignatureError(f"Invalid Stripe signature: {e}") from e
        except ValueError as e:
            raise SignatureError("Stripe webhook body could not be verified") from e
        return True

    def process_refund(self, payment, amount, reason=None):
        try:
            self.ensure_configured()
        except ConfigurationError as e:
            return RefundResult(status=RefundStatus.FAILED, error_message=str(e))

        params = {
            "payment_intent": payment.gateway_payment_id,
            "amount": self.to_minor_units(amount, payment.currency),
            "metadata": {"payment_number": payment.payment_number},
        }
        if reason in STRIPE_REFUND_REASONS:
            params["reason"] = reason
        elif reason:
            params["metadata"]["reason"] = reason

        try:
            refund = to_plain_dict(self.client.refunds.create(params=params))
        except self.stripe.StripeError as e:
            logger.exception("Stripe refund failed for payment %s", payment.pk)
            return RefundResult(
                status=RefundStatus.FAILED, error_message=str(e), raw_response={"error": str(e)}
            )

        status = self.REFUND_STATUS_MAP.get(refund.get("status"), RefundStatus.PENDING)
        return RefundResult(
            status=status,
            refund_id=refund.get("id"),
            raw_response=refund,
            error_message=refund.get("failure_reason") if status == RefundStatus.FAILED else None,
        )

    def query_payment_status(self, reference):
        self.ensure_configured()
        try:
            intent = to_plain_dict(self.client.payment_intents.retrieve(reference))
        except self.stripe.StripeError as e:
            raise GatewayError(f"Stripe status lookup failed: {e}") from e
        return self.map_status(intent.get("status"))

    def test_connection(self):
        try:
            self.ensure_configured()
            self.client.balance.retrieve()
            return True, "Connection successful"
        except ConfigurationError as e:
            return False, str(e)
        except self.stripe.StripeError as e:
            return False, str(e)
