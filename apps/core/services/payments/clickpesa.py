import dataclasses
import logging
import re
from decimal import Decimal

import requests
from django.utils import timezone

from .auth import AuthTokenProvider
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
from .checksum import ChecksumService
from .exceptions import AuthError, ConfigurationError, GatewayError, SignatureError
from .utils import get_header

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.clickpesa.com/third-parties"
DEFAULT_USSD_CODE = "*150*00#"


class ClickPesaGateway(PaymentGateway):
    """ClickPesa mobile-money gateway (USSD push).

    Payments are asynchronous: a successful initiation only means the payer's
    handset got the USSD prompt. The final status arrives by webhook or by
    polling ``query_payment_status``.
    """

    name = "clickpesa"
    display_name = "ClickPesa"
    REQUIRED_FIELDS = ("client_id", "api_key", "checksum_secret")
    SUPPORTED_CURRENCIES = ("TZS", "USD", "EUR")
    PAYMENT_METHODS = {
        "mpesa": "M-Pesa",
        "tigopesa": "Tigo Pesa",
        "airtelmoney": "Airtel Money",
        "halopesa": "Halo Pesa",
        "bank_transfer": "Bank Transfer",
    }
    MOBILE_MONEY_METHODS = ("mpesa", "tigopesa", "airtelmoney", "halopesa", "mobile_money")
    PHONE_RE = re.compile(r"^(\+255|0)[67]\d{8}$")
    SIGNATURE_HEADER = "X-ClickPesa-Signature"
    STATUS_MAP = {
        "success": PaymentStatus.COMPLETED,
        "completed": PaymentStatus.COMPLETED,
        "settled": PaymentStatus.COMPLETED,
        "failed": PaymentStatus.FAILED,
        "cancelled": PaymentStatus.FAILED,
        "declined": PaymentStatus.FAILED,
        "denied": PaymentStatus.FAILED,
        "rejected": PaymentStatus.FAILED,
        "processing": PaymentStatus.PROCESSING,
        "pending": PaymentStatus.PROCESSING,
    }
    # (upper bound inclusive, percentage) for TZS amounts; above the last band TZS_TOP_RATE applies.
    TZS_FEE_BANDS = (
        (Decimal("1000"), Decimal("0")),
        (Decimal("10000"), Decimal("2.0")),
        (Decimal("50000"), Decimal("3.0")),
    )
    TZS_TOP_RATE = Decimal("3.5")
    DEFAULT_RATE = Decimal("3.5")

    def __init__(self, config, session=None, cache=None, checksum=None):
        if not config.api_url:
            config = dataclasses.replace(config, api_url=DEFAULT_API_URL)
        super().__init__(config)
        self.session = session or requests.Session()
        self.auth = AuthTokenProvider(config, session=self.session, cache=cache)
        self.checksum = checksum or ChecksumService(config.checksum_secret)

    def validate_method_data(self, data):
        errors = []
        method = data.get("method") or ""
        phone = data.get("phone_number") or ""
        if method in self.MOBILE_MONEY_METHODS and not phone:
            errors.append("Phone number is required for mobile money payments")
        elif phone and not self.PHONE_RE.match(phone):
            errors.append("Invalid Tanzanian phone number format")
        return errors

    def calculate_fees(self, amount, currency="TZS"):
        amount = to_decimal(amount)
        percentage = self.DEFAULT_RATE
        if currency == "TZS":
            percentage = self.TZS_TOP_RATE
            for upper_bound, rate in self.TZS_FEE_BANDS:
                if amount <= upper_bound:
                    percentage = rate
                    break
        return compute_fees(amount, percentage, Decimal("0"))

    @staticmethod
    def format_phone_number(phone_number):
        """Country code without the plus sign, e.g. 255712345678."""
        phone = re.sub(r"[^\d+]", "", phone_number or "")
        if phone.startswith("+255"):
            return phone[1:]
        if phone.startswith("0"):
            return "255" + phone[1:]
        if phone.startswith("255"):
            return phone
        return "255" + phone

    @staticmethod
    def format_amount(amount, currency):
        amount = to_decimal(amount)
        if currency == "TZS":
            return str(amount.quantize(Decimal("1")))
        return str(amount.quantize(Decimal("0.01")))

    def _request(self, method, path, retry_auth=True, **kwargs):
        token = self.auth.get_token()
        response = self.session.request(
            method,
            f"{self.config.api_url}{path}",
            headers={"Authorization": token, "Content-Type": "application/json"},
            timeout=self.config.timeout,
            **kwargs,
        )

        if response.status_code == 401 and retry_auth:
            logger.info("ClickPesa rejected the cached token, regenerating")
            self.auth.invalidate()
            return self._request(method, path, retry_auth=False, **kwargs)

        if not 200 <= response.status_code < 300:
            logger.error(
                "ClickPesa request failed",
                extra={"path": path, "status": response.status_code, "response": response.text},
            )
            raise GatewayError(
                f"ClickPesa request to {path} failed: {response.text}",
                status_code=response.status_code,
                response_body=response.text,
            )

        try:
            return response.json()
        except ValueError as e:
            raise GatewayError(
                f"Invalid JSON from ClickPesa {path}", response_body=response.text
            ) from e

    def _signed_request_data(self, amount, currency, prefix, **extra):
        order_reference = self.checksum.generate_reference(prefix)
        request_data = {
            "amount": self.format_amount(amount, currency),
            "currency": currency,
            "orderReference": order_reference,
            **extra,
        }
        request_data["checksum"] = self.checksum.sign_payment_request(request_data)
        return request_data

    def process_payment(self, payment, data):
        try:
            self.ensure_configured()

            errors = self.validate({**data, "amount": payment.amount, "currency": payment.currency})
            if not data.get("phone_number"):
                errors.append("Phone number is required for USSD push payments")
            if errors:
                return PaymentResult.failed("Validation failed: " + ", ".join(dict.fromkeys(errors)))

            request_data = self._signed_request_data(
                payment.amount,
                payment.currency,
                "PAY",
                phoneNumber=self.format_phone_number(data["phone_number"]),
            )
            preview = self._request("POST", "/payments/preview-ussd-push-request", json=request_data)
            initiated = self._request("POST", "/payments/initiate-ussd-push-request", json=request_data)
        except ConfigurationError as e:
            logger.error("ClickPesa payment not attempted: %s", e)
            return PaymentResult.failed(str(e))
        except requests.Timeout:
            logger.error("ClickPesa payment timed out for payment %s", payment.pk)
            return PaymentResult.failed(f"Gateway request timed out after {self.config.timeout}s")
        except (AuthError, GatewayError, requests.RequestException) as e:
            logger.exception("ClickPesa payment failed for payment %s", payment.pk)
            return PaymentResult.failed(str(e))

        order_reference = request_data["orderReference"]
        if not isinstance(initiated, dict):
            logger.error("Unexpected ClickPesa initiate response for payment %s: %r", payment.pk, initiated)
            result = PaymentResult.failed(
                "Invalid response from ClickPesa", raw_response={"initiate": initiated}
            )
            result.payment_id = order_reference
            return result

        raw_response = {
            "order_reference": order_reference,
            "ussd_code": DEFAULT_USSD_CODE,
            "active_methods": preview.get("activeMethods", []) if isinstance(preview, dict) else [],
            "initiate": initiated,
        }

        status = self.map_status(initiated.get("status")) or PaymentStatus.PROCESSING
        if status == PaymentStatus.FAILED:
            message = initiated.get("message") or initiated.get("errorMessage") or "Payment initiation failed"
            result = PaymentResult.failed(message, raw_response=raw_response)
            result.payment_id = order_reference
            return result

        fees = self.calculate_fees(payment.amount, payment.currency)
        return PaymentResult(
            status=status,
            transaction_id=initiated.get("id") or order_reference,
            payment_id=order_reference,
            fee_amount=fees.fee_amount,
            net_amount=fees.net_amount,
            raw_response=raw_response,
        )

    def create_payment_intent(self, data):
        self.ensure_configured()
        currency = data["currency"]
        request_data = self._signed_request_data(data["amount"], currency, "INT")
        preview = self._request("POST", "/payments/preview-ussd-push-request", json=request_data)

        return IntentResult(
            reference=request_data["orderReference"],
            amount=to_decimal(data["amount"]),
            currency=currency,
            redirect_url=None,
            extra={
                "available_methods": preview.get("activeMethods", []) if isinstance(preview, dict) else [],
                "ussd_code": DEFAULT_USSD_CODE,
            },
        )

    @staticmethod
    def _event_body(payload):
        for key in ("data", "transaction"):
            if isinstance(payload.get(key), dict):
                return payload[key]
        return payload

    def handle_webhook(self, payload):
        body = self._event_body(payload)
        raw_status = payload.get("status") or body.get("status")
        status = self.map_status(raw_status) if raw_status else None
        if status is None:
            logger.warning(
                "Ignoring ClickPesa webhook",
                extra={"provider_status": raw_status, "reference": self.extract_reference(payload)},
            )

        failure_reason = None
        if status == PaymentStatus.FAILED:
            failure_reason = (
                payload.get("errorMessage") or body.get("errorMessage")
                or body.get("message") or "Payment failed"
            )

        return self.webhook_result(
            status,
            reference=self.extract_reference(payload),
            transaction_id=body.get("id") or payload.get("id"),
            event_type=str(payload.get("event") or raw_status or ""),
            failure_reason=failure_reason,
        )

    def extract_reference(self, payload):
        body = self._event_body(payload)
        return payload.get("orderReference") or body.get("orderReference") or body.get("id") or None

    def verify_webhook(self, headers, body, payload):
        signature = get_header(headers, self.SIGNATURE_HEADER)
        signed_payload = payload
        if not signature and isinstance(payload.get("checksum"), str):
            signature = payload["checksum"]
        if not signature:
            return None

        try:
            valid = self.checksum.verify(signed_payload, signature)
        except ConfigurationError as e:
            raise SignatureError(str(e)) from e
        if not valid:
            raise SignatureError("Invalid ClickPesa webhook checksum")
        return True

    def process_refund(self, payment, amount, reason=None):
        if not self.is_configured():
            return RefundResult(
                status=RefundStatus.FAILED,
                error_message="ClickPesa gateway not configured",
            )

        # Mobile-money refunds are not automated by the provider; the request is
        # only acknowledged and must be settled by hand.
        refund_id = f"REFUND{self.checksum.token_factory()}{int(self.checksum.clock())}"
        return RefundResult(
            status=RefundStatus.PENDING,
            refund_id=refund_id,
            raw_response={
                "id": refund_id,
                "status": "PENDING",
                "amount": str(amount),
                "currency": payment.currency,
                "reason": reason,
                "note": "Refund request submitted. Manual processing may be required.",
                "timestamp": timezone.now().isoformat(),
            },
        )

    def query_payment_status(self, reference):
        self.ensure_configured()
        data = self._request(
            "GET", "/payments/querying-for-payments", params={"orderReference": reference}
        )
        if isinstance(data, list):
            data = data[0] if data else {}
        return self.map_status(data.get("status"))

    def test_connection(self):
        try:
            self.ensure_configured()
            self.auth.get_token()
            return True, "Authentication successful"
        except (ConfigurationError, AuthError, requests.Timeout) as e:
            return False, str(e)
