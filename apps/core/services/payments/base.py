import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Optional

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


class PaymentStatus(Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


TERMINAL_STATUSES = (PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.REFUNDED)


class RefundStatus(Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class WebhookAction:
    PAYMENT_COMPLETED = "payment_completed"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_PROCESSING = "payment_processing"
    IGNORED = "ignored"

    FOR_STATUS = {
        PaymentStatus.COMPLETED: PAYMENT_COMPLETED,
        PaymentStatus.FAILED: PAYMENT_FAILED,
        PaymentStatus.PROCESSING: PAYMENT_PROCESSING,
    }


@dataclass
class PaymentResult:
    status: PaymentStatus
    transaction_id: Optional[str] = None
    payment_id: Optional[str] = None
    fee_amount: Decimal = Decimal("0.00")
    net_amount: Optional[Decimal] = None
    raw_response: dict = field(default_factory=dict)
    error_message: Optional[str] = None

    @property
    def success(self):
        return self.status != PaymentStatus.FAILED

    @classmethod
    def failed(cls, error_message, raw_response=None):
        return cls(
            status=PaymentStatus.FAILED,
            error_message=error_message,
            raw_response=raw_response or {"error": error_message},
        )


@dataclass
class IntentResult:
    reference: str
    amount: Decimal
    currency: str
    redirect_url: Optional[str] = None
    client_secret: Optional[str] = None
    extra: dict = field(default_factory=dict)


@dataclass
class RefundResult:
    status: RefundStatus
    refund_id: Optional[str] = None
    raw_response: dict = field(default_factory=dict)
    error_message: Optional[str] = None

    @property
    def success(self):
        return self.status != RefundStatus.FAILED


@dataclass
class WebhookResult:
    action: str
    status: Optional[PaymentStatus] = None
    reference: Optional[str] = None
    transaction_id: Optional[str] = None
    event_type: str = ""
    failure_reason: Optional[str] = None


@dataclass(frozen=True)
class FeeBreakdown:
    fee_amount: Decimal
    net_amount: Decimal
    fee_percentage: Decimal
    fixed_fee: Decimal

    def as_dict(self):
        return {
            "fee_amount": self.fee_amount,
            "net_amount": self.net_amount,
            "fee_percentage": self.fee_percentage,
            "fixed_fee": self.fixed_fee,
        }


def to_decimal(value):
    if isinstance(value, Decimal):
        return value
    if value is None or value == "":
        raise InvalidOperation(f"Not a number: {value!r}")
    return Decimal(str(value))


def compute_fees(amount, percentage, fixed):
    """Percentage + fixed fee, fee rounded half-up to cents; net is the exact remainder."""
    amount = to_decimal(amount)
    percentage = to_decimal(percentage)
    fixed = to_decimal(fixed)
    fee = (amount * percentage / Decimal("100") + fixed).quantize(CENTS, rounding=ROUND_HALF_UP)
    return FeeBreakdown(
        fee_amount=fee,
        net_amount=amount - fee,
        fee_percentage=percentage,
        fixed_fee=fixed,
    )


class PaymentGateway(ABC):
    name = ""
    display_name = ""
    REQUIRED_FIELDS = ()
    SUPPORTED_CURRENCIES = ()
    PAYMENT_METHODS = {}
    # Lowercased provider status -> canonical status.
    STATUS_MAP = {}

    def __init__(self, config):
        self.config = config

    def is_configured(self) -> bool:
        return self.config.has(*self.REQUIRED_FIELDS)

    def ensure_configured(self):
        if not self.is_configured():
            missing = [f for f in self.REQUIRED_FIELDS if not getattr(self.config, f, "")]
            raise ConfigurationError(
                f"{self.display_name} gateway not configured. Missing: {', '.join(missing)}"
            )

    def get_payment_methods(self) -> dict:
        return dict(self.PAYMENT_METHODS)

    def get_supported_currencies(self) -> list:
        return list(self.SUPPORTED_CURRENCIES)

    def map_status(self, value) -> Optional[PaymentStatus]:
        status = self.STATUS_MAP.get(str(value or "").strip().lower())
        if status is None:
            logger.warning("Unknown %s payment status %r", self.name, value)
        return status

    def validate(self, data) -> list:
        """Return every problem with the payer input, not just the first."""
        errors = []
        try:
            amount = to_decimal(data.get("amount"))
        except (InvalidOperation, ValueError):
            errors.append("Amount must be greater than zero")
        else:
            if amount <= 0:
                errors.append("Amount must be greater than zero")

        currency = (data.get("currency") or "").upper()
        if not currency:
            errors.append("Currency is required")
        elif currency not in self.SUPPORTED_CURRENCIES:
            errors.append(f"Currency not supported by {self.display_name}")

        errors.extend(self.validate_method_data(data))
        return errors

    def validate_method_data(self, data) -> list:
        return []

    def webhook_result(self, status, **kwargs) -> WebhookResult:
        action = WebhookAction.FOR_STATUS.get(status, WebhookAction.IGNORED)
        return WebhookResult(action=action, status=status, **kwargs)

    @abstractmethod
    def calculate_fees(self, amount, currency) -> FeeBreakdown:
        ...

    @abstractmethod
    def create_payment_intent(self, data) -> IntentResult:
        ...

    @abstractmethod
    def process_payment(self, payment, data) -> PaymentResult:
        """Run a synchronous payment. Must return a failed result instead of raising."""
        ...

    @abstractmethod
    def handle_webhook(self, payload) -> WebhookResult:
        ...

    @abstractmethod
    def process_refund(self, payment, amount, reason=None) -> RefundResult:
        ...

    @abstractmethod
    def verify_webhook(self, headers, body, payload) -> Optional[bool]:
        """Check webhook authenticity.

        Returns None when the delivery carries no signature, True when the
        signature is valid. Raises SignatureError when it is not.
        """
        ...

    @abstractmethod
    def extract_reference(self, payload) -> Optional[str]:
        ...

    def extract_event_id(self, payload) -> Optional[str]:
        return None

    @abstractmethod
    def query_payment_status(self, reference) -> Optional[PaymentStatus]:
        ...

    def test_connection(self) -> tuple:
        """Test if gateway credentials are valid. Returns (success, message)."""
        return False, "Not implemented"
