import hashlib
import hmac
import json
import re
import secrets
import string
import time
from decimal import Decimal

from .exceptions import ConfigurationError

SIGNATURE_RE = re.compile(r"^[a-f0-9]{64}$")
NON_ALPHANUMERIC_RE = re.compile(r"[^A-Za-z0-9]")
REFERENCE_ALPHABET = string.ascii_uppercase + string.digits
PAYMENT_CHECKSUM_FIELDS = ("amount", "currency", "orderReference")


def _random_token(length=6):
    return "".join(secrets.choice(REFERENCE_ALPHABET) for _ in range(length))


def stringify(value):
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, Decimal):
        return format(value, "f")
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, separators=(",", ":"), sort_keys=True, default=str)
    return str(value)


class ChecksumService:
    """HMAC-SHA256 request/webhook signing for ClickPesa.

    The signed string is the payload's values concatenated in ascending key
    order with no separator. The ``checksum`` key itself is never signed.
    """

    def __init__(self, secret, clock=time.time, token_factory=_random_token):
        self.secret = secret or ""
        self.clock = clock
        self.token_factory = token_factory

    def ensure_configured(self):
        if not self.secret:
            raise ConfigurationError(
                "ClickPesa checksum secret not configured. Set CLICKPESA_CHECKSUM_SECRET."
            )

    def sign(self, payload) -> str:
        self.ensure_configured()
        message = "".join(
            stringify(payload[key]) for key in sorted(payload) if key != "checksum"
        )
        return hmac.new(
            self.secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256
        ).hexdigest()

    def sign_payment_request(self, data) -> str:
        for field_name in PAYMENT_CHECKSUM_FIELDS:
            if field_name not in data:
                raise ValueError(f"Missing required field for checksum: {field_name}")
        return self.sign(data)

    def verify(self, payload, signature) -> bool:
        self.ensure_configured()
        if not self.is_valid_format(signature):
            return False
        return hmac.compare_digest(self.sign(payload), signature)

    def generate_reference(self, prefix="INV") -> str:
        """Alphanumeric-only reference; the provider rejects punctuation."""
        reference = f"{prefix}{int(self.clock())}{self.token_factory()}"
        return NON_ALPHANUMERIC_RE.sub("", reference)

    @staticmethod
    def is_valid_format(signature) -> bool:
        return isinstance(signature, str) and SIGNATURE_RE.match(signature) is not None
