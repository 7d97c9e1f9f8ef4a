import json

REDACTED = "[redacted]"
SENSITIVE_HEADER_MARKERS = ("signature", "authorization", "sig", "api-key", "token", "cookie")


def get_header(headers, name, default=None):
    """Case-insensitive header lookup for plain dicts and Django's HttpHeaders."""
    if not headers:
        return default
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return default


def redact_headers(headers):
    redacted = {}
    for key, value in (headers or {}).items():
        lowered = key.lower()
        if any(marker in lowered for marker in SENSITIVE_HEADER_MARKERS):
            redacted[key] = REDACTED
        else:
            redacted[key] = value
    return redacted


def to_plain_dict(obj):
    """JSON-safe copy of an SDK response object (Stripe/PayPal resources are dict-like)."""
    if obj is None:
        return {}
    if hasattr(obj, "to_dict"):
        obj = obj.to_dict()
    return json.loads(json.dumps(obj, default=str))
