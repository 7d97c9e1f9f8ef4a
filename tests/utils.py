import hashlib
import hmac
import json
import time
from unittest import mock


def make_response(status_code=200, json_data=None, text=None):
    """Stand-in for a requests.Response."""
    response = mock.Mock()
    response.status_code = status_code
    if json_data is None:
        response.json.side_effect = ValueError("No JSON object could be decoded")
        response.text = text or ""
    else:
        response.json.return_value = json_data
        response.text = text if text is not None else json.dumps(json_data)
    return response


def flip_last_char(signature):
    return signature[:-1] + ("0" if signature[-1] != "0" else "1")


def stripe_signature_header(body, secret, timestamp=None):
    timestamp = timestamp or int(time.time())
    signed_payload = f"{timestamp}.{body.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


CLICKPESA_SETTINGS = {
    "currency": "TZS",
    "api_url": "https://api.clickpesa.test/third-parties",
    "client_id": "clickpesa-client",
    "api_key": "clickpesa-key",
    "checksum_secret": "checksum-secret",
    "timeout": 5,
}
STRIPE_SETTINGS = {
    "public_key": "pk_test_123",
    "secret_key": "sk_test_123",
    "webhook_secret": "whsec_test_secret",
    "timeout": 5,
}
PAYPAL_SETTINGS = {
    "client_id": "paypal-client",
    "client_secret": "paypal-secret",
    "webhook_id": "WH-TEST",
    "timeout": 5,
}

MPESA_PAYMENT = {"gateway": "clickpesa", "method": "mpesa", "phone_number": "0712345678", "currency": "TZS"}
