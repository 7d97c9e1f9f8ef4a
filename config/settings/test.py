from .base import *  # noqa: F401, F403

DEBUG = False
SECRET_KEY = "test-secret-key"

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": ":memory:",
    }
}

CACHES = {
    "default": {
        "BACKEND": "django.core.cache.backends.locmem.LocMemCache",
        "LOCATION": "payments-tests",
    }
}

PASSWORD_HASHERS = ["django.contrib.auth.hashers.MD5PasswordHasher"]

Q_CLUSTER = {"name": "payments-tests", "sync": True, "orm": "default", "timeout": 120, "retry": 180}

SITE_URL = "https://backoffice.example.com"
PAYMENT_DEFAULT_GATEWAY = "clickpesa"
PAYMENT_HTTP_TIMEOUT = 5
PAYMENT_WEBHOOK_REQUIRE_SIGNATURE = False

PAYMENT_GATEWAYS = {
    "stripe": {
        "enabled": True,
        "public_key": "pk_test_123",
        "secret_key": "sk_test_123",
        "webhook_secret": "whsec_test_secret",
    },
    "paypal": {
        "enabled": True,
        "client_id": "paypal-client",
        "client_secret": "paypal-secret",
        "webhook_id": "WH-TEST",
    },
    "clickpesa": {
        "enabled": True,
        "currency": "TZS",
        "api_url": "https://api.clickpesa.test/third-parties",
        "client_id": "clickpesa-client",
        "api_key": "clickpesa-key",
        "checksum_secret": "checksum-secret",
    },
}

LOGGING["loggers"]["apps"]["level"] = "WARNING"  # noqa: F405
