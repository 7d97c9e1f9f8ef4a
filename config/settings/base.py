import os
from pathlib import Path

import environ

BASE_DIR = Path(__file__).resolve().parent.parent.parent

env = environ.Env(
    DEBUG=(bool, False),
    ALLOWED_HOSTS=(list, ["localhost", "127.0.0.1"]),
    CSRF_TRUSTED_ORIGINS=(list, []),
)
environ.Env.read_env(os.path.join(BASE_DIR, ".env"))


# ============================================
# Docker Secrets Support
# ============================================
def get_secret(secret_name, default=None):
    """
    Read secret from Docker secrets or fall back to environment variable.

    Docker secrets are mounted at /run/secrets/<secret_name> in containers.
    """
    secret_path = f"/run/secrets/{secret_name}"
    if os.path.exists(secret_path):
        with open(secret_path) as f:
            return f.read().strip()
    env_key = secret_name.upper().replace("-", "_")
    return os.environ.get(env_key, default)


# ============================================
# Core Django Settings
# ============================================
SECRET_KEY = get_secret("django_secret_key", env("SECRET_KEY", default="insecure-dev-key-change-in-production"))
DEBUG = env("DEBUG")
ALLOWED_HOSTS = env("ALLOWED_HOSTS")

# Public URL of the back office; default return/cancel URLs for hosted checkouts
SITE_URL = env("SITE_URL", default="http://localhost:8000")

_csrf_origins = env("CSRF_TRUSTED_ORIGINS", default=[])
if SITE_URL and SITE_URL not in _csrf_origins:
    _csrf_origins.insert(0, SITE_URL)
CSRF_TRUSTED_ORIGINS = _csrf_origins

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    # Third party
    "django_q",
    # Local apps
    "apps.core",
    "apps.billing",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "config.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.debug",
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    },
]

WSGI_APPLICATION = "config.wsgi.application"

DATABASES = {
    "default": env.db("DATABASE_URL", default=f"sqlite:///{BASE_DIR / 'db.sqlite3'}"),
}

AUTH_PASSWORD_VALIDATORS = [
    {"NAME": "django.contrib.auth.password_validation.UserAttributeSimilarityValidator"},
    {"NAME": "django.contrib.auth.password_validation.MinimumLengthValidator"},
    {"NAME": "django.contrib.auth.password_validation.CommonPasswordValidator"},
    {"NAME": "django.contrib.auth.password_validation.NumericPasswordValidator"},
]

LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = True
USE_TZ = True

STATIC_URL = "static/"
STATIC_ROOT = BASE_DIR / "staticfiles"

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

LOGIN_URL = "/django-admin/login/"

# ============================================
# Redis Configuration (optional)
# ============================================
REDIS_URL = env("REDIS_URL", default=None)

if REDIS_URL:
    # Auth tokens for the payment gateways are shared across workers through this cache
    CACHES = {
        "default": {
            "BACKEND": "django_redis.cache.RedisCache",
            "LOCATION": REDIS_URL,
            "OPTIONS": {
                "CLIENT_CLASS": "django_redis.client.DefaultClient",
            },
        }
    }
    SESSION_ENGINE = "django.contrib.sessions.backends.cache"
    SESSION_CACHE_ALIAS = "default"
else:
    # Default to database cache when Redis not available
    CACHES = {
        "default": {
            "BACKEND": "django.core.cache.backends.db.DatabaseCache",
            "LOCATION": "django_cache",
        }
    }

# ============================================
# Django-Q2 Task Queue
# ============================================
Q_CLUSTER = {
    "name": "payments",
    "workers": env.int("Q_WORKERS", default=2),
    "recycle": 500,
    "timeout": 120,
    "retry": 180,
    "queue_limit": 50,
    "bulk": 10,
}

# Use Redis broker when available, otherwise fall back to ORM
if REDIS_URL:
    Q_CLUSTER["redis"] = REDIS_URL
else:
    Q_CLUSTER["orm"] = "default"

# ============================================
# Payment Gateways
# ============================================
PAYMENT_DEFAULT_GATEWAY = env("PAYMENT_DEFAULT_GATEWAY", default="clickpesa")
PAYMENT_HTTP_TIMEOUT = env.int("PAYMENT_HTTP_TIMEOUT", default=20)
# Reject webhooks that carry no signature at all
PAYMENT_WEBHOOK_REQUIRE_SIGNATURE = env.bool("PAYMENT_WEBHOOK_REQUIRE_SIGNATURE", default=False)

PAYMENT_GATEWAYS = {
    "stripe": {
        "enabled": env.bool("STRIPE_ENABLED", default=True),
        "mode": env("STRIPE_MODE", default="sandbox"),
        "currency": env("STRIPE_CURRENCY", default="USD"),
        "public_key": env("STRIPE_PUBLIC_KEY", default=""),
        "secret_key": get_secret("stripe_secret_key", env("STRIPE_SECRET_KEY", default="")),
        "webhook_secret": get_secret("stripe_webhook_secret", env("STRIPE_WEBHOOK_SECRET", default="")),
    },
    "paypal": {
        "enabled": env.bool("PAYPAL_ENABLED", default=True),
        "mode": env("PAYPAL_MODE", default="sandbox"),
        "currency": env("PAYPAL_CURRENCY", default="USD"),
        "client_id": env("PAYPAL_CLIENT_ID", default=""),
        "client_secret": get_secret("paypal_client_secret", env("PAYPAL_CLIENT_SECRET", default="")),
        "webhook_id": env("PAYPAL_WEBHOOK_ID", default=""),
    },
    "clickpesa": {
        "enabled": env.bool("CLICKPESA_ENABLED", default=True),
        "mode": env("CLICKPESA_MODE", default="sandbox"),
        "currency": env("CLICKPESA_CURRENCY", default="TZS"),
        "api_url": env("CLICKPESA_API_URL", default="https://api.clickpesa.com/third-parties"),
        "client_id": env("CLICKPESA_CLIENT_ID", default=""),
        "api_key": get_secret("clickpesa_api_key", env("CLICKPESA_API_KEY", default="")),
        "checksum_secret": get_secret("clickpesa_checksum_secret", env("CLICKPESA_CHECKSUM_SECRET", default="")),
        "webhook_secret": env("CLICKPESA_WEBHOOK_SECRET", default=""),
        "merchant_id": env("CLICKPESA_MERCHANT_ID", default=""),
    },
}

# Logging
LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "{levelname} {asctime} {module} {process:d} {thread:d} {message}",
            "style": "{",
        },
        "simple": {
            "format": "{levelname} {asctime} {module} {message}",
            "style": "{",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "simple",
        },
    },
    "root": {
        "handlers": ["console"],
        "level": "INFO",
    },
    "loggers": {
        "django": {
            "handlers": ["console"],
            "level": env("DJANGO_LOG_LEVEL", default="INFO"),
            "propagate": False,
        },
        "django.security": {
            "handlers": ["console"],
            "level": "WARNING",
            "propagate": False,
        },
        "apps": {
            "handlers": ["console"],
            "level": env("APPS_LOG_LEVEL", default="INFO"),
            "propagate": False,
        },
    },
}
