import re
from datetime import timedelta
from pathlib import Path

import structlog
from celery.schedules import crontab
from decouple import Csv, config
from dj_database_url import parse as db_url

# Build paths inside the project like this: BASE_DIR / 'subdir'.
BASE_DIR = Path(__file__).resolve().parent.parent

# Security - Fail Fast: no default forces explicit configuration
SECRET_KEY = config("SECRET_KEY")

DEBUG = config("DEBUG", default=False, cast=bool)

ALLOWED_HOSTS = config("ALLOWED_HOSTS", default="127.0.0.1,localhost", cast=Csv())

# Application definition
INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    # Third-party
    "rest_framework",
    "corsheaders",
    "drf_spectacular",
    # Local Apps (Modules)
    "modules.core",
    "modules.orders",
    "modules.payments",
    "modules.shipping",
    "modules.retention",
    "modules.abuse",
    "modules.notifications",
]

MIDDLEWARE = [
    "corsheaders.middleware.CorsMiddleware",
    "django.middleware.security.SecurityMiddleware",
    "modules.core.middleware.CorrelationIdMiddleware",
    "modules.abuse.middleware.BlockedIpMiddleware",
    "whitenoise.middleware.WhiteNoiseMiddleware",
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
    "default": config(
        "DATABASE_URL", default=f'sqlite:///{BASE_DIR / "db.sqlite3"}', cast=db_url
    )
}

# Cache - Redis
REDIS_URL = config("REDIS_URL", default="redis://localhost:6379/0")

CACHES = {
    "default": {
        "BACKEND": "django_redis.cache.RedisCache",
        "LOCATION": REDIS_URL,
        "OPTIONS": {
            "CLIENT_CLASS": "django_redis.client.DefaultClient",
        },
    }
}

# Password validation
AUTH_PASSWORD_VALIDATORS = [
    {
        "NAME": "django.contrib.auth.password_validation.UserAttributeSimilarityValidator"
    },
    {"NAME": "django.contrib.auth.password_validation.MinimumLengthValidator"},
    {"NAME": "django.contrib.auth.password_validation.CommonPasswordValidator"},
    {"NAME": "django.contrib.auth.password_validation.NumericPasswordValidator"},
]

# Internationalization
LANGUAGE_CODE = "en-in"
TIME_ZONE = "Asia/Kolkata"
USE_I18N = True
USE_TZ = True

# ---------------------------------------------------------------------------
# Celery (async tasks via Redis)
# ---------------------------------------------------------------------------
CELERY_BROKER_URL = config("CELERY_BROKER_URL", default="redis://localhost:6379/0")
CELERY_RESULT_BACKEND = config(
    "CELERY_RESULT_BACKEND", default="redis://localhost:6379/0"
)
CELERY_ACCEPT_CONTENT = ["json"]
CELERY_TASK_SERIALIZER = "json"
CELERY_RESULT_SERIALIZER = "json"
CELERY_TIMEZONE = TIME_ZONE

CELERY_BEAT_SCHEDULE = {
    "retention-notify-abandoned": {
        "task": "retention.notify_abandoned_checkouts",
        "schedule": crontab(minute=0),
    },
    "retention-delete-abandoned": {
        "task": "retention.delete_abandoned_checkouts",
        "schedule": crontab(minute=10),
    },
    "retention-notify-deferred": {
        "task": "retention.notify_deferred_expiry",
        "schedule": crontab(minute=20),
    },
    "retention-execute-deferred": {
        "task": "retention.execute_deferred_deletions",
        "schedule": crontab(minute=30),
    },
    "abuse-expire-blocks": {
        "task": "abuse.expire_blocks",
        "schedule": crontab(minute="*/15"),
    },
}

# Static files (CSS, JavaScript, Images)
STATIC_URL = "static/"
STATIC_ROOT = BASE_DIR / "staticfiles"

# Default primary key field type
DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

# DRF Configuration. Fail closed: everything requires auth unless a view opts out
REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": [
        "rest_framework_simplejwt.authentication.JWTAuthentication",
    ],
    "DEFAULT_PERMISSION_CLASSES": [
        "rest_framework.permissions.IsAuthenticated",
    ],
    "DEFAULT_THROTTLE_CLASSES": [
        "rest_framework.throttling.AnonRateThrottle",
        "rest_framework.throttling.UserRateThrottle",
        "rest_framework.throttling.ScopedRateThrottle",
    ],
    "DEFAULT_THROTTLE_RATES": {
        "anon": "1000/day",
        "user": "1000/hour",
        "checkout": "10/minute",
        "order_otp": "5/minute",
        "payment": "30/minute",
        "shipping_estimate": "30/minute",
        "privacy": "5/hour",
    },
    "DEFAULT_RENDERER_CLASSES": [
        "rest_framework.renderers.JSONRenderer",
    ],
    "DEFAULT_SCHEMA_CLASS": "drf_spectacular.openapi.AutoSchema",
}

if DEBUG:
    REST_FRAMEWORK["DEFAULT_RENDERER_CLASSES"].append(
        "rest_framework.renderers.BrowsableAPIRenderer"
    )

# ---------------------------------------------------------------------------
# SimpleJWT (staff tokens for admin endpoints)
# ---------------------------------------------------------------------------
SIMPLE_JWT = {
    "ALGORITHM": "HS256",
    "SIGNING_KEY": SECRET_KEY,
    "AUTH_HEADER_TYPES": ("Bearer",),
    "ACCESS_TOKEN_LIFETIME": timedelta(minutes=15),
    "REFRESH_TOKEN_LIFETIME": timedelta(days=1),
}

# CORS
CORS_ALLOWED_ORIGINS = config(
    "CORS_ALLOWED_ORIGINS", default="http://localhost:3000", cast=Csv()
)

# CSRF
CSRF_TRUSTED_ORIGINS = config(
    "CSRF_TRUSTED_ORIGINS", default="http://localhost:3000", cast=Csv()
)

# ---------------------------------------------------------------------------
# drf-spectacular (OpenAPI / Swagger)
# ---------------------------------------------------------------------------
SPECTACULAR_SETTINGS = {
    "TITLE": "Order Lifecycle API",
    "DESCRIPTION": "Guest checkout, payment confirmation, shipping, "
    "data retention and abuse controls.",
    "VERSION": "1.0.0",
    "SERVE_INCLUDE_SCHEMA": False,
    "SECURITY": [{"BearerAuth": []}],
    "APPEND_COMPONENTS": {
        "securitySchemes": {
            "BearerAuth": {
                "type": "http",
                "scheme": "bearer",
                "bearerFormat": "JWT",
            }
        }
    },
}

# ---------------------------------------------------------------------------
# Email
# ---------------------------------------------------------------------------
EMAIL_BACKEND = config(
    "EMAIL_BACKEND", default="django.core.mail.backends.smtp.EmailBackend"
)
EMAIL_HOST = config("EMAIL_HOST", default="localhost")
EMAIL_PORT = config("EMAIL_PORT", default=587, cast=int)
EMAIL_HOST_USER = config("EMAIL_HOST_USER", default="")
EMAIL_HOST_PASSWORD = config("EMAIL_HOST_PASSWORD", default="")
EMAIL_USE_TLS = config("EMAIL_USE_TLS", default=True, cast=bool)
EMAIL_TIMEOUT = config("EMAIL_TIMEOUT", default=10, cast=int)
DEFAULT_FROM_EMAIL = config("DEFAULT_FROM_EMAIL", default="orders@localhost")

STORE_NAME = config("STORE_NAME", default="Store")
SUPPORT_EMAIL = config("SUPPORT_EMAIL", default="support@localhost")

# ---------------------------------------------------------------------------
# Payment gateway
# ---------------------------------------------------------------------------
PAYMENT_GATEWAY_KEY_ID = config("PAYMENT_GATEWAY_KEY_ID", default="")
PAYMENT_GATEWAY_KEY_SECRET = config("PAYMENT_GATEWAY_KEY_SECRET", default="")
PAYMENT_GATEWAY_WEBHOOK_SECRET = config("PAYMENT_GATEWAY_WEBHOOK_SECRET", default="")
PAYMENT_GATEWAY_BASE_URL = config(
    "PAYMENT_GATEWAY_BASE_URL", default="https://api.razorpay.com/v1/"
)
PAYMENT_GATEWAY_TIMEOUT_SECONDS = config(
    "PAYMENT_GATEWAY_TIMEOUT_SECONDS", default=10, cast=int
)
PAYMENT_AMOUNT_TOLERANCE = config("PAYMENT_AMOUNT_TOLERANCE", default="0.01")
PAYMENT_WEBHOOK_SIGNATURE_HEADER = "X-Razorpay-Signature"

# ---------------------------------------------------------------------------
# Carrier
# ---------------------------------------------------------------------------
CARRIER_BASE_URL = config(
    "CARRIER_BASE_URL", default="https://apiv2.shiprocket.in/v1/external/"
)
CARRIER_EMAIL = config("CARRIER_EMAIL", default="")
CARRIER_PASSWORD = config("CARRIER_PASSWORD", default="")
CARRIER_TIMEOUT_SECONDS = config("CARRIER_TIMEOUT_SECONDS", default=10, cast=int)
CARRIER_TOKEN_TTL_HOURS = config("CARRIER_TOKEN_TTL_HOURS", default=24, cast=int)
CARRIER_TOKEN_REFRESH_MARGIN_SECONDS = config(
    "CARRIER_TOKEN_REFRESH_MARGIN_SECONDS", default=60, cast=int
)
CARRIER_PICKUP_LOCATION = config("CARRIER_PICKUP_LOCATION", default="Primary")
CARRIER_WEBHOOK_TOKEN = config("CARRIER_WEBHOOK_TOKEN", default="")
CARRIER_WEBHOOK_TOKEN_HEADER = "X-Api-Key"
STORE_PINCODE = config("STORE_PINCODE", default="380001")

AWB_MAX_ATTEMPTS = config("AWB_MAX_ATTEMPTS", default=3, cast=int)
AWB_BASE_DELAY_SECONDS = config("AWB_BASE_DELAY_SECONDS", default=2, cast=float)

DEFAULT_PACKAGE_LENGTH_CM = config("DEFAULT_PACKAGE_LENGTH_CM", default="10")
DEFAULT_PACKAGE_BREADTH_CM = config("DEFAULT_PACKAGE_BREADTH_CM", default="10")
DEFAULT_PACKAGE_HEIGHT_CM = config("DEFAULT_PACKAGE_HEIGHT_CM", default="10")
DEFAULT_ITEM_WEIGHT_KG = config("DEFAULT_ITEM_WEIGHT_KG", default="0.5")

# ---------------------------------------------------------------------------
# Tax
# ---------------------------------------------------------------------------
GST_DEFAULT_RATE = config("GST_DEFAULT_RATE", default="5")
COMPANY_STATE_CODE = config("COMPANY_STATE_CODE", default="24")

# ---------------------------------------------------------------------------
# Retention
# ---------------------------------------------------------------------------
RETENTION_ABANDONED_NOTIFY_DAYS = config(
    "RETENTION_ABANDONED_NOTIFY_DAYS", default=5, cast=int
)
RETENTION_ABANDONED_DELETE_DAYS = config(
    "RETENTION_ABANDONED_DELETE_DAYS", default=7, cast=int
)
RETENTION_DEFERRED_NOTIFY_DAYS = config(
    "RETENTION_DEFERRED_NOTIFY_DAYS", default=2, cast=int
)
RETENTION_GRACE_PERIOD_HOURS = config("RETENTION_GRACE_PERIOD_HOURS", default=48, cast=int)
RETENTION_TAX_YEARS = config("RETENTION_TAX_YEARS", default=8, cast=int)
RETENTION_DEFERRED_ACTION = config("RETENTION_DEFERRED_ACTION", default="delete")

# ---------------------------------------------------------------------------
# Abuse
# ---------------------------------------------------------------------------
ABUSE_COOLING_PERIOD_DAYS = config("ABUSE_COOLING_PERIOD_DAYS", default=30, cast=int)
ABUSE_BLOCK_CACHE_SECONDS = config("ABUSE_BLOCK_CACHE_SECONDS", default=60, cast=int)
ABUSE_EXEMPT_PATHS = ("/health", "/admin/")

# Number of reverse proxies that append to X-Forwarded-For. 0 ignores the header.
TRUSTED_PROXY_COUNT = config("TRUSTED_PROXY_COUNT", default=0, cast=int)
TRUST_CF_CONNECTING_IP = config("TRUST_CF_CONNECTING_IP", default=False, cast=bool)

# ---------------------------------------------------------------------------
# Order cancellation codes
# ---------------------------------------------------------------------------
ORDER_OTP_TTL_MINUTES = config("ORDER_OTP_TTL_MINUTES", default=10, cast=int)
ORDER_OTP_MAX_ATTEMPTS = config("ORDER_OTP_MAX_ATTEMPTS", default=5, cast=int)
ORDER_OTP_LOCKOUT_MINUTES = config("ORDER_OTP_LOCKOUT_MINUTES", default=30, cast=int)

# ---------------------------------------------------------------------------
# Structured Logging (structlog + Django LOGGING)
# ---------------------------------------------------------------------------
SENSITIVE_PATTERN = re.compile(
    r"([A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,})"  # email
    r"|(password|passwd|secret|token|authorization|signature|otp)"
    r"""([=:]\s*["']?)([^\s,}"']+)""",
    re.IGNORECASE,
)

SENSITIVE_KEYS = frozenset(
    {"password", "secret", "token", "authorization", "signature", "otp", "code"}
)


def mask_sensitive_data(_, __, event_dict):
    """Processor that masks emails, secrets, signatures and codes in log values."""
    for key, value in list(event_dict.items()):
        if key in SENSITIVE_KEYS and value:
            event_dict[key] = "***MASKED***"
        elif isinstance(value, str):
            event_dict[key] = SENSITIVE_PATTERN.sub("***MASKED***", value)
    return event_dict


# Shared processors used by both structlog and stdlib logging
_shared_processors = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_log_level,
    structlog.stdlib.add_logger_name,
    structlog.processors.TimeStamper(fmt="iso"),
    mask_sensitive_data,
    structlog.processors.StackInfoRenderer(),
    structlog.processors.UnicodeDecoder(),
]

structlog.configure(
    processors=[
        *_shared_processors,
        structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
    ],
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "json": {
            "()": structlog.stdlib.ProcessorFormatter,
            "processors": [
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(),
            ],
            "foreign_pre_chain": _shared_processors,
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "json",
        },
    },
    "root": {
        "handlers": ["console"],
        "level": "INFO",
    },
    "loggers": {
        "django": {
            "handlers": ["console"],
            "level": "INFO",
            "propagate": False,
        },
        "django.server": {
            "handlers": ["console"],
            "level": "WARNING",
            "propagate": False,
        },
    },
}
