"""
Django settings for the Bilnet hotspot voucher platform
"""

from pathlib import Path
from decouple import config, Csv

# Build paths inside the project like this: BASE_DIR / 'subdir'.
BASE_DIR = Path(__file__).resolve().parent.parent

# SECURITY WARNING: keep the secret key used in production secret!
SECRET_KEY = config(
    "SECRET_KEY", default="django-insecure-bilnet-dev-key-change-in-production"
)

# SECURITY WARNING: don't run with debug turned on in production!
DEBUG = config("DEBUG", default=False, cast=bool)

ALLOWED_HOSTS = config(
    "ALLOWED_HOSTS",
    default="localhost,127.0.0.1,testserver",
    cast=Csv(),
)

# Application definition
INSTALLED_APPS = [
    "jazzmin",
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "rest_framework",
    "rest_framework.authtoken",
    "corsheaders",
    "django_crontab",  # For scheduled tasks
    "hotspot",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "whitenoise.middleware.WhiteNoiseMiddleware",
    "corsheaders.middleware.CorsMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "bilnet.urls"

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

WSGI_APPLICATION = "bilnet.wsgi.application"

# Database
# MySQL in production (DB_ENGINE=mysql), SQLite for local development and tests
DB_ENGINE = config("DB_ENGINE", default="sqlite")

if DB_ENGINE == "mysql":
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.mysql",
            "NAME": config("DB_NAME", default="bilnet"),
            "USER": config("DB_USER", default="root"),
            "PASSWORD": config("DB_PASSWORD", default=""),
            "HOST": config("DB_HOST", default="localhost"),
            "PORT": config("DB_PORT", default="3306"),
            "OPTIONS": {
                "charset": "utf8mb4",
                "init_command": "SET sql_mode='STRICT_TRANS_TABLES'",
            },
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": BASE_DIR / config("DB_NAME", default="db.sqlite3"),
        }
    }

# Cache backs router read caching only; correctness never depends on it
CACHES = {
    "default": {
        "BACKEND": config(
            "CACHE_BACKEND",
            default="django.core.cache.backends.locmem.LocMemCache",
        ),
        "LOCATION": config("CACHE_LOCATION", default="bilnet-router-cache"),
    }
}

# Password validation
AUTH_PASSWORD_VALIDATORS = [
    {
        "NAME": "django.contrib.auth.password_validation.UserAttributeSimilarityValidator",
    },
    {
        "NAME": "django.contrib.auth.password_validation.MinimumLengthValidator",
    },
    {
        "NAME": "django.contrib.auth.password_validation.CommonPasswordValidator",
    },
    {
        "NAME": "django.contrib.auth.password_validation.NumericPasswordValidator",
    },
]

# Internationalization
LANGUAGE_CODE = "en-us"
TIME_ZONE = config("TIME_ZONE", default="Africa/Kampala")
USE_I18N = True
USE_TZ = True

# Static files (CSS, JavaScript, Images)
STATIC_URL = "static/"
STATIC_ROOT = BASE_DIR / "staticfiles"

WHITENOISE_USE_FINDERS = DEBUG  # Only use finders in development
WHITENOISE_AUTOREFRESH = DEBUG  # Only in development
WHITENOISE_MAX_AGE = 31536000 if not DEBUG else 0  # 1 year cache in production

# Security Settings - Environment Aware Configuration
if not DEBUG:
    SECURE_CONTENT_TYPE_NOSNIFF = True
    SECURE_HSTS_INCLUDE_SUBDOMAINS = True
    SECURE_HSTS_SECONDS = config("SECURE_HSTS_SECONDS", default=0, cast=int)
    SECURE_SSL_REDIRECT = config("SECURE_SSL_REDIRECT", default=False, cast=bool)
    SECURE_PROXY_SSL_HEADER = ("HTTP_X_FORWARDED_PROTO", "https")
    SESSION_COOKIE_SECURE = SECURE_SSL_REDIRECT
    CSRF_COOKIE_SECURE = SECURE_SSL_REDIRECT
    X_FRAME_OPTIONS = "DENY"
    SECURE_REFERRER_POLICY = "same-origin"

# Logging
LOG_DIR = BASE_DIR / "logs"
LOG_TO_FILE = config("LOG_TO_FILE", default=not DEBUG, cast=bool)
if LOG_TO_FILE:
    LOG_DIR.mkdir(exist_ok=True)

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "{levelname} {asctime} {module} {process:d} {thread:d} {message}",
            "style": "{",
        },
        "simple": {
            "format": "{levelname} {message}",
            "style": "{",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "verbose",
        },
        "file": {
            "class": "logging.FileHandler",
            "filename": LOG_DIR / "hotspot.log",
            "formatter": "verbose",
            "delay": True,
        },
    },
    "root": {
        "handlers": ["console"],
        "level": "INFO" if DEBUG else "WARNING",
    },
    "loggers": {
        "django": {
            "handlers": ["console", "file"] if LOG_TO_FILE else ["console"],
            "level": "INFO",
            "propagate": False,
        },
        "hotspot": {
            "handlers": ["console", "file"] if LOG_TO_FILE else ["console"],
            "level": config("HOTSPOT_LOG_LEVEL", default="INFO"),
            "propagate": False,
        },
    },
}

# Default primary key field type
DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

# REST Framework Configuration
REST_FRAMEWORK = {
    "DEFAULT_PERMISSION_CLASSES": [
        "rest_framework.permissions.IsAuthenticated",
    ],
    "DEFAULT_AUTHENTICATION_CLASSES": [
        "rest_framework.authentication.TokenAuthentication",
        "rest_framework.authentication.BasicAuthentication",
    ],
    "DEFAULT_RENDERER_CLASSES": [
        "rest_framework.renderers.JSONRenderer",
    ],
    "DEFAULT_PARSER_CLASSES": [
        "rest_framework.parsers.JSONParser",
        "rest_framework.parsers.FormParser",
    ],
    "EXCEPTION_HANDLER": "hotspot.exception_handler.custom_exception_handler",
}

# CORS settings - Environment Aware
if DEBUG:
    CORS_ALLOW_ALL_ORIGINS = True
    CORS_ALLOWED_ORIGINS = []
else:
    CORS_ALLOW_ALL_ORIGINS = False
    CORS_ALLOWED_ORIGINS = config(
        "CORS_ALLOWED_ORIGINS",
        default="http://localhost:3000",
        cast=Csv(),
    )

CORS_PREFLIGHT_MAX_AGE = 86400  # 24 hours
CORS_ALLOW_CREDENTIALS = True

# Router credentials are stored as Fernet tokens. Leave empty to derive from SECRET_KEY.
FIELD_ENCRYPTION_KEY = config("FIELD_ENCRYPTION_KEY", default="")

# RouterOS API connection (per-device host/credentials live in the database)
ROUTER_API_TIMEOUT = config("ROUTER_API_TIMEOUT", default=10, cast=int)
ROUTER_API_ATTEMPTS = config("ROUTER_API_ATTEMPTS", default=3, cast=int)
ROUTER_API_RETRY_DELAY = config("ROUTER_API_RETRY_DELAY", default=1.0, cast=float)
ROUTER_API_USE_SSL = config("ROUTER_API_USE_SSL", default=False, cast=bool)
# Control SSL certificate verification for self-signed certs (default: disabled)
ROUTER_API_SSL_VERIFY = config("ROUTER_API_SSL_VERIFY", default=False, cast=bool)

# Cached router reads, in seconds
ROUTER_CACHE_TTLS = {
    "volatile": config("ROUTER_CACHE_TTL_VOLATILE", default=30, cast=int),
    "connections": config("ROUTER_CACHE_TTL_CONNECTIONS", default=60, cast=int),
    "static": config("ROUTER_CACHE_TTL_STATIC", default=300, cast=int),
}

# "disable" keeps the hotspot user for auditing, "remove" deletes it
DEPROVISION_MODE = config("DEPROVISION_MODE", default="disable")

VOUCHER_SWEEPER = {
    "max_provision_attempts": config("VOUCHER_MAX_PROVISION_ATTEMPTS", default=5, cast=int),
    "retry_backoff_seconds": config("VOUCHER_RETRY_BACKOFF_SECONDS", default=60, cast=int),
    "retry_backoff_max_seconds": config(
        "VOUCHER_RETRY_BACKOFF_MAX_SECONDS", default=3600, cast=int
    ),
    "lease_seconds": config("VOUCHER_LEASE_SECONDS", default=120, cast=int),
}

# Package key -> router profile and limits
VOUCHER_PACKAGES = {
    "daily_1gb": {"profile": "1GB-DAILY", "validity_hours": 24, "data_limit_mb": 1024},
    "weekly_5gb": {"profile": "5GB-WEEKLY", "validity_hours": 168, "data_limit_mb": 5120},
    "monthly_20gb": {
        "profile": "20GB-MONTHLY",
        "validity_hours": 720,
        "data_limit_mb": 20480,
    },
    "unlimited_daily": {
        "profile": "UNLIMITED-DAILY",
        "validity_hours": 24,
        "data_limit_mb": None,
    },
    "unlimited_weekly": {
        "profile": "UNLIMITED-WEEKLY",
        "validity_hours": 168,
        "data_limit_mb": None,
    },
    "unlimited_monthly": {
        "profile": "UNLIMITED-MONTHLY",
        "validity_hours": 720,
        "data_limit_mb": None,
    },
}

DEFAULT_COUNTRY_CODE = config("DEFAULT_COUNTRY_CODE", default="256")
VOUCHER_CURRENCY = config("VOUCHER_CURRENCY", default="UGX")

# Pluggable collaborators
PAYMENT_GATEWAY_CLASS = config(
    "PAYMENT_GATEWAY_CLASS", default="hotspot.payments.ManualPaymentGateway"
)
NOTIFICATION_SENDER_CLASS = config(
    "NOTIFICATION_SENDER_CLASS", default="hotspot.sms.SMSGatewayClient"
)

# A "sending" notification older than this is taken to be abandoned
NOTIFICATION_CLAIM_TIMEOUT = config("NOTIFICATION_CLAIM_TIMEOUT", default=120, cast=int)

# SMS gateway configuration
SMS_USERNAME = config("SMS_USERNAME", default="")
SMS_PASSWORD = config("SMS_PASSWORD", default="")
SMS_SENDER_ID = config("SMS_SENDER_ID", default="BILNET")
IS_TEST_MODE = config("IS_TEST_MODE", default=False, cast=bool)
SMS_TEST_URL = config(
    "SMS_TEST_URL", default="https://messaging-service.co.tz/api/sms/v1/test/text/single"
)
SMS_PROD_URL = config(
    "SMS_PROD_URL", default="https://messaging-service.co.tz/api/sms/v1/text/single"
)
SMS_API_URL = SMS_TEST_URL if IS_TEST_MODE else SMS_PROD_URL

# Jazzmin Configuration
JAZZMIN_SETTINGS = {
    "site_title": "Bilnet Admin",
    "site_header": "Bilnet",
    "site_brand": "Bilnet",
    "welcome_sign": "Bilnet hotspot voucher administration",
    "copyright": "Bilnet",
    "search_model": [
        "hotspot.Voucher",
        "hotspot.RouterDevice",
        "hotspot.Payment",
    ],
    "show_sidebar": True,
    "navigation_expanded": True,
    "order_with_respect_to": ["hotspot", "auth"],
    "icons": {
        "auth": "fas fa-users-cog",
        "auth.user": "fas fa-user",
        "hotspot.Customer": "fas fa-user",
        "hotspot.Payment": "fas fa-credit-card",
        "hotspot.Voucher": "fas fa-ticket-alt",
        "hotspot.RouterDevice": "fas fa-network-wired",
        "hotspot.ProvisioningAttempt": "fas fa-history",
        "hotspot.VoucherTransition": "fas fa-exchange-alt",
        "hotspot.NotificationRecord": "fas fa-sms",
        "hotspot.VoucherTransfer": "fas fa-people-arrows",
    },
    "related_modal_active": False,
    "changeform_format": "horizontal_tabs",
}

# CRONTAB CONFIGURATION FOR SCHEDULED TASKS
# ============================================
# Run 'python manage.py crontab add' to install cron jobs
# Run 'python manage.py crontab show' to list active cron jobs
# Run 'python manage.py crontab remove' to uninstall cron jobs

CRONJOBS = [
    # Expire vouchers, retry stuck provisioning and pending router cleanups
    (
        "*/5 * * * *",
        "hotspot.tasks.sweep_vouchers",
        ">> /var/log/bilnet_cron.log 2>&1",
    ),
    # Router health checks (status, uptime, version)
    (
        "*/5 * * * *",
        "hotspot.tasks.monitor_router_devices",
        ">> /var/log/bilnet_cron.log 2>&1",
    ),
]

# For development/testing, you can also manually run:
# python manage.py run_voucher_sweeper --once
# python manage.py monitor_routers
