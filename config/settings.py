from __future__ import annotations

import os
import warnings
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

BASE_DIR = Path(__file__).resolve().parent.parent

DEBUG = os.getenv("DEBUG", "false").lower() == "true"
SECRET_KEY = os.getenv("SECRET_KEY", "changeme-in-prod")
if not DEBUG and SECRET_KEY.strip() in {"", "changeme-in-prod", "change-me"}:
    warnings.warn(
        "Insecure SECRET_KEY detected with DEBUG=false. Set a strong SECRET_KEY in environment.",
        RuntimeWarning,
    )

USE_SQLITE = os.getenv("USE_SQLITE", "false").lower() == "true"

# paper: every order is filled locally. live: orders go to the profile's exchange.
MODE = os.getenv("MODE", "paper").strip().lower()
if MODE not in {"paper", "live"}:
    MODE = "paper"

# --- Auto-trade engine ---
AUTOTRADE_ENABLED = os.getenv("AUTOTRADE_ENABLED", "true").lower() == "true"
AUTOTRADE_LOCK_ENABLED = os.getenv("AUTOTRADE_LOCK_ENABLED", "true").lower() == "true"
AUTOTRADE_LOCK_TTL_SECONDS = max(5, int(os.getenv("AUTOTRADE_LOCK_TTL_SECONDS", "60")))
AUTOTRADE_LOCK_WAIT_SECONDS = max(0.0, min(30.0, float(os.getenv("AUTOTRADE_LOCK_WAIT_SECONDS", "2.0"))))
# Reject buys that cost more than the profile's cash balance.
AUTOTRADE_REQUIRE_CASH = os.getenv("AUTOTRADE_REQUIRE_CASH", "true").lower() == "true"
AUTOTRADE_ACTIVITY_MAXLEN = max(10, min(5000, int(os.getenv("AUTOTRADE_ACTIVITY_MAXLEN", "200"))))
PAPER_SLIPPAGE_BPS = max(0.0, min(500.0, float(os.getenv("PAPER_SLIPPAGE_BPS", "0"))))
EXCHANGE_QUOTE_CURRENCY = os.getenv("EXCHANGE_QUOTE_CURRENCY", "USD").strip().upper() or "USD"

# --- Batch scheduling ---
SCHEDULING_ENABLED = os.getenv("SCHEDULING_ENABLED", "true").lower() == "true"
SCHEDULING_BATCH_SIZE = max(1, min(100, int(os.getenv("SCHEDULING_BATCH_SIZE", "5"))))
SCHEDULING_BATCH_DELAY_SECONDS = max(0.0, float(os.getenv("SCHEDULING_BATCH_DELAY_SECONDS", "1.0")))
SCHEDULING_STALE_MINUTES = max(1, int(os.getenv("SCHEDULING_STALE_MINUTES", "120")))
SCHEDULING_DUE_TOLERANCE_MINUTES = max(1, min(60, int(os.getenv("SCHEDULING_DUE_TOLERANCE_MINUTES", "5"))))
# A beat period longer than the due window could step over a configured run time.
SCHEDULING_BEAT_MINUTES = max(
    1, min(SCHEDULING_DUE_TOLERANCE_MINUTES, int(os.getenv("SCHEDULING_BEAT_MINUTES", "5")))
)
SCHEDULING_DB_RETRY_ATTEMPTS = max(1, min(10, int(os.getenv("SCHEDULING_DB_RETRY_ATTEMPTS", "3"))))
SCHEDULING_LOG_RETENTION_DAYS = max(1, int(os.getenv("SCHEDULING_LOG_RETENTION_DAYS", "30")))
SCHEDULING_LOCK_ENABLED = os.getenv("SCHEDULING_LOCK_ENABLED", "true").lower() == "true"
SCHEDULING_LOCK_TTL_SECONDS = max(60, int(os.getenv("SCHEDULING_LOCK_TTL_SECONDS", "3600")))
SCHEDULING_TRIGGER_TOKEN = os.getenv("SCHEDULING_TRIGGER_TOKEN", "").strip()

# --- Market data / analytics ---
MARKETDATA_API_URL = os.getenv("MARKETDATA_API_URL", "https://data-api.coindesk.com").rstrip("/")
MARKETDATA_FETCH_TIMEOUT = max(1.0, min(120.0, float(os.getenv("MARKETDATA_FETCH_TIMEOUT", "30"))))
MARKETDATA_MARKET = os.getenv("MARKETDATA_MARKET", "cadli").strip() or "cadli"
CREDENTIALS_ENCRYPTION_KEY = os.getenv("CREDENTIALS_ENCRYPTION_KEY", "").strip()
CREDENTIALS_ENCRYPTION_OLD_KEYS = [
    k.strip() for k in os.getenv("CREDENTIALS_ENCRYPTION_OLD_KEYS", "").split(",") if k.strip()
]

ANALYTICS_PROVIDER = os.getenv(
    "ANALYTICS_PROVIDER",
    "marketdata.analytics.TechnicalAnalyticsProvider",
).strip()

ALLOWED_HOSTS = [
    h.strip()
    for h in os.getenv("ALLOWED_HOSTS", "localhost,127.0.0.1").split(",")
    if h.strip()
]

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "rest_framework",
    "rest_framework.authtoken",
    "core",
    "marketdata",
    "execution",
    "scheduling",
    "api",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
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

if USE_SQLITE:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": BASE_DIR / "db.sqlite3",
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.postgresql",
            "NAME": os.getenv("POSTGRES_DB", "foliowatch"),
            "USER": os.getenv("POSTGRES_USER", "foliowatch"),
            "PASSWORD": os.getenv("POSTGRES_PASSWORD", "foliowatch"),
            "HOST": os.getenv("POSTGRES_HOST", "localhost"),
            "PORT": os.getenv("POSTGRES_PORT", "5432"),
        }
    }

AUTH_PASSWORD_VALIDATORS = [
    {"NAME": "django.contrib.auth.password_validation.UserAttributeSimilarityValidator"},
    {"NAME": "django.contrib.auth.password_validation.MinimumLengthValidator"},
    {"NAME": "django.contrib.auth.password_validation.CommonPasswordValidator"},
    {"NAME": "django.contrib.auth.password_validation.NumericPasswordValidator"},
]

LANGUAGE_CODE = "en-us"
TIME_ZONE = os.getenv("DEFAULT_TIMEZONE", "UTC")
USE_I18N = True
USE_TZ = True

STATIC_URL = "static/"
STATIC_ROOT = BASE_DIR / "staticfiles"
STORAGES = {
    "default": {"BACKEND": "django.core.files.storage.FileSystemStorage"},
    "staticfiles": {"BACKEND": "whitenoise.storage.CompressedManifestStaticFilesStorage"},
}

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": [
        "rest_framework.authentication.TokenAuthentication",
        "rest_framework.authentication.SessionAuthentication",
    ],
    "DEFAULT_PERMISSION_CLASSES": [
        "rest_framework.permissions.IsAuthenticated",
    ],
}

REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", "").strip()
_default_redis_url = "redis://localhost:6379/0"
if REDIS_PASSWORD:
    _default_redis_url = f"redis://:{REDIS_PASSWORD}@localhost:6379/0"
REDIS_URL = os.getenv("REDIS_URL", _default_redis_url)

CELERY_BROKER_URL = REDIS_URL
CELERY_RESULT_BACKEND = REDIS_URL
CELERY_TIMEZONE = TIME_ZONE
CELERY_TASK_SERIALIZER = "json"
CELERY_RESULT_SERIALIZER = "json"
CELERY_ACCEPT_CONTENT = ["json"]
CELERY_TASK_DEFAULT_QUEUE = os.getenv("CELERY_TASK_DEFAULT_QUEUE", "celery")
CELERY_DLQ_REDIS_KEY = os.getenv("CELERY_DLQ_REDIS_KEY", "celery:dlq")
CELERY_DLQ_MAXLEN = max(100, int(os.getenv("CELERY_DLQ_MAXLEN", "2000")))
CELERY_NOTIFY_ON_FAILURE = os.getenv("CELERY_NOTIFY_ON_FAILURE", "true").lower() == "true"

# Price ticks drive orders and must not queue behind long batch fetches.
CELERY_TASK_ROUTES = {
    "execution.tasks.process_price_ticks": {"queue": "trading"},
    "scheduling.tasks.run_scheduled_tasks": {"queue": "marketdata"},
    "scheduling.tasks.purge_scheduling_history": {"queue": "marketdata"},
}

from celery.schedules import crontab

CELERY_BEAT_SCHEDULE = {
    "purge-scheduling-history": {
        "task": "scheduling.tasks.purge_scheduling_history",
        "schedule": crontab(hour=3, minute=30),
    },
}

if SCHEDULING_ENABLED:
    CELERY_BEAT_SCHEDULE["run-scheduled-tasks"] = {
        "task": "scheduling.tasks.run_scheduled_tasks",
        "schedule": crontab(minute=f"*/{SCHEDULING_BEAT_MINUTES}"),
    }

TELEGRAM_ENABLED = os.getenv("TELEGRAM_ENABLED", "false").lower() == "true"
TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN", "")
TELEGRAM_CHAT_ID = os.getenv("TELEGRAM_CHAT_ID", "")

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "json": {
            "format": '{"timestamp":"%(asctime)s","level":"%(levelname)s","name":"%(name)s","message":"%(message)s"}',
        },
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "json"},
    },
    "root": {"handlers": ["console"], "level": os.getenv("LOG_LEVEL", "INFO").upper()},
}
