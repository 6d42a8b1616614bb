from .settings import *  # noqa: F401,F403

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": ":memory:",
    }
}

SECRET_KEY = "test-secret-key"
MODE = "paper"
AUTOTRADE_ENABLED = True
AUTOTRADE_LOCK_ENABLED = False
AUTOTRADE_LOCK_WAIT_SECONDS = 0.5
AUTOTRADE_REQUIRE_CASH = True
PAPER_SLIPPAGE_BPS = 0.0
SCHEDULING_LOCK_ENABLED = False
SCHEDULING_BATCH_DELAY_SECONDS = 0.0
SCHEDULING_TRIGGER_TOKEN = ""
TELEGRAM_ENABLED = False
REDIS_URL = ""

CELERY_TASK_ALWAYS_EAGER = True
CELERY_TASK_EAGER_PROPAGATES = True
CELERY_BROKER_URL = "memory://"
CELERY_RESULT_BACKEND = "cache+memory://"

STORAGES = {
    "default": {"BACKEND": "django.core.files.storage.FileSystemStorage"},
    "staticfiles": {"BACKEND": "django.contrib.staticfiles.storage.StaticFilesStorage"},
}
PASSWORD_HASHERS = ["django.contrib.auth.hashers.MD5PasswordHasher"]
