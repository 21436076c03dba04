import os
from pathlib import Path
import dj_database_url
from celery.schedules import crontab
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.getenv("SECRET_KEY", "django-insecure-key")
DEBUG = os.getenv("DEBUG", "True") == "True"
DATABASE_URL = os.getenv("DATABASE_URL", None)

ALLOWED_HOSTS = ["*"]

INSTALLED_APPS = [
    "django.contrib.contenttypes",
    "opinions",
]

# Get database URL based on environment
default_db_url = (
    f"sqlite:///{BASE_DIR / 'db.sqlite3'}"
    if not DATABASE_URL
    else DATABASE_URL
)

DATABASES = {"default": dj_database_url.config(default=default_db_url)}

LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = True
USE_TZ = True

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"


LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "[{levelname}] {asctime} {name}: {message}",
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
    },
    "root": {
        "handlers": ["console"],
        "level": "INFO" if DEBUG else "WARNING",
    },
    "loggers": {
        "django": {
            "handlers": ["console"],
            "level": "INFO",
            "propagate": False,
        },
        "opinions": {
            "handlers": ["console"],
            "level": os.getenv("OPINIONS_LOG_LEVEL", "INFO"),
            "propagate": False,
        },
    },
}

# "default" backs task locking, "clustering" holds computed opinion
# landscapes (TTL + bounded LRU culling).
CACHES = {
    "default": {
        "BACKEND": "django.core.cache.backends.locmem.LocMemCache",
        "LOCATION": "unique-snowflake",
    },
    "clustering": {
        "BACKEND": "django.core.cache.backends.locmem.LocMemCache",
        "LOCATION": "opinion-landscapes",
        "TIMEOUT": int(os.getenv("CLUSTERING_CACHE_TIMEOUT", "300")),
        "OPTIONS": {
            "MAX_ENTRIES": int(os.getenv("CLUSTERING_CACHE_MAX_ENTRIES", "100")),
        },
    },
}

# Opinion clustering engine. Any key left out falls back to
# opinions.conf.DEFAULTS.
OPINION_CLUSTERING = {
    "MIN_USERS": int(os.getenv("CLUSTERING_MIN_USERS", "20")),
    "MIN_STATEMENTS": int(os.getenv("CLUSTERING_MIN_STATEMENTS", "6")),
    "IMPUTATION": os.getenv("CLUSTERING_IMPUTATION", "zero"),
    "MAX_ATTEMPTS": int(os.getenv("CLUSTERING_MAX_ATTEMPTS", "3")),
    "QUEUE_BATCH_SIZE": int(os.getenv("CLUSTERING_QUEUE_BATCH_SIZE", "5")),
}

# Celery Configuration
CELERY_ACCEPT_CONTENT = ["json"]
CELERY_TASK_SERIALIZER = "json"
CELERY_RESULT_SERIALIZER = "json"
CELERY_TIMEZONE = TIME_ZONE

CELERY_BEAT_SCHEDULE = {
    "process-clustering-queue": {
        "task": "opinions.tasks.process_clustering_queue",
        "schedule": 60.0,
    },
    "cleanup-clustering-queue": {
        "task": "opinions.tasks.cleanup_clustering_queue",
        "schedule": crontab(hour=4, minute=0),
    },
}
