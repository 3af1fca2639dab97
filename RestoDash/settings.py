"""
Django settings for RestoDash project.

Values come from the environment (a local .env file is loaded first).
Campaign delivery knobs are documented in RestoDash/campaign_config.py.
"""
import os
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent

load_dotenv(BASE_DIR / ".env")


def _env_bool(name, default="False"):
    return os.getenv(name, default).lower() == "true"


SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "django-insecure-restodash-dev-key")

DEBUG = _env_bool("DJANGO_DEBUG", "True")

ALLOWED_HOSTS = [h.strip() for h in os.getenv("DJANGO_ALLOWED_HOSTS", "*").split(",") if h.strip()]


# Application definition

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    # Project apps
    "organizations",
    "accounts",
    "orders",
    "messaging",
    "marketing",
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

ROOT_URLCONF = "RestoDash.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [BASE_DIR / "templates"],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    },
]

WSGI_APPLICATION = "RestoDash.wsgi.application"


# Database
# SQLite by default; set DB_ENGINE=postgresql (plus DB_* vars) in production.

if os.getenv("DB_ENGINE", "sqlite").lower() == "postgresql":
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.postgresql",
            "NAME": os.getenv("DB_NAME", "restodash"),
            "USER": os.getenv("DB_USER", "restodash"),
            "PASSWORD": os.getenv("DB_PASSWORD", ""),
            "HOST": os.getenv("DB_HOST", "localhost"),
            "PORT": os.getenv("DB_PORT", "5432"),
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": BASE_DIR / "db.sqlite3",
            # File-backed so worker threads get their own connections in tests
            "TEST": {"NAME": BASE_DIR / "test_db.sqlite3"},
        }
    }

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

AUTH_PASSWORD_VALIDATORS = [
    {"NAME": "django.contrib.auth.password_validation.UserAttributeSimilarityValidator"},
    {"NAME": "django.contrib.auth.password_validation.MinimumLengthValidator"},
    {"NAME": "django.contrib.auth.password_validation.CommonPasswordValidator"},
    {"NAME": "django.contrib.auth.password_validation.NumericPasswordValidator"},
]


# Internationalization

LANGUAGE_CODE = "en-us"
TIME_ZONE = os.getenv("DJANGO_TIME_ZONE", "America/Sao_Paulo")
USE_I18N = True
USE_TZ = True

STATIC_URL = "static/"
STATIC_ROOT = BASE_DIR / "staticfiles"

LOGIN_URL = "/admin/login/"


# =============================================================================
# WHATSAPP GATEWAY (Evolution API)
# =============================================================================

EVOLUTION_API_URL = os.getenv("EVOLUTION_API_URL", "")
EVOLUTION_API_TOKEN = os.getenv("EVOLUTION_API_TOKEN", "")
EVOLUTION_INSTANCE_NAME = os.getenv("EVOLUTION_INSTANCE_NAME", "")
WHATSAPP_REQUEST_TIMEOUT = float(os.getenv("WHATSAPP_REQUEST_TIMEOUT", "10"))


# =============================================================================
# SCHEDULED CAMPAIGNS
# =============================================================================

CAMPAIGN_DEFAULT_DELAY_SECONDS = int(os.getenv("CAMPAIGN_DEFAULT_DELAY_SECONDS", "5"))
CAMPAIGN_ACTIVITY_WINDOW_DAYS = int(os.getenv("CAMPAIGN_ACTIVITY_WINDOW_DAYS", "30"))
CAMPAIGN_INVOCATION_BUDGET_SECONDS = int(os.getenv("CAMPAIGN_INVOCATION_BUDGET_SECONDS", "240"))
CAMPAIGN_STALE_AFTER_MINUTES = int(os.getenv("CAMPAIGN_STALE_AFTER_MINUTES", "10"))
CAMPAIGN_MAX_WORKERS = int(os.getenv("CAMPAIGN_MAX_WORKERS", "4"))
CAMPAIGN_CRON_TOKEN = os.getenv("CAMPAIGN_CRON_TOKEN", "")


# =============================================================================
# LOGGING
# =============================================================================

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "{asctime} [{levelname}] {name}: {message}",
            "style": "{",
        },
        "audit": {
            "format": "{asctime} AUDIT {message}",
            "style": "{",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "verbose",
        },
        "audit_console": {
            "class": "logging.StreamHandler",
            "formatter": "audit",
        },
    },
    "root": {
        "handlers": ["console"],
        "level": "WARNING",
    },
    "loggers": {
        "django": {
            "handlers": ["console"],
            "level": "WARNING",
            "propagate": False,
        },
        "marketing": {
            "handlers": ["console"],
            "level": LOG_LEVEL,
            "propagate": False,
        },
        "messaging": {
            "handlers": ["console"],
            "level": LOG_LEVEL,
            "propagate": False,
        },
        "orders": {
            "handlers": ["console"],
            "level": LOG_LEVEL,
            "propagate": False,
        },
        "audit": {
            "handlers": ["audit_console"],
            "level": "INFO",
            "propagate": False,
        },
    },
}
