import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent


def env_int(name, default):
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}")


def env_bool(name, default=False):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY", "build-server-insecure-development-key")
DEBUG = env_bool("DJANGO_DEBUG", False)
ALLOWED_HOSTS = [h for h in os.environ.get("DJANGO_ALLOWED_HOSTS", "*").split(",") if h]

INSTALLED_APPS = [
    "django.contrib.contenttypes",
    "django.contrib.auth",
    "rest_framework",
    "builds",
]

MIDDLEWARE = [
    "django.middleware.common.CommonMiddleware",
]

ROOT_URLCONF = "buildserver.urls"
WSGI_APPLICATION = "buildserver.wsgi.application"

# Build state is kept in memory; the database only backs Django's own apps.
DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": os.environ.get("DJANGO_DB_PATH", str(BASE_DIR / "db.sqlite3")),
    }
}

USE_TZ = True
TIME_ZONE = "UTC"
DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

# Authentication is handled in front of this service.
REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": [],
    "DEFAULT_PERMISSION_CLASSES": ["rest_framework.permissions.AllowAny"],
    "DEFAULT_RENDERER_CLASSES": ["rest_framework.renderers.JSONRenderer"],
    "DEFAULT_PARSER_CLASSES": ["rest_framework.parsers.JSONParser"],
    "UNAUTHENTICATED_USER": None,
}

DATA_UPLOAD_MAX_MEMORY_SIZE = 50 * 1024 * 1024

ANDROID_HOME = os.environ.get("ANDROID_HOME", "/opt/android-sdk")
ANDROID_BUILD_TOOLS_VERSION = os.environ.get("ANDROID_BUILD_TOOLS_VERSION", "34.0.0")

BUILD_SERVER = {
    "BUILDS_DIR": os.environ.get("BUILDS_DIR", str(BASE_DIR / "builds_data" / "builds")),
    "APKS_DIR": os.environ.get("APKS_DIR", str(BASE_DIR / "builds_data" / "apks")),
    "KEYSTORE_DIR": os.environ.get("KEYSTORE_DIR", str(BASE_DIR / "builds_data" / "keystores")),
    "ANDROID_HOME": ANDROID_HOME,
    "ANDROID_BUILD_TOOLS": os.path.join(ANDROID_HOME, "build-tools", ANDROID_BUILD_TOOLS_VERSION),
    "FLUTTER_HOME": os.environ.get("FLUTTER_HOME", "/opt/flutter"),
    "JAVA_HOME": os.environ.get("JAVA_HOME", ""),
    "MAX_CONCURRENT": env_int("BUILD_MAX_CONCURRENT", 3),
    "QUEUE_POLL_INTERVAL": env_int("BUILD_QUEUE_POLL_INTERVAL", 5),
    "COMMAND_TIMEOUT": env_int("BUILD_COMMAND_TIMEOUT", 1800),
    "MAX_OUTPUT_BYTES": env_int("BUILD_MAX_OUTPUT_BYTES", 256 * 1024),
    "TIME_LIMIT": env_int("BUILD_TIME_LIMIT", 2 * 60 * 60),
    "RETENTION": env_int("BUILD_RETENTION", 24 * 60 * 60),
    "RETENTION_SWEEP_INTERVAL": env_int("BUILD_RETENTION_SWEEP_INTERVAL", 60 * 60),
    "KEYSTORE_VALIDITY_DAYS": env_int("KEYSTORE_VALIDITY_DAYS", 10000),
    "KEYSTORE_DN": {
        "common_name": os.environ.get("KEYSTORE_DN_CN", "Android Build Server"),
        "organizational_unit": os.environ.get("KEYSTORE_DN_OU", "Development"),
        "organization": os.environ.get("KEYSTORE_DN_O", "Build Server"),
        "locality": os.environ.get("KEYSTORE_DN_L", "Jakarta"),
        "state": os.environ.get("KEYSTORE_DN_ST", "DKI Jakarta"),
        "country": os.environ.get("KEYSTORE_DN_C", "ID"),
    },
    # Execute admitted builds through the dramatiq worker; off means plain threads.
    "USE_DRAMATIQ": env_bool("BUILD_USE_DRAMATIQ", True),
}

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "standard": {"format": "%(asctime)s [%(levelname)s] %(message)s"},
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "standard"},
    },
    "loggers": {
        "builds": {"handlers": ["console"], "level": os.environ.get("BUILD_LOG_LEVEL", "INFO"), "propagate": False},
        "build_worker": {"handlers": ["console"], "level": os.environ.get("BUILD_LOG_LEVEL", "INFO"), "propagate": False},
        "django": {"handlers": ["console"], "level": "WARNING"},
    },
}
