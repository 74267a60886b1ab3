"""
Django settings for the Biometric Attendance service.

This file contains the configuration for the Django project, including database settings,
installed applications, the attendance decision thresholds, and the capability bindings
for the face inference adapters.
It is configured to read sensitive values from environment variables for security.
"""

import json
import os
import sys
import warnings
from collections.abc import Sequence
from datetime import timedelta
from pathlib import Path
from typing import Any

from django.core.exceptions import ImproperlyConfigured

import dj_database_url
from cryptography.fernet import Fernet

# `BASE_DIR` points to the repository root.
BASE_DIR = Path(__file__).resolve().parent.parent.parent
LOCAL_ENV_PATH = Path(os.environ.get("LOCAL_ENV_PATH", BASE_DIR / ".env"))
DEV_KEY_CACHE_PATH = Path(
    os.environ.get("DEV_ENCRYPTION_KEY_FILE", BASE_DIR / ".dev_encryption_keys.json")
)


# --- Environment helpers ---


def _get_bool_env(var_name: str, default: bool = False) -> bool:
    """Return a boolean from an environment variable."""

    raw_value = os.environ.get(var_name)
    if raw_value is None:
        return default
    return raw_value.lower() in {"1", "true", "yes", "on"}


def _parse_int_env(var_name: str, default: int, *, minimum: int | None = None) -> int:
    """Return an integer from the environment, enforcing an optional minimum."""

    raw_value = os.environ.get(var_name)
    if raw_value is None:
        return default
    try:
        value = int(raw_value)
    except ValueError as exc:  # pragma: no cover - defensive programming
        raise ImproperlyConfigured(f"{var_name} must be an integer if provided.") from exc
    if minimum is not None and value < minimum:
        raise ImproperlyConfigured(f"{var_name} must be >= {minimum} if provided.")
    return value


def _get_float_env(
    var_name: str,
    default: float,
    *,
    minimum: float | None = None,
    maximum: float | None = None,
) -> float:
    """Return a float from the environment with optional bound enforcement."""

    raw_value = os.environ.get(var_name)
    if raw_value is None:
        return default
    try:
        value = float(raw_value)
    except ValueError as exc:  # pragma: no cover - defensive programming
        raise ImproperlyConfigured(f"{var_name} must be a float if provided.") from exc
    if minimum is not None and value < minimum:
        raise ImproperlyConfigured(f"{var_name} must be >= {minimum} if provided.")
    if maximum is not None and value > maximum:
        raise ImproperlyConfigured(f"{var_name} must be <= {maximum} if provided.")
    return value


# Detect if we're running tests
TESTING = "test" in sys.argv or (len(sys.argv) > 0 and "pytest" in sys.argv[0])

DEFAULT_SECRET_KEY = "a-secure-default-key-for-development-only"

# Never run with debug mode turned on in a production environment.
# Automatically enable DEBUG mode when running tests.
DEBUG = _get_bool_env("DJANGO_DEBUG", default=TESTING)

SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY", DEFAULT_SECRET_KEY)
if SECRET_KEY == DEFAULT_SECRET_KEY and not DEBUG:
    raise ImproperlyConfigured(
        "DJANGO_SECRET_KEY must be set to a secure value when DJANGO_DEBUG is not enabled."
    )


# --- Encryption keys ---


def _validate_fernet_key(key: str | bytes, setting_name: str) -> bytes:
    """Ensure the provided key material is a valid Fernet key."""

    key_bytes = key.encode() if isinstance(key, str) else key
    try:
        Fernet(key_bytes)
    except (ValueError, TypeError) as exc:  # pragma: no cover - defensive programming
        raise ImproperlyConfigured(
            f"{setting_name} must be a valid 32-byte base64-encoded Fernet key."
        ) from exc
    return key_bytes


def _read_local_env_value(var_name: str) -> str | None:
    """Return a value from a local ``.env`` file if present."""

    if not LOCAL_ENV_PATH.exists():
        return None
    try:
        for raw_line in LOCAL_ENV_PATH.read_text().splitlines():
            line = raw_line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, _, value = line.partition("=")
            if key.strip() != var_name:
                continue
            return value.strip().strip('"').strip("'")
    except OSError as exc:  # pragma: no cover - defensive programming
        warnings.warn(f"Unable to read {LOCAL_ENV_PATH}: {exc}")
    return None


def _load_cached_dev_key(var_name: str) -> bytes | None:
    """Load a previously generated development key from disk."""

    if not DEV_KEY_CACHE_PATH.exists():
        return None
    try:
        cache = json.loads(DEV_KEY_CACHE_PATH.read_text())
    except (OSError, json.JSONDecodeError) as exc:  # pragma: no cover - defensive programming
        warnings.warn(f"Ignoring invalid dev key cache file: {exc}")
        return None

    cached_value = cache.get(var_name)
    if not cached_value:
        return None
    try:
        return _validate_fernet_key(cached_value, var_name)
    except ImproperlyConfigured:
        warnings.warn(f"Ignoring invalid cached {var_name}; regenerating.")
        return None


def _persist_dev_key(var_name: str, key: bytes) -> None:
    """Persist generated development keys so encrypted templates survive restarts."""

    try:
        existing = (
            json.loads(DEV_KEY_CACHE_PATH.read_text()) if DEV_KEY_CACHE_PATH.exists() else {}
        )
    except (OSError, json.JSONDecodeError):  # pragma: no cover - defensive programming
        existing = {}
    existing[var_name] = key.decode()
    try:
        DEV_KEY_CACHE_PATH.write_text(json.dumps(existing, indent=2))
    except OSError as exc:  # pragma: no cover - defensive programming
        warnings.warn(f"Unable to persist dev encryption key cache: {exc}")


def _load_face_data_encryption_key() -> bytes:
    """Load the Fernet key used to seal enrolled face templates."""

    key = os.environ.get("FACE_DATA_ENCRYPTION_KEY")
    if not key and (DEBUG or TESTING):
        key = _read_local_env_value("FACE_DATA_ENCRYPTION_KEY")
    if key:
        return _validate_fernet_key(key, "FACE_DATA_ENCRYPTION_KEY")
    if DEBUG or TESTING:
        cached_key = _load_cached_dev_key("FACE_DATA_ENCRYPTION_KEY")
        if cached_key:
            return cached_key
        generated = Fernet.generate_key()
        _persist_dev_key("FACE_DATA_ENCRYPTION_KEY", generated)
        return generated
    raise ImproperlyConfigured(
        "FACE_DATA_ENCRYPTION_KEY environment variable must be set in production environments."
    )


FACE_DATA_ENCRYPTION_KEY = _load_face_data_encryption_key()
# Label stored next to every ciphertext so rotated templates can be traced to their key.
FACE_DATA_KEY_REFERENCE = os.environ.get("FACE_DATA_KEY_REFERENCE", "primary")


# --- Hosts & transport security ---

LOCALHOST_ALIASES: tuple[str, ...] = ("localhost", "127.0.0.1", "[::1]")


def _resolve_allowed_hosts(
    *,
    default_allowed_hosts: Sequence[str],
    require_explicit_hosts: bool,
) -> list[str]:
    """Return the allowed host list based on deployment defaults."""

    allowed_hosts_env = os.environ.get("DJANGO_ALLOWED_HOSTS")
    if allowed_hosts_env:
        return [host.strip() for host in allowed_hosts_env.split(",") if host.strip()]
    if require_explicit_hosts:
        raise ImproperlyConfigured(
            "DJANGO_ALLOWED_HOSTS must be provided (comma separated) when secure defaults are enforced."
        )
    return list(default_allowed_hosts)


def configure_environment(
    *,
    secure_defaults: bool,
    default_allowed_hosts: Sequence[str],
    require_allowed_hosts: bool,
) -> None:
    """Populate security-sensitive settings for the active environment."""

    global ALLOWED_HOSTS
    global SECURE_SSL_REDIRECT
    global SECURE_HSTS_SECONDS
    global CSRF_COOKIE_SECURE
    global SESSION_COOKIE_SECURE

    ALLOWED_HOSTS = _resolve_allowed_hosts(
        default_allowed_hosts=default_allowed_hosts,
        require_explicit_hosts=require_allowed_hosts,
    )
    SECURE_SSL_REDIRECT = _get_bool_env("DJANGO_SECURE_SSL_REDIRECT", default=secure_defaults)
    SECURE_HSTS_SECONDS = _parse_int_env(
        "DJANGO_SECURE_HSTS_SECONDS",
        3600 if secure_defaults else 0,
        minimum=0,
    )
    CSRF_COOKIE_SECURE = _get_bool_env("DJANGO_CSRF_COOKIE_SECURE", default=secure_defaults)
    SESSION_COOKIE_SECURE = _get_bool_env(
        "DJANGO_SESSION_COOKIE_SECURE", default=secure_defaults
    )

    db_options = DATABASES["default"].setdefault("OPTIONS", {})
    if _get_bool_env("DATABASE_SSL_REQUIRE", default=secure_defaults):
        db_options["sslmode"] = os.environ.get("DATABASE_SSLMODE", "require")
    else:
        db_options.pop("sslmode", None)


# --- Application Configuration ---

INSTALLED_APPS = [
    # Custom applications for this project
    "users.apps.UsersConfig",
    "recognition.apps.RecognitionConfig",
    # Third-party packages
    "rest_framework",
    "django_ratelimit",
    # Core Django applications
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
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

ROOT_URLCONF = "biometric_attendance.urls"

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

WSGI_APPLICATION = "biometric_attendance.wsgi.application"

AUTH_USER_MODEL = "users.User"


# --- Database Configuration ---

default_db_url = os.environ.get(
    "DATABASE_URL", f"sqlite:///{(BASE_DIR / 'db.sqlite3').as_posix()}"
)
conn_max_age = _parse_int_env("DATABASE_CONN_MAX_AGE", 0, minimum=0)
database_config = dj_database_url.parse(default_db_url, conn_max_age=conn_max_age)

# Store calls carry a server-side timeout on PostgreSQL so a stalled query fails
# the submission instead of hanging it.
DATABASE_STATEMENT_TIMEOUT_MS = _parse_int_env("DATABASE_STATEMENT_TIMEOUT_MS", 5000, minimum=0)
if database_config.get("ENGINE") == "django.db.backends.postgresql" and DATABASE_STATEMENT_TIMEOUT_MS:
    database_config.setdefault("OPTIONS", {})["options"] = (
        f"-c statement_timeout={DATABASE_STATEMENT_TIMEOUT_MS}"
    )

DATABASES = {
    "default": database_config,
}

if DATABASES["default"].get("ENGINE") == "django.db.backends.sqlite3":
    # Writers wait on locks; shared-cache in-memory test databases cannot wait.
    DATABASES["default"].setdefault("OPTIONS", {}).setdefault("timeout", 20)
    DATABASES["default"].setdefault("TEST", {}).setdefault(
        "NAME", str(BASE_DIR / ".test_db.sqlite3")
    )


def build_postgres_database_config() -> dict[str, Any]:
    """Return a PostgreSQL configuration derived from discrete environment variables."""

    options: dict[str, Any] = {}
    if DATABASE_STATEMENT_TIMEOUT_MS:
        options["options"] = f"-c statement_timeout={DATABASE_STATEMENT_TIMEOUT_MS}"
    return {
        "ENGINE": "django.db.backends.postgresql",
        "NAME": os.environ.get("DB_NAME", "attendance"),
        "USER": os.environ.get("DB_USER", "attendance"),
        "PASSWORD": os.environ.get("DB_PASSWORD", "attendance"),
        "HOST": os.environ.get("DB_HOST", "localhost"),
        "PORT": os.environ.get("DB_PORT", "5432"),
        "CONN_MAX_AGE": _parse_int_env("DB_CONN_MAX_AGE", 600, minimum=0),
        "OPTIONS": options,
    }


configure_environment(
    secure_defaults=not DEBUG,
    default_allowed_hosts=LOCALHOST_ALIASES + ("testserver",),
    require_allowed_hosts=not DEBUG,
)


# --- Cache Configuration ---
# The admin event feed and django-ratelimit both use the default cache. LocMemCache is
# fine for a single process; configure Redis for multi-process deployments.
CACHES = {
    "default": {
        "BACKEND": "django.core.cache.backends.locmem.LocMemCache",
        "LOCATION": "biometric-attendance",
    }
}
_redis_cache_url = os.environ.get("REDIS_CACHE_URL")
if _redis_cache_url:
    CACHES["default"] = {
        "BACKEND": "django.core.cache.backends.redis.RedisCache",
        "LOCATION": _redis_cache_url,
    }


# --- Password Validation ---

AUTH_PASSWORD_VALIDATORS = [
    {"NAME": "django.contrib.auth.password_validation.UserAttributeSimilarityValidator"},
    {"NAME": "django.contrib.auth.password_validation.MinimumLengthValidator"},
    {"NAME": "django.contrib.auth.password_validation.CommonPasswordValidator"},
    {"NAME": "django.contrib.auth.password_validation.NumericPasswordValidator"},
]


# --- Internationalization ---
# The attendance calendar day is computed in this zone (midnight-to-midnight).

LANGUAGE_CODE = "en-us"
TIME_ZONE = os.environ.get("ATTENDANCE_TIME_ZONE", "UTC")
USE_I18N = True
USE_TZ = True

STATIC_URL = "/static/"
STATIC_ROOT = Path(os.environ.get("DJANGO_STATIC_ROOT", BASE_DIR / "staticfiles"))

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"


# --- REST Framework & JWT ---

REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": [
        "rest_framework_simplejwt.authentication.JWTAuthentication",
        "rest_framework.authentication.SessionAuthentication",
    ],
    "DEFAULT_PERMISSION_CLASSES": [
        "rest_framework.permissions.IsAuthenticated",
    ],
    "DEFAULT_PARSER_CLASSES": [
        "rest_framework.parsers.JSONParser",
        "rest_framework.parsers.MultiPartParser",
        "rest_framework.parsers.FormParser",
    ],
    "EXCEPTION_HANDLER": "recognition.api.exceptions.attendance_exception_handler",
    "DEFAULT_PAGINATION_CLASS": "rest_framework.pagination.PageNumberPagination",
    "PAGE_SIZE": _parse_int_env("API_PAGE_SIZE", 20, minimum=1),
}

SIMPLE_JWT = {
    "ACCESS_TOKEN_LIFETIME": timedelta(
        minutes=_parse_int_env("JWT_ACCESS_TOKEN_MINUTES", 60, minimum=1)
    ),
    "REFRESH_TOKEN_LIFETIME": timedelta(
        days=_parse_int_env("JWT_REFRESH_TOKEN_DAYS", 7, minimum=1)
    ),
    "UPDATE_LAST_LOGIN": True,
}


# --- Celery ---

CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL", "redis://localhost:6379/0")
CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND", "redis://localhost:6379/1")
CELERY_TASK_ALWAYS_EAGER = _get_bool_env("CELERY_TASK_ALWAYS_EAGER", default=TESTING)
CELERY_TASK_IGNORE_RESULT = True
# Seconds; events are published from inside attendance requests.
CELERY_BROKER_CONNECTION_TIMEOUT = 2


# --- Logging ---

LOG_LEVEL = os.environ.get("DJANGO_LOG_LEVEL", "INFO").upper()

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "%(asctime)s %(levelname)s %(name)s %(message)s",
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
        "level": LOG_LEVEL,
    },
    "loggers": {
        "django.db.backends": {
            "handlers": ["console"],
            "level": "WARNING",
            "propagate": False,
        },
    },
}


# --- Rate limiting ---

RATELIMIT_USE_CACHE = "default"
RATELIMIT_ENABLE = _get_bool_env("RATELIMIT_ENABLE", default=not TESTING)
RECOGNITION_ATTENDANCE_RATE_LIMIT = os.environ.get(
    "RECOGNITION_ATTENDANCE_RATE_LIMIT", "5/m"
)
SILENCED_SYSTEM_CHECKS = [
    "django_ratelimit.E003",  # LocMemCache not a shared cache
    "django_ratelimit.W001",  # LocMemCache not officially supported
]


# --- Attendance decision thresholds ---

# Similarity a probe must reach against the best enrolled template to mark attendance.
RECOGNITION_ATTENDANCE_THRESHOLD = _get_float_env(
    "RECOGNITION_ATTENDANCE_THRESHOLD", 0.8, minimum=-1.0, maximum=1.0
)
# Generic threshold for ad-hoc comparisons.
RECOGNITION_MATCH_THRESHOLD = _get_float_env(
    "RECOGNITION_MATCH_THRESHOLD", 0.6, minimum=-1.0, maximum=1.0
)
RECOGNITION_DUPLICATE_TEMPLATE_THRESHOLD = _get_float_env(
    "RECOGNITION_DUPLICATE_TEMPLATE_THRESHOLD", 0.9, minimum=-1.0, maximum=1.0
)
RECOGNITION_MIN_DETECTION_CONFIDENCE = _get_float_env(
    "RECOGNITION_MIN_DETECTION_CONFIDENCE", 0.7, minimum=0.0, maximum=1.0
)
RECOGNITION_ENROLLMENT_MIN_QUALITY = _get_float_env(
    "RECOGNITION_ENROLLMENT_MIN_QUALITY", 0.8, minimum=0.0, maximum=1.0
)

RECOGNITION_LIVENESS_THRESHOLD = _get_float_env(
    "RECOGNITION_LIVENESS_THRESHOLD", 0.75, minimum=0.0, maximum=1.0
)
RECOGNITION_LIVENESS_WEIGHTS = {
    "liveness": _get_float_env("RECOGNITION_LIVENESS_WEIGHT", 0.4, minimum=0.0),
    "texture": _get_float_env("RECOGNITION_TEXTURE_WEIGHT", 0.3, minimum=0.0),
    "depth": _get_float_env("RECOGNITION_DEPTH_WEIGHT", 0.3, minimum=0.0),
}

RECOGNITION_DEFAULT_SITE_RADIUS_METERS = _parse_int_env(
    "RECOGNITION_DEFAULT_SITE_RADIUS_METERS", 100, minimum=1
)


# --- Dependency timeouts & retries ---

RECOGNITION_MODEL_TIMEOUT_SECONDS = _get_float_env(
    "RECOGNITION_MODEL_TIMEOUT_SECONDS", 5.0, minimum=0.0
)
RECOGNITION_READ_RETRIES = _parse_int_env("RECOGNITION_READ_RETRIES", 3, minimum=1)
RECOGNITION_READ_RETRY_BACKOFF_SECONDS = _get_float_env(
    "RECOGNITION_READ_RETRY_BACKOFF_SECONDS", 0.05, minimum=0.0
)


# --- Capability bindings ---
# Dotted paths resolved once when the recognition app is ready.

RECOGNITION_IMAGE_DECODER = os.environ.get(
    "RECOGNITION_IMAGE_DECODER", "recognition.inference.OpenCVImageDecoder"
)
RECOGNITION_FACE_DETECTOR = os.environ.get(
    "RECOGNITION_FACE_DETECTOR", "recognition.inference.DeepFaceDetector"
)
RECOGNITION_FEATURE_EXTRACTOR = os.environ.get(
    "RECOGNITION_FEATURE_EXTRACTOR", "recognition.inference.DeepFaceFeatureExtractor"
)
RECOGNITION_LIVENESS_MODEL = os.environ.get(
    "RECOGNITION_LIVENESS_MODEL", "recognition.inference.DeepFaceAntiSpoofModel"
)
RECOGNITION_TEXTURE_ANALYZER = os.environ.get(
    "RECOGNITION_TEXTURE_ANALYZER", "recognition.inference.LaplacianTextureAnalyzer"
)
RECOGNITION_DEPTH_ANALYZER = os.environ.get(
    "RECOGNITION_DEPTH_ANALYZER", "recognition.inference.GradientDepthAnalyzer"
)
RECOGNITION_NOTIFIER = os.environ.get(
    "RECOGNITION_NOTIFIER", "recognition.notifications.CeleryBroadcastNotifier"
)

RECOGNITION_DEEPFACE_MODEL = os.environ.get("RECOGNITION_DEEPFACE_MODEL", "Facenet")
RECOGNITION_DEEPFACE_DETECTOR = os.environ.get("RECOGNITION_DEEPFACE_DETECTOR", "opencv")

# Number of events retained per topic in the admin feed.
RECOGNITION_FEED_HISTORY = _parse_int_env("RECOGNITION_FEED_HISTORY", 100, minimum=1)
