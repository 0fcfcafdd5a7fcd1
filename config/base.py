# config/base.py
import os


def _coerce_bool(value, default=False):
    """Convert environment-style truthy/falsey values to bool."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    value_str = str(value).strip().lower()
    if value_str in {"1", "true", "yes", "on"}:
        return True
    if value_str in {"0", "false", "no", "off"}:
        return False
    return default


def _parse_source_list(value):
    """
    Parse a comma-separated source list while keeping order and removing duplicates.

    Returns:
        tuple[str, ...]: Normalized source system identifiers.
    """
    if not value:
        return ()

    seen = set()
    sources = []
    for raw_item in value.split(","):
        item = raw_item.strip().lower()
        if not item or item in seen:
            continue
        seen.add(item)
        sources.append(item)
    return tuple(sources)


def _parse_int(value, default, *, minimum=None):
    try:
        number = int(value) if value is not None else default
    except ValueError:
        return default
    if minimum is not None and number < minimum:
        return minimum
    return number


def _parse_float(value, default):
    try:
        return float(value) if value is not None else default
    except ValueError:
        return default


class Config:
    _flask_env = os.environ.get("FLASK_ENV", "development")
    _is_testing = _flask_env == "testing"
    _is_production = _flask_env == "production"

    SECRET_KEY = os.environ.get("SECRET_KEY")

    if not SECRET_KEY and _is_production:
        raise ValueError(
            "SECRET_KEY environment variable is required in production. "
            'Generate with: python -c "import secrets; print(secrets.token_hex(32))"'
        )

    if not SECRET_KEY and not _is_testing:
        import warnings

        warnings.warn(
            "SECRET_KEY not set. Using default for development only. "
            "Set SECRET_KEY environment variable before deploying.",
            UserWarning,
        )
        SECRET_KEY = "dev-secret-key-change-in-production"

    if not SECRET_KEY:
        SECRET_KEY = "test-secret-key-placeholder"

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {}

    # Ingestion configuration
    INGESTION_ENABLED = _coerce_bool(os.environ.get("INGESTION_ENABLED"), default=False)
    INGESTION_SOURCES = _parse_source_list(os.environ.get("INGESTION_SOURCES", ""))

    if INGESTION_ENABLED and not INGESTION_SOURCES:
        raise ValueError(
            "INGESTION_ENABLED is true but INGESTION_SOURCES is empty. " "Provide at least one source system."
        )

    INGESTION_WORKER_ENABLED = _coerce_bool(os.environ.get("INGESTION_WORKER_ENABLED"), default=False)
    INGESTION_MAX_RETRIES = _parse_int(os.environ.get("INGESTION_MAX_RETRIES"), 5, minimum=0)
    INGESTION_RETRY_BACKOFF_SECONDS = _parse_int(os.environ.get("INGESTION_RETRY_BACKOFF_SECONDS"), 30, minimum=1)
    CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL")
    CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND")
    CELERY_SQLITE_PATH = os.environ.get("CELERY_SQLITE_PATH")
    CELERY_CONFIG = os.environ.get("CELERY_CONFIG")

    # Source API clients
    SOURCE_HTTP_TIMEOUT_SECONDS = _parse_float(os.environ.get("SOURCE_HTTP_TIMEOUT_SECONDS"), 30.0)
    SOURCE_HTTP_MAX_RETRIES = _parse_int(os.environ.get("SOURCE_HTTP_MAX_RETRIES"), 3, minimum=0)
    SHOPIFY_SHOP_DOMAIN = os.environ.get("SHOPIFY_SHOP_DOMAIN")
    SHOPIFY_ACCESS_TOKEN = os.environ.get("SHOPIFY_ACCESS_TOKEN")
    SHOPIFY_API_VERSION = os.environ.get("SHOPIFY_API_VERSION", "2024-01")
    FUTURE_TICKETING_API_URL = os.environ.get("FUTURE_TICKETING_API_URL")
    FUTURE_TICKETING_API_KEY = os.environ.get("FUTURE_TICKETING_API_KEY")
    FUTURE_TICKETING_MAX_PAGES = _parse_int(os.environ.get("FUTURE_TICKETING_MAX_PAGES"), 50, minimum=1)
    STRIPE_API_KEY = os.environ.get("STRIPE_API_KEY")
    GOCARDLESS_ACCESS_TOKEN = os.environ.get("GOCARDLESS_ACCESS_TOKEN")
    GOCARDLESS_ENVIRONMENT = os.environ.get("GOCARDLESS_ENVIRONMENT", "live")
    MAILCHIMP_API_KEY = os.environ.get("MAILCHIMP_API_KEY")
    MAILCHIMP_DC = os.environ.get("MAILCHIMP_DC")

    PRODUCT_MAPPING_PATH = os.environ.get(
        "PRODUCT_MAPPING_PATH",
        os.path.join(os.path.dirname(__file__), "mappings", "product_meanings.yaml"),
    )


class DevelopmentConfig(Config):
    DEBUG = True
    _config_dir = os.path.dirname(os.path.abspath(__file__))
    _project_root = os.path.dirname(_config_dir)
    instance_path = os.path.join(_project_root, "instance")

    if not os.path.exists(instance_path):
        os.makedirs(instance_path, exist_ok=True)

    # SQLite URI needs forward slashes even on Windows
    db_path = os.path.join(instance_path, "supporter360_dev.db").replace("\\", "/")
    db_uri = f"sqlite:///{db_path}"

    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", db_uri)
    SQLALCHEMY_ECHO = _coerce_bool(os.environ.get("SQLALCHEMY_ECHO"), default=False)
    if SQLALCHEMY_DATABASE_URI.startswith("sqlite"):
        SQLALCHEMY_ENGINE_OPTIONS = {
            "connect_args": {
                "check_same_thread": False,
                "timeout": 5,
            }
        }
    else:
        SQLALCHEMY_ENGINE_OPTIONS = {}


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = os.environ.get("SECRET_KEY", "test-secret-key-for-testing-only")
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ECHO = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "connect_args": {
            "check_same_thread": False,
            "timeout": 5,
        }
    }


class ProductionConfig(Config):
    DEBUG = False
    uri = os.environ.get("DATABASE_URL")
    if uri and uri.startswith("postgres://"):
        uri = uri.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = uri
    SQLALCHEMY_ECHO = False
