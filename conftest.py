# conftest.py

import os
import tempfile

import pytest

# Set testing environment BEFORE importing app so app.py picks TestingConfig
os.environ["FLASK_ENV"] = "testing"

# Now import app and other modules after environment is set
from app import app as flask_app  # noqa: E402
from supporter_app.ingestion import init_ingestion  # noqa: E402
from supporter_app.models import db  # noqa: E402

INGESTION_TEST_SOURCES = ("shopify", "futureticketing", "stripe", "gocardless", "mailchimp")
SOURCE_CREDENTIAL_SETTINGS = (
    "SHOPIFY_SHOP_DOMAIN",
    "SHOPIFY_ACCESS_TOKEN",
    "FUTURE_TICKETING_API_URL",
    "FUTURE_TICKETING_API_KEY",
    "STRIPE_API_KEY",
    "GOCARDLESS_ACCESS_TOKEN",
    "MAILCHIMP_API_KEY",
)


@pytest.fixture(scope="function")
def app():
    """Create and configure a test Flask application"""
    import uuid

    # Create a unique temporary database file for each test
    db_fd, temp_db = tempfile.mkstemp(suffix=f"_{uuid.uuid4().hex[:8]}.db")

    try:
        flask_app.config.update(
            {
                "TESTING": True,
                "SQLALCHEMY_DATABASE_URI": f"sqlite:///{temp_db}",
                "SQLALCHEMY_ECHO": False,
                "SECRET_KEY": "test-secret-key-for-testing-only",
                "ENABLE_FILE_LOGGING": False,
                "ENABLE_CONSOLE_LOGGING": True,
                "LOG_LEVEL": "DEBUG",
                "LOG_FORMAT": "text",
                "INGESTION_ENABLED": True,
                "INGESTION_SOURCES": INGESTION_TEST_SOURCES,
                "INGESTION_WORKER_ENABLED": False,
                "INGESTION_MAX_RETRIES": 2,
                "INGESTION_RETRY_BACKOFF_SECONDS": 1,
                "CELERY_SQLITE_PATH": os.path.join(tempfile.gettempdir(), "supporter360_celery_test.sqlite"),
                "CELERY_CONFIG": {"task_always_eager": True, "task_eager_propagates": False},
                **{name: None for name in SOURCE_CREDENTIAL_SETTINGS},
            }
        )

        # Re-initialize logging with updated config to pick up LOG_LEVEL=DEBUG
        from supporter_app.utils.logging_config import setup_logging

        setup_logging(flask_app)
        init_ingestion(flask_app)

        with flask_app.app_context():
            # Drop any existing tables to ensure clean state
            db.drop_all()
            db.create_all()
            yield flask_app
            db.session.remove()
            db.session.close()
            db.drop_all()
    finally:
        # Always close and remove the temporary database file, even on error
        try:
            os.close(db_fd)
        except OSError:
            pass
        try:
            if os.path.exists(temp_db):
                os.unlink(temp_db)
        except OSError:
            pass


@pytest.fixture(autouse=True)
def app_context(app):
    """Automatically provide app context for all tests"""
    with app.app_context():
        yield


@pytest.fixture
def client(app):
    """Create a test client for the Flask application"""
    return app.test_client()


@pytest.fixture
def runner(app):
    """Create a test CLI runner for the Flask application"""
    return app.test_cli_runner()
