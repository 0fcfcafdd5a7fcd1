# config/validation.py

"""
Environment variable validation for Supporter 360.
Validates required environment variables at startup.
"""

import os
import sys
from typing import List, Tuple

# Credentials each source client needs before ingestion can reach its API.
SOURCE_REQUIRED_ENV = {
    "shopify": ("SHOPIFY_SHOP_DOMAIN", "SHOPIFY_ACCESS_TOKEN"),
    "futureticketing": ("FUTURE_TICKETING_API_URL", "FUTURE_TICKETING_API_KEY"),
    "stripe": ("STRIPE_API_KEY",),
    "gocardless": ("GOCARDLESS_ACCESS_TOKEN",),
    "mailchimp": ("MAILCHIMP_API_KEY",),
}


def validate_environment(flask_env: str = None) -> Tuple[bool, List[str]]:
    """
    Validate required environment variables.

    Args:
        flask_env: Flask environment (development, production, testing)
                  If None, reads from FLASK_ENV environment variable

    Returns:
        Tuple of (is_valid, list_of_errors)
    """
    if flask_env is None:
        flask_env = os.environ.get("FLASK_ENV", "development")

    errors = []

    if flask_env != "production":
        return True, []

    secret_key = os.environ.get("SECRET_KEY", "")
    if not secret_key or secret_key in {"your-secret-key", "your_secret_key"}:
        errors.append(
            "SECRET_KEY is required in production and must not be the default value. "
            'Generate a secure key: python -c "import secrets; print(secrets.token_hex(32))"'
        )

    if not os.environ.get("DATABASE_URL"):
        errors.append("DATABASE_URL is required in production. Set it to your PostgreSQL connection string.")

    if os.environ.get("INGESTION_ENABLED", "false").lower() == "true":
        sources = [item.strip().lower() for item in os.environ.get("INGESTION_SOURCES", "").split(",") if item.strip()]
        for source in sources:
            required = SOURCE_REQUIRED_ENV.get(source)
            if required is None:
                errors.append(f"INGESTION_SOURCES contains unknown source '{source}'")
                continue
            for env_name in required:
                if not os.environ.get(env_name):
                    errors.append(f"{env_name} is required when '{source}' ingestion is enabled")

    if os.environ.get("INGESTION_WORKER_ENABLED", "false").lower() == "true":
        if not os.environ.get("CELERY_BROKER_URL"):
            errors.append("CELERY_BROKER_URL is required when INGESTION_WORKER_ENABLED=true")

    is_valid = len(errors) == 0
    return is_valid, errors


def validate_and_exit(flask_env: str = None) -> None:
    """
    Validate environment variables and exit with error if validation fails.
    Intended to be called at application startup.
    """
    is_valid, errors = validate_environment(flask_env)

    if not is_valid:
        print("=" * 80, file=sys.stderr)
        print("ENVIRONMENT VALIDATION FAILED", file=sys.stderr)
        print("=" * 80, file=sys.stderr)
        print("\nThe following environment variables are missing or invalid:\n", file=sys.stderr)

        for i, error in enumerate(errors, 1):
            print(f"{i}. {error}", file=sys.stderr)

        print("\n" + "=" * 80, file=sys.stderr)
        print("Please check your .env file or environment variables.", file=sys.stderr)
        print("=" * 80, file=sys.stderr)

        sys.exit(1)
