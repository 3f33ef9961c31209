# config/validation.py

"""
Environment variable validation for production startup.
"""

import os
import sys
from typing import List, Mapping, Optional, Tuple

from .base import _coerce_bool

_PLACEHOLDER_SECRETS = {"your-secret-key", "your_secret_key", "dev-secret-key-change-in-production"}


def validate_environment(
    flask_env: Optional[str] = None, environ: Optional[Mapping[str, str]] = None
) -> Tuple[bool, List[str]]:
    """
    Validate required environment variables.

    Args:
        flask_env: Flask environment (development, production, testing).
                   If None, reads from FLASK_ENV.
        environ: Mapping to validate; defaults to ``os.environ``.

    Returns:
        Tuple of (is_valid, list_of_errors)
    """
    environ = os.environ if environ is None else environ
    if flask_env is None:
        flask_env = environ.get("FLASK_ENV", "development")

    # Only validate in production
    if flask_env != "production":
        return True, []

    errors = []
    secret_key = environ.get("SECRET_KEY", "")
    if not secret_key or secret_key in _PLACEHOLDER_SECRETS:
        errors.append(
            "SECRET_KEY is required in production and must not be the default value. "
            'Generate a secure key: python -c "import secrets; print(secrets.token_hex(32))"'
        )

    if not environ.get("DATABASE_URL"):
        errors.append("DATABASE_URL is required in production. Set it to your PostgreSQL connection string.")

    if _coerce_bool(environ.get("IMPORTER_ENABLED"), default=False):
        # The SQLite broker fallback is for local development only.
        if not environ.get("CELERY_BROKER_URL"):
            errors.append("CELERY_BROKER_URL is required in production when IMPORTER_ENABLED=true")
        if not environ.get("CELERY_RESULT_BACKEND"):
            errors.append("CELERY_RESULT_BACKEND is required in production when IMPORTER_ENABLED=true")

    return not errors, errors


def validate_and_exit(flask_env: Optional[str] = None) -> None:
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
