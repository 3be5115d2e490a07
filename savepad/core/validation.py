"""
Environment validation utilities.

Ensures the service fails fast on misconfiguration while
remaining bypassable for tests via SKIP_ENV_VALIDATION.
"""

import os
from typing import Optional, Iterable
from urllib.parse import urlparse

from savepad.core.config import settings


class EnvValidationError(RuntimeError):
    """Raised when environment validation fails."""


def _is_valid_db_url(url: str) -> bool:
    """Basic DATABASE_URL validation using urlparse.

    SQLite URLs carry no netloc (sqlite:///./savepad.db), so only the
    scheme is required for them.
    """
    parsed = urlparse(url)
    if parsed.scheme.startswith("sqlite"):
        return True
    return bool(parsed.scheme and parsed.netloc)


def _require(vars_required: Iterable[str], source: object) -> None:
    for var in vars_required:
        if not getattr(source, var, None):
            raise EnvValidationError(f"{var} is required in production")


def validate_env(env: Optional[str] = None, settings_obj=None) -> bool:
    """Validate environment configuration.

    Args:
        env: Override environment name (defaults to settings.ENV)
        settings_obj: Override settings object (defaults to savepad.core.config.settings)

    Returns:
        True if validation passes.

    Raises:
        EnvValidationError when a rule is violated.
    """
    if os.getenv("SKIP_ENV_VALIDATION") == "1":
        return True

    cfg = settings_obj or settings
    mode = (env or getattr(cfg, "ENV", "development") or "development").lower()
    db_url = getattr(cfg, "DATABASE_URL", None)
    test_db_url = getattr(cfg, "TEST_DATABASE_URL", None)

    if db_url and not _is_valid_db_url(db_url):
        raise EnvValidationError("DATABASE_URL must be a valid URL (e.g. sqlite:///./savepad.db)")

    required_prod = [
        "DATABASE_URL",
        "MERCADO_PAGO_ACCESS_TOKEN",
        "BOT_URL",
    ]

    if mode == "production":
        _require(required_prod, cfg)
        if test_db_url:
            raise EnvValidationError("TEST_DATABASE_URL must not be set in production")
        if getattr(cfg, "BASE_URL", "").startswith("http://localhost"):
            raise EnvValidationError("BASE_URL must point to the public host in production")
    else:
        # Prevent accidental use of test database outside test mode
        if mode != "test" and test_db_url:
            raise EnvValidationError("TEST_DATABASE_URL is only allowed in test mode")

    return True
