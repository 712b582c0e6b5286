"""Process-wide settings access and logging setup.

Usage:
    from fulfillq.core.settings import configure_logging, get_settings

    settings = get_settings()
    configure_logging(settings)

Settings are loaded once per process. Tests reset them with
clear_settings_cache().
"""

from __future__ import annotations

import logging
from functools import lru_cache

from pydantic import ValidationError

from fulfillq.core.config import (
    ConfigValidationError,
    Settings,
    validate_settings,
)

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# Chatty third-party loggers kept at WARNING unless the app runs at DEBUG
_QUIET_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine")


def _describe_errors(error: ValidationError) -> str:
    lines = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"]) or "<root>"
        lines.append(f"  - {location}: {item['msg']}")
    return "\n".join(lines)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load, validate and cache the application settings.

    Raises:
        SystemExit: If the environment does not describe a valid
            configuration. Services must not start half-configured.
    """
    logger.info("Loading application settings from environment")
    try:
        settings = Settings()  # type: ignore[call-arg]
        validate_settings(settings)
    except ValidationError as e:
        logger.critical("Configuration validation failed:\n%s", _describe_errors(e))
        raise SystemExit(1) from e
    except ConfigValidationError as e:
        logger.critical(
            "Configuration validation failed: %s (field: %s)",
            e.message,
            e.field or "unknown",
        )
        raise SystemExit(1) from e

    logger.info(
        "Configuration loaded: environment=%s, app_version=%s",
        settings.environment.value,
        settings.app_version,
    )
    return settings


def get_settings_safe() -> Settings | None:
    """Like get_settings(), but returns None instead of exiting."""
    try:
        return get_settings()
    except SystemExit:
        return None


def clear_settings_cache() -> None:
    """Forget the cached settings so the next call reloads them."""
    get_settings.cache_clear()
    logger.debug("Settings cache cleared")


def configure_logging(settings: Settings | None) -> None:
    """Configure root logging for a fulfillq process.

    Without settings the level falls back to INFO.
    """
    level = getattr(logging, settings.log_level, logging.INFO) if settings else logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT)

    if level > logging.DEBUG:
        for name in _QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
