"""fulfillq core module.

Shared components used across the queue services, worker and API:
- Configuration management
- Settings accessor and logging setup
"""

from fulfillq.core.config import (
    APISettings,
    ConfigValidationError,
    DatabaseSettings,
    Environment,
    PaymentAPISettings,
    QueueSettings,
    Settings,
)
from fulfillq.core.settings import (
    clear_settings_cache,
    configure_logging,
    get_settings,
    get_settings_safe,
)

__all__ = [
    "APISettings",
    "ConfigValidationError",
    "DatabaseSettings",
    "Environment",
    "PaymentAPISettings",
    "QueueSettings",
    "Settings",
    "clear_settings_cache",
    "configure_logging",
    "get_settings",
    "get_settings_safe",
]
