"""ASGI entry point for the admin API.

uvicorn serves `fulfillq.api.main:app`; the fulfillq-api console script
calls run().
"""

import logging

from fulfillq.api import create_app
from fulfillq.core.settings import configure_logging, get_settings_safe

logger = logging.getLogger(__name__)

app = create_app(get_settings_safe())


def run() -> None:
    """Serve the admin API with uvicorn on the configured address."""
    import uvicorn

    settings = app.state.settings
    configure_logging(settings)
    if settings is None:
        logger.warning("Settings unavailable; admin endpoints will answer 503")
        host, port = "127.0.0.1", 8000
    else:
        host, port = settings.api.host, settings.api.port

    logger.info("Starting fulfillq admin API on %s:%d", host, port)
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    run()
