"""fulfillq API routers.

- queue: admin endpoints for queue status and manual passes
"""

from fulfillq.api.routers.queue import router as queue_router

__all__ = ["queue_router"]
