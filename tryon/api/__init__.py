"""API module for the try-on service.

Contains versioned API routers.
"""

from tryon.api.v1 import router as v1_router

__all__ = ["v1_router"]
