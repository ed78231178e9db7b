"""
FastAPI routers for the render service.
"""

from dayreel.routers import health, renders

__all__ = ["health", "renders"]
