"""API route handlers."""

from .partitions import router as partitions_router

__all__ = ["partitions_router"]
