"""Background queue infrastructure."""

from .base_queue import BackgroundQueue

__all__ = ["BackgroundQueue"]
