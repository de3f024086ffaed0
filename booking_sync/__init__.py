"""External calendar synchronization service for property bookings."""

from .api import app as api_app

__all__ = ["api_app"]
