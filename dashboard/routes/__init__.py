"""Dashboard routes."""

from .api import api_bp
from .notifications import notifications_bp

__all__ = [
    "api_bp",
    "notifications_bp",
]
