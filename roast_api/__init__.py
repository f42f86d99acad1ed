"""Roast API - roasts GitHub profiles with an LLM, cached and rate limited."""

from .api import app, create_app
from .roast import DeliveryMode, RoastKey, RoastResult, RoastService

__version__ = "1.0.0"

__all__ = [
    "DeliveryMode",
    "RoastKey",
    "RoastResult",
    "RoastService",
    "app",
    "create_app",
]
