"""HTTP API for order processing and payment settlement."""
from .main import create_app

__all__ = ["create_app"]
