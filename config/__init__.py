"""Configuration package for the order settlement service."""
from .settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
