"""Configuration package for the property payments engine."""
from .settings import get_settings, Settings

__all__ = ["Settings", "get_settings"]
