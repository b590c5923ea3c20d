"""Configuration package for ride payments."""
from .settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
