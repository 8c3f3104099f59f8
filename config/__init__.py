"""Configuration package."""

from .settings import get_settings, reload_settings
from .settings_model import Settings

__all__ = ["Settings", "get_settings", "reload_settings"]
