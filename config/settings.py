"""
Application configuration settings.

All configuration variables live on ``Settings`` and can be overridden via
environment variables or a ``.env`` file.
"""

from functools import lru_cache

from .settings_model import Settings


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the process-wide settings, loading them on first use."""
    return Settings()


def reload_settings() -> Settings:
    """Drop the cached settings and read the environment again."""
    get_settings.cache_clear()
    return get_settings()
