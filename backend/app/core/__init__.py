"""Core module for configuration and utilities."""

from app.core.config import settings, ConfigurationError, require_setting
from app.core.database import Base, async_session_maker, get_session

__all__ = [
    "settings",
    "ConfigurationError",
    "require_setting",
    "Base",
    "async_session_maker",
    "get_session",
]
