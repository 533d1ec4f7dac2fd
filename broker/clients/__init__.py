"""Expose constructed client wrappers."""

from .platform_oauth import (
    PLATFORM_DEFINITIONS,
    PlatformConfig,
    PlatformOAuthClient,
    PlatformRegistry,
    PlatformUserInfo,
    TokenSet,
)
from .sqlite_store import SQLiteStore

__all__ = [
    "PLATFORM_DEFINITIONS",
    "PlatformConfig",
    "PlatformOAuthClient",
    "PlatformRegistry",
    "PlatformUserInfo",
    "SQLiteStore",
    "TokenSet",
]
