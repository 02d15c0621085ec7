"""Core utilities for configuration, logging, and dependency wiring."""

from .config import (
    AppSettings,
    CacheQueueSettings,
    OAuthSettings,
    SessionSettings,
    load_app_settings,
)
from .container import ServiceContainer, build_container
from .logging import configure_logging

__all__ = [
    "AppSettings",
    "CacheQueueSettings",
    "OAuthSettings",
    "ServiceContainer",
    "SessionSettings",
    "build_container",
    "configure_logging",
    "load_app_settings",
]
