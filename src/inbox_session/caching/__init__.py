"""Background cache warming."""

from .queue import BackgroundCacheQueue

__all__ = ["BackgroundCacheQueue"]
