"""Caching layer - accelerators in front of the repository, never the system of record."""

from docrelay.application.cache.base_cache import BaseCache, InMemoryCache
from docrelay.application.cache.session_cache import SessionCache

__all__ = [
    "BaseCache",
    "InMemoryCache",
    "SessionCache",
]
