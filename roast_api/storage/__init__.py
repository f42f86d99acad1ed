"""Storage module with factory for creating cache store instances."""

from loguru import logger

from ..config import settings
from ..exceptions import ConfigurationError
from .memory import InMemoryCacheStore
from .protocols import CacheStore
from .sqlite import SQLiteCacheStore, utcnow


def create_cache_store(
    database_url: str | None = None, freshness_seconds: int | None = None
) -> CacheStore:
    """Create cache store instance based on database URL.

    Args:
        database_url: Database URL. Uses settings if not provided.
            ``memory://`` selects the non-persistent store.
        freshness_seconds: Freshness window. Uses settings if not provided.

    Returns:
        CacheStore instance.

    Raises:
        ConfigurationError: If the URL has no scheme.
    """
    url = database_url or settings.database_url
    freshness = freshness_seconds or settings.cache_freshness_seconds

    if "://" not in url:
        raise ConfigurationError(f"Invalid database URL: {url!r}")

    if url.startswith("memory://"):
        logger.info("Creating in-memory cache store")
        return InMemoryCacheStore(freshness_seconds=freshness)

    logger.info("Creating SQL cache store")
    return SQLiteCacheStore(url, freshness_seconds=freshness)


__all__ = [
    "CacheStore",
    "InMemoryCacheStore",
    "SQLiteCacheStore",
    "create_cache_store",
    "utcnow",
]
