"""Storage protocol definitions using typing.Protocol."""

from typing import Protocol

from ..types import CacheRecord


class CacheStore(Protocol):
    """Persistent roast cache keyed by (username, language, model)."""

    async def lookup(
        self, username: str, language: str, model: str | None = None
    ) -> CacheRecord | None:
        """Get a fresh entry and refresh its last access time.

        ``model=None`` ignores the model column (legacy matching).
        """
        ...

    async def upsert(
        self,
        username: str,
        language: str,
        model: str,
        text: str,
        avatar_url: str | None = None,
    ) -> CacheRecord:
        """Replace the entry for the triple, or insert a new one."""
        ...

    async def backfill_avatar(self, username: str, avatar_url: str) -> int:
        """Set the avatar on every row of the user that has none."""
        ...

    async def usernames_missing_avatar(self) -> list[str]:
        """Distinct usernames with at least one row lacking an avatar."""
        ...

    async def sweep(self, retention_seconds: int) -> int:
        """Delete rows not accessed within the retention window."""
        ...

    async def list_all(self) -> list[CacheRecord]:
        """Every row, most recently accessed first."""
        ...

    async def health_check(self) -> bool:
        """Check if the store is reachable."""
        ...

    async def startup(self) -> None:
        """Initialize the store on startup."""
        ...

    async def shutdown(self) -> None:
        """Cleanup the store on shutdown."""
        ...
