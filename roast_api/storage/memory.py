"""In-memory cache store for development and tests."""

from collections.abc import Callable
from datetime import datetime, timedelta
from itertools import count

from loguru import logger

from ..types import CacheRecord
from .sqlite import utcnow


class InMemoryCacheStore:
    """Cache store backed by a list of rows; lost on restart."""

    def __init__(
        self,
        freshness_seconds: int = 24 * 60 * 60,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.rows: list[CacheRecord] = []
        self.freshness = timedelta(seconds=freshness_seconds)
        self.clock = clock
        self._ids = count(1)

    async def startup(self) -> None:
        """No initialization needed."""
        logger.info("In-memory cache store initialized")

    async def shutdown(self) -> None:
        """No cleanup needed."""
        pass

    async def lookup(
        self, username: str, language: str, model: str | None = None
    ) -> CacheRecord | None:
        now = self.clock()
        matches = [
            row
            for row in self.rows
            if row["username"] == username.lower()
            and row["language"] == language
            and (model is None or row["model"] == model)
            and row["created_at"] > now - self.freshness
        ]
        if not matches:
            return None

        row = max(matches, key=lambda r: (r["created_at"], r["id"]))
        row["last_access"] = now
        return dict(row)  # type: ignore[return-value]

    async def upsert(
        self,
        username: str,
        language: str,
        model: str,
        text: str,
        avatar_url: str | None = None,
    ) -> CacheRecord:
        now = self.clock()
        username = username.lower()
        existing = [
            row
            for row in self.rows
            if row["username"] == username and row["language"] == language and row["model"] == model
        ]

        if existing:
            row = max(existing, key=lambda r: r["id"])
            row["text"] = text
            row["created_at"] = now
            row["last_access"] = now
            if avatar_url is not None:
                row["avatar_url"] = avatar_url
            return dict(row)  # type: ignore[return-value]

        row = {
            "id": next(self._ids),
            "username": username,
            "language": language,
            "model": model,
            "text": text,
            "avatar_url": avatar_url,
            "created_at": now,
            "last_access": now,
        }
        self.rows.append(row)
        return dict(row)  # type: ignore[return-value]

    async def backfill_avatar(self, username: str, avatar_url: str) -> int:
        updated = 0
        for row in self.rows:
            if row["username"] == username.lower() and row["avatar_url"] is None:
                row["avatar_url"] = avatar_url
                updated += 1
        return updated

    async def usernames_missing_avatar(self) -> list[str]:
        return sorted({row["username"] for row in self.rows if row["avatar_url"] is None})

    async def sweep(self, retention_seconds: int) -> int:
        cutoff = self.clock() - timedelta(seconds=retention_seconds)
        kept = [row for row in self.rows if row["last_access"] >= cutoff]
        deleted = len(self.rows) - len(kept)
        self.rows = kept
        return deleted

    async def list_all(self) -> list[CacheRecord]:
        ordered = sorted(self.rows, key=lambda r: (r["last_access"], r["id"]), reverse=True)
        return [dict(row) for row in ordered]  # type: ignore[misc]

    async def health_check(self) -> bool:
        return True
