"""SQL cache store implementation."""

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import databases
import sqlalchemy as sa
from loguru import logger

from ..exceptions import CacheReadError, CacheWriteError
from ..types import CacheRecord

DEFAULT_MODEL = "gpt-3.5-turbo"


def utcnow() -> datetime:
    """Naive UTC timestamp, the format stored in the database."""
    return datetime.now(UTC).replace(tzinfo=None)


class SQLiteCacheStore:
    """SQLite/PostgreSQL roast cache using databases.

    There is deliberately no unique constraint on the triple; one row per
    triple is kept by looking up before writing.
    """

    def __init__(
        self,
        database_url: str,
        freshness_seconds: int = 24 * 60 * 60,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the store.

        Args:
            database_url: Database connection URL.
            freshness_seconds: Age after which a row no longer satisfies lookups.
            clock: Source of naive UTC timestamps.
        """
        self.database = databases.Database(database_url)
        self.freshness = timedelta(seconds=freshness_seconds)
        self.clock = clock
        self.metadata = sa.MetaData()

        self.shame_cache = sa.Table(
            "shame_cache",
            self.metadata,
            sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
            sa.Column("username", sa.String(100), nullable=False),
            sa.Column("language", sa.String(10), nullable=False),
            sa.Column("model", sa.String(100), nullable=False, server_default=DEFAULT_MODEL),
            sa.Column("text", sa.Text, nullable=False),
            sa.Column("avatar_url", sa.String(500), nullable=True),
            sa.Column("created_at", sa.DateTime, nullable=False),
            sa.Column("last_access", sa.DateTime, nullable=False),
            sa.Index("idx_shame_cache_key", "username", "language", "model"),
        )

    async def startup(self) -> None:
        """Connect and create tables."""
        self._ensure_data_dir()
        await self.database.connect()

        if ":memory:" in str(self.database.url):
            await self._create_tables_async()
        else:
            await self._create_tables()

    async def shutdown(self) -> None:
        """Close database connection."""
        await self.database.disconnect()

    async def lookup(
        self, username: str, language: str, model: str | None = None
    ) -> CacheRecord | None:
        """Get a fresh entry for the triple and mark it as accessed.

        Args:
            username: GitHub username, matched case-insensitively.
            language: Language tag.
            model: Generation model. ``None`` matches rows of any model.

        Returns:
            The newest fresh row, or None.
        """
        now = self.clock()
        table = self.shame_cache
        query = table.select().where(
            table.c.username == username.lower(),
            table.c.language == language,
            table.c.created_at > now - self.freshness,
        )
        if model is not None:
            query = query.where(table.c.model == model)
        query = query.order_by(table.c.created_at.desc(), table.c.id.desc()).limit(1)

        try:
            row = await self.database.fetch_one(query)
            if row is None:
                return None

            await self.database.execute(
                table.update().where(table.c.id == row["id"]).values(last_access=now)
            )
        except Exception as e:
            raise CacheReadError(f"Cache lookup failed for {username}: {e}") from e

        record = self._to_record(row)
        record["last_access"] = now
        return record

    async def upsert(
        self,
        username: str,
        language: str,
        model: str,
        text: str,
        avatar_url: str | None = None,
    ) -> CacheRecord:
        """Store a generated roast.

        An existing row for the exact triple gets the new text and fresh
        timestamps; its avatar is only replaced when one is given.
        """
        try:
            return await self._upsert(username.lower(), language, model, text, avatar_url)
        except Exception as e:
            raise CacheWriteError(f"Cache write failed for {username}: {e}") from e

    async def _upsert(
        self,
        username: str,
        language: str,
        model: str,
        text: str,
        avatar_url: str | None,
    ) -> CacheRecord:
        now = self.clock()
        table = self.shame_cache

        existing = await self.database.fetch_one(
            sa.select(table.c.id)
            .where(
                table.c.username == username,
                table.c.language == language,
                table.c.model == model,
            )
            .order_by(table.c.id.desc())
            .limit(1)
        )

        if existing is not None:
            values: dict[str, Any] = {"text": text, "created_at": now, "last_access": now}
            if avatar_url is not None:
                values["avatar_url"] = avatar_url
            await self.database.execute(
                table.update().where(table.c.id == existing["id"]).values(**values)
            )
            row = await self.database.fetch_one(
                table.select().where(table.c.id == existing["id"])
            )
            return self._to_record(row)

        row_id = await self.database.execute(
            table.insert().values(
                username=username,
                language=language,
                model=model,
                text=text,
                avatar_url=avatar_url,
                created_at=now,
                last_access=now,
            )
        )
        return {
            "id": row_id,
            "username": username,
            "language": language,
            "model": model,
            "text": text,
            "avatar_url": avatar_url,
            "created_at": now,
            "last_access": now,
        }

    async def backfill_avatar(self, username: str, avatar_url: str) -> int:
        """Set the avatar on the user's rows that lack one.

        Returns:
            Number of rows updated.
        """
        table = self.shame_cache
        condition = sa.and_(table.c.username == username.lower(), table.c.avatar_url.is_(None))

        async with self.database.transaction():
            count = await self.database.fetch_val(
                sa.select(sa.func.count()).select_from(table).where(condition)
            )
            if count:
                await self.database.execute(
                    table.update().where(condition).values(avatar_url=avatar_url)
                )
        return int(count or 0)

    async def usernames_missing_avatar(self) -> list[str]:
        table = self.shame_cache
        rows = await self.database.fetch_all(
            sa.select(table.c.username)
            .where(table.c.avatar_url.is_(None))
            .distinct()
            .order_by(table.c.username)
        )
        return [row["username"] for row in rows]

    async def sweep(self, retention_seconds: int) -> int:
        """Delete rows whose last access is older than the retention window.

        Returns:
            Number of rows deleted.
        """
        table = self.shame_cache
        cutoff = self.clock() - timedelta(seconds=retention_seconds)
        condition = table.c.last_access < cutoff

        async with self.database.transaction():
            count = await self.database.fetch_val(
                sa.select(sa.func.count()).select_from(table).where(condition)
            )
            if count:
                await self.database.execute(table.delete().where(condition))

        if count:
            logger.info(f"Swept {count} stale cache entries")
        return int(count or 0)

    async def list_all(self) -> list[CacheRecord]:
        table = self.shame_cache
        rows = await self.database.fetch_all(
            table.select().order_by(table.c.last_access.desc(), table.c.id.desc())
        )
        return [self._to_record(row) for row in rows]

    async def health_check(self) -> bool:
        """Check if database is accessible.

        Returns:
            True if database is healthy, False otherwise.
        """
        try:
            await self.database.execute("SELECT 1")
            return True
        except (ConnectionError, TimeoutError):
            logger.exception("Database health check failed")
            return False

    @staticmethod
    def _to_record(row: Any) -> CacheRecord:
        return {
            "id": row["id"],
            "username": row["username"],
            "language": row["language"],
            "model": row["model"],
            "text": row["text"],
            "avatar_url": row["avatar_url"],
            "created_at": row["created_at"],
            "last_access": row["last_access"],
        }

    def _ensure_data_dir(self) -> None:
        """Create the parent directory of a file-based SQLite database."""
        url = self.database.url
        if url.dialect != "sqlite" or not url.database or url.database == ":memory:":
            return
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)

    async def _create_tables(self) -> None:
        """Create database tables if they don't exist."""
        sync_url = self._get_sync_url()
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._create_tables_sync, sync_url)

    def _get_sync_url(self) -> str:
        """Get synchronous database URL for table creation."""
        url_str = str(self.database.url)
        for async_driver in ("+aiosqlite", "+asyncpg", "+aiomysql"):
            url_str = url_str.replace(async_driver, "")
        return url_str

    async def _create_tables_async(self) -> None:
        """Create database tables using the async connection (for in-memory DB)."""
        await self.database.execute(
            """
            CREATE TABLE IF NOT EXISTS shame_cache (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                username VARCHAR(100) NOT NULL,
                language VARCHAR(10) NOT NULL,
                model VARCHAR(100) NOT NULL DEFAULT 'gpt-3.5-turbo',
                text TEXT NOT NULL,
                avatar_url VARCHAR(500),
                created_at DATETIME NOT NULL,
                last_access DATETIME NOT NULL
            )
            """
        )
        await self.database.execute(
            "CREATE INDEX IF NOT EXISTS idx_shame_cache_key "
            "ON shame_cache (username, language, model)"
        )

    def _create_tables_sync(self, sync_url: str) -> None:
        """Synchronously create database tables."""
        engine = sa.create_engine(sync_url)
        self.metadata.create_all(engine)
        engine.dispose()
