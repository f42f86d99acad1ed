"""Roast service: rate limiting, cache reuse, generation and delivery."""

import asyncio
import json
import re
from collections.abc import AsyncIterator, Hashable
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from enum import Enum

from loguru import logger

from .exceptions import (
    GenerationError,
    ProfileNotFoundError,
    RateLimitError,
    UpstreamError,
    ValidationError,
)
from .github import ProfileFetcher
from .models import RoastResponse
from .providers import RoastGenerator
from .rate_limiter import RateLimiter
from .sse import DONE_FRAME, encode_event
from .storage import CacheStore
from .translations import (
    DEFAULT_LANGUAGE,
    error_message,
    fallback_text,
    resolve_language,
    system_prompt,
)
from .types import AvatarUpdate, GitHubProfile, HealthStatus

# GitHub logins: alphanumerics and single inner hyphens, at most 39 characters.
USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9]|-(?=[A-Za-z0-9])){0,38}$")


class DeliveryMode(str, Enum):
    """How a freshly generated roast reaches the client."""

    BUFFERED = "buffered"
    STREAMED = "streamed"


@dataclass(frozen=True)
class RoastKey:
    """The (username, language, model) triple identifying a cached roast."""

    username: str
    language: str
    model: str


@dataclass
class RoastResult:
    """A complete roast, either cached or just generated."""

    text: str
    language: str
    model: str
    from_cache: bool = False
    avatar_url: str | None = None

    def to_response(self) -> RoastResponse:
        return RoastResponse(
            shame=self.text,
            language=self.language,
            model=self.model,
            from_cache=self.from_cache,
            avatar_url=self.avatar_url,
        )


def validate_username(username: str | None, language: str = DEFAULT_LANGUAGE) -> str:
    """Return the trimmed username or raise a localized ValidationError."""
    if not username or not username.strip():
        raise ValidationError(error_message(language, "username_required"))

    username = username.strip()
    if not USERNAME_PATTERN.match(username):
        raise ValidationError(error_message(language, "invalid_username"))
    return username


def build_user_prompt(profile: GitHubProfile) -> str:
    return f"Roast this GitHub profile in a funny way: {json.dumps(profile, ensure_ascii=False)}"


class KeyedLocks:
    """One asyncio.Lock per key, dropped once nobody holds or waits for it."""

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._users: dict[Hashable, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]


class RoastService:
    """Roast pipeline with injected dependencies.

    RATE_CHECK -> CACHE_LOOKUP -> (hit) respond cached
                               -> (miss) FETCH_PROFILE -> GENERATE -> respond and cache

    Within one process, generation for a key is single-flight: a request that
    waited on another one for the same key reuses its result. Streamed roasts
    are written by background tasks; `wait_for_writes` drains them.
    """

    def __init__(
        self,
        store: CacheStore,
        rate_limiter: RateLimiter,
        profiles: ProfileFetcher,
        generator: RoastGenerator,
        *,
        model: str,
        cache_enabled: bool = True,
        repo_limit: int = 5,
        single_flight: bool = True,
        default_mode: DeliveryMode = DeliveryMode.STREAMED,
    ) -> None:
        """Initialize with injected dependencies."""
        self.store = store
        self.rate_limiter = rate_limiter
        self.profiles = profiles
        self.generator = generator
        self.model = model
        self.cache_enabled = cache_enabled
        self.repo_limit = repo_limit
        self.single_flight = single_flight
        self.default_mode = default_mode
        self.locks = KeyedLocks()
        self._completed: dict[RoastKey, RoastResult] = {}
        self._writes: set[asyncio.Task[None]] = set()

    def resolve_key(
        self,
        username: str,
        query_lang: str | None = None,
        accept_language: str | None = None,
    ) -> RoastKey:
        """Pure function of its inputs and the configured model."""
        return RoastKey(
            username=username.strip().lower(),
            language=resolve_language(query_lang, accept_language),
            model=self.model,
        )

    async def check_rate_limit(self, identifier: str, language: str) -> None:
        """Raise RateLimitError when the client exhausted its window."""
        if await self.rate_limiter.admit(identifier):
            return

        reset_seconds = await self.rate_limiter.reset_seconds(identifier)
        raise RateLimitError(error_message(language, "rate_limit_exceeded"), reset_seconds)

    async def cached(self, key: RoastKey) -> RoastResult | None:
        """Look up a fresh roast. Storage failures count as a miss."""
        if not self.cache_enabled:
            return None

        try:
            record = await self.store.lookup(key.username, key.language, key.model)
        except Exception as e:  # noqa: BLE001
            logger.warning(f"Cache lookup failed for {key.username}, treating as miss: {e}")
            return None

        if record is None:
            return None
        return RoastResult(
            text=record["text"],
            language=record["language"],
            model=record["model"],
            from_cache=True,
            avatar_url=record["avatar_url"],
        )

    async def roast(
        self, key: RoastKey, mode: DeliveryMode = DeliveryMode.STREAMED
    ) -> RoastResult | AsyncIterator[str]:
        """Run the pipeline after the rate check.

        Returns:
            A RoastResult for cache hits and buffered generation, or an async
            iterator of SSE frames for streamed generation.

        Raises:
            ProfileNotFoundError: GitHub does not know the user.
            UpstreamError: Profile fetch or buffered generation failed.
        """
        hit = await self.cached(key)
        if hit is not None:
            logger.info(f"Cache hit for {key.username} ({key.language}, {key.model})")
            return hit

        logger.info(f"Cache miss for {key.username} ({key.language}, {key.model})")
        profile, avatar_url = await self.fetch_profile(key)

        if mode is DeliveryMode.BUFFERED:
            return await self._generate_buffered(key, profile, avatar_url)
        return self._generate_streamed(key, profile, avatar_url)

    async def fetch_profile(self, key: RoastKey) -> tuple[GitHubProfile, str | None]:
        try:
            return await self.profiles.fetch_profile(key.username, self.repo_limit)
        except ProfileNotFoundError as e:
            logger.info(f"GitHub user not found: {key.username}")
            raise ProfileNotFoundError(error_message(key.language, "user_not_found")) from e
        except Exception as e:
            logger.error(f"Profile fetch failed for {key.username}: {e}")
            raise UpstreamError(error_message(key.language, "request_failed")) from e

    @asynccontextmanager
    async def _generation_slot(self, key: RoastKey) -> AsyncIterator[None]:
        if self.single_flight:
            async with self.locks.hold(key):
                yield
        else:
            yield

    async def _reuse_after_wait(self, key: RoastKey) -> RoastResult | None:
        if not self.single_flight:
            return None
        winner = self._completed.get(key)
        if winner is not None:
            winner = replace(winner, from_cache=True)
        else:
            winner = await self.cached(key)
        if winner is not None:
            logger.info(f"Reusing roast generated concurrently for {key.username}")
        return winner

    async def _generate_buffered(
        self, key: RoastKey, profile: GitHubProfile, avatar_url: str | None
    ) -> RoastResult:
        async with self._generation_slot(key):
            winner = await self._reuse_after_wait(key)
            if winner is not None:
                return winner

            try:
                response = await self.generator.complete(
                    system_prompt(key.language), build_user_prompt(profile)
                )
            except Exception as e:
                logger.error(f"Generation failed for {key.username}: {e}")
                raise GenerationError(error_message(key.language, "request_failed")) from e

            if response.usage:
                logger.info(
                    "Token usage",
                    username=key.username,
                    model=response.model,
                    prompt_tokens=response.usage.get("prompt_tokens"),
                    completion_tokens=response.usage.get("completion_tokens"),
                    total_tokens=response.usage.get("total_tokens"),
                )

            text = response.text or fallback_text(key.language)
            await self._try_store(key, text, avatar_url)

        return RoastResult(
            text=text, language=key.language, model=key.model, avatar_url=avatar_url
        )

    async def _generate_streamed(
        self, key: RoastKey, profile: GitHubProfile, avatar_url: str | None
    ) -> AsyncIterator[str]:
        """Yield SSE frames pushed by a generation task.

        Generation runs in its own task, so the key's slot is released when the
        model finishes no matter how slowly the client reads. The cache write
        is scheduled once the done frame is handed over and does not depend on
        the connection. A client that leaves earlier cancels generation, and
        nothing is cached.
        """
        frames: asyncio.Queue[str | None] = asyncio.Queue()
        producer = asyncio.create_task(self._produce_frames(key, profile, avatar_url, frames))
        scheduled = False
        try:
            while (frame := await frames.get()) is not None:
                if frame == DONE_FRAME:
                    result = await producer
                    if result is not None:
                        self._schedule_store(key, result)
                        scheduled = True
                yield frame
        finally:
            if not producer.done():
                producer.cancel()
                await asyncio.wait([producer])
            if not scheduled and not producer.cancelled():
                self._forget_completed(key, producer.result())

    async def _produce_frames(
        self,
        key: RoastKey,
        profile: GitHubProfile,
        avatar_url: str | None,
        frames: asyncio.Queue[str | None],
    ) -> RoastResult | None:
        """Stream the model into ``frames``; None ends the queue.

        Returns the generated roast, or None when a concurrent roast was
        replayed or generation failed.
        """
        try:
            async with self._generation_slot(key):
                winner = await self._reuse_after_wait(key)
                if winner is not None:
                    frames.put_nowait(encode_event(self._frame(winner.text, winner.avatar_url)))
                    frames.put_nowait(DONE_FRAME)
                    return None

                chunks: list[str] = []
                try:
                    async for delta in self.generator.stream(
                        system_prompt(key.language), build_user_prompt(profile)
                    ):
                        frames.put_nowait(
                            encode_event(self._frame(delta, None if chunks else avatar_url))
                        )
                        chunks.append(delta)
                except Exception as e:
                    logger.error(f"Streamed generation failed for {key.username}: {e}")
                    frames.put_nowait(
                        encode_event({"error": error_message(key.language, "request_failed")})
                    )
                    return None

                text = "".join(chunks)
                if not text:
                    text = fallback_text(key.language)
                    frames.put_nowait(encode_event(self._frame(text, avatar_url)))

                result = RoastResult(
                    text=text, language=key.language, model=key.model, avatar_url=avatar_url
                )
                if self.single_flight and self.cache_enabled:
                    # Waiters reuse it until the cache write lands.
                    self._completed[key] = result
                frames.put_nowait(DONE_FRAME)
                return result
        finally:
            frames.put_nowait(None)

    @staticmethod
    def _frame(text: str, avatar_url: str | None) -> dict[str, str]:
        frame = {"text": text}
        if avatar_url:
            frame["avatarUrl"] = avatar_url
        return frame

    def _forget_completed(self, key: RoastKey, result: RoastResult | None) -> None:
        if result is not None and self._completed.get(key) is result:
            del self._completed[key]

    def _schedule_store(self, key: RoastKey, result: RoastResult) -> None:
        task = asyncio.create_task(self._store_completed(key, result))
        self._writes.add(task)
        task.add_done_callback(self._writes.discard)

    async def _store_completed(self, key: RoastKey, result: RoastResult) -> None:
        try:
            await self._try_store(key, result.text, result.avatar_url)
        finally:
            self._forget_completed(key, result)

    async def wait_for_writes(self) -> None:
        """Wait for scheduled cache writes to finish."""
        if self._writes:
            await asyncio.gather(*self._writes)

    async def _try_store(self, key: RoastKey, text: str, avatar_url: str | None) -> None:
        """Persist a roast; failures are logged and never reach the client."""
        if not self.cache_enabled:
            return
        try:
            await self.store.upsert(key.username, key.language, key.model, text, avatar_url)
        except Exception as e:  # noqa: BLE001
            logger.error(f"Failed to cache roast for {key.username}: {e}")

    async def refresh_avatars(self) -> tuple[int, list[AvatarUpdate]]:
        """Backfill avatars for every cached user that lacks one.

        Returns:
            Number of users considered and the per-user updates that succeeded.
        """
        usernames = await self.store.usernames_missing_avatar()
        updates: list[AvatarUpdate] = []

        for username in usernames:
            try:
                avatar_url = await self.profiles.fetch_avatar(username)
                if not avatar_url:
                    logger.warning(f"No avatar URL found for user {username}")
                    continue
                updated_count = await self.store.backfill_avatar(username, avatar_url)
            except Exception as e:  # noqa: BLE001
                logger.error(f"Error updating avatar for user {username}: {e}")
                continue

            updates.append(
                {"username": username, "updatedCount": updated_count, "avatarUrl": avatar_url}
            )

        logger.info(
            f"Avatar backfill: {len(usernames)} users, "
            f"{sum(u['updatedCount'] for u in updates)} rows updated"
        )
        return len(usernames), updates

    async def sweep(self, retention_seconds: int) -> int:
        return await self.store.sweep(retention_seconds)

    async def health_check(self) -> HealthStatus:
        """Check health of all components."""
        logger.debug("Performing health checks")

        try:
            storage_ok = await self.store.health_check()
        except Exception as e:  # noqa: BLE001
            logger.error(f"Storage health check failed: {e}")
            storage_ok = False

        try:
            llm_ok = await self.generator.health_check()
        except Exception as e:  # noqa: BLE001
            logger.error(f"LLM health check failed: {e}")
            llm_ok = False

        return {"storage": storage_ok, "llm": llm_ok}
