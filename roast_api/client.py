"""API client with a local roast cache and streaming consumer."""

import asyncio
import json
import random
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx
from loguru import logger

from .exceptions import RoastClientError, StreamError
from .sse import MEDIA_TYPE, iter_events
from .types import ClientCacheEntry

UpdateCallback = Callable[[str], None]

WORD_SPLIT = re.compile(r"(\s+)")


class LocalRoastCache:
    """Bounded mirror of the server cache, optionally persisted to a JSON file.

    Entries match on the same (username, language, model) triple and use the
    same freshness window as the server, checked independently.
    """

    def __init__(
        self,
        capacity: int = 50,
        freshness_seconds: float = 24 * 60 * 60,
        path: str | Path | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.capacity = capacity
        self.freshness_seconds = freshness_seconds
        self.path = Path(path) if path else None
        self.clock = clock
        self.entries: list[ClientCacheEntry] = self._load()

    def __len__(self) -> int:
        return len(self.entries)

    def _load(self) -> list[ClientCacheEntry]:
        if self.path is None or not self.path.exists():
            return []
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable roast cache {self.path}: {e}")
            return []
        return data if isinstance(data, list) else []

    def _save(self) -> None:
        if self.path is None:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(self.entries, ensure_ascii=False), encoding="utf-8")
        except OSError as e:
            logger.warning(f"Could not persist roast cache {self.path}: {e}")

    @staticmethod
    def _matches(entry: ClientCacheEntry, username: str, language: str, model: str) -> bool:
        return (
            entry.get("username", "").lower() == username.lower()
            and entry.get("language") == language
            and entry.get("model") == model
        )

    def get(self, username: str, language: str, model: str) -> ClientCacheEntry | None:
        now_ms = self.clock() * 1000
        for entry in self.entries:
            if (
                self._matches(entry, username, language, model)
                and now_ms - entry.get("timestamp", 0) < self.freshness_seconds * 1000
            ):
                return entry
        return None

    def put(
        self,
        username: str,
        language: str,
        model: str,
        result: str,
        avatar_url: str | None = None,
    ) -> None:
        """Replace the entry for the triple and evict the oldest past capacity."""
        self.entries = [e for e in self.entries if not self._matches(e, username, language, model)]
        self.entries.append(
            {
                "username": username,
                "language": language,
                "model": model,
                "timestamp": self.clock() * 1000,
                "result": result,
                "avatar_url": avatar_url,
            }
        )
        if len(self.entries) > self.capacity:
            self.entries = self.entries[-self.capacity :]
        self._save()


async def simulate_streaming(
    text: str,
    on_update: UpdateCallback | None = None,
    *,
    rng: random.Random | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    min_batch: int = 1,
    max_batch: int = 5,
    min_delay: float = 0.010,
    max_delay: float = 0.040,
) -> str:
    """Replay already known text as if it were being typed.

    Words are emitted in random batches with random pauses; whitespace is
    preserved, so the final update equals ``text``.
    """
    rng = rng or random.Random()
    tokens = WORD_SPLIT.split(text)
    current = ""
    if on_update:
        on_update(current)

    i = 0
    while i < len(tokens):
        batch = rng.randint(min_batch, max_batch)
        current += "".join(tokens[i : i + batch])
        i += batch
        if on_update:
            on_update(current)
        await sleep(rng.uniform(min_delay, max_delay))

    return text


@dataclass
class ClientRoast:
    """Roast as seen by the client."""

    text: str
    language: str
    model: str
    avatar_url: str | None = None
    from_cache: bool = False
    local: bool = False


class RoastClient:
    """Fetches roasts, preferring the local cache over the network."""

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        *,
        language: str = "en-US",
        model: str = "gpt-3.5-turbo",
        cache: LocalRoastCache | None = None,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
        rng: random.Random | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.language = language
        self.model = model
        self.cache = cache if cache is not None else LocalRoastCache()
        self.rng = rng
        self.sleep = sleep
        self.client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    async def __aenter__(self) -> "RoastClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self.client.aclose()

    async def _replay(self, text: str, on_update: UpdateCallback | None) -> str:
        return await simulate_streaming(text, on_update, rng=self.rng, sleep=self.sleep)

    async def roast(self, username: str, on_update: UpdateCallback | None = None) -> ClientRoast:
        """Get a roast for ``username``.

        Raises:
            RoastClientError: The server answered with an error status.
            StreamError: The stream carried an error frame or was truncated.
        """
        entry = self.cache.get(username, self.language, self.model)
        if entry is not None:
            logger.debug(f"Local cache hit for {username}")
            text = await self._replay(entry["result"], on_update)
            return ClientRoast(
                text=text,
                language=self.language,
                model=self.model,
                avatar_url=entry.get("avatar_url"),
                from_cache=True,
                local=True,
            )

        params = {"username": username, "lang": self.language}
        async with self.client.stream("GET", "/roast", params=params) as response:
            if response.is_error:
                await response.aread()
                raise self._error(response)

            if response.headers.get("content-type", "").startswith(MEDIA_TYPE):
                text, avatar_url = await self._consume_stream(response, on_update)
                result = ClientRoast(
                    text=text, language=self.language, model=self.model, avatar_url=avatar_url
                )
            else:
                await response.aread()
                data = response.json()
                result = ClientRoast(
                    text=await self._replay(data["shame"], on_update),
                    language=data.get("language", self.language),
                    model=data.get("model", self.model),
                    avatar_url=data.get("avatarUrl"),
                    from_cache=data.get("fromCache", False),
                )

        # Keyed like the lookup above, whatever the server reports
        self.cache.put(username, self.language, self.model, result.text, result.avatar_url)
        return result

    async def _consume_stream(
        self, response: httpx.Response, on_update: UpdateCallback | None
    ) -> tuple[str, str | None]:
        text = ""
        avatar_url: str | None = None

        async for event in iter_events(response.aiter_text()):
            if "error" in event:
                raise StreamError(str(event["error"]))
            if avatar_url is None and event.get("avatarUrl"):
                avatar_url = event["avatarUrl"]
            text += event.get("text", "")
            if on_update:
                on_update(text)

        return text, avatar_url

    @staticmethod
    def _error(response: httpx.Response) -> RoastClientError:
        try:
            data = response.json()
        except ValueError:
            data = {}

        message = data.get("error") if isinstance(data, dict) else None
        reset = data.get("resetInSeconds") if isinstance(data, dict) else None
        if reset is None and "X-RateLimit-Reset" in response.headers:
            reset = int(response.headers["X-RateLimit-Reset"])

        return RoastClientError(
            message or f"Request failed with status {response.status_code}",
            status_code=response.status_code,
            reset_in_seconds=reset,
        )
