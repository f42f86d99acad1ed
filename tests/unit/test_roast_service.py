"""Test RoastService pipeline logic."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from roast_api.exceptions import (
    CacheReadError,
    CacheWriteError,
    GenerationError,
    ProfileNotFoundError,
    RateLimitError,
    UpstreamError,
    ValidationError,
)
from roast_api.rate_limiter import InMemoryRateLimiter
from roast_api.roast import (
    DeliveryMode,
    KeyedLocks,
    RoastKey,
    RoastResult,
    build_user_prompt,
    validate_username,
)
from roast_api.sse import DONE_FRAME, encode_event
from roast_api.translations import fallback_text, system_prompt

from ..conftest import AVATAR_URL, MODEL


async def collect(frames) -> list[str]:
    return [frame async for frame in frames]


class TestKeyResolution:
    """Test key derivation and username validation."""

    def test_resolve_key_is_deterministic(self, service) -> None:
        """Same inputs always give the same key."""
        first = service.resolve_key("TorValds", None, "pt-BR,pt;q=0.9")
        second = service.resolve_key("torvalds", None, "pt-BR,pt;q=0.9")

        assert first == second == RoastKey("torvalds", "pt-BR", MODEL)

    def test_query_language_wins_over_header(self, service) -> None:
        key = service.resolve_key("torvalds", "en-US", "pt-BR")
        assert key.language == "en-US"

    @pytest.mark.parametrize("username", ["torvalds", "a", "octo-cat", "A1-b2-C3"])
    def test_valid_usernames(self, username: str) -> None:
        assert validate_username(f" {username} ") == username

    @pytest.mark.parametrize(
        ("username", "message"),
        [
            (None, "GitHub username is required"),
            ("", "GitHub username is required"),
            ("   ", "GitHub username is required"),
            ("-leading", "Invalid GitHub username"),
            ("double--hyphen", "Invalid GitHub username"),
            ("has space", "Invalid GitHub username"),
            ("x" * 40, "Invalid GitHub username"),
        ],
    )
    def test_invalid_usernames(self, username, message: str) -> None:
        with pytest.raises(ValidationError) as exc_info:
            validate_username(username)
        assert exc_info.value.message == message
        assert exc_info.value.status_code == 400

    def test_validation_message_is_localized(self) -> None:
        with pytest.raises(ValidationError, match="Nome de usuário do GitHub é obrigatório"):
            validate_username(None, "pt-BR")

    def test_user_prompt_embeds_profile(self) -> None:
        profile = {"username": "torvalds", "bio": "Ünïcode"}
        prompt = build_user_prompt(profile)  # type: ignore[arg-type]
        assert prompt.startswith("Roast this GitHub profile in a funny way: ")
        assert '"bio": "Ünïcode"' in prompt


class TestRateLimit:
    """Test the rate check step."""

    @pytest.mark.asyncio
    async def test_sixth_request_is_rejected(self, make_service) -> None:
        """Sixth request in a window fails with the remaining seconds."""
        limiter = InMemoryRateLimiter(max_requests=5, window_seconds=60, clock=lambda: 1000.0)
        service = make_service(rate_limiter=limiter)

        for _ in range(5):
            await service.check_rate_limit("1.2.3.4", "en-US")

        with pytest.raises(RateLimitError) as exc_info:
            await service.check_rate_limit("1.2.3.4", "pt-BR")

        assert exc_info.value.reset_seconds == 60
        assert exc_info.value.status_code == 429
        assert exc_info.value.to_dict() == {
            "error": "Limite de requisições excedido. Tente novamente mais tarde.",
            "resetInSeconds": 60,
        }


class TestBufferedRoast:
    """Test the buffered delivery mode."""

    @pytest.mark.asyncio
    async def test_cache_hit_skips_github_and_llm(
        self, service, memory_store, profiles, generator
    ) -> None:
        """A fresh cached roast is returned without any upstream call."""
        await memory_store.upsert("torvalds", "en-US", MODEL, "Cached roast", AVATAR_URL)

        result = await service.roast(RoastKey("torvalds", "en-US", MODEL), DeliveryMode.BUFFERED)

        assert result == RoastResult(
            text="Cached roast",
            language="en-US",
            model=MODEL,
            from_cache=True,
            avatar_url=AVATAR_URL,
        )
        assert profiles.profile_calls == []
        assert generator.complete_calls == 0
        assert generator.stream_calls == 0

    @pytest.mark.asyncio
    async def test_cache_hit_is_returned_even_in_stream_mode(self, service, memory_store) -> None:
        """Cached roasts are never streamed."""
        await memory_store.upsert("torvalds", "en-US", MODEL, "Cached roast")

        result = await service.roast(RoastKey("torvalds", "en-US", MODEL), DeliveryMode.STREAMED)

        assert isinstance(result, RoastResult)
        assert result.from_cache is True

    @pytest.mark.asyncio
    async def test_cache_miss_generates_and_stores(
        self, service, memory_store, profiles, generator
    ) -> None:
        """Test the full miss path."""
        key = RoastKey("torvalds", "pt-BR", MODEL)

        result = await service.roast(key, DeliveryMode.BUFFERED)

        assert result.text == generator.text
        assert result.from_cache is False
        assert result.avatar_url == AVATAR_URL
        assert profiles.profile_calls == ["torvalds"]
        assert generator.prompts[0][0] == system_prompt("pt-BR")

        record = await memory_store.lookup("torvalds", "pt-BR", MODEL)
        assert record["text"] == generator.text
        assert record["avatar_url"] == AVATAR_URL

        # Second request is served from the cache
        again = await service.roast(key, DeliveryMode.BUFFERED)
        assert again.from_cache is True
        assert generator.complete_calls == 1

    @pytest.mark.asyncio
    async def test_empty_generation_uses_fallback(self, service, memory_store, generator) -> None:
        """An empty completion is replaced by the localized fallback."""
        generator.text = ""

        result = await service.roast(RoastKey("torvalds", "pt-BR", MODEL), DeliveryMode.BUFFERED)

        assert result.text == fallback_text("pt-BR")
        assert (await memory_store.lookup("torvalds", "pt-BR", MODEL))["text"] == result.text

    @pytest.mark.asyncio
    async def test_generation_failure_is_localized(self, service, memory_store, generator) -> None:
        """Test generation error mapping."""
        generator.set_failure()

        with pytest.raises(GenerationError, match="Falha ao processar a requisição"):
            await service.roast(RoastKey("torvalds", "pt-BR", MODEL), DeliveryMode.BUFFERED)

        assert await memory_store.list_all() == []

    @pytest.mark.asyncio
    async def test_unknown_user(self, service, profiles, generator) -> None:
        """GitHub 404 becomes a localized not-found error."""
        profiles.missing.add("ghost")

        with pytest.raises(ProfileNotFoundError, match="Usuário do GitHub não encontrado"):
            await service.roast(RoastKey("ghost", "pt-BR", MODEL), DeliveryMode.BUFFERED)

        assert generator.complete_calls == 0

    @pytest.mark.asyncio
    async def test_github_failure(self, service, profiles) -> None:
        """Other GitHub failures become an upstream error."""
        profiles.broken.add("torvalds")

        with pytest.raises(UpstreamError) as exc_info:
            await service.roast(RoastKey("torvalds", "en-US", MODEL), DeliveryMode.BUFFERED)

        assert exc_info.value.status_code == 500
        assert exc_info.value.message == "Failed to process request"

    @pytest.mark.asyncio
    async def test_lookup_failure_is_treated_as_miss(self, make_service, generator) -> None:
        """Cache read errors never fail the request."""
        store = AsyncMock()
        store.lookup.side_effect = CacheReadError("database is locked")
        service = make_service(store=store)

        result = await service.roast(RoastKey("torvalds", "en-US", MODEL), DeliveryMode.BUFFERED)

        assert result.text == generator.text
        assert result.from_cache is False
        store.upsert.assert_called_once_with(
            "torvalds", "en-US", MODEL, generator.text, AVATAR_URL
        )

    @pytest.mark.asyncio
    async def test_write_failure_still_returns_roast(self, make_service, generator) -> None:
        """Cache write errors are logged, the client still gets its roast."""
        store = AsyncMock()
        store.lookup.return_value = None
        store.upsert.side_effect = CacheWriteError("disk full")
        service = make_service(store=store)

        result = await service.roast(RoastKey("torvalds", "en-US", MODEL), DeliveryMode.BUFFERED)

        assert result.text == generator.text

    @pytest.mark.asyncio
    async def test_cache_disabled(self, make_service, memory_store, generator) -> None:
        """With caching off every request generates and nothing is stored."""
        service = make_service(cache_enabled=False)
        await memory_store.upsert("torvalds", "en-US", MODEL, "Cached roast")

        result = await service.roast(RoastKey("torvalds", "en-US", MODEL), DeliveryMode.BUFFERED)

        assert result.from_cache is False
        assert generator.complete_calls == 1
        assert (await memory_store.lookup("torvalds", "en-US", MODEL))["text"] == "Cached roast"


class TestStreamedRoast:
    """Test the streamed delivery mode."""

    @pytest.mark.asyncio
    async def test_stream_frames_and_cache_write(self, service, memory_store) -> None:
        """Deltas are framed in order, avatar on the first frame, then done."""
        frames = await service.roast(RoastKey("torvalds", "en-US", MODEL), DeliveryMode.STREAMED)

        assert await collect(frames) == [
            encode_event({"text": "Hello ", "avatarUrl": AVATAR_URL}),
            encode_event({"text": "world"}),
            encode_event({"text": "!"}),
            DONE_FRAME,
        ]
        await service.wait_for_writes()
        record = await memory_store.lookup("torvalds", "en-US", MODEL)
        assert record["text"] == "Hello world!"
        assert record["avatar_url"] == AVATAR_URL

    @pytest.mark.asyncio
    async def test_stream_failure_sends_error_frame(
        self, service, memory_store, generator
    ) -> None:
        """A broken stream ends with a localized error frame and no done marker."""
        generator.fail_after = 1

        frames = await collect(
            await service.roast(RoastKey("torvalds", "pt-BR", MODEL), DeliveryMode.STREAMED)
        )

        assert frames == [
            encode_event({"text": "Hello ", "avatarUrl": AVATAR_URL}),
            encode_event({"error": "Falha ao processar a requisição"}),
        ]
        assert await memory_store.list_all() == []

    @pytest.mark.asyncio
    async def test_empty_stream_uses_fallback(self, service, memory_store, generator) -> None:
        generator.deltas = []

        frames = await collect(
            await service.roast(RoastKey("torvalds", "en-US", MODEL), DeliveryMode.STREAMED)
        )

        assert frames == [
            encode_event({"text": fallback_text("en-US"), "avatarUrl": AVATAR_URL}),
            DONE_FRAME,
        ]
        await service.wait_for_writes()
        assert (await memory_store.lookup("torvalds", "en-US", MODEL))["text"] == fallback_text(
            "en-US"
        )

    @pytest.mark.asyncio
    async def test_abandoned_stream_is_not_cached(self, service, memory_store) -> None:
        """A client that disconnects mid-stream leaves no cache row behind."""
        frames = await service.roast(RoastKey("torvalds", "en-US", MODEL), DeliveryMode.STREAMED)

        await frames.__anext__()
        await frames.aclose()
        await service.wait_for_writes()

        assert await memory_store.list_all() == []
        assert len(service.locks) == 0

    @pytest.mark.asyncio
    async def test_disconnect_during_generation_cancels_it(
        self, service, memory_store, generator
    ) -> None:
        generator.delay = 0.05
        frames = await service.roast(RoastKey("torvalds", "en-US", MODEL), DeliveryMode.STREAMED)

        await frames.__anext__()
        await frames.aclose()
        await asyncio.sleep(0.1)

        assert await memory_store.list_all() == []
        assert len(service.locks) == 0

    @pytest.mark.asyncio
    async def test_write_survives_close_after_done(self, service, memory_store) -> None:
        """Closing the stream right after the done frame still caches the roast."""
        frames = await service.roast(RoastKey("torvalds", "en-US", MODEL), DeliveryMode.STREAMED)

        while await frames.__anext__() != DONE_FRAME:
            pass
        await frames.aclose()
        await service.wait_for_writes()

        record = await memory_store.lookup("torvalds", "en-US", MODEL)
        assert record["text"] == "Hello world!"

    @pytest.mark.asyncio
    async def test_slow_write_outlives_cancelled_reader(self, make_service, generator) -> None:
        """A cancelled response task does not cancel a pending cache write."""
        store = AsyncMock()
        store.lookup.return_value = None
        written = asyncio.Event()

        async def slow_upsert(*args):
            await asyncio.sleep(0.05)
            written.set()

        store.upsert.side_effect = slow_upsert
        service = make_service(store=store)
        frames = await service.roast(RoastKey("torvalds", "en-US", MODEL), DeliveryMode.STREAMED)

        async def read_then_hang() -> None:
            async for frame in frames:
                if frame == DONE_FRAME:
                    await asyncio.Event().wait()

        reader = asyncio.create_task(read_then_hang())
        await asyncio.sleep(0.01)
        reader.cancel()
        await asyncio.wait([reader])
        await frames.aclose()

        await asyncio.wait_for(written.wait(), timeout=1)
        store.upsert.assert_awaited_once_with(
            "torvalds", "en-US", MODEL, "Hello world!", AVATAR_URL
        )


class TestSingleFlight:
    """Test concurrent requests for the same key."""

    @pytest.mark.asyncio
    async def test_concurrent_misses_generate_once(self, service, generator) -> None:
        """The second request waits and reuses the first one's roast."""
        generator.delay = 0.05
        key = RoastKey("torvalds", "en-US", MODEL)

        first, second = await asyncio.gather(
            service.roast(key, DeliveryMode.BUFFERED),
            service.roast(key, DeliveryMode.BUFFERED),
        )

        assert generator.complete_calls == 1
        assert first.text == second.text
        assert sorted([first.from_cache, second.from_cache]) == [False, True]
        assert len(service.locks) == 0

    @pytest.mark.asyncio
    async def test_waiting_stream_replays_winner(self, service, generator) -> None:
        """A streamed request that lost the race gets the cached text as one frame."""
        generator.delay = 0.02
        key = RoastKey("torvalds", "en-US", MODEL)

        first = await service.roast(key, DeliveryMode.STREAMED)
        second = await service.roast(key, DeliveryMode.STREAMED)
        first_frames, second_frames = await asyncio.gather(collect(first), collect(second))

        assert generator.stream_calls == 1
        assert first_frames[-1] == DONE_FRAME
        assert second_frames == [
            encode_event({"text": "Hello world!", "avatarUrl": AVATAR_URL}),
            DONE_FRAME,
        ]

    @pytest.mark.asyncio
    async def test_stalled_reader_does_not_block_key(self, service, generator) -> None:
        """Once generation ends, a second request proceeds while the first client idles."""
        generator.delay = 0.01
        key = RoastKey("torvalds", "en-US", MODEL)

        first = await service.roast(key, DeliveryMode.STREAMED)
        await first.__anext__()

        second = await asyncio.wait_for(service.roast(key, DeliveryMode.BUFFERED), timeout=1)

        assert second.text == "Hello world!"
        assert second.from_cache is True
        assert generator.stream_calls == 1
        assert generator.complete_calls == 0

        await first.aclose()
        assert len(service.locks) == 0

    @pytest.mark.asyncio
    async def test_disabled_single_flight_generates_twice(self, make_service, generator) -> None:
        generator.delay = 0.05
        service = make_service(single_flight=False)
        key = RoastKey("torvalds", "en-US", MODEL)

        await asyncio.gather(
            service.roast(key, DeliveryMode.BUFFERED),
            service.roast(key, DeliveryMode.BUFFERED),
        )

        assert generator.complete_calls == 2

    @pytest.mark.asyncio
    async def test_keyed_locks_are_released(self) -> None:
        locks = KeyedLocks()

        async with locks.hold("a"):
            assert len(locks) == 1
            async with locks.hold("b"):
                assert len(locks) == 2

        assert len(locks) == 0


class TestAdminOperations:
    """Test avatar backfill, sweeping and health."""

    @pytest.mark.asyncio
    async def test_refresh_avatars(self, service, memory_store, profiles) -> None:
        """Users without avatars are looked up and their rows updated."""
        await memory_store.upsert("torvalds", "en-US", MODEL, "English")
        await memory_store.upsert("torvalds", "pt-BR", MODEL, "Português")
        await memory_store.upsert("gvanrossum", "en-US", MODEL, "Python", "https://x/g.png")
        profiles.avatars["torvalds"] = "https://x/a.png"

        unique_users, updates = await service.refresh_avatars()

        assert unique_users == 1
        assert updates == [
            {"username": "torvalds", "updatedCount": 2, "avatarUrl": "https://x/a.png"}
        ]
        assert profiles.avatar_calls == ["torvalds"]

    @pytest.mark.asyncio
    async def test_refresh_avatars_skips_failures(self, service, memory_store, profiles) -> None:
        """Users whose lookup fails or has no avatar are skipped."""
        await memory_store.upsert("alice", "en-US", MODEL, "A")
        await memory_store.upsert("bob", "en-US", MODEL, "B")
        await memory_store.upsert("carol", "en-US", MODEL, "C")
        profiles.broken.add("alice")
        profiles.avatars["carol"] = "https://x/c.png"

        unique_users, updates = await service.refresh_avatars()

        assert unique_users == 3
        assert [update["username"] for update in updates] == ["carol"]
        assert await memory_store.usernames_missing_avatar() == ["alice", "bob"]

    @pytest.mark.asyncio
    async def test_sweep_delegates_to_store(self, service, memory_store, clock) -> None:
        await memory_store.upsert("torvalds", "en-US", MODEL, "Old")
        clock.advance(days=8)

        assert await service.sweep(7 * 24 * 60 * 60) == 1

    @pytest.mark.asyncio
    async def test_health_check(self, make_service, generator) -> None:
        """Failing components are reported, not raised."""
        store = AsyncMock()
        store.health_check.side_effect = RuntimeError("gone")
        service = make_service(store=store)

        assert await service.health_check() == {"storage": False, "llm": True}

        generator.set_failure()
        assert await service.health_check() == {"storage": False, "llm": False}
