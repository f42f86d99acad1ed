"""Shared test fixtures."""

import os
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timedelta
from pathlib import Path

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Set test environment before the settings module is imported
os.environ["ROAST_DATABASE_URL"] = "memory://"
os.environ["ROAST_LLM_API_KEY"] = "test-key"
os.environ["ROAST_ADMIN_SECRET"] = "test-secret"
os.environ["ROAST_SWEEP_INTERVAL_SECONDS"] = "0"
os.environ["ROAST_LOG_LEVEL"] = "ERROR"  # Reduce log noise
# Use litellm's bundled model cost map instead of fetching it over the network at import
os.environ.setdefault("LITELLM_LOCAL_MODEL_COST_MAP", "true")

from roast_api.api import create_app  # noqa: E402
from roast_api.config import Settings, get_settings  # noqa: E402
from roast_api.exceptions import ProfileNotFoundError, UpstreamError  # noqa: E402
from roast_api.rate_limiter import InMemoryRateLimiter  # noqa: E402
from roast_api.roast import DeliveryMode, RoastService  # noqa: E402
from roast_api.storage import InMemoryCacheStore, SQLiteCacheStore  # noqa: E402
from roast_api.types import GitHubProfile  # noqa: E402

from .mock_provider import MockRoastGenerator  # noqa: E402

ADMIN_SECRET = "test-secret"
AVATAR_URL = "https://avatars.githubusercontent.com/u/1024025"
MODEL = "mock-model"


class FakeClock:
    """Controllable source of naive UTC timestamps."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeProfiles:
    """Profile fetcher returning canned GitHub data."""

    def __init__(self) -> None:
        self.profile_calls: list[str] = []
        self.avatar_calls: list[str] = []
        self.missing: set[str] = set()
        self.broken: set[str] = set()
        self.avatars: dict[str, str | None] = {}
        self.avatar_url: str | None = AVATAR_URL

    async def fetch_profile(
        self, username: str, repo_limit: int = 5
    ) -> tuple[GitHubProfile, str | None]:
        self.profile_calls.append(username)
        if username in self.missing:
            raise ProfileNotFoundError(f"GitHub user not found: {username}")
        if username in self.broken:
            raise UpstreamError("GitHub returned 502")

        profile: GitHubProfile = {
            "username": username,
            "name": "Test User",
            "bio": "I write code",
            "followers": 10,
            "following": 2,
            "publicRepos": 3,
            "accountCreatedAt": "2011-09-03T15:26:22Z",
            "company": None,
            "location": None,
            "topRepos": [
                {
                    "name": "todo-app",
                    "description": "Yet another todo app",
                    "stars": 1,
                    "forks": 0,
                    "language": "JavaScript",
                }
            ][:repo_limit],
        }
        return profile, self.avatar_url

    async def fetch_avatar(self, username: str) -> str | None:
        self.avatar_calls.append(username)
        if username in self.broken:
            raise UpstreamError("GitHub returned 502")
        return self.avatars.get(username)


@pytest.fixture
def clock() -> FakeClock:
    """Fake clock fixture."""
    return FakeClock()


@pytest.fixture
def profiles() -> FakeProfiles:
    """Fake GitHub fixture."""
    return FakeProfiles()


@pytest.fixture
def generator() -> MockRoastGenerator:
    """Mock generator fixture."""
    return MockRoastGenerator(model=MODEL)


@pytest_asyncio.fixture
async def sqlite_store(
    tmp_path: Path, clock: FakeClock
) -> AsyncGenerator[SQLiteCacheStore, None]:
    """File-backed SQLite store in a temporary directory."""
    store = SQLiteCacheStore(f"sqlite+aiosqlite:///{tmp_path / 'data' / 'roast.db'}", clock=clock)
    await store.startup()
    yield store
    await store.shutdown()


@pytest.fixture
def memory_store(clock: FakeClock) -> InMemoryCacheStore:
    """In-memory store fixture."""
    return InMemoryCacheStore(clock=clock)


@pytest.fixture
def make_service(
    memory_store: InMemoryCacheStore,
    profiles: FakeProfiles,
    generator: MockRoastGenerator,
) -> Callable[..., RoastService]:
    """Factory building a RoastService over the fakes; keyword overrides win."""

    def factory(**overrides) -> RoastService:
        kwargs = {
            "store": memory_store,
            "rate_limiter": InMemoryRateLimiter(max_requests=5, window_seconds=60),
            "profiles": profiles,
            "generator": generator,
            "model": MODEL,
            "default_mode": DeliveryMode.STREAMED,
        }
        kwargs.update(overrides)
        return RoastService(**kwargs)

    return factory


@pytest.fixture
def service(make_service: Callable[..., RoastService]) -> RoastService:
    """Default service fixture."""
    return make_service()


@pytest_asyncio.fixture
async def client(service: RoastService) -> AsyncGenerator[AsyncClient, None]:
    """Test client fixture - service injected via create_app."""
    app = create_app(service)
    app.dependency_overrides[get_settings] = lambda: Settings(admin_secret=ADMIN_SECRET)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
