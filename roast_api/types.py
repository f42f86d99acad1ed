"""Type definitions for the Roast API."""

from datetime import datetime
from decimal import Decimal

from typing_extensions import TypedDict


class TokenUsage(TypedDict, total=False):
    """Token usage information from LLM API."""

    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    cost_usd: Decimal


class HealthStatus(TypedDict):
    """Health status of system components."""

    storage: bool
    llm: bool


class RepoSummary(TypedDict):
    """One of the user's most recently updated repositories."""

    name: str
    description: str | None
    stars: int
    forks: int
    language: str | None


class GitHubProfile(TypedDict):
    """Public profile data sent to the generator."""

    username: str
    name: str | None
    bio: str | None
    followers: int
    following: int
    publicRepos: int
    accountCreatedAt: str
    company: str | None
    location: str | None
    topRepos: list[RepoSummary]


class CacheRecord(TypedDict):
    """Database row of the shame_cache table."""

    id: int
    username: str
    language: str
    model: str
    text: str
    avatar_url: str | None
    created_at: datetime
    last_access: datetime


class AvatarUpdate(TypedDict):
    """Result of backfilling one user's avatar."""

    username: str
    updatedCount: int
    avatarUrl: str


class ClientCacheEntry(TypedDict, total=False):
    """Entry of the client-side roast cache."""

    username: str
    language: str
    model: str
    timestamp: float
    result: str
    avatar_url: str | None
