"""GitHub REST client for public profile data."""

from typing import Any, Protocol

import httpx
from loguru import logger

from .exceptions import ProfileNotFoundError, UpstreamError
from .retry import with_upstream_retry
from .types import GitHubProfile, RepoSummary


class ProfileFetcher(Protocol):
    """Protocol for profile lookups."""

    async def fetch_profile(
        self, username: str, repo_limit: int = 5
    ) -> tuple[GitHubProfile, str | None]: ...
    async def fetch_avatar(self, username: str) -> str | None: ...


class GitHubClient:
    """Thin wrapper over the public GitHub REST API."""

    def __init__(
        self,
        base_url: str = "https://api.github.com",
        token: str | None = None,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {
            "Accept": "application/vnd.github+json",
            "User-Agent": "roast-api",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"

        self.client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def close(self) -> None:
        await self.client.aclose()

    @with_upstream_retry("GitHub")
    async def _get(self, path: str, **params: Any) -> Any:
        response = await self.client.get(path, params=params or None)
        if response.status_code == 404:
            raise ProfileNotFoundError(f"GitHub user not found: {path}")
        if response.is_error:
            raise UpstreamError(f"GitHub returned {response.status_code} for {path}")
        return response.json()

    async def fetch_profile(
        self, username: str, repo_limit: int = 5
    ) -> tuple[GitHubProfile, str | None]:
        """Fetch the user and their most recently updated repositories.

        Returns:
            The profile handed to the generator, and the avatar URL.

        Raises:
            ProfileNotFoundError: If GitHub has no such user.
            UpstreamError: For any other failure.
        """
        user = await self._get(f"/users/{username}")
        repos = await self._get(
            f"/users/{username}/repos", sort="updated", per_page=repo_limit
        )
        logger.debug(f"Fetched GitHub profile for {username} with {len(repos)} repos")

        top_repos: list[RepoSummary] = [
            {
                "name": repo.get("name", ""),
                "description": repo.get("description"),
                "stars": repo.get("stargazers_count", 0),
                "forks": repo.get("forks_count", 0),
                "language": repo.get("language"),
            }
            for repo in repos[:repo_limit]
        ]
        profile: GitHubProfile = {
            "username": user.get("login", username),
            "name": user.get("name"),
            "bio": user.get("bio"),
            "followers": user.get("followers", 0),
            "following": user.get("following", 0),
            "publicRepos": user.get("public_repos", 0),
            "accountCreatedAt": user.get("created_at", ""),
            "company": user.get("company"),
            "location": user.get("location"),
            "topRepos": top_repos,
        }
        return profile, user.get("avatar_url")

    async def fetch_avatar(self, username: str) -> str | None:
        """Fetch only the avatar URL of a user."""
        user = await self._get(f"/users/{username}")
        return user.get("avatar_url") or None
