"""Domain-specific exceptions for the Roast API."""

from typing import Any


class RoastAPIError(Exception):
    """Base exception for all Roast API errors."""

    status_code: int = 500

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize the exception with context."""
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response."""
        return {"error": self.message, **self.details}


class ValidationError(RoastAPIError):
    """Missing or invalid username (not Pydantic)."""

    status_code = 400


class UnauthorizedError(RoastAPIError):
    """Admin secret did not match."""

    status_code = 401

    def to_dict(self) -> dict[str, Any]:
        """Same shape as the admin endpoint's success body."""
        return {"success": False, "message": self.message}


class ProfileNotFoundError(RoastAPIError):
    """GitHub answered 404 for the requested user."""

    status_code = 404


class RateLimitError(RoastAPIError):
    """Client exceeded the request budget of the current window."""

    status_code = 429

    def __init__(self, message: str, reset_seconds: int) -> None:
        self.reset_seconds = reset_seconds
        super().__init__(message, details={"resetInSeconds": reset_seconds})


class UpstreamError(RoastAPIError):
    """Profile fetch or generation failed for a reason other than not-found."""


class GenerationError(UpstreamError):
    """Error raised by the roast generator."""


class CacheReadError(RoastAPIError):
    """Cache lookup failed. Treated as a miss."""


class CacheWriteError(RoastAPIError):
    """Persisting a generated roast failed."""


class StreamError(RoastAPIError):
    """A streamed roast was aborted or truncated."""


class RoastClientError(RoastAPIError):
    """Error response received by the API client."""

    def __init__(
        self, message: str, status_code: int, reset_in_seconds: int | None = None
    ) -> None:
        self.reset_in_seconds = reset_in_seconds
        super().__init__(message, status_code=status_code)


class ConfigurationError(RoastAPIError):
    """Error related to configuration issues."""
