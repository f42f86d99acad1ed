"""Configuration using pydantic-settings."""

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings with validation and constants."""

    host: str = "0.0.0.0"  # nosec B104 - Required for container deployment
    port: int = 8000
    log_level: str = "INFO"
    log_file: str | None = None

    database_url: str = "sqlite+aiosqlite:///./data/roast.db"
    cache_enabled: bool = True

    # LLM settings (any model string litellm understands)
    llm_model: str = "gpt-3.5-turbo"
    llm_api_key: str | None = None
    llm_api_base: str | None = None
    llm_timeout: int = 30
    llm_max_tokens: int = 500
    llm_temperature: float = 0.9

    # GitHub settings
    github_api_url: str = "https://api.github.com"
    github_token: str | None = None
    github_timeout: float = 10.0
    top_repos_limit: int = Field(5, ge=1, le=100)

    # Rate limiting (fixed window per client IP)
    rate_limit_max: int = Field(5, ge=1)
    rate_limit_window_seconds: int = Field(60, ge=1)

    # Cache settings
    cache_freshness_seconds: int = Field(24 * 60 * 60, ge=1)
    cache_retention_seconds: int = Field(7 * 24 * 60 * 60, ge=1)
    sweep_interval_seconds: int = Field(60 * 60, ge=0)
    single_flight: bool = True

    stream_by_default: bool = True

    admin_secret: str | None = None

    @model_validator(mode="after")
    def validate_cache_windows(self) -> "Settings":
        """Retention must outlive freshness, otherwise fresh rows get swept."""
        if self.cache_retention_seconds < self.cache_freshness_seconds:
            raise ValueError(
                "ROAST_CACHE_RETENTION_SECONDS must be greater than or equal to "
                "ROAST_CACHE_FRESHNESS_SECONDS."
            )
        return self

    class Config:
        """Pydantic config."""

        env_prefix = "ROAST_"
        env_file = ".env"
        extra = "ignore"


settings = Settings()


def get_settings() -> Settings:
    """Get settings instance (for dependency injection)."""
    return settings
