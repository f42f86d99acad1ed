"""Roast generators backed by litellm."""

from collections.abc import AsyncIterator
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Protocol

import litellm
from loguru import logger

from .exceptions import GenerationError
from .retry import with_upstream_retry
from .types import TokenUsage


def setup_litellm() -> None:
    """Setup litellm configuration."""
    import os

    litellm.drop_params = True
    litellm.suppress_debug_info = True

    os.environ.setdefault("LITELLM_LOG", "INFO")


@dataclass
class LLMConfig:
    """Configuration for the roast generator."""

    model: str
    api_key: str | None = None
    api_base: str | None = None
    timeout: int = 30
    temperature: float = 0.9
    max_tokens: int = 500


@dataclass
class LLMResponse:
    """Completed generation."""

    text: str
    model: str
    usage: TokenUsage


class RoastGenerator(Protocol):
    """Protocol for roast generators.

    ``stream`` is an async generator of text deltas in generation order.
    """

    async def complete(self, system_prompt: str, user_prompt: str) -> LLMResponse: ...
    def stream(self, system_prompt: str, user_prompt: str) -> AsyncIterator[str]: ...
    async def health_check(self) -> bool: ...


class LiteLLMGenerator:
    """Generator that talks to any provider litellm supports."""

    def __init__(self, config: LLMConfig) -> None:
        self.config = config
        setup_litellm()

    def _request_kwargs(self, system_prompt: str, user_prompt: str) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": self.config.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "timeout": self.config.timeout,
            "temperature": self.config.temperature,
            "max_tokens": self.config.max_tokens,
        }
        if self.config.api_key:
            kwargs["api_key"] = self.config.api_key
        if self.config.api_base:
            kwargs["api_base"] = self.config.api_base
        return kwargs

    @with_upstream_retry("LLM", max_retries=3, error_cls=GenerationError)
    async def complete(self, system_prompt: str, user_prompt: str) -> LLMResponse:
        """Generate the whole roast in one call."""
        response = await litellm.acompletion(**self._request_kwargs(system_prompt, user_prompt))

        return LLMResponse(
            text=response.choices[0].message.content or "",
            model=response.model or self.config.model,
            usage=self._extract_usage(response),
        )

    async def stream(self, system_prompt: str, user_prompt: str) -> AsyncIterator[str]:
        """Yield text deltas as the provider produces them.

        Streams are not retried: deltas may already have reached the client.
        """
        try:
            response = await litellm.acompletion(
                **self._request_kwargs(system_prompt, user_prompt), stream=True
            )
            async for chunk in response:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta.content
                if delta:
                    yield delta
        except Exception as e:
            logger.error(f"LLM stream failed: {e}")
            raise GenerationError(f"LLM stream failed: {e}") from e

    def _extract_usage(self, response: Any) -> TokenUsage:
        """Extract usage data from response."""
        typed_usage: TokenUsage = {}
        usage = getattr(response, "usage", None)

        if usage:
            usage_data = usage.model_dump()

            for field in ["prompt_tokens", "completion_tokens", "total_tokens"]:
                if field in usage_data:
                    typed_usage[field] = usage_data[field]  # type: ignore

            try:
                cost = litellm.completion_cost(completion_response=response)
                if cost is not None:
                    typed_usage["cost_usd"] = Decimal(str(cost))
            except Exception as e:  # noqa: BLE001
                logger.debug(f"Cost calculation not available for {response.model}: {e}")

        return typed_usage

    async def health_check(self) -> bool:
        """Check that credentials for the model are available."""
        if self.config.api_key:
            return True
        try:
            env = litellm.validate_environment(model=self.config.model)
        except Exception as e:  # noqa: BLE001
            logger.debug(f"Could not validate LLM environment: {e}")
            return False
        return bool(env.get("keys_in_environment"))


def create_roast_generator() -> RoastGenerator:
    """Factory function to create the configured generator."""
    from .config import settings

    logger.info(f"Using litellm generator with model {settings.llm_model}")
    config = LLMConfig(
        model=settings.llm_model,
        api_key=settings.llm_api_key,
        api_base=settings.llm_api_base,
        timeout=settings.llm_timeout,
        temperature=settings.llm_temperature,
        max_tokens=settings.llm_max_tokens,
    )
    return LiteLLMGenerator(config)
