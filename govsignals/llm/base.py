"""Abstract base class for LLM providers."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

# USD per 1M tokens (input, output)
PRICING = {
    "sonar": (1.0, 1.0),
    "sonar-pro": (3.0, 15.0),
    "deepseek-chat": (0.14, 0.28),
    "claude-haiku-4-5-20251001": (0.80, 4.0),
    "claude-sonnet-4-5-20250514": (3.0, 15.0),
}
DEFAULT_PRICING = (1.0, 2.0)


def estimate_cost(input_tokens: int, output_tokens: int, model: str) -> float:
    """Rough cost estimate based on known pricing (per 1M tokens)."""
    input_rate, output_rate = PRICING.get(model, DEFAULT_PRICING)
    return (input_tokens * input_rate + output_tokens * output_rate) / 1_000_000


@dataclass
class LLMResponse:
    """Response from an LLM call."""

    text: str
    input_tokens: int = 0
    output_tokens: int = 0
    model: str = ""
    cost_usd: float = 0.0
    citations: list[str] = field(default_factory=list)


class BaseLLMProvider(ABC):
    """Base class for LLM providers.

    Implementations raise ``EnrichmentError`` with a category describing
    the failure; retryable categories are retried inside ``complete``.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str,
        default_model: str,
        max_retries: int = 2,
        timeout: int = 90,
        json_mode: bool = False,
    ):
        self.api_key = api_key
        self.base_url = base_url
        self.default_model = default_model
        self.max_retries = max_retries
        self.timeout = timeout
        self.json_mode = json_mode

    @abstractmethod
    async def complete(
        self,
        prompt: str,
        system: str = "",
        model: str | None = None,
        temperature: float = 0.3,
        max_tokens: int = 2000,
    ) -> LLMResponse:
        """Send a completion request and return the response."""
        ...

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Human-readable provider name."""
        ...

    def _with_cost(self, response: LLMResponse) -> LLMResponse:
        response.cost_usd = estimate_cost(
            response.input_tokens, response.output_tokens, response.model,
        )
        return response
