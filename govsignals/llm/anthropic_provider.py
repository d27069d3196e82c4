"""Anthropic Claude LLM provider."""

from __future__ import annotations

import logging

import anthropic

from govsignals.errors import (
    AUTH,
    CONTENT_POLICY,
    INVALID_RESPONSE,
    QUOTA,
    RATE_LIMIT,
    TIMEOUT,
    UPSTREAM,
    EnrichmentError,
)
from govsignals.llm import register_provider
from govsignals.llm.base import BaseLLMProvider, LLMResponse
from govsignals.retry import retry_async

logger = logging.getLogger(__name__)


def classify_anthropic_error(exc: Exception) -> EnrichmentError:
    message = str(exc).lower()
    if isinstance(exc, (anthropic.AuthenticationError, anthropic.PermissionDeniedError)):
        category = AUTH
    elif isinstance(exc, anthropic.RateLimitError):
        category = QUOTA if "credit" in message or "quota" in message else RATE_LIMIT
    elif isinstance(exc, anthropic.APITimeoutError):
        category = TIMEOUT
    elif isinstance(exc, anthropic.BadRequestError):
        if "credit balance" in message:
            category = QUOTA
        elif "policy" in message or "safety" in message:
            category = CONTENT_POLICY
        else:
            category = INVALID_RESPONSE
    else:
        category = UPSTREAM
    return EnrichmentError(f"{type(exc).__name__}: {exc}", category)


@register_provider("anthropic")
class AnthropicProvider(BaseLLMProvider):
    """Provider for Anthropic Claude models."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._client: anthropic.AsyncAnthropic | None = None

    @property
    def provider_name(self) -> str:
        return "anthropic"

    @property
    def client(self) -> anthropic.AsyncAnthropic:
        if self._client is None:
            self._client = anthropic.AsyncAnthropic(
                api_key=self.api_key, timeout=self.timeout, max_retries=0,
            )
        return self._client

    async def complete(
        self,
        prompt: str,
        system: str = "",
        model: str | None = None,
        temperature: float = 0.3,
        max_tokens: int = 2000,
    ) -> LLMResponse:
        model = model or self.default_model
        response = await retry_async(
            self._do_complete, prompt, system, model,
            temperature, max_tokens,
            max_retries=self.max_retries,
        )
        return self._with_cost(response)

    async def _do_complete(
        self,
        prompt: str,
        system: str,
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> LLMResponse:
        kwargs = {
            "model": model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system:
            kwargs["system"] = system

        try:
            response = await self.client.messages.create(**kwargs)
        except anthropic.APIError as exc:
            raise classify_anthropic_error(exc) from exc

        if getattr(response, "stop_reason", None) == "refusal":
            raise EnrichmentError("Model refused the request", CONTENT_POLICY)
        text = response.content[0].text if response.content else ""
        if not text.strip():
            raise EnrichmentError("Empty completion", INVALID_RESPONSE)

        return LLMResponse(
            text=text,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            model=model,
        )
