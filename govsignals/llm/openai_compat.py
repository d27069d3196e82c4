"""OpenAI-compatible LLM provider (Perplexity, DeepSeek, Ollama, vLLM, etc.)."""

from __future__ import annotations

import logging

import httpx

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

_QUOTA_MARKERS = ("quota", "insufficient", "billing", "credit")
_POLICY_MARKERS = ("content policy", "content_policy", "safety", "moderation")


def classify_http_error(status_code: int, body: str) -> EnrichmentError:
    """Map an HTTP failure from a chat-completions API to an error category."""
    text = body.lower()
    message = f"HTTP {status_code}: {body[:200]}"
    if status_code in (401, 403):
        return EnrichmentError(message, AUTH)
    if status_code == 402 or any(m in text for m in _QUOTA_MARKERS):
        return EnrichmentError(message, QUOTA)
    if status_code == 429:
        return EnrichmentError(message, RATE_LIMIT)
    if any(m in text for m in _POLICY_MARKERS):
        return EnrichmentError(message, CONTENT_POLICY)
    if status_code == 408:
        return EnrichmentError(message, TIMEOUT)
    if status_code >= 500:
        return EnrichmentError(message, UPSTREAM)
    return EnrichmentError(message, INVALID_RESPONSE)


@register_provider("openai_compatible")
class OpenAICompatibleProvider(BaseLLMProvider):
    """Provider for any OpenAI-compatible API."""

    @property
    def provider_name(self) -> str:
        return "openai_compatible"

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
        url = f"{self.base_url.rstrip('/')}/chat/completions"

        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        payload = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if self.json_mode:
            payload["response_format"] = {"type": "json_object"}

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(url, json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            raise EnrichmentError(f"Request timed out: {exc}", TIMEOUT) from exc
        except httpx.HTTPError as exc:
            raise EnrichmentError(f"{type(exc).__name__}: {exc}", UPSTREAM) from exc

        if resp.status_code >= 400:
            raise classify_http_error(resp.status_code, resp.text)

        try:
            data = resp.json()
            choice = data["choices"][0]
            text = choice["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise EnrichmentError(f"Malformed completion payload: {exc}", INVALID_RESPONSE) from exc

        if choice.get("finish_reason") == "content_filter":
            raise EnrichmentError("Completion blocked by content filter", CONTENT_POLICY)
        if not text or not text.strip():
            raise EnrichmentError("Empty completion", INVALID_RESPONSE)

        usage = data.get("usage") or {}
        return LLMResponse(
            text=text,
            input_tokens=usage.get("prompt_tokens", 0),
            output_tokens=usage.get("completion_tokens", 0),
            model=model,
            citations=[c for c in data.get("citations") or [] if isinstance(c, str)],
        )
