"""LLM provider registry and task routing."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from govsignals.llm.base import BaseLLMProvider

PROVIDERS: dict[str, type[BaseLLMProvider]] = {}


def register_provider(name: str):
    """Decorator to register an LLM provider."""

    def decorator(cls):
        PROVIDERS[name] = cls
        return cls

    return decorator


def get_provider_for_task(config: dict, task: str) -> BaseLLMProvider:
    """Build the configured LLM provider for a given task."""
    from govsignals.config import get_llm_task_config
    from govsignals.errors import ConfigurationError

    task_cfg = get_llm_task_config(config, task)
    provider_type = task_cfg["provider_type"]
    if provider_type not in PROVIDERS:
        raise ConfigurationError(f"Unknown LLM provider type: {provider_type}")

    cls = PROVIDERS[provider_type]
    return cls(
        api_key=task_cfg["api_key"],
        base_url=task_cfg["base_url"],
        default_model=task_cfg["model"],
        max_retries=task_cfg["max_retries"],
        timeout=task_cfg["timeout"],
        json_mode=task_cfg["json_mode"],
    )


# Import implementations to trigger registration
from govsignals.llm.anthropic_provider import AnthropicProvider  # noqa: E402, F401
from govsignals.llm.openai_compat import OpenAICompatibleProvider  # noqa: E402, F401
