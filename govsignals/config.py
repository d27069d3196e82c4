"""Load and validate configuration from YAML with env var substitution."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml

from govsignals.errors import ConfigurationError
from govsignals.models import FeedSource

# Slug prefix -> category, for feeds that do not declare one
CATEGORY_BY_PREFIX = {
    "td_": "transport_notice",
    "hko_": "weather_warning",
    "hkma_": "monetary_press",
    "chp_": "health_alert",
    "hkpf_": "police",
    "fsd_": "emergency",
    "edb_": "education",
    "immd_": "immigration",
    "lands_": "lands",
}

DEFAULT_CATEGORY = "administrative"

DIALECTS = ("rss", "multilingual_xml", "generic_xml")


def _load_dotenv(path: str | Path = ".env") -> None:
    """Load a .env file into os.environ (without overwriting existing vars)."""
    env_path = Path(path)
    if not env_path.is_file():
        return
    with open(env_path) as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, _, value = line.partition("=")
            key = key.strip()
            value = value.strip().strip("'\"")
            if key and key not in os.environ:
                os.environ[key] = value


def _resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ${ENV_VAR} patterns in config values."""
    if isinstance(value, str):
        pattern = re.compile(r"\$\{([^}]+)\}")
        match = pattern.search(value)
        if match:
            if match.group(0) == value:
                return os.environ.get(match.group(1), "")
            return pattern.sub(lambda m: os.environ.get(m.group(1), ""), value)
        return value
    if isinstance(value, dict):
        return {k: _resolve_env_vars(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_resolve_env_vars(item) for item in value]
    return value


def load_config(path: str | Path = "config.yaml") -> dict[str, Any]:
    """Load config from YAML file and resolve environment variables."""
    _load_dotenv()

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    return _resolve_env_vars(raw)


def default_category(slug: str) -> str:
    for prefix, category in CATEGORY_BY_PREFIX.items():
        if slug.startswith(prefix):
            return category
    return DEFAULT_CATEGORY


def load_feed_sources(config: dict) -> list[FeedSource]:
    """Build the feed registry from the ``feeds`` config section."""
    sources = []
    for slug, cfg in (config.get("feeds") or {}).items():
        cfg = cfg or {}
        urls = {lang: url for lang, url in (cfg.get("urls") or {}).items() if url}
        if not urls:
            raise ConfigurationError(f"Feed '{slug}' has no language URLs")
        if len(urls) > 3:
            raise ConfigurationError(f"Feed '{slug}' has more than three language URLs")
        dialect = cfg.get("dialect", "rss")
        if dialect not in DIALECTS:
            raise ConfigurationError(f"Feed '{slug}' has unknown dialect '{dialect}'")
        sources.append(
            FeedSource(
                id=str(cfg.get("id", slug)),
                base_slug=slug,
                department=cfg.get("department", ""),
                category=cfg.get("category") or default_category(slug),
                language_urls=urls,
                active=bool(cfg.get("active", True)),
                dialect=dialect,
                time_bucket_minutes=int(cfg.get("time_bucket_minutes", 1)),
                notice_id_regex=cfg.get("notice_id_regex"),
                refresh_minutes=int(cfg.get("refresh_minutes", 0)),
            )
        )
    return sources


def get_fetch_config(config: dict) -> dict:
    cfg = config.get("fetch", {})
    return {
        "timeout_seconds": float(cfg.get("timeout_seconds", 20)),
        "max_concurrency": int(cfg.get("max_concurrency", 3)),
        "user_agent": cfg.get(
            "user_agent", "Mozilla/5.0 (compatible; GovSignals/1.0)",
        ),
        "backfill_body": bool(cfg.get("backfill_body", False)),
        "backfill_min_chars": int(cfg.get("backfill_min_chars", 80)),
        "backfill_max_items": int(cfg.get("backfill_max_items", 5)),
        "backfill_budget_seconds": float(cfg.get("backfill_budget_seconds", 20)),
    }


def get_grouping_config(config: dict) -> dict:
    cfg = config.get("grouping", {})
    return {"min_title_chars": int(cfg.get("min_title_chars", 4))}


def get_enrichment_config(config: dict) -> dict:
    cfg = config.get("enrichment", {})
    return {
        "batch_size": int(cfg.get("batch_size", 5)),
        "delay_seconds": float(cfg.get("delay_seconds", 2.0)),
        "timeout_seconds": float(cfg.get("timeout_seconds", 90)),
        "image_timeout_seconds": float(cfg.get("image_timeout_seconds", 20)),
        "max_batches": int(cfg.get("max_batches", 1)),
    }


def get_llm_task_config(config: dict, task: str) -> dict:
    """Get provider name and model for a given LLM task."""
    tasks = config.get("llm", {}).get("tasks", {})
    task_cfg = tasks.get(task, {})
    provider_name = task_cfg.get("provider", "perplexity")
    model_override = task_cfg.get("model")

    providers = config.get("llm", {}).get("providers", {})
    provider_cfg = providers.get(provider_name, {})

    return {
        "provider_name": provider_name,
        "provider_type": provider_cfg.get("type", "openai_compatible"),
        "api_key": provider_cfg.get("api_key", ""),
        "base_url": provider_cfg.get("base_url", ""),
        "model": model_override or provider_cfg.get("default_model", ""),
        "max_retries": provider_cfg.get("max_retries", 2),
        "timeout": provider_cfg.get("timeout", 90),
        "json_mode": bool(provider_cfg.get("json_mode", False)),
    }


def get_image_config(config: dict) -> dict:
    cfg = config.get("images", {})
    return {
        "provider": cfg.get("provider", "unsplash"),
        "access_key": cfg.get("access_key", ""),
        "base_url": cfg.get("base_url", "https://api.unsplash.com"),
        "fallbacks": cfg.get("fallbacks", {}) or {},
    }


def get_scheduler_secret(config: dict) -> str:
    return config.get("scheduler", {}).get("secret", "") or ""


def get_lock_ttl(config: dict) -> int:
    return int(config.get("scheduler", {}).get("lock_ttl_seconds", 900))


def get_db_path(config: dict) -> str:
    """Get database path from config."""
    return config.get("database", {}).get("path", "data/signals.db")
