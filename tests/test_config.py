"""Tests for config loading, env var resolution and the feed registry."""

from __future__ import annotations

import pytest

from govsignals.config import (
    default_category,
    get_db_path,
    get_enrichment_config,
    get_fetch_config,
    get_llm_task_config,
    get_scheduler_secret,
    load_config,
    load_feed_sources,
)
from govsignals.errors import ConfigurationError


def test_load_config(sample_config):
    """Config loads and has expected structure."""
    assert "llm" in sample_config
    assert "feeds" in sample_config
    assert "database" in sample_config


def test_env_var_resolution(tmp_path, monkeypatch):
    """Environment variables in ${VAR} format are resolved."""
    monkeypatch.setenv("TEST_API_KEY", "my-secret-key")
    cfg_path = tmp_path / "config.yaml"
    cfg_path.write_text("""
llm:
  providers:
    test:
      api_key: "${TEST_API_KEY}"
      base_url: "https://api.example.com"
""")
    config = load_config(str(cfg_path))
    assert config["llm"]["providers"]["test"]["api_key"] == "my-secret-key"


def test_missing_config_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(str(tmp_path / "nope.yaml"))


def test_load_feed_sources(sample_config):
    """Feeds are keyed by slug with per-language URLs."""
    sources = {s.id: s for s in load_feed_sources(sample_config)}
    assert set(sources) == {"td_notices", "hko_warnings"}
    td = sources["td_notices"]
    assert td.department == "Transport Department"
    assert set(td.language_urls) == {"en", "zh-TW"}
    assert td.category == "transport_notice"
    assert td.dialect == "rss"


def test_default_category_by_slug_prefix():
    assert default_category("hko_warnings") == "weather_warning"
    assert default_category("chp_press") == "health_alert"
    assert default_category("misc_feed") == "administrative"


def test_feed_without_urls_rejected():
    config = {"feeds": {"td_notices": {"urls": {}}}}
    with pytest.raises(ConfigurationError, match="no language URLs"):
        load_feed_sources(config)


def test_feed_with_unknown_dialect_rejected():
    config = {"feeds": {"td_notices": {"urls": {"en": "https://x"}, "dialect": "json"}}}
    with pytest.raises(ConfigurationError, match="unknown dialect"):
        load_feed_sources(config)


def test_feed_with_too_many_languages_rejected():
    urls = {"en": "a", "zh-TW": "b", "zh-CN": "c", "fr": "d"}
    with pytest.raises(ConfigurationError):
        load_feed_sources({"feeds": {"x": {"urls": urls}}})


def test_get_llm_task_config(sample_config):
    """Task-to-provider mapping works."""
    cfg = get_llm_task_config(sample_config, "enrich")
    assert cfg["provider_name"] == "mock"
    assert cfg["provider_type"] == "openai_compatible"
    assert cfg["model"] == "test-model"
    assert cfg["max_retries"] == 0


def test_defaults_when_sections_missing():
    fetch = get_fetch_config({})
    assert fetch["max_concurrency"] == 3
    assert fetch["backfill_body"] is False
    assert fetch["backfill_max_items"] == 5
    assert fetch["backfill_budget_seconds"] == 20.0
    enrichment = get_enrichment_config({})
    assert enrichment["batch_size"] == 5
    assert enrichment["delay_seconds"] == 2.0
    assert get_scheduler_secret({}) == ""


def test_get_db_path(sample_config):
    """DB path is extracted from config."""
    path = get_db_path(sample_config)
    assert path.endswith("test.db")
