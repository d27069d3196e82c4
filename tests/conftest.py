"""Shared test fixtures."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from govsignals.config import load_config
from govsignals.db import get_connection, init_db
from govsignals.models import FeedSource, RawItem


@pytest.fixture
def sample_config(tmp_path):
    """Minimal config for testing (no real API keys)."""
    config_text = """
llm:
  providers:
    mock:
      type: "openai_compatible"
      api_key: "test-key"
      base_url: "http://localhost:9999"
      default_model: "test-model"
      max_retries: 0
  tasks:
    enrich: { provider: "mock" }

images:
  provider: "unsplash"
  access_key: ""
  fallbacks:
    default: "https://images.example.com/default.jpg"

scheduler:
  secret: "s3cret"
  lock_ttl_seconds: 60

enrichment:
  batch_size: 5
  delay_seconds: 0
  timeout_seconds: 5
  image_timeout_seconds: 5

feeds:
  td_notices:
    department: "Transport Department"
    urls:
      en: "https://example.gov.hk/td/en.xml"
      zh-TW: "https://example.gov.hk/td/tc.xml"
  hko_warnings:
    department: "Hong Kong Observatory"
    urls:
      en: "https://example.gov.hk/hko/en.xml"

database:
  path: "DB_PATH_PLACEHOLDER"
"""
    db_path = str(tmp_path / "test.db")
    cfg_path = tmp_path / "config.yaml"
    cfg_path.write_text(config_text.replace("DB_PATH_PLACEHOLDER", db_path))
    return load_config(str(cfg_path))


@pytest.fixture
def db_conn(sample_config):
    """Initialized test database connection."""
    db_path = sample_config["database"]["path"]
    init_db(db_path)
    conn = get_connection(db_path)
    yield conn
    conn.close()


@pytest.fixture
def td_source():
    return FeedSource(
        id="td_notices",
        base_slug="td_notices",
        department="Transport Department",
        category="transport_notice",
        language_urls={
            "en": "https://example.gov.hk/td/en.xml",
            "zh-TW": "https://example.gov.hk/td/tc.xml",
        },
    )


@pytest.fixture
def published():
    return datetime(2025, 8, 3, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def make_item(published):
    """Factory for raw items from the td_notices feed."""

    def _make(title, language="en", body="", link="", published_at=published,
              source_id="td_notices"):
        return RawItem(
            source_id=source_id,
            language=language,
            title=title,
            body=body,
            link=link,
            guid=link,
            source_published_at=published_at,
        )

    return _make
