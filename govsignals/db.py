"""SQLite schema and the signal store: idempotent upserts, conditional
status transitions, feed cursors and the public read view."""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path

from govsignals.models import (
    ENRICHED,
    ENRICHMENT_TRANSITIONS,
    FAILED,
    IMAGE_STATUSES,
    PENDING,
    READY,
    EnrichedFields,
    FeedSource,
    LanguageContent,
    PipelineRun,
    Signal,
    utcnow,
)
from govsignals.process.merge import earliest_published_at, merge_content_maps

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS feed_sources (
    id TEXT PRIMARY KEY,
    base_slug TEXT UNIQUE NOT NULL,
    department TEXT NOT NULL DEFAULT '',
    category TEXT NOT NULL,
    language_urls TEXT NOT NULL DEFAULT '{}',
    active INTEGER NOT NULL DEFAULT 1,
    dialect TEXT NOT NULL DEFAULT 'rss',
    time_bucket_minutes INTEGER NOT NULL DEFAULT 1,
    notice_id_regex TEXT,
    refresh_minutes INTEGER NOT NULL DEFAULT 0,
    last_fetch_cursor TEXT NOT NULL DEFAULT '{}',
    fetch_error_count INTEGER NOT NULL DEFAULT 0,
    last_fetch_attempt TEXT
);

CREATE TABLE IF NOT EXISTS signals (
    id TEXT PRIMARY KEY,
    feed_source_id TEXT NOT NULL,
    category TEXT NOT NULL,
    source_published_at TEXT,
    content TEXT NOT NULL DEFAULT '{}',
    severity INTEGER NOT NULL DEFAULT 2,
    relevance_score REAL NOT NULL DEFAULT 0.0,
    enrichment_status TEXT NOT NULL DEFAULT 'pending'
        CHECK (enrichment_status IN ('pending', 'enriched', 'ready', 'failed')),
    image_status TEXT NOT NULL DEFAULT 'pending'
        CHECK (image_status IN ('pending', 'ready', 'failed')),
    enriched_fields TEXT NOT NULL DEFAULT '{}',
    enrichment_error TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS public_signals_view (
    id TEXT PRIMARY KEY,
    feed_source_id TEXT NOT NULL,
    department TEXT NOT NULL DEFAULT '',
    category TEXT NOT NULL,
    source_label TEXT NOT NULL DEFAULT 'government',
    language TEXT NOT NULL,
    title TEXT NOT NULL,
    summary TEXT,
    body TEXT NOT NULL DEFAULT '',
    link TEXT NOT NULL DEFAULT '',
    image_url TEXT,
    languages TEXT NOT NULL DEFAULT '[]',
    content TEXT NOT NULL DEFAULT '{}',
    severity INTEGER NOT NULL,
    relevance_score REAL NOT NULL,
    enrichment_status TEXT NOT NULL,
    image_status TEXT NOT NULL,
    degraded INTEGER NOT NULL DEFAULT 0,
    published_at TEXT,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS pipeline_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    kind TEXT NOT NULL,
    started_at TEXT NOT NULL,
    finished_at TEXT,
    status TEXT NOT NULL DEFAULT 'running',
    items_processed INTEGER NOT NULL DEFAULT 0,
    signals_grouped INTEGER NOT NULL DEFAULT 0,
    signals_stored INTEGER NOT NULL DEFAULT 0,
    error_count INTEGER NOT NULL DEFAULT 0,
    cost_usd REAL NOT NULL DEFAULT 0.0
);

CREATE TABLE IF NOT EXISTS run_locks (
    name TEXT PRIMARY KEY,
    owner TEXT NOT NULL,
    acquired_at TEXT NOT NULL,
    expires_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_signals_feed ON signals(feed_source_id);
CREATE INDEX IF NOT EXISTS idx_signals_enrichment_status ON signals(enrichment_status);
CREATE INDEX IF NOT EXISTS idx_signals_published ON signals(source_published_at);
CREATE INDEX IF NOT EXISTS idx_public_view_published ON public_signals_view(published_at);
CREATE INDEX IF NOT EXISTS idx_public_view_category ON public_signals_view(category);
"""


def get_connection(db_path: str) -> sqlite3.Connection:
    """Get a SQLite connection with WAL mode enabled."""
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path), timeout=30)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: str) -> None:
    """Create all tables and set schema version."""
    conn = get_connection(db_path)
    try:
        conn.executescript(SCHEMA_SQL)
        conn.execute(
            "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
            (SCHEMA_VERSION,),
        )
        conn.commit()
    finally:
        conn.close()


@contextmanager
def write_transaction(conn: sqlite3.Connection):
    """Serialize a read-modify-write against every other writer of the file."""
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.rollback()
        raise
    else:
        conn.commit()


def _dt_str(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    return dt.isoformat()


def _parse_dt(s: str | None) -> datetime | None:
    if s is None:
        return None
    return datetime.fromisoformat(s)


# --- Feed source helpers ---


def sync_feed_sources(conn: sqlite3.Connection, sources: list[FeedSource]) -> None:
    """Upsert configured feeds, keeping cursors and error counters.

    Feeds that disappeared from configuration are deactivated, not deleted.
    """
    with write_transaction(conn):
        for source in sources:
            conn.execute(
                """INSERT INTO feed_sources
                   (id, base_slug, department, category, language_urls, active,
                    dialect, time_bucket_minutes, notice_id_regex, refresh_minutes)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                    base_slug = excluded.base_slug,
                    department = excluded.department,
                    category = excluded.category,
                    language_urls = excluded.language_urls,
                    active = excluded.active,
                    dialect = excluded.dialect,
                    time_bucket_minutes = excluded.time_bucket_minutes,
                    notice_id_regex = excluded.notice_id_regex,
                    refresh_minutes = excluded.refresh_minutes""",
                (
                    source.id,
                    source.base_slug,
                    source.department,
                    source.category,
                    json.dumps(source.language_urls, sort_keys=True),
                    int(source.active),
                    source.dialect,
                    source.time_bucket_minutes,
                    source.notice_id_regex,
                    source.refresh_minutes,
                ),
            )
        ids = [s.id for s in sources]
        if ids:
            marks = ", ".join("?" for _ in ids)
            conn.execute(f"UPDATE feed_sources SET active = 0 WHERE id NOT IN ({marks})", ids)
        else:
            conn.execute("UPDATE feed_sources SET active = 0")


def get_feed_sources(conn: sqlite3.Connection, active_only: bool = False) -> list[FeedSource]:
    sql = "SELECT * FROM feed_sources"
    if active_only:
        sql += " WHERE active = 1"
    rows = conn.execute(sql + " ORDER BY id").fetchall()
    return [_row_to_feed_source(row) for row in rows]


def get_active_feed_sources(conn: sqlite3.Connection) -> list[FeedSource]:
    return get_feed_sources(conn, active_only=True)


def record_fetch_success(
    conn: sqlite3.Connection, source_id: str, language: str, at: datetime | None = None,
) -> None:
    """Advance the language cursor and reset the error counter."""
    at = at or utcnow()
    with write_transaction(conn):
        row = conn.execute(
            "SELECT last_fetch_cursor FROM feed_sources WHERE id = ?", (source_id,),
        ).fetchone()
        if row is None:
            return
        cursor = json.loads(row["last_fetch_cursor"] or "{}")
        cursor[language] = _dt_str(at)
        conn.execute(
            """UPDATE feed_sources SET last_fetch_cursor = ?, fetch_error_count = 0,
               last_fetch_attempt = ? WHERE id = ?""",
            (json.dumps(cursor, sort_keys=True), _dt_str(at), source_id),
        )


def record_fetch_failure(
    conn: sqlite3.Connection, source_id: str, at: datetime | None = None,
) -> None:
    conn.execute(
        """UPDATE feed_sources SET fetch_error_count = fetch_error_count + 1,
           last_fetch_attempt = ? WHERE id = ?""",
        (_dt_str(at or utcnow()), source_id),
    )
    conn.commit()


def get_stale_feeds(
    conn: sqlite3.Connection, max_age_hours: float = 24, now: datetime | None = None,
) -> list[dict]:
    """Active feed languages whose last successful fetch is missing or old."""
    now = now or utcnow()
    limit = now - timedelta(hours=max_age_hours)
    stale = []
    for source in get_active_feed_sources(conn):
        for language in sorted(source.language_urls):
            cursor = source.last_fetch_cursor.get(language)
            if cursor is None or cursor < limit:
                stale.append({
                    "feed": source.id,
                    "language": language,
                    "last_fetch": _dt_str(cursor),
                    "error_count": source.fetch_error_count,
                })
    return stale


def _row_to_feed_source(row: sqlite3.Row) -> FeedSource:
    cursor = {
        lang: _parse_dt(value)
        for lang, value in json.loads(row["last_fetch_cursor"] or "{}").items()
        if value
    }
    return FeedSource(
        id=row["id"],
        base_slug=row["base_slug"],
        department=row["department"],
        category=row["category"],
        language_urls=json.loads(row["language_urls"] or "{}"),
        active=bool(row["active"]),
        dialect=row["dialect"],
        time_bucket_minutes=row["time_bucket_minutes"],
        notice_id_regex=row["notice_id_regex"],
        refresh_minutes=row["refresh_minutes"],
        last_fetch_cursor=cursor,
        fetch_error_count=row["fetch_error_count"],
        last_fetch_attempt=_parse_dt(row["last_fetch_attempt"]),
    )


# --- Signal helpers ---


def _content_json(content: dict[str, LanguageContent]) -> str:
    return json.dumps(
        {lang: c.to_dict() for lang, c in content.items()},
        ensure_ascii=False, sort_keys=True,
    )


def upsert_signal(conn: sqlite3.Connection, signal: Signal) -> bool:
    """Insert a new signal or merge it into the stored one.

    The stored content map only grows, the earliest publish time wins and
    enrichment/image statuses are never touched on update. Returns True
    when a row was inserted or changed.
    """
    now = utcnow()
    with write_transaction(conn):
        row = conn.execute("SELECT * FROM signals WHERE id = ?", (signal.id,)).fetchone()
        if row is None:
            conn.execute(
                """INSERT INTO signals
                   (id, feed_source_id, category, source_published_at, content,
                    severity, relevance_score, enrichment_status, image_status,
                    enriched_fields, enrichment_error, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    signal.id,
                    signal.feed_source_id,
                    signal.category,
                    _dt_str(signal.source_published_at),
                    _content_json(signal.content),
                    signal.severity,
                    signal.relevance_score,
                    signal.enrichment_status,
                    signal.image_status,
                    json.dumps(signal.enriched_fields.to_dict(), ensure_ascii=False),
                    signal.enrichment_error,
                    _dt_str(signal.created_at),
                    _dt_str(now),
                ),
            )
            return True

        stored = _row_to_signal(row)
        content = merge_content_maps(stored.content, signal.content)
        published = earliest_published_at(stored.source_published_at, signal.source_published_at)

        if (
            content == stored.content
            and published == stored.source_published_at
            and signal.severity == stored.severity
            and signal.relevance_score == stored.relevance_score
            and signal.category == stored.category
        ):
            return False

        conn.execute(
            """UPDATE signals SET category = ?, source_published_at = ?, content = ?,
               severity = ?, relevance_score = ?, updated_at = ?
               WHERE id = ?""",
            (
                signal.category,
                _dt_str(published),
                _content_json(content),
                signal.severity,
                signal.relevance_score,
                _dt_str(now),
                signal.id,
            ),
        )
        return True


def get_signal(conn: sqlite3.Connection, signal_id: str) -> Signal | None:
    row = conn.execute("SELECT * FROM signals WHERE id = ?", (signal_id,)).fetchone()
    return _row_to_signal(row) if row else None


def get_signals(conn: sqlite3.Connection, feed_source_id: str | None = None) -> list[Signal]:
    if feed_source_id is None:
        rows = conn.execute("SELECT * FROM signals ORDER BY id").fetchall()
    else:
        rows = conn.execute(
            "SELECT * FROM signals WHERE feed_source_id = ? ORDER BY id", (feed_source_id,),
        ).fetchall()
    return [_row_to_signal(row) for row in rows]


def get_pending_signals(conn: sqlite3.Connection, limit: int = 5) -> list[Signal]:
    """Signals whose enrichment has not settled, oldest first."""
    rows = conn.execute(
        """SELECT * FROM signals WHERE enrichment_status IN (?, ?)
           ORDER BY created_at, id LIMIT ?""",
        (PENDING, ENRICHED, limit),
    ).fetchall()
    return [_row_to_signal(row) for row in rows]


def advance_enrichment_status(
    conn: sqlite3.Connection,
    signal_id: str,
    status: str,
    fields: EnrichedFields | None = None,
    error: str | None = None,
) -> bool:
    """Move a signal forward in the enrichment state machine.

    The update is conditional on the current status being an allowed
    predecessor, so regressions (and writes racing a finished run) are
    no-ops. Returns True when the transition happened.
    """
    allowed = ENRICHMENT_TRANSITIONS.get(status)
    if not allowed:
        logger.debug("Ignoring transition of %s to '%s'", signal_id, status)
        return False

    sets = ["enrichment_status = ?", "updated_at = ?"]
    params: list = [status, _dt_str(utcnow())]
    if fields is not None:
        sets.append("enriched_fields = ?")
        params.append(json.dumps(fields.to_dict(), ensure_ascii=False))
    if error is not None:
        sets.append("enrichment_error = ?")
        params.append(error)

    marks = ", ".join("?" for _ in allowed)
    cur = conn.execute(
        f"UPDATE signals SET {', '.join(sets)} WHERE id = ? AND enrichment_status IN ({marks})",
        (*params, signal_id, *allowed),
    )
    conn.commit()
    return cur.rowcount == 1


def set_image_status(
    conn: sqlite3.Connection,
    signal_id: str,
    status: str,
    url: str | None = None,
    license: str | None = None,
    attribution: str | None = None,
    source: str | None = None,
) -> bool:
    """Settle the image status (only from pending) and record image metadata."""
    if status not in IMAGE_STATUSES or status == PENDING:
        return False
    with write_transaction(conn):
        row = conn.execute(
            "SELECT image_status, enriched_fields FROM signals WHERE id = ?", (signal_id,),
        ).fetchone()
        if row is None or row["image_status"] != PENDING:
            return False
        fields = EnrichedFields.from_dict(json.loads(row["enriched_fields"] or "{}"))
        if status == READY:
            fields.image_url = url
            fields.image_license = license
            fields.image_attribution = attribution
            fields.image_source = source
        conn.execute(
            """UPDATE signals SET image_status = ?, enriched_fields = ?, updated_at = ?
               WHERE id = ?""",
            (status, json.dumps(fields.to_dict(), ensure_ascii=False), _dt_str(utcnow()), signal_id),
        )
        return True


def _row_to_signal(row: sqlite3.Row) -> Signal:
    content = {
        lang: LanguageContent.from_dict(value)
        for lang, value in json.loads(row["content"] or "{}").items()
    }
    return Signal(
        id=row["id"],
        feed_source_id=row["feed_source_id"],
        category=row["category"],
        source_published_at=_parse_dt(row["source_published_at"]),
        content=content,
        severity=row["severity"],
        relevance_score=row["relevance_score"],
        enrichment_status=row["enrichment_status"],
        image_status=row["image_status"],
        enriched_fields=EnrichedFields.from_dict(json.loads(row["enriched_fields"] or "{}")),
        enrichment_error=row["enrichment_error"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


# --- Public read view ---


def _public_row(signal: Signal, departments: dict[str, str]) -> tuple | None:
    lang = signal.primary_language()
    if lang is None:
        return None
    raw = signal.content[lang]
    fields = signal.enriched_fields
    use_enriched = signal.enrichment_status in (ENRICHED, READY) and not fields.degraded

    title = (fields.title if use_enriched and fields.title else None) or raw.title
    summary = fields.summary if use_enriched else None
    body = (fields.body if use_enriched and fields.body else None) or raw.body
    if not body and signal.enrichment_status == FAILED:
        body = fields.body or ""

    return (
        signal.id,
        signal.feed_source_id,
        departments.get(signal.feed_source_id, ""),
        signal.category,
        "government",
        lang,
        title,
        summary,
        body,
        raw.link,
        fields.image_url if signal.image_status == READY else None,
        json.dumps(sorted(signal.content)),
        _content_json(signal.content),
        signal.severity,
        signal.relevance_score,
        signal.enrichment_status,
        signal.image_status,
        int(signal.enrichment_status == FAILED),
        _dt_str(signal.source_published_at),
        _dt_str(signal.updated_at),
    )


def refresh_public_view(conn: sqlite3.Connection) -> int:
    """Rebuild the flattened read view from the signals table.

    Meant to run once per batch of writes. Returns the number of rows. The
    signals are read inside the write transaction so the view is a
    consistent snapshot.
    """
    with write_transaction(conn):
        departments = {
            row["id"]: row["department"]
            for row in conn.execute("SELECT id, department FROM feed_sources").fetchall()
        }
        rows = []
        for signal in get_signals(conn):
            public = _public_row(signal, departments)
            if public is not None:
                rows.append(public)

        conn.execute("DELETE FROM public_signals_view")
        conn.executemany(
            """INSERT INTO public_signals_view
               (id, feed_source_id, department, category, source_label, language,
                title, summary, body, link, image_url, languages, content,
                severity, relevance_score, enrichment_status, image_status,
                degraded, published_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            rows,
        )
    logger.info("Public view refreshed with %d signals", len(rows))
    return len(rows)


def get_public_signals(
    conn: sqlite3.Connection, limit: int = 50, category: str | None = None,
) -> list[dict]:
    sql = "SELECT * FROM public_signals_view"
    params: list = []
    if category:
        sql += " WHERE category = ?"
        params.append(category)
    sql += " ORDER BY published_at DESC, relevance_score DESC LIMIT ?"
    params.append(limit)
    result = []
    for row in conn.execute(sql, params).fetchall():
        item = dict(row)
        item["languages"] = json.loads(item["languages"])
        item["content"] = json.loads(item["content"])
        item["degraded"] = bool(item["degraded"])
        result.append(item)
    return result


def get_signal_statistics(conn: sqlite3.Connection) -> dict:
    """Totals by enrichment status and feed, plus language completeness."""
    stats = {
        "total_signals": 0,
        "by_status": {},
        "by_feed": {},
        "content_completeness": {"multilingual": 0, "english_only": 0, "partial": 0},
    }
    for signal in get_signals(conn):
        stats["total_signals"] += 1
        by_status = stats["by_status"]
        by_status[signal.enrichment_status] = by_status.get(signal.enrichment_status, 0) + 1
        by_feed = stats["by_feed"]
        by_feed[signal.feed_source_id] = by_feed.get(signal.feed_source_id, 0) + 1

        english = signal.content.get("en")
        has_english = bool(english and english.title and english.body)
        if has_english and len(signal.content) > 1:
            stats["content_completeness"]["multilingual"] += 1
        elif has_english:
            stats["content_completeness"]["english_only"] += 1
        else:
            stats["content_completeness"]["partial"] += 1
    return stats


# --- PipelineRun helpers ---


def insert_run(conn: sqlite3.Connection, run: PipelineRun) -> int:
    cur = conn.execute(
        "INSERT INTO pipeline_runs (kind, started_at, status) VALUES (?, ?, ?)",
        (run.kind, _dt_str(run.started_at), run.status),
    )
    conn.commit()
    return cur.lastrowid


def finish_run(conn: sqlite3.Connection, run_id: int, run: PipelineRun) -> None:
    conn.execute(
        """UPDATE pipeline_runs SET
           finished_at = ?, status = ?, items_processed = ?, signals_grouped = ?,
           signals_stored = ?, error_count = ?, cost_usd = ?
           WHERE id = ?""",
        (
            _dt_str(run.finished_at),
            run.status,
            run.items_processed,
            run.signals_grouped,
            run.signals_stored,
            run.error_count,
            run.cost_usd,
            run_id,
        ),
    )
    conn.commit()


def get_recent_runs(conn: sqlite3.Connection, limit: int = 10) -> list[dict]:
    """Fetch recent pipeline runs for stats display."""
    rows = conn.execute(
        "SELECT * FROM pipeline_runs ORDER BY started_at DESC, id DESC LIMIT ?", (limit,),
    ).fetchall()
    return [dict(row) for row in rows]
