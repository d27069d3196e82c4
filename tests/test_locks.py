"""Tests for run leases."""

from __future__ import annotations

from datetime import timedelta

import pytest

from govsignals.db import get_connection
from govsignals.errors import LockHeld
from govsignals.locks import RunLock
from govsignals.models import utcnow


def test_second_holder_is_refused(db_conn, sample_config):
    other_conn = get_connection(sample_config["database"]["path"])
    try:
        first = RunLock(db_conn, "aggregate")
        second = RunLock(other_conn, "aggregate")
        assert first.acquire() is True
        assert second.acquire() is False
        first.release()
        assert second.acquire() is True
        second.release()
    finally:
        other_conn.close()


def test_locks_are_per_name(db_conn):
    assert RunLock(db_conn, "aggregate").acquire() is True
    assert RunLock(db_conn, "enrich").acquire() is True


def test_expired_lease_is_reclaimed(db_conn):
    stale = RunLock(db_conn, "aggregate", ttl_seconds=60)
    assert stale.acquire(now=utcnow() - timedelta(minutes=5))

    fresh = RunLock(db_conn, "aggregate", ttl_seconds=60)
    assert fresh.acquire() is True


def test_release_only_removes_own_lease(db_conn):
    holder = RunLock(db_conn, "aggregate")
    intruder = RunLock(db_conn, "aggregate")
    holder.acquire()
    intruder.release()
    assert RunLock(db_conn, "aggregate").acquire() is False


def test_context_manager_releases(db_conn):
    with RunLock(db_conn, "enrich") as lock:
        assert lock.held
    assert not lock.held
    assert RunLock(db_conn, "enrich").acquire() is True


def test_context_manager_refuses_held_lease(db_conn):
    holder = RunLock(db_conn, "enrich")
    assert holder.acquire()
    intruder = RunLock(db_conn, "enrich")
    with pytest.raises(LockHeld):
        with intruder:
            pass
    assert not intruder.held
    assert holder.held
