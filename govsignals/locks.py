"""Row leases in ``run_locks`` so overlapping scheduled runs skip."""

from __future__ import annotations

import logging
import sqlite3
import uuid
from datetime import datetime, timedelta

from govsignals.db import write_transaction
from govsignals.errors import LockHeld
from govsignals.models import utcnow

logger = logging.getLogger(__name__)


class RunLock:
    """Named lease held by one run at a time.

    A lease older than ``ttl_seconds`` is treated as abandoned (crashed run)
    and may be taken over.
    """

    def __init__(self, conn: sqlite3.Connection, name: str, ttl_seconds: int = 900):
        self.conn = conn
        self.name = name
        self.ttl_seconds = ttl_seconds
        self.owner = uuid.uuid4().hex
        self.held = False

    def acquire(self, now: datetime | None = None) -> bool:
        now = now or utcnow()
        expires = now + timedelta(seconds=self.ttl_seconds)
        with write_transaction(self.conn):
            row = self.conn.execute(
                "SELECT owner, expires_at FROM run_locks WHERE name = ?", (self.name,),
            ).fetchone()
            if row is not None and row["owner"] != self.owner:
                if datetime.fromisoformat(row["expires_at"]) > now:
                    logger.info("Lock '%s' held by another run, skipping", self.name)
                    return False
                logger.warning("Reclaiming expired lock '%s'", self.name)
            self.conn.execute(
                """INSERT INTO run_locks (name, owner, acquired_at, expires_at)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(name) DO UPDATE SET owner = excluded.owner,
                    acquired_at = excluded.acquired_at, expires_at = excluded.expires_at""",
                (self.name, self.owner, now.isoformat(), expires.isoformat()),
            )
        self.held = True
        return True

    def release(self) -> None:
        if not self.held:
            return
        self.conn.execute(
            "DELETE FROM run_locks WHERE name = ? AND owner = ?", (self.name, self.owner),
        )
        self.conn.commit()
        self.held = False

    def __enter__(self) -> RunLock:
        if not self.acquire():
            raise LockHeld(f"Lock '{self.name}' is held by another run")
        return self

    def __exit__(self, *exc) -> None:
        self.release()
