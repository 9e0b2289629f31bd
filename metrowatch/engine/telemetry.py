"""Lifecycle tracking events (start / stop / restart) stored in SQLite."""
from __future__ import annotations

import json
import re
import sqlite3
from contextlib import closing
from datetime import datetime, timedelta, timezone
from pathlib import Path


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso_utc(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).isoformat()


def _parse_time_range(time_range: str) -> timedelta:
    match = re.match(r"^\s*(\d+)\s*([mhd])\s*$", time_range)
    if not match:
        return timedelta(hours=24)
    quantity = int(match.group(1))
    unit = match.group(2)
    if unit == "m":
        return timedelta(minutes=quantity)
    if unit == "h":
        return timedelta(hours=quantity)
    return timedelta(days=quantity)


class TelemetryCollector:
    """Records named tracking events such as ``metro:start``.

    Every call opens and closes its own connection, so a collector can be
    used from worker threads.
    """

    def __init__(self, db_path: Path):
        self._db_path = db_path
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    def _connect(self) -> closing[sqlite3.Connection]:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return closing(conn)

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp TEXT NOT NULL,
                    name TEXT NOT NULL,
                    tags_json TEXT NOT NULL DEFAULT '{}'
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_events_name_ts ON events(name, timestamp)"
            )
            conn.commit()

    def record_event(self, name: str, tags: dict | None = None) -> None:
        """Record one tracking event. Blocking; async callers use a thread."""
        payload = json.dumps(tags or {}, sort_keys=True)
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO events(timestamp, name, tags_json) VALUES (?, ?, ?)",
                (_iso_utc(_utc_now()), name, payload),
            )
            conn.commit()

    def get_summary(self, time_range: str = "24h") -> dict[str, int]:
        """Event counts by name within *time_range* (e.g. ``30m``, ``24h``, ``7d``)."""
        cutoff = _iso_utc(_utc_now() - _parse_time_range(time_range))
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT name, COUNT(*) AS total
                FROM events
                WHERE timestamp >= ?
                GROUP BY name
                ORDER BY name ASC
                """,
                (cutoff,),
            ).fetchall()
        return {str(row["name"]): int(row["total"]) for row in rows}
