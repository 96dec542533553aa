"""SQLite-backed state: feed table, activation directory, watermark table.

Uses WAL mode + NORMAL synchronous for write throughput while retaining
crash safety.  One connection is shared by every store object and
serialised with a lock; detail-fetch worker threads never touch it.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from typing import Any, Iterable, Iterator, List, Optional, Set

from .common_types import Activation, FeedEntry, LinkedChannel
from .errors import StoreError

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS activations (
  id TEXT PRIMARY KEY,
  name TEXT NOT NULL,
  status TEXT NOT NULL DEFAULT 'active',
  people TEXT NOT NULL DEFAULT '[]',
  keywords TEXT NOT NULL DEFAULT '[]'
);

CREATE TABLE IF NOT EXISTS channel_activations (
  activation_id TEXT NOT NULL,
  elege_channel_id TEXT NOT NULL,
  channel_kind TEXT,
  channel_title TEXT NOT NULL DEFAULT '',
  position INTEGER NOT NULL DEFAULT 0,
  PRIMARY KEY(activation_id, elege_channel_id)
);

CREATE TABLE IF NOT EXISTS intelligence_feed (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  activation_id TEXT NOT NULL,
  external_id TEXT,
  title TEXT NOT NULL,
  summary TEXT NOT NULL DEFAULT '',
  content TEXT NOT NULL DEFAULT '',
  source TEXT NOT NULL DEFAULT '',
  source_type TEXT NOT NULL,
  sentiment TEXT NOT NULL,
  risk_score INTEGER NOT NULL,
  url TEXT NOT NULL,
  keywords TEXT NOT NULL DEFAULT '[]',
  status TEXT NOT NULL DEFAULT 'pending',
  created_at TEXT,
  published_at TEXT,
  classification_metadata TEXT NOT NULL DEFAULT '{}',
  inserted_at TEXT NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS ux_feed_activation_external
  ON intelligence_feed(activation_id, external_id);
CREATE INDEX IF NOT EXISTS idx_feed_url ON intelligence_feed(url);
CREATE INDEX IF NOT EXISTS idx_feed_activation_title ON intelligence_feed(activation_id, title);

CREATE TABLE IF NOT EXISTS sync_watermarks (
  activation_id TEXT NOT NULL,
  source_type TEXT NOT NULL,
  source_key TEXT NOT NULL DEFAULT '',
  last_sync_at TEXT NOT NULL,
  last_item_id TEXT,
  last_item_date TEXT,
  metadata TEXT NOT NULL DEFAULT '{}',
  updated_at TEXT NOT NULL,
  PRIMARY KEY(activation_id, source_type, source_key)
);
"""


def to_iso(dt: datetime | None) -> str | None:
    """Fixed-width UTC ISO string; lexicographic order equals time order."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def from_iso(s: str | None) -> datetime | None:
    if not s:
        return None
    return datetime.strptime(s, "%Y-%m-%dT%H:%M:%S.%fZ").replace(tzinfo=timezone.utc)


def _chunks(seq: List[str], size: int) -> Iterator[List[str]]:
    for i in range(0, len(seq), size):
        yield seq[i:i + size]


class SqliteStore:
    """Shared connection + schema bootstrap."""

    def __init__(self, path: str) -> None:
        self.path = path
        self.conn = sqlite3.connect(path, isolation_level=None, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.lock = threading.RLock()
        self.conn.execute("PRAGMA journal_mode=WAL;")
        self.conn.execute("PRAGMA synchronous=NORMAL;")
        self.conn.execute("PRAGMA busy_timeout=5000;")
        self.conn.executescript(SCHEMA)

    def query(self, sql: str, params: Iterable[Any] = ()) -> List[sqlite3.Row]:
        with self.lock:
            return self.conn.execute(sql, tuple(params)).fetchall()

    def execute(self, sql: str, params: Iterable[Any] = ()) -> sqlite3.Cursor:
        with self.lock:
            return self.conn.execute(sql, tuple(params))

    def close(self) -> None:
        self.conn.close()


# ── Feed ───────────────────────────────────────────────────────


class FeedStore:
    """Existence checks + inserts against ``intelligence_feed``."""

    def __init__(self, db: SqliteStore, chunk_size: int = 50) -> None:
        self.db = db
        self.chunk_size = max(1, chunk_size)

    def _query(self, sql: str, params: Iterable[Any], operation: str) -> List[sqlite3.Row]:
        try:
            return self.db.query(sql, params)
        except sqlite3.Error as exc:
            raise StoreError(f"{operation} failed: {exc}", operation=operation) from exc

    def batch_exists_by_external_id(self, activation_id: str, ids: Iterable[str]) -> Set[str]:
        """Return the subset of *ids* already present in *activation_id*'s feed.

        Queried ``chunk_size`` ids per round-trip to bound statement size.
        """
        unique = list(dict.fromkeys(str(i) for i in ids if i))
        found: Set[str] = set()
        for chunk in _chunks(unique, self.chunk_size):
            marks = ",".join("?" for _ in chunk)
            rows = self._query(
                f"SELECT external_id FROM intelligence_feed "
                f"WHERE activation_id=? AND external_id IN ({marks})",
                [activation_id, *chunk],
                "feed.exists_by_external_id",
            )
            found.update(r["external_id"] for r in rows)
        return found

    def exists_by_url(self, url: str) -> bool:
        """Any activation: a real URL identifies the content globally."""
        row = self._query(
            "SELECT 1 FROM intelligence_feed WHERE url=? LIMIT 1", (url,), "feed.exists_by_url",
        )
        return bool(row)

    def exists_by_title(self, activation_id: str, title: str) -> bool:
        row = self._query(
            "SELECT 1 FROM intelligence_feed WHERE activation_id=? AND title=? LIMIT 1",
            (activation_id, title),
            "feed.exists_by_title",
        )
        return bool(row)

    def insert(self, entry: FeedEntry) -> int:
        """Insert *entry*; returns the new row id.

        Raises ``StoreError`` on constraint violations or any other
        SQLite failure.
        """
        now = to_iso(datetime.now(timezone.utc))
        try:
            cur = self.db.execute(
                "INSERT INTO intelligence_feed(activation_id, external_id, title, summary, content, "
                "source, source_type, sentiment, risk_score, url, keywords, status, created_at, "
                "published_at, classification_metadata, inserted_at) "
                "VALUES(?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)",
                (
                    entry.activation_id,
                    entry.external_id,
                    entry.title,
                    entry.summary,
                    entry.content,
                    entry.source,
                    entry.source_type,
                    entry.sentiment,
                    int(entry.risk_score),
                    entry.url,
                    json.dumps(entry.keywords, ensure_ascii=False),
                    entry.status,
                    to_iso(entry.created_at),
                    to_iso(entry.published_at),
                    json.dumps(entry.classification_metadata, ensure_ascii=False, default=str),
                    now,
                ),
            )
        except sqlite3.Error as exc:
            raise StoreError(f"insert failed: {exc}", operation="feed.insert") from exc
        return int(cur.lastrowid)

    def list_entries(self, activation_id: Optional[str] = None) -> List[dict[str, Any]]:
        """Feed rows (JSON columns decoded), oldest first."""
        if activation_id is None:
            rows = self.db.query("SELECT * FROM intelligence_feed ORDER BY id")
        else:
            rows = self.db.query(
                "SELECT * FROM intelligence_feed WHERE activation_id=? ORDER BY id", (activation_id,),
            )
        out: List[dict[str, Any]] = []
        for r in rows:
            d = dict(r)
            d["keywords"] = json.loads(d["keywords"])
            d["classification_metadata"] = json.loads(d["classification_metadata"])
            out.append(d)
        return out


# ── Activation directory ────────────────────────────────────────


class ActivationDirectory:
    """Read access to activations and their linked channels."""

    def __init__(self, db: SqliteStore) -> None:
        self.db = db

    def list_active(self) -> List[Activation]:
        rows = self.db.query(
            "SELECT id, name, status, people, keywords FROM activations "
            "WHERE status='active' ORDER BY rowid",
        )
        return [
            Activation(
                id=r["id"],
                name=r["name"],
                status=r["status"],
                people=list(json.loads(r["people"] or "[]")),
                keywords=list(json.loads(r["keywords"] or "[]")),
            )
            for r in rows
        ]

    def list_linked_channels(self, activation_id: str) -> List[LinkedChannel]:
        rows = self.db.query(
            "SELECT elege_channel_id, channel_kind, channel_title FROM channel_activations "
            "WHERE activation_id=? ORDER BY position, rowid",
            (activation_id,),
        )
        return [
            LinkedChannel(
                channel_id=str(r["elege_channel_id"]),
                channel_kind=r["channel_kind"],
                channel_title=r["channel_title"] or "",
            )
            for r in rows
        ]

    # ── Admin helpers (seeding, imports) ────────────────────────

    def upsert_activation(self, activation: Activation) -> None:
        self.db.execute(
            "INSERT INTO activations(id, name, status, people, keywords) VALUES(?,?,?,?,?) "
            "ON CONFLICT(id) DO UPDATE SET name=excluded.name, status=excluded.status, "
            "people=excluded.people, keywords=excluded.keywords",
            (
                activation.id,
                activation.name,
                activation.status,
                json.dumps(activation.people, ensure_ascii=False),
                json.dumps(activation.keywords, ensure_ascii=False),
            ),
        )

    def link_channel(self, activation_id: str, channel: LinkedChannel, position: int = 0) -> None:
        kind = None if channel.channel_kind is None else str(channel.channel_kind)
        self.db.execute(
            "INSERT INTO channel_activations(activation_id, elege_channel_id, channel_kind, "
            "channel_title, position) VALUES(?,?,?,?,?) "
            "ON CONFLICT(activation_id, elege_channel_id) DO UPDATE SET "
            "channel_kind=excluded.channel_kind, channel_title=excluded.channel_title",
            (activation_id, channel.channel_id, kind, channel.channel_title, position),
        )
