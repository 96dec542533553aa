"""Per-(activation, source_type, source_key) sync watermarks.

A watermark records how far a key has been synced so the next fetch can
start from there.  Absence is the normal first-run state.  ``set()``
always refreshes ``last_sync_at``; ``last_item_id`` / ``last_item_date``
are only written when given, and a stored ``last_item_date`` is never
replaced by an older one.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from .common_types import Watermark
from .errors import StoreError
from .store_sqlite import SqliteStore, from_iso, to_iso

logger = logging.getLogger(__name__)

# NULL source keys are stored as '' so the primary key stays an exact match.
_NO_KEY = ""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WatermarkStore:
    """Watermark persistence on the ``sync_watermarks`` table."""

    def __init__(self, db: SqliteStore, clock: Callable[[], datetime] = _utcnow) -> None:
        self.db = db
        self.clock = clock

    def get(
        self,
        activation_id: str,
        source_type: str,
        source_key: Optional[str] = None,
    ) -> Optional[Watermark]:
        """Exact-match lookup; ``source_key=None`` is its own key, not a wildcard."""
        try:
            rows = self.db.query(
                "SELECT * FROM sync_watermarks WHERE activation_id=? AND source_type=? AND source_key=?",
                (activation_id, source_type, source_key or _NO_KEY),
            )
        except sqlite3.Error as exc:
            raise StoreError(f"watermark read failed: {exc}", operation="watermark.get") from exc
        if not rows:
            return None
        r = rows[0]
        return Watermark(
            activation_id=r["activation_id"],
            source_type=r["source_type"],
            source_key=r["source_key"] or None,
            last_sync_at=from_iso(r["last_sync_at"]) or self.clock(),
            last_item_id=r["last_item_id"],
            last_item_date=from_iso(r["last_item_date"]),
            metadata=json.loads(r["metadata"] or "{}"),
        )

    def set(
        self,
        activation_id: str,
        source_type: str,
        *,
        source_key: Optional[str] = None,
        last_item_id: Optional[str] = None,
        last_item_date: Optional[datetime] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        """Upsert the watermark for the three-part key.

        Tries the atomic ``INSERT … ON CONFLICT`` first; if that fails,
        retries once with a manual read-modify-write.  Raises
        ``StoreError`` when both paths fail.
        """
        now = to_iso(self.clock())
        key = (activation_id, source_type, source_key or _NO_KEY)
        item_date = to_iso(last_item_date)
        meta = json.dumps(metadata or {}, ensure_ascii=False, default=str)
        try:
            self.db.execute(
                "INSERT INTO sync_watermarks(activation_id, source_type, source_key, last_sync_at, "
                "last_item_id, last_item_date, metadata, updated_at) VALUES(?,?,?,?,?,?,?,?) "
                "ON CONFLICT(activation_id, source_type, source_key) DO UPDATE SET "
                "last_sync_at=excluded.last_sync_at, "
                "last_item_id=COALESCE(excluded.last_item_id, last_item_id), "
                "last_item_date=CASE "
                "  WHEN excluded.last_item_date IS NULL THEN last_item_date "
                "  WHEN last_item_date IS NULL OR excluded.last_item_date > last_item_date "
                "    THEN excluded.last_item_date "
                "  ELSE last_item_date END, "
                "metadata=excluded.metadata, updated_at=excluded.updated_at",
                (*key, now, last_item_id, item_date, meta, now),
            )
            return
        except sqlite3.Error as exc:
            logger.warning(
                "Watermark upsert failed for %s/%s/%s (%s) — falling back to read-modify-write.",
                *key, exc,
            )
        self._manual_upsert(key, now, last_item_id, last_item_date, meta)

    def _manual_upsert(
        self,
        key: tuple[str, str, str],
        now: str | None,
        last_item_id: Optional[str],
        last_item_date: Optional[datetime],
        meta: str,
    ) -> None:
        try:
            with self.db.lock:
                existing = self.get(key[0], key[1], key[2] or None)
                if existing is None:
                    self.db.execute(
                        "INSERT INTO sync_watermarks(activation_id, source_type, source_key, "
                        "last_sync_at, last_item_id, last_item_date, metadata, updated_at) "
                        "VALUES(?,?,?,?,?,?,?,?)",
                        (*key, now, last_item_id, to_iso(last_item_date), meta, now),
                    )
                    return
                newest = existing.last_item_date
                if last_item_date is not None and (newest is None or last_item_date > newest):
                    newest = last_item_date
                self.db.execute(
                    "UPDATE sync_watermarks SET last_sync_at=?, last_item_id=?, last_item_date=?, "
                    "metadata=?, updated_at=? "
                    "WHERE activation_id=? AND source_type=? AND source_key=?",
                    (
                        now,
                        last_item_id or existing.last_item_id,
                        to_iso(newest),
                        meta,
                        now,
                        *key,
                    ),
                )
        except (sqlite3.Error, StoreError) as exc:
            raise StoreError(
                f"watermark write failed for {key}: {exc}", operation="watermark.set",
            ) from exc

    def start_date(self, watermark: Optional[Watermark], fallback_lookback_hours: float = 24) -> str:
        return start_date(watermark, fallback_lookback_hours, now=self.clock())

    def start_time(self, watermark: Optional[Watermark], fallback_lookback_hours: float = 24) -> str:
        return start_time(watermark, fallback_lookback_hours, now=self.clock())


# ── Lower-bound derivation ──────────────────────────────────────


def _lower_bound(
    watermark: Optional[Watermark],
    fallback_lookback_hours: float,
    now: Optional[datetime],
) -> datetime:
    """``last_item_date`` > ``last_sync_at`` > ``now - fallback``."""
    if watermark is not None and watermark.last_item_date is not None:
        dt = watermark.last_item_date
    elif watermark is not None and watermark.last_sync_at is not None:
        dt = watermark.last_sync_at
    else:
        dt = (now or _utcnow()) - timedelta(hours=fallback_lookback_hours)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def start_date(
    watermark: Optional[Watermark],
    fallback_lookback_hours: float = 24,
    now: Optional[datetime] = None,
) -> str:
    """Date-only (``YYYY-MM-DD``) lower bound for providers that filter by day."""
    return _lower_bound(watermark, fallback_lookback_hours, now).strftime("%Y-%m-%d")


def start_time(
    watermark: Optional[Watermark],
    fallback_lookback_hours: float = 24,
    now: Optional[datetime] = None,
) -> str:
    """Full ISO-8601 UTC timestamp lower bound (``…Z``)."""
    dt = _lower_bound(watermark, fallback_lookback_hours, now)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"
