"""Normalisation functions: raw Elege payloads → RawRecord / Item.

The functions are intentionally **schema-tolerant**: they try several
field names so that minor API changes don't silently drop data.

Mentions (/analytics/mentions/latest):
    id, person{id,name|alias}, post{id,title,url,published_at}, channel{id,title,kind},
    sentiment ("negative" or {"tone": "negative"}), subject, created_at

Posts (/posts/{id}):
    id, title, url, summary|subject, content, published_at, channel_id,
    categories, assets[{id, kind|media_type, name, duration, size}]
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List

from dateutil import parser as dtparser

from .common_types import Item, MediaAsset, RawRecord, Sentiment

logger = logging.getLogger(__name__)


# ── Shared helpers ──────────────────────────────────────────────

# Shortest valid format: "YYYYMMDD" = 8 chars.  Shorter strings like
# "5" or "12" are ambiguously parsed by dateutil (e.g. "5" → the 5th of
# the current month) and would silently drift watermarks.
_MIN_DATE_LEN = 8


def to_datetime(value: Any) -> datetime | None:
    """Parse a provider timestamp into an aware UTC datetime.

    Returns ``None`` for empty, too-short or unparseable values so that
    callers can tell 'no timestamp' apart from a real one.  Naive values
    are assumed UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    else:
        s = str(value).strip()
        if len(s) < _MIN_DATE_LEN:
            logger.warning("Date string too short (%d chars): %r — ignored.", len(s), s)
            return None
        try:
            dt = dtparser.parse(s)
        except (ValueError, OverflowError):
            logger.warning("Unparseable date %r — ignored.", s[:80])
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _str_id(value: Any) -> str | None:
    if value is None or isinstance(value, bool):
        return None
    s = str(value).strip()
    return s or None


def _first_str(d: Dict[str, Any], *keys: str) -> str | None:
    for k in keys:
        v = d.get(k)
        if isinstance(v, str) and v.strip():
            return v.strip()
    return None


def extract_list(data: Any, *keys: str) -> List[Dict[str, Any]]:
    """Pull the record list out of ``[...]`` or ``{"<key>": [...], "meta": ...}``."""
    items: Any = []
    if isinstance(data, list):
        items = data
    elif isinstance(data, dict):
        for k in keys + ("data",):
            if isinstance(data.get(k), list):
                items = data[k]
                break
    return [it for it in items if isinstance(it, dict)]


# ── Channel kind → feed source_type ─────────────────────────────

# Elege emits the kind either as a name or as a numeric code depending on
# the endpoint, so both spellings are keys here.  Two numeric schemes are
# in use (0/1 and 2/3 for tv/radio); they do not overlap except on "4",
# which is read as social.
SOURCE_TYPE_BY_KIND: dict[str, str] = {
    "tv": "tv",
    "0": "tv",
    "2": "tv",
    "youtube": "tv",
    "9": "tv",
    "radio": "radio",
    "1": "radio",
    "3": "radio",
    "whatsapp": "whatsapp",
    "7": "whatsapp",
    "social": "social_media",
    "4": "social_media",
    "instagram": "social_media",
    "11": "social_media",
    "tiktok": "social_media",
    "twitter": "social_media",
    "x": "social_media",
    "facebook": "social_media",
    "website": "portal",
    "news": "portal",
    "web": "portal",
    "site": "portal",
    "portal": "portal",
}

DEFAULT_SOURCE_TYPE = "portal"


def map_source_type(kind: Any) -> str:
    """Map a channel kind (``"tv"``, ``"0"``, ``0``, ``"Instagram"``…) to a feed source_type."""
    if kind is None or isinstance(kind, bool):
        return DEFAULT_SOURCE_TYPE
    return SOURCE_TYPE_BY_KIND.get(str(kind).strip().lower(), DEFAULT_SOURCE_TYPE)


# ── Mentions ────────────────────────────────────────────────────

def normalize_mention(it: Dict[str, Any]) -> RawRecord:
    """Convert one mention payload into a ``RawRecord``."""
    post = it.get("post") if isinstance(it.get("post"), dict) else {}
    person = it.get("person") if isinstance(it.get("person"), dict) else {}
    channel = it.get("channel") if isinstance(it.get("channel"), dict) else {}

    item_id = _str_id(post.get("id")) or _str_id(it.get("post_id"))
    entity_name = _first_str(person, "name", "alias") or _first_str(it, "person_name")

    return RawRecord(
        record_id=_str_id(it.get("id")) or "",
        item_id=item_id,
        entity_id=_str_id(person.get("id")) or _str_id(it.get("person_id")),
        entity_name=entity_name,
        sentiment=Sentiment.parse(it.get("sentiment")),
        excerpt=_first_str(it, "subject", "excerpt", "text", "snippet") or "",
        created_at=to_datetime(it.get("created_at") or it.get("date")),
        url=_first_str(post, "url") or _first_str(it, "url"),
        item_title=_first_str(post, "title"),
        item_published_at=to_datetime(post.get("published_at")),
        channel_id=_str_id(channel.get("id")) or _str_id(post.get("channel_id")),
        channel_title=_first_str(channel, "title", "name"),
        channel_kind=channel.get("kind"),
        raw=it,
    )


# ── Posts ───────────────────────────────────────────────────────

def _asset_kind(a: Dict[str, Any]) -> str:
    kind = a.get("kind")
    if isinstance(kind, str) and kind.strip():
        return kind.strip().lower()
    media_type = a.get("media_type")
    if isinstance(media_type, str) and "/" in media_type:
        return media_type.split("/", 1)[0].lower()
    return ""


def _to_float(value: Any) -> float | None:
    try:
        f = float(value)
    except (TypeError, ValueError):
        return None
    return f if f > 0 else None


def normalize_asset(a: Dict[str, Any]) -> MediaAsset:
    size = _to_float(a.get("size") or a.get("file_size") or a.get("byte_size"))
    return MediaAsset(
        kind=_asset_kind(a),
        name=str(a.get("name") or a.get("filename") or ""),
        asset_id=_str_id(a.get("id")),
        duration_s=_to_float(a.get("duration")),
        size_bytes=int(size) if size else None,
    )


def normalize_post(it: Dict[str, Any]) -> Item | None:
    """Convert a post-detail payload into an ``Item``; ``None`` if it has no id."""
    if isinstance(it.get("post"), dict):
        it = it["post"]
    item_id = _str_id(it.get("id"))
    if item_id is None:
        return None
    categories = it.get("categories") or []
    if isinstance(categories, str):
        categories = [c.strip() for c in categories.split(",")]
    categories = [c.get("name") if isinstance(c, dict) else c for c in categories]
    assets = it.get("assets") or []
    return Item(
        item_id=item_id,
        title=_first_str(it, "title"),
        url=_first_str(it, "url"),
        summary=_first_str(it, "summary", "subject"),
        content=_first_str(it, "content", "body", "text"),
        published_at=to_datetime(it.get("published_at")),
        channel_id=_str_id(it.get("channel_id")),
        categories=[str(c) for c in categories if c],
        assets=[normalize_asset(a) for a in assets if isinstance(a, dict)],
        raw=it,
    )
