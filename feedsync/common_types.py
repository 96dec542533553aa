"""Shared schema for the sync engine.

The provider adapter normalises every raw payload into ``RawRecord`` /
``Item`` before it enters the pipeline; the merge step turns groups of
records into ``FeedEntry`` candidates.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class Sentiment(str, Enum):
    """Sentiment signal attached to a single mention."""

    POSITIVE = "positive"
    NEGATIVE = "negative"
    MIXED = "mixed"
    NEUTRAL = "neutral"

    @classmethod
    def parse(cls, raw: Any) -> "Sentiment":
        """Coerce provider values (``"negative"``, ``{"tone": "negative"}``, None) to a member.

        Anything unrecognised is NEUTRAL.
        """
        if isinstance(raw, dict):
            raw = raw.get("tone") or raw.get("label") or raw.get("sentiment")
        if isinstance(raw, cls):
            return raw
        if isinstance(raw, str):
            try:
                return cls(raw.strip().lower())
            except ValueError:
                return cls.NEUTRAL
        return cls.NEUTRAL


# ── Directory objects (owned by the surrounding app, read-only here) ──


@dataclass(frozen=True)
class Activation:
    """A monitoring campaign."""

    id: str
    name: str
    status: str = "active"
    people: list[str] = field(default_factory=list)
    keywords: list[str] = field(default_factory=list)

    @property
    def monitored_people(self) -> list[str]:
        """People to sync; the activation name stands in when none are set."""
        names = [p.strip() for p in self.people if p and p.strip()]
        return names or [self.name]


@dataclass(frozen=True)
class LinkedChannel:
    channel_id: str
    channel_kind: str | int | None
    channel_title: str = ""


@dataclass(frozen=True)
class SyncTarget:
    """One (source type, source key) unit the pipeline syncs for an activation.

    ``source_key`` is the provider person id for person syncs and the
    provider channel id for channel syncs.
    """

    source_type: str  # "elege_mentions" | "elege_channels"
    source_key: str
    label: str
    channel_kind: str | int | None = None

    @property
    def is_channel(self) -> bool:
        return self.source_type == SOURCE_CHANNELS


SOURCE_MENTIONS = "elege_mentions"
SOURCE_CHANNELS = "elege_channels"


@dataclass
class Watermark:
    """Sync progress marker for one (activation, source_type, source_key)."""

    activation_id: str
    source_type: str
    source_key: str | None
    last_sync_at: datetime
    last_item_id: str | None = None
    last_item_date: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


# ── Provider records ───────────────────────────────────────────


@dataclass
class RawRecord:
    """A single provider mention, pointing at one underlying item."""

    record_id: str
    item_id: str | None
    entity_name: str | None
    sentiment: Sentiment
    excerpt: str
    created_at: datetime | None
    entity_id: str | None = None
    url: str | None = None
    item_title: str | None = None
    item_published_at: datetime | None = None
    channel_id: str | None = None
    channel_title: str | None = None
    channel_kind: str | int | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def effective_date(self) -> datetime | None:
        """Timestamp used for watermark advancement."""
        return self.created_at or self.item_published_at


@dataclass
class MediaAsset:
    kind: str  # "video" | "audio" | "image"
    name: str = ""
    asset_id: str | None = None
    duration_s: float | None = None
    size_bytes: int | None = None

    @property
    def is_frame(self) -> bool:
        return self.kind == "image" and self.name.startswith("frame_")


@dataclass
class Item:
    """Full detail of the content unit ("post") a mention refers to."""

    item_id: str
    title: str | None = None
    url: str | None = None
    summary: str | None = None
    content: str | None = None
    published_at: datetime | None = None
    channel_id: str | None = None
    categories: list[str] = field(default_factory=list)
    assets: list[MediaAsset] = field(default_factory=list)
    raw: dict[str, Any] = field(default_factory=dict)


# ── Output ─────────────────────────────────────────────────────


@dataclass
class FeedEntry:
    """Deduplicated feed row, ready to insert."""

    activation_id: str
    title: str
    summary: str
    content: str
    source: str
    source_type: str  # tv | radio | portal | social_media | whatsapp
    sentiment: str  # positive | negative | neutral
    risk_score: int
    url: str
    keywords: list[str] = field(default_factory=list)
    created_at: datetime | None = None
    published_at: datetime | None = None
    status: str = "pending"
    classification_metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def external_id(self) -> str | None:
        """Provider post id used for id-level dedup."""
        pid = self.classification_metadata.get("elege_post_id")
        return None if pid is None else str(pid)
