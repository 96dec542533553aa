"""Collapse a group of mentions into one feed entry candidate.

All helpers are pure functions over typed inputs; ``merge_group`` wires
them together.  Sentiment/risk aggregation is worst-case: a single
negative citation inside an otherwise neutral segment sets the entry's
risk, because the feed exists for alerting.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from .common_types import Activation, FeedEntry, Item, Sentiment, SyncTarget
from .grouping import RecordGroup
from .normalize import map_source_type
from .timeline import build_timeline, frame_assets

# ── Tables ──────────────────────────────────────────────────────

# Raw mention sentiment → (feed sentiment, risk score).
SENTIMENT_RISK: Dict[Sentiment, tuple[str, int]] = {
    Sentiment.NEGATIVE: ("negative", 75),
    Sentiment.POSITIVE: ("positive", 20),
    Sentiment.MIXED: ("neutral", 55),
    Sentiment.NEUTRAL: ("neutral", 50),
}

TONE_BY_SENTIMENT: Dict[Sentiment, str] = {
    Sentiment.NEGATIVE: "crítico",
    Sentiment.POSITIVE: "elogioso",
}
DEFAULT_TONE = "neutro"

DEFAULT_TITLE = "Sem título"
DEFAULT_SUMMARY = "Sem resumo"
DEFAULT_SOURCE = "Elege.AI API"
PLACEHOLDER_TITLES = frozenset({"Sem título", "Sem titulo"})

SUMMARY_CONTENT_CHARS = 300

# ``<provider>-post-<id>`` / ``<provider>-mention-<id>``
_SYNTHETIC_URL_RE = re.compile(r"^[a-z0-9_.]+-(post|mention)-", re.IGNORECASE)

MIN_URL_LEN = 5


# ── Field resolution ────────────────────────────────────────────

def first_non_empty(*values: Optional[str]) -> str:
    """First value that is a non-blank string; ``""`` if none."""
    for v in values:
        if isinstance(v, str) and v.strip():
            return v
    return ""


def truncate(text: Optional[str], limit: int) -> Optional[str]:
    if not text:
        return text
    return text[:limit]


def synthetic_url(provider: str, item_id: str) -> str:
    """Stable placeholder URL for items the provider exposes without a permalink."""
    return f"{provider}-post-{item_id}"


def is_synthetic_url(url: Optional[str]) -> bool:
    return bool(url) and bool(_SYNTHETIC_URL_RE.match(url or ""))


def is_real_url(url: Optional[str]) -> bool:
    """Non-placeholder URL long enough to identify content."""
    return bool(url) and len(url or "") >= MIN_URL_LEN and not is_synthetic_url(url)


def is_meaningful_title(title: Optional[str]) -> bool:
    t = (title or "").strip()
    return bool(t) and t not in PLACEHOLDER_TITLES


# ── Sentiment ───────────────────────────────────────────────────

def sentiment_risk(sentiment: Sentiment) -> tuple[str, int]:
    return SENTIMENT_RISK.get(sentiment, SENTIMENT_RISK[Sentiment.NEUTRAL])


def worst_case(sentiments: Iterable[Sentiment]) -> tuple[str, int]:
    """Highest-risk ``(sentiment, risk)`` pair; ties keep the first seen.

    An empty input is neutral.
    """
    best: Optional[tuple[str, int]] = None
    for s in sentiments:
        pair = sentiment_risk(s)
        if best is None or pair[1] > best[1]:
            best = pair
    return best or SENTIMENT_RISK[Sentiment.NEUTRAL]


def tone_for(sentiment: Sentiment) -> str:
    return TONE_BY_SENTIMENT.get(sentiment, DEFAULT_TONE)


# ── Entities ────────────────────────────────────────────────────

def entity_analysis(group: RecordGroup) -> tuple[List[str], List[Dict[str, Any]]]:
    """Return ``(detected_entities, per_entity_analysis)`` for a group.

    Entity names are deduplicated; one analysis row is kept per mention.
    """
    detected: List[str] = []
    rows: List[Dict[str, Any]] = []
    for rec in group.records:
        name = (rec.entity_name or "").strip()
        if not name:
            continue
        if name not in detected:
            detected.append(name)
        rows.append({
            "entity_name": name,
            "sentiment": rec.sentiment.value,
            "context": rec.excerpt,
            "tone": tone_for(rec.sentiment),
        })
    return detected, rows


def _dedupe(values: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(v.strip() for v in values if isinstance(v, str) and v.strip()))


# ── Merge ───────────────────────────────────────────────────────

def merge_group(
    group: RecordGroup,
    item: Optional[Item],
    activation: Activation,
    target: SyncTarget,
    provider: str = "elegeai",
    now: Optional[datetime] = None,
) -> FeedEntry:
    """Build the candidate feed entry for one item's mention group.

    *item* is the full post detail, or None when the detail fetch failed;
    the entry then falls back to what the mentions themselves carry.
    """
    lead = group.lead
    now = now or datetime.now(timezone.utc)

    real_url = (item.url if item else None) or lead.url
    url = real_url or synthetic_url(provider, group.item_id)

    title = first_non_empty(item.title if item else None, lead.item_title, DEFAULT_TITLE)
    summary = first_non_empty(
        lead.excerpt,
        item.summary if item else None,
        truncate(item.content, SUMMARY_CONTENT_CHARS) if item else None,
        item.title if item else None,
        lead.item_title,
        DEFAULT_SUMMARY,
    )
    content = first_non_empty(
        item.content if item else None,
        lead.excerpt,
        item.title if item else None,
        lead.item_title,
    )

    detected, per_entity = entity_analysis(group)
    sentiment, risk = worst_case(r.sentiment for r in group.records)

    channel_kind = target.channel_kind if target.is_channel else lead.channel_kind
    source_type = map_source_type(channel_kind)
    source = first_non_empty(lead.channel_title, target.label if target.is_channel else None, DEFAULT_SOURCE)
    channel_id = (target.source_key if target.is_channel else None) or lead.channel_id or (
        item.channel_id if item else None
    )

    assets = item.assets if item else []
    duration, marks = build_timeline(per_entity, sentiment, assets)

    published = (item.published_at if item else None) or lead.item_published_at or lead.created_at or now

    keywords = _dedupe([
        *activation.keywords,
        *detected,
        *(item.categories if item else []),
    ])

    metadata: Dict[str, Any] = {
        "assets": list(item.raw.get("assets") or []) if item else [],
        "frames": [a.name for a in frame_assets(assets)],
        "duration_s": duration,
        "timeline_marks": [m.to_dict() for m in marks],
        "detected_entities": detected,
        "per_entity_analysis": per_entity,
        "elege_post_id": group.item_id,
        "elege_mention_id": lead.record_id or None,
        "mention_ids": [r.record_id for r in group.records if r.record_id],
        "elege_channel_id": channel_id,
        "channel_kind": channel_kind,
        "source_name": source,
        "content_type_detected": source_type,
        "detail_available": item is not None,
        "merged_mentions": len(group),
    }
    return FeedEntry(
        activation_id=activation.id,
        title=title,
        summary=summary,
        content=content,
        source=source,
        source_type=source_type,
        sentiment=sentiment,
        risk_score=risk,
        url=url,
        keywords=keywords,
        created_at=published,
        published_at=published,
        classification_metadata=metadata,
    )
