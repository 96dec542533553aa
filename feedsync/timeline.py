"""Timeline marks for audiovisual items.

Lets an analyst scrub to where in a segment each monitored person was
mentioned without re-processing the media.  Duration comes from an
explicit asset duration when present, otherwise it is estimated from
the number of extracted frames (video) or the audio file size.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from .common_types import MediaAsset

# Frames are extracted at a fixed cadence upstream.
FRAME_INTERVAL_S = 5.0

# 128 kbps audio.
AUDIO_BYTES_PER_SECOND = 16_000

# Mark sentiment for an entity mentioned more than once: highest wins.
_SEVERITY = {"negative": 3, "mixed": 2, "neutral": 1, "positive": 0}


@dataclass(frozen=True)
class TimelineMark:
    position_s: float
    sentiment: str
    frame: Optional[str] = None
    frame_index: Optional[int] = None
    entity_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"position_s": self.position_s, "sentiment": self.sentiment}
        if self.frame is not None:
            d["frame"] = self.frame
            d["frame_index"] = self.frame_index
        if self.entity_name is not None:
            d["entity_name"] = self.entity_name
        return d


def frame_assets(assets: Sequence[MediaAsset]) -> List[MediaAsset]:
    """Image assets named ``frame_*``, in name order."""
    return sorted((a for a in assets if a.is_frame), key=lambda a: a.name)


def estimate_duration(assets: Sequence[MediaAsset]) -> Optional[float]:
    """Best duration estimate in seconds, or None for non-audiovisual items.

    Explicit video/audio duration > frame count × interval > audio size ÷ bitrate.
    """
    for kind in ("video", "audio"):
        for a in assets:
            if a.kind == kind and a.duration_s:
                return float(a.duration_s)
    frames = frame_assets(assets)
    if frames:
        return len(frames) * FRAME_INTERVAL_S
    for a in assets:
        if a.kind == "audio" and a.size_bytes:
            return a.size_bytes / AUDIO_BYTES_PER_SECOND
    return None


def _frame_ref(frame: MediaAsset) -> str:
    return frame.name or frame.asset_id or ""


def _one_row_per_entity(per_entity: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Collapse analysis rows to the first row per entity name, worst sentiment kept."""
    rows: List[Dict[str, Any]] = []
    by_name: Dict[str, Dict[str, Any]] = {}
    for row in per_entity:
        name = row.get("entity_name")
        if not name:
            rows.append(dict(row))
            continue
        kept = by_name.get(name)
        if kept is None:
            kept = by_name[name] = dict(row)
            rows.append(kept)
        elif _SEVERITY.get(row.get("sentiment"), 1) > _SEVERITY.get(kept.get("sentiment"), 1):
            kept["sentiment"] = row.get("sentiment")
    return rows


def build_timeline(
    per_entity: Sequence[Dict[str, Any]],
    aggregate_sentiment: str,
    assets: Sequence[MediaAsset],
) -> tuple[Optional[float], List[TimelineMark]]:
    """Return ``(duration_s, marks)`` for an item's assets.

    With per-entity rows, one mark per distinct entity is spaced evenly
    across the duration (and across the frames when there are frames).
    Without rows, a single mark sits at the midpoint with the group
    sentiment.
    """
    duration = estimate_duration(assets)
    if not duration:
        return None, []
    frames = frame_assets(assets)
    n_frames = len(frames)

    entities = _one_row_per_entity(per_entity)
    marks: List[TimelineMark] = []
    if entities:
        slots = len(entities) + 1
        for i, row in enumerate(entities, start=1):
            frac = i / slots
            frame_idx = min(n_frames - 1, int(frac * n_frames)) if n_frames else None
            marks.append(TimelineMark(
                position_s=round(duration * frac, 2),
                sentiment=str(row.get("sentiment") or aggregate_sentiment),
                frame=_frame_ref(frames[frame_idx]) if frame_idx is not None else None,
                frame_index=frame_idx,
                entity_name=row.get("entity_name"),
            ))
    else:
        frame_idx = n_frames // 2 if n_frames else None
        marks.append(TimelineMark(
            position_s=round(duration / 2, 2),
            sentiment=aggregate_sentiment,
            frame=_frame_ref(frames[frame_idx]) if frame_idx is not None else None,
            frame_index=frame_idx,
        ))
    return duration, marks
