"""Per-key sync pipeline: fetch → group → merge → dedup → insert → watermark.

A *key* is one (activation, source_type, source_key) triple: a monitored
person or a linked channel.  Nothing raised inside a key's pipeline
escapes ``sync_target``; the failure is classified and returned in the
``KeyResult`` so the orchestrator can aggregate outcomes.

What each outcome means for the watermark is the ``DECISION_TABLE``
below rather than scattered ``except`` blocks.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from ._http import log_fetch_warning, sanitize_exc
from .common_types import (
    SOURCE_CHANNELS,
    SOURCE_MENTIONS,
    Activation,
    Item,
    LinkedChannel,
    SyncTarget,
    Watermark,
)
from .dedup import DedupGate, Verdict
from .errors import FailureKind, ProviderError, StoreError, classify_failure
from .grouping import group_records
from .ingest_elege import ProviderClient
from .merge import merge_group
from .store_sqlite import FeedStore, to_iso
from .watermark import WatermarkStore, start_date

logger = logging.getLogger(__name__)


# ── Outcomes ────────────────────────────────────────────────────


class KeyOutcome(str, Enum):
    SYNCED = "synced"
    NO_DATA = "no_data"
    ENTITY_NOT_FOUND = "entity_not_found"
    TRANSIENT_FAILURE = "transient_failure"
    STORE_FAILURE = "store_failure"


@dataclass(frozen=True)
class OutcomePolicy:
    advance_watermark: bool
    is_failure: bool


DECISION_TABLE: Dict[KeyOutcome, OutcomePolicy] = {
    KeyOutcome.SYNCED: OutcomePolicy(advance_watermark=True, is_failure=False),
    # 400/404 for a channel or person: permanently empty, don't re-request the window forever.
    KeyOutcome.NO_DATA: OutcomePolicy(advance_watermark=True, is_failure=False),
    KeyOutcome.ENTITY_NOT_FOUND: OutcomePolicy(advance_watermark=False, is_failure=False),
    # Window is retried next cycle.
    KeyOutcome.TRANSIENT_FAILURE: OutcomePolicy(advance_watermark=False, is_failure=True),
    KeyOutcome.STORE_FAILURE: OutcomePolicy(advance_watermark=False, is_failure=True),
}

OUTCOME_BY_FAILURE: Dict[FailureKind, KeyOutcome] = {
    FailureKind.TRANSIENT: KeyOutcome.TRANSIENT_FAILURE,
    FailureKind.NOT_FOUND: KeyOutcome.NO_DATA,
    FailureKind.STORE: KeyOutcome.STORE_FAILURE,
    FailureKind.UNEXPECTED: KeyOutcome.TRANSIENT_FAILURE,
}


@dataclass
class KeyResult:
    """What happened to one key in one cycle."""

    activation_id: str
    source_type: str
    source_key: Optional[str]
    label: str
    outcome: KeyOutcome = KeyOutcome.SYNCED
    fetched: int = 0
    dropped_stale: int = 0
    groups: int = 0
    merged: int = 0
    details_missing: int = 0
    inserted: int = 0
    skipped: int = 0
    failed_inserts: int = 0
    skips_by_layer: Dict[str, int] = field(default_factory=dict)
    newest_item_date: Optional[datetime] = None
    newest_item_id: Optional[str] = None
    watermark_advanced: bool = False
    error: str = ""

    @property
    def policy(self) -> OutcomePolicy:
        return DECISION_TABLE[self.outcome]

    def record_skip(self, verdict: Verdict) -> None:
        self.skipped += 1
        self.skips_by_layer[verdict.value] = self.skips_by_layer.get(verdict.value, 0) + 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "activation_id": self.activation_id,
            "source_type": self.source_type,
            "source_key": self.source_key,
            "label": self.label,
            "outcome": self.outcome.value,
            "fetched": self.fetched,
            "dropped_stale": self.dropped_stale,
            "groups": self.groups,
            "merged": self.merged,
            "details_missing": self.details_missing,
            "inserted": self.inserted,
            "skipped": self.skipped,
            "failed_inserts": self.failed_inserts,
            "skips_by_layer": dict(self.skips_by_layer),
            "newest_item_date": to_iso(self.newest_item_date),
            "newest_item_id": self.newest_item_id,
            "watermark_advanced": self.watermark_advanced,
            "error": self.error,
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SyncContext:
    """Collaborators + tunables shared by every key in a cycle."""

    provider: ProviderClient
    feed_store: FeedStore
    watermarks: WatermarkStore
    lookback_hours: float = 24.0
    page_limit: int = 50
    clock: Callable[[], datetime] = _utcnow


# ── Detail fan-out ──────────────────────────────────────────────


def fetch_details(provider: ProviderClient, item_ids: Sequence[str]) -> Dict[str, Optional[Item]]:
    """Fetch full detail for every id concurrently and wait for all of them.

    A failed fetch maps to ``None`` (merge falls back to mention data);
    it never fails the batch.
    """
    out: Dict[str, Optional[Item]] = {}
    ids = list(dict.fromkeys(item_ids))
    if not ids:
        return out
    with ThreadPoolExecutor(max_workers=len(ids), thread_name_prefix="feedsync-detail") as executor:
        future_map = {executor.submit(provider.fetch_item_detail, iid): iid for iid in ids}
        for future in as_completed(future_map):
            iid = future_map[future]
            try:
                out[iid] = future.result()
            except Exception as exc:
                logger.warning("Detail fetch for item %s failed, using mention data: %s",
                               iid, sanitize_exc(exc))
                out[iid] = None
    return out


# ── Per-key pipeline ────────────────────────────────────────────


def _read_watermark(ctx: SyncContext, activation: Activation, target: SyncTarget) -> Optional[Watermark]:
    try:
        return ctx.watermarks.get(activation.id, target.source_type, target.source_key)
    except StoreError as exc:
        # Full lookback instead; dedup keeps the re-fetched window harmless.
        logger.warning("Watermark read failed for %s/%s: %s", activation.id, target.label, exc)
        return None


def _run_pipeline(
    ctx: SyncContext,
    activation: Activation,
    target: SyncTarget,
    gate: DedupGate,
    result: KeyResult,
    watermark: Optional[Watermark],
) -> None:
    now = ctx.clock()
    since = start_date(watermark, ctx.lookback_hours, now=now)
    records = ctx.provider.list_items(target, since, ctx.page_limit)
    result.fetched = len(records)

    floor = watermark.last_item_date if watermark else None
    if floor is not None:
        # Strict < so items sharing the watermark timestamp are not dropped;
        # the dedup gate is the authoritative filter.
        fresh = [r for r in records if r.effective_date is None or r.effective_date >= floor]
        result.dropped_stale = len(records) - len(fresh)
    else:
        fresh = records

    for rec in fresh:
        ts = rec.effective_date
        if ts is not None and (result.newest_item_date is None or ts > result.newest_item_date):
            result.newest_item_date = ts
            result.newest_item_id = rec.item_id

    grouping = group_records(fresh)
    result.groups = len(grouping)
    result.merged = grouping.merged_count
    if not grouping:
        return

    gate.preload(grouping.item_ids)
    need_detail = [iid for iid in grouping.item_ids if not gate.known_duplicate(iid).is_duplicate]
    details = fetch_details(ctx.provider, need_detail)

    for group in grouping:
        verdict = gate.known_duplicate(group.item_id)
        if verdict.is_duplicate:
            logger.debug("Skip item %s (%s)", group.item_id, verdict.value)
            result.record_skip(verdict)
            gate.mark_processed(group.item_id)
            continue

        item = details.get(group.item_id)
        if item is None:
            result.details_missing += 1
        candidate = merge_group(group, item, activation, target, ctx.provider.name, now=now)

        verdict = gate.check(candidate)
        if verdict.is_duplicate:
            logger.debug("Skip item %s (%s)", group.item_id, verdict.value)
            result.record_skip(verdict)
            gate.mark_processed(group.item_id)
            continue

        try:
            ctx.feed_store.insert(candidate)
        except StoreError as exc:
            result.failed_inserts += 1
            logger.warning("Insert failed for item %s (%s): %s", group.item_id, activation.name, exc)
            gate.mark_processed(group.item_id)
            continue
        result.inserted += 1
        gate.mark_processed(group.item_id, inserted=True)


def _advance_watermark(
    ctx: SyncContext,
    activation: Activation,
    target: SyncTarget,
    result: KeyResult,
    watermark: Optional[Watermark],
) -> None:
    if result.failed_inserts:
        # Writing would move last_sync_at past the failed items; leave the
        # stored window untouched so the next cycle requests them again.
        logger.warning("Watermark held for %s/%s: %d insert(s) failed",
                       activation.name, target.label, result.failed_inserts)
        return
    item_date = result.newest_item_date
    item_id = result.newest_item_id
    if watermark is not None and watermark.last_item_date is not None:
        if item_date is None or item_date < watermark.last_item_date:
            item_date, item_id = watermark.last_item_date, watermark.last_item_id
    try:
        ctx.watermarks.set(
            activation.id,
            target.source_type,
            source_key=target.source_key,
            last_item_id=item_id,
            last_item_date=item_date,
            metadata={
                "label": target.label,
                "outcome": result.outcome.value,
                "inserted": result.inserted,
                "skipped": result.skipped,
                "failed": result.failed_inserts,
                "merged": result.merged,
            },
        )
    except StoreError as exc:
        logger.warning("Watermark not recorded for %s/%s: %s", activation.name, target.label, exc)
        result.outcome = KeyOutcome.STORE_FAILURE
        result.error = str(exc)
        return
    result.watermark_advanced = True


def sync_target(
    ctx: SyncContext,
    activation: Activation,
    target: SyncTarget,
    gate: DedupGate,
) -> KeyResult:
    """Run one key's pipeline; never raises."""
    result = KeyResult(
        activation_id=activation.id,
        source_type=target.source_type,
        source_key=target.source_key,
        label=target.label,
    )
    watermark = _read_watermark(ctx, activation, target)
    try:
        _run_pipeline(ctx, activation, target, gate, result, watermark)
    except Exception as exc:
        kind = classify_failure(exc)
        result.outcome = OUTCOME_BY_FAILURE[kind]
        result.error = sanitize_exc(exc)
        if kind is FailureKind.UNEXPECTED:
            logger.exception("Unexpected error syncing %s/%s", activation.name, target.label)
        elif isinstance(exc, ProviderError):
            log_fetch_warning(exc.endpoint or target.label, exc)
        else:
            logger.warning("Sync of %s/%s failed (%s): %s",
                           activation.name, target.label, kind.value, result.error)

    if result.policy.advance_watermark:
        _advance_watermark(ctx, activation, target, result, watermark)

    logger.info(
        "[%s] %s %s: outcome=%s fetched=%d groups=%d merged=%d inserted=%d skipped=%d failed=%d",
        activation.name, target.source_type, target.label, result.outcome.value,
        result.fetched, result.groups, result.merged, result.inserted,
        result.skipped, result.failed_inserts,
    )
    return result


def sync_person(ctx: SyncContext, activation: Activation, name: str, gate: DedupGate) -> KeyResult:
    """Resolve *name* to a provider person id, then sync it."""
    try:
        person_id = ctx.provider.search_entity(name)
    except Exception as exc:
        kind = classify_failure(exc)
        outcome = OUTCOME_BY_FAILURE[kind]
        if outcome is KeyOutcome.NO_DATA:
            outcome = KeyOutcome.ENTITY_NOT_FOUND
        logger.warning("Person lookup for %r failed (%s): %s", name, kind.value, sanitize_exc(exc))
        return KeyResult(
            activation_id=activation.id,
            source_type=SOURCE_MENTIONS,
            source_key=None,
            label=name,
            outcome=outcome,
            error=sanitize_exc(exc),
        )
    if person_id is None:
        logger.info("[%s] Person not found at provider: %r — skipped.", activation.name, name)
        return KeyResult(
            activation_id=activation.id,
            source_type=SOURCE_MENTIONS,
            source_key=None,
            label=name,
            outcome=KeyOutcome.ENTITY_NOT_FOUND,
        )
    target = SyncTarget(source_type=SOURCE_MENTIONS, source_key=person_id, label=name)
    return sync_target(ctx, activation, target, gate)


def sync_channel(
    ctx: SyncContext,
    activation: Activation,
    channel: LinkedChannel,
    gate: DedupGate,
) -> KeyResult:
    target = SyncTarget(
        source_type=SOURCE_CHANNELS,
        source_key=channel.channel_id,
        label=channel.channel_title or channel.channel_id,
        channel_kind=channel.channel_kind,
    )
    return sync_target(ctx, activation, target, gate)


def summarize(results: List[KeyResult]) -> Dict[str, int]:
    """Cycle totals across key results."""
    return {
        "keys": len(results),
        "keys_failed": sum(1 for r in results if r.policy.is_failure),
        "inserted": sum(r.inserted for r in results),
        "skipped": sum(r.skipped for r in results),
        "failed_inserts": sum(r.failed_inserts for r in results),
        "merged": sum(r.merged for r in results),
    }
