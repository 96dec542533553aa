"""Tests for feedsync.sync: the per-key pipeline and its outcome decision table."""

from __future__ import annotations

import logging
import threading
from datetime import timedelta

import pytest

from feedsync.common_types import (
    SOURCE_CHANNELS,
    SOURCE_MENTIONS,
    FeedEntry,
    LinkedChannel,
    Sentiment,
    SyncTarget,
)
from feedsync.dedup import DedupGate
from feedsync.errors import FailureKind, ProviderError, StoreError
from feedsync.sync import (
    DECISION_TABLE,
    KeyOutcome,
    SyncContext,
    fetch_details,
    summarize,
    sync_channel,
    sync_person,
    sync_target,
)
from tests.fakes import T0, FakeClock, FakeProvider, activation, memory_stack, mention, post

ACT = activation("act-a", "Campaign A", people=["Jane Roe"])


@pytest.fixture
def stack():
    clock = FakeClock()
    db, feed, watermarks, _directory = memory_stack(clock)
    yield clock, feed, watermarks
    db.close()


def _ctx(provider, stack) -> SyncContext:
    clock, feed, watermarks = stack
    return SyncContext(provider, feed, watermarks, lookback_hours=24, page_limit=50, clock=clock)


def _jane_roe_provider() -> FakeProvider:
    return FakeProvider(
        people={"Jane Roe": "7"},
        listings={"7": [
            mention("m1", "42", "Jane Roe", Sentiment.NEGATIVE, "ataque"),
            mention("m2", "42", "Jane Roe", Sentiment.POSITIVE, "elogio"),
        ]},
    )


class TestDecisionTable:
    @pytest.mark.parametrize("outcome, advances, fails", [
        (KeyOutcome.SYNCED, True, False),
        (KeyOutcome.NO_DATA, True, False),
        (KeyOutcome.ENTITY_NOT_FOUND, False, False),
        (KeyOutcome.TRANSIENT_FAILURE, False, True),
        (KeyOutcome.STORE_FAILURE, False, True),
    ])
    def test_policy(self, outcome, advances, fails):
        policy = DECISION_TABLE[outcome]
        assert policy.advance_watermark is advances
        assert policy.is_failure is fails

    def test_every_outcome_has_a_policy(self):
        assert set(DECISION_TABLE) == set(KeyOutcome)


class TestJaneRoeScenario:
    def test_two_mentions_one_entry(self, stack):
        _, feed, _ = stack
        provider = _jane_roe_provider()
        result = sync_person(_ctx(provider, stack), ACT, "Jane Roe", DedupGate(feed, ACT.id))

        assert result.outcome is KeyOutcome.SYNCED
        assert (result.fetched, result.groups, result.merged, result.inserted) == (2, 1, 1, 1)
        entries = feed.list_entries(ACT.id)
        assert len(entries) == 1
        entry = entries[0]
        assert entry["risk_score"] == 75
        assert entry["sentiment"] == "negative"
        assert entry["external_id"] == "42"
        assert entry["classification_metadata"]["detected_entities"] == ["Jane Roe"]
        assert len(entry["classification_metadata"]["per_entity_analysis"]) == 2

    def test_second_cycle_overlap_inserts_nothing(self, stack):
        clock, feed, _ = stack
        provider = _jane_roe_provider()
        ctx = _ctx(provider, stack)
        sync_person(ctx, ACT, "Jane Roe", DedupGate(feed, ACT.id))
        clock.advance(minutes=5)

        second = sync_person(ctx, ACT, "Jane Roe", DedupGate(feed, ACT.id))

        assert second.outcome is KeyOutcome.SYNCED
        assert second.inserted == 0
        assert second.skipped == 1
        assert second.skips_by_layer == {"dup_external_id": 1}
        # Known duplicates are not re-fetched.
        assert provider.detail_calls == ["42"]
        assert len(feed.list_entries()) == 1

    def test_same_item_on_two_keys_in_one_run(self, stack):
        _, feed, _ = stack
        provider = _jane_roe_provider()
        provider.listings["c1"] = [mention("m9", "42", "Jane Roe", Sentiment.NEUTRAL)]
        ctx = _ctx(provider, stack)
        gate = DedupGate(feed, ACT.id)

        first = sync_person(ctx, ACT, "Jane Roe", gate)
        second = sync_channel(ctx, ACT, LinkedChannel("c1", "tv", "TV Um"), gate)

        assert first.inserted == 1
        assert second.inserted == 0
        assert second.skips_by_layer == {"dup_in_run": 1}


class TestIdempotence:
    def test_rerun_produces_same_feed(self, stack):
        _, feed, _ = stack
        provider = FakeProvider(
            people={"Jane Roe": "7"},
            listings={"7": [
                mention("m1", "1", excerpt="a", url="https://news.example.com/1"),
                mention("m2", "2", excerpt="b"),
                mention("m3", "3", excerpt="c", item_title="Debate"),
            ]},
            details={"2": post("2", title="Entrevista")},
        )
        ctx = _ctx(provider, stack)
        first = sync_person(ctx, ACT, "Jane Roe", DedupGate(feed, ACT.id))
        snapshot = feed.list_entries()
        second = sync_person(ctx, ACT, "Jane Roe", DedupGate(feed, ACT.id))

        assert first.inserted == 3
        assert second.inserted == 0
        assert second.skipped == 3
        assert feed.list_entries() == snapshot


class TestWatermarkAdvance:
    def test_first_run_uses_lookback_then_newest_item(self, stack):
        _, feed, watermarks = stack
        provider = FakeProvider(people={"Jane Roe": "7"}, listings={"7": [
            mention("m1", "1", created_at=T0 - timedelta(hours=5)),
            mention("m2", "2", created_at=T0 - timedelta(hours=1)),
        ]})
        ctx = _ctx(provider, stack)
        result = sync_person(ctx, ACT, "Jane Roe", DedupGate(feed, ACT.id))

        assert provider.list_calls[0][1] == "2024-04-30"
        assert provider.list_calls[0][2] == 50
        assert result.watermark_advanced
        wm = watermarks.get(ACT.id, SOURCE_MENTIONS, "7")
        assert wm.last_item_date == T0 - timedelta(hours=1)
        assert wm.last_item_id == "2"
        assert wm.metadata["inserted"] == 2

        sync_person(ctx, ACT, "Jane Roe", DedupGate(feed, ACT.id))
        assert provider.list_calls[1][1] == "2024-05-01"

    def test_monotonic_across_cycles(self, stack):
        clock, feed, watermarks = stack
        provider = FakeProvider(people={"Jane Roe": "7"})
        ctx = _ctx(provider, stack)
        previous = None
        for k in range(4):
            provider.listings["7"] = [mention(f"m{k}", f"item{k}", created_at=T0 + timedelta(days=k))]
            clock.advance(days=1)
            sync_person(ctx, ACT, "Jane Roe", DedupGate(feed, ACT.id))
            wm = watermarks.get(ACT.id, SOURCE_MENTIONS, "7")
            if previous is not None:
                assert wm.last_item_date >= previous
                assert provider.list_calls[-1][1] >= previous.strftime("%Y-%m-%d")
            previous = wm.last_item_date
        assert previous == T0 + timedelta(days=3)

    def test_older_page_does_not_regress(self, stack):
        _, feed, watermarks = stack
        provider = FakeProvider(people={"Jane Roe": "7"}, listings={"7": [mention("m1", "1")]})
        ctx = _ctx(provider, stack)
        sync_person(ctx, ACT, "Jane Roe", DedupGate(feed, ACT.id))
        provider.listings["7"] = []
        sync_person(ctx, ACT, "Jane Roe", DedupGate(feed, ACT.id))
        wm = watermarks.get(ACT.id, SOURCE_MENTIONS, "7")
        assert wm.last_item_date == T0
        assert wm.last_item_id == "1"

    def test_records_older_than_watermark_dropped(self, stack):
        _, feed, watermarks = stack
        watermarks.set(ACT.id, SOURCE_MENTIONS, source_key="7", last_item_id="0", last_item_date=T0)
        provider = FakeProvider(people={"Jane Roe": "7"}, listings={"7": [
            mention("m1", "1", created_at=T0 - timedelta(minutes=1)),
            mention("m2", "2", created_at=T0),
            mention("m3", "3", created_at=T0 + timedelta(minutes=1)),
        ]})
        result = sync_person(_ctx(provider, stack), ACT, "Jane Roe", DedupGate(feed, ACT.id))
        assert result.dropped_stale == 1
        assert result.inserted == 2
        assert sorted(e["external_id"] for e in feed.list_entries()) == ["2", "3"]

    def test_empty_page_still_refreshes_last_sync(self, stack):
        clock, feed, watermarks = stack
        provider = FakeProvider(people={"Jane Roe": "7"}, listings={"7": []})
        result = sync_person(_ctx(provider, stack), ACT, "Jane Roe", DedupGate(feed, ACT.id))
        assert result.outcome is KeyOutcome.SYNCED
        wm = watermarks.get(ACT.id, SOURCE_MENTIONS, "7")
        assert wm.last_sync_at == clock.now
        assert wm.last_item_date is None


class TestFailureOutcomes:
    def test_transient_listing_failure_keeps_watermark(self, stack, caplog):
        _, feed, watermarks = stack
        provider = FakeProvider(people={"Jane Roe": "7"}, listings={
            "7": ProviderError("HTTP 503", kind=FailureKind.TRANSIENT, status_code=503, endpoint="mentions:person:7"),
        })
        with caplog.at_level(logging.WARNING):
            result = sync_person(_ctx(provider, stack), ACT, "Jane Roe", DedupGate(feed, ACT.id))
        assert result.outcome is KeyOutcome.TRANSIENT_FAILURE
        assert result.policy.is_failure
        assert not result.watermark_advanced
        assert watermarks.get(ACT.id, SOURCE_MENTIONS, "7") is None
        assert "HTTP 503" in caplog.text

    def test_not_found_channel_is_no_data(self, stack):
        _, feed, watermarks = stack
        provider = FakeProvider(listings={
            "c-gone": ProviderError("HTTP 404", kind=FailureKind.NOT_FOUND, status_code=404,
                                    endpoint="mentions:channel:c-gone"),
        })
        channel = LinkedChannel("c-gone", 0, "TV Fechada")
        result = sync_channel(_ctx(provider, stack), ACT, channel, DedupGate(feed, ACT.id))
        assert result.outcome is KeyOutcome.NO_DATA
        assert not result.policy.is_failure
        assert result.watermark_advanced
        wm = watermarks.get(ACT.id, SOURCE_CHANNELS, "c-gone")
        assert wm.last_item_date is None
        assert wm.metadata["outcome"] == "no_data"

    def test_unknown_person_skipped(self, stack):
        _, feed, watermarks = stack
        provider = FakeProvider(people={})
        result = sync_person(_ctx(provider, stack), ACT, "Ninguem", DedupGate(feed, ACT.id))
        assert result.outcome is KeyOutcome.ENTITY_NOT_FOUND
        assert not result.policy.is_failure
        assert provider.list_calls == []

    def test_person_lookup_transient(self, stack):
        _, feed, _ = stack
        provider = FakeProvider(people={"Jane Roe": ProviderError("timeout", kind=FailureKind.TRANSIENT)})
        result = sync_person(_ctx(provider, stack), ACT, "Jane Roe", DedupGate(feed, ACT.id))
        assert result.outcome is KeyOutcome.TRANSIENT_FAILURE

    def test_detail_failure_degrades_to_mention_data(self, stack):
        _, feed, _ = stack
        provider = FakeProvider(
            people={"Jane Roe": "7"},
            listings={"7": [mention("m1", "42", excerpt="trecho")]},
            details={"42": ProviderError("HTTP 500", kind=FailureKind.TRANSIENT)},
        )
        result = sync_person(_ctx(provider, stack), ACT, "Jane Roe", DedupGate(feed, ACT.id))
        assert result.outcome is KeyOutcome.SYNCED
        assert result.inserted == 1
        assert result.details_missing == 1
        entry = feed.list_entries()[0]
        assert entry["url"] == "elegeai-post-42"
        assert entry["classification_metadata"]["detail_available"] is False

    def test_insert_failure_counted_and_batch_continues(self, stack, monkeypatch):
        _, feed, watermarks = stack
        real_insert = feed.insert

        def flaky_insert(entry):
            if entry.external_id == "2":
                raise StoreError("UNIQUE constraint failed", operation="feed.insert")
            return real_insert(entry)

        monkeypatch.setattr(feed, "insert", flaky_insert)
        provider = FakeProvider(people={"Jane Roe": "7"}, listings={"7": [
            mention("m1", "1"), mention("m2", "2"), mention("m3", "3"),
        ]})
        result = sync_person(_ctx(provider, stack), ACT, "Jane Roe", DedupGate(feed, ACT.id))
        assert result.outcome is KeyOutcome.SYNCED
        assert (result.inserted, result.failed_inserts) == (2, 1)
        assert not result.watermark_advanced
        assert watermarks.get(ACT.id, SOURCE_MENTIONS, "7") is None

    def test_failed_insert_is_requested_again_next_cycle(self, stack, monkeypatch):
        clock, feed, watermarks = stack
        real_insert = feed.insert
        broken = {"on": True}

        def flaky_insert(entry):
            if broken["on"]:
                raise StoreError("database is locked", operation="feed.insert")
            return real_insert(entry)

        monkeypatch.setattr(feed, "insert", flaky_insert)
        provider = FakeProvider(people={"Jane Roe": "7"}, listings={"7": [
            mention("m1", "9", created_at=T0 - timedelta(hours=20)),
        ]})
        ctx = _ctx(provider, stack)
        first = sync_person(ctx, ACT, "Jane Roe", DedupGate(feed, ACT.id))
        assert first.failed_inserts == 1

        broken["on"] = False
        clock.advance(hours=1)
        second = sync_person(ctx, ACT, "Jane Roe", DedupGate(feed, ACT.id))

        assert provider.list_calls[0][1] == "2024-04-30"
        assert provider.list_calls[1][1] == "2024-04-30"
        assert second.inserted == 1
        assert [e["external_id"] for e in feed.list_entries()] == ["9"]
        wm = watermarks.get(ACT.id, SOURCE_MENTIONS, "7")
        assert wm.last_item_date == T0 - timedelta(hours=20)

    def test_concurrent_writer_after_preload_is_a_skip(self, stack, monkeypatch):
        _, feed, watermarks = stack
        gate = DedupGate(feed, ACT.id)
        real_preload = gate.preload

        def preload_then_other_writer(ids):
            found = real_preload(ids)
            feed.insert(FeedEntry(
                activation_id=ACT.id, title="Escrito por outro worker", summary="", content="",
                source="Elege.AI API", source_type="portal", sentiment="neutral", risk_score=50,
                url="elegeai-post-42", classification_metadata={"elege_post_id": "42"},
            ))
            return found

        monkeypatch.setattr(gate, "preload", preload_then_other_writer)
        result = sync_person(_ctx(_jane_roe_provider(), stack), ACT, "Jane Roe", gate)

        assert (result.inserted, result.skipped, result.failed_inserts) == (0, 1, 0)
        assert result.skips_by_layer == {"dup_external_id": 1}
        assert result.watermark_advanced
        assert watermarks.get(ACT.id, SOURCE_MENTIONS, "7").last_item_id == "42"
        assert len(feed.list_entries()) == 1

    def test_failed_insert_keeps_previous_watermark(self, stack, monkeypatch):
        clock, feed, watermarks = stack
        earlier = T0 - timedelta(hours=30)
        watermarks.set(ACT.id, SOURCE_MENTIONS, source_key="7", last_item_id="0", last_item_date=earlier)
        before = watermarks.get(ACT.id, SOURCE_MENTIONS, "7")

        def broken_insert(entry):
            raise StoreError("database is locked", operation="feed.insert")

        monkeypatch.setattr(feed, "insert", broken_insert)
        provider = FakeProvider(people={"Jane Roe": "7"}, listings={"7": [mention("m1", "9")]})
        clock.advance(hours=2)
        sync_person(_ctx(provider, stack), ACT, "Jane Roe", DedupGate(feed, ACT.id))
        after = watermarks.get(ACT.id, SOURCE_MENTIONS, "7")
        assert (after.last_item_date, after.last_item_id, after.last_sync_at) == (
            before.last_item_date, before.last_item_id, before.last_sync_at,
        )

    def test_watermark_write_failure_is_store_failure(self, stack, monkeypatch):
        _, feed, watermarks = stack

        def broken_set(*args, **kwargs):
            raise StoreError("disk full", operation="watermark.set")

        monkeypatch.setattr(watermarks, "set", broken_set)
        provider = FakeProvider(people={"Jane Roe": "7"}, listings={"7": [mention("m1", "1")]})
        result = sync_person(_ctx(provider, stack), ACT, "Jane Roe", DedupGate(feed, ACT.id))
        assert result.outcome is KeyOutcome.STORE_FAILURE
        assert not result.watermark_advanced
        assert result.inserted == 1
        assert len(feed.list_entries()) == 1

    def test_watermark_read_failure_uses_lookback(self, stack, monkeypatch):
        _, feed, watermarks = stack

        def broken_get(*args, **kwargs):
            raise StoreError("locked", operation="watermark.get")

        monkeypatch.setattr(watermarks, "get", broken_get)
        provider = FakeProvider(people={"Jane Roe": "7"}, listings={"7": [mention("m1", "1")]})
        result = sync_person(_ctx(provider, stack), ACT, "Jane Roe", DedupGate(feed, ACT.id))
        assert provider.list_calls[0][1] == "2024-04-30"
        assert result.inserted == 1

    def test_unexpected_error_contained(self, stack, caplog):
        _, feed, _ = stack

        class Exploding(FakeProvider):
            def list_items(self, target, since, limit):
                raise ValueError("malformed page")

        provider = Exploding(people={"Jane Roe": "7"})
        with caplog.at_level(logging.ERROR, logger="feedsync.sync"):
            result = sync_person(_ctx(provider, stack), ACT, "Jane Roe", DedupGate(feed, ACT.id))
        assert result.outcome is KeyOutcome.TRANSIENT_FAILURE
        assert "malformed page" in result.error
        assert any(r.exc_info for r in caplog.records)


class TestFetchDetails:
    def test_failures_map_to_none(self):
        provider = FakeProvider(details={"1": post("1"), "2": ProviderError("boom")})
        details = fetch_details(provider, ["1", "2", "1"])
        assert details["1"].item_id == "1"
        assert details["2"] is None
        assert sorted(provider.detail_calls) == ["1", "2"]

    def test_empty(self):
        assert fetch_details(FakeProvider(), []) == {}

    def test_fetches_run_concurrently(self):
        barrier = threading.Barrier(3, timeout=5)

        class Rendezvous(FakeProvider):
            def fetch_item_detail(self, item_id):
                barrier.wait()
                return post(item_id)

        details = fetch_details(Rendezvous(), ["a", "b", "c"])
        assert all(details[i] is not None for i in "abc")


def test_summarize_counts_failures():
    _, feed, watermarks = memory_stack()[:3]
    ctx = SyncContext(FakeProvider(), feed, watermarks)
    target = SyncTarget(source_type=SOURCE_MENTIONS, source_key="7", label="Jane Roe")
    ok = sync_target(ctx, ACT, target, DedupGate(feed, ACT.id))
    assert summarize([ok]) == {
        "keys": 1, "keys_failed": 0, "inserted": 0, "skipped": 0, "failed_inserts": 0, "merged": 0,
    }
