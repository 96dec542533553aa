"""Tests for feedsync.grouping."""

from __future__ import annotations

from feedsync.grouping import group_records
from tests.fakes import mention


class TestGroupRecords:
    def test_groups_by_item_in_first_seen_order(self):
        a = mention("m1", "42", entity="Jane Roe")
        b = mention("m2", "43", entity="John Doe")
        c = mention("m3", "42", entity="John Doe")
        result = group_records([a, b, c])

        assert result.item_ids == ["42", "43"]
        assert result.groups["42"].records == [a, c]
        assert result.groups["42"].lead is a
        assert len(result.groups["43"]) == 1
        assert result.merged_count == 1
        assert result.dropped_count == 0

    def test_records_without_item_id_dropped(self):
        result = group_records([mention("m1", None), mention("m2", ""), mention("m3", "7")])
        assert result.item_ids == ["7"]
        assert result.dropped_count == 2

    def test_merged_count_is_group_size_minus_one(self):
        records = [mention(f"m{i}", "42") for i in range(4)] + [mention("x", "9")]
        result = group_records(records)
        assert len(result) == 2
        assert result.merged_count == 3

    def test_empty(self):
        result = group_records([])
        assert len(result) == 0
        assert list(result) == []
        assert result.merged_count == 0
