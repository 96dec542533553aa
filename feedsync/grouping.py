"""Group a fetched batch of mentions by the item they reference.

One broadcast segment or article often cites several monitored people;
each citation arrives as its own mention.  Grouping by item id lets the
merge step emit one feed entry per real-world item.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List

from .common_types import RawRecord


@dataclass
class RecordGroup:
    """All mentions of one item, in provider order."""

    item_id: str
    records: List[RawRecord] = field(default_factory=list)

    @property
    def lead(self) -> RawRecord:
        return self.records[0]

    def __len__(self) -> int:
        return len(self.records)


@dataclass
class GroupingResult:
    """Groups keyed by item id; insertion order follows first appearance."""

    groups: Dict[str, RecordGroup] = field(default_factory=dict)
    merged_count: int = 0  # sum of (group size - 1)
    dropped_count: int = 0  # records without an item id

    def __iter__(self) -> Iterator[RecordGroup]:
        return iter(self.groups.values())

    def __len__(self) -> int:
        return len(self.groups)

    @property
    def item_ids(self) -> List[str]:
        return list(self.groups)


def group_records(records: Iterable[RawRecord]) -> GroupingResult:
    """Partition *records* by ``item_id`` in one pass.

    Records with no item id cannot be correlated and are dropped.
    """
    result = GroupingResult()
    for rec in records:
        if not rec.item_id:
            result.dropped_count += 1
            continue
        group = result.groups.get(rec.item_id)
        if group is None:
            result.groups[rec.item_id] = RecordGroup(item_id=rec.item_id, records=[rec])
        else:
            group.records.append(rec)
            result.merged_count += 1
    return result
