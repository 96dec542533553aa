"""Layered, idempotent duplicate check for feed candidates.

Checks run in order and short-circuit on the first hit:

  0. In-run safety net – item already handled earlier in this run
     (pagination overlap across pages or keys).
  1. External id      – provider post id already in the activation's feed;
                        answered from a set pre-loaded in chunks, then
                        confirmed against the store for that one id.
  2. URL              – real (non-placeholder) URL already anywhere in the feed.
  3. Title            – same meaningful title already in this activation.

Every layer except the safety net hits the store at check time, i.e.
immediately before the insert, so concurrent writers of the feed table
are tolerated without locks.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Iterable, Protocol, Set

from .common_types import FeedEntry
from .merge import is_meaningful_title, is_real_url

logger = logging.getLogger(__name__)


class FeedLookup(Protocol):
    def batch_exists_by_external_id(self, activation_id: str, ids: Iterable[str]) -> Set[str]: ...

    def exists_by_url(self, url: str) -> bool: ...

    def exists_by_title(self, activation_id: str, title: str) -> bool: ...


class Verdict(str, Enum):
    NEW = "new"
    DUP_IN_RUN = "dup_in_run"
    DUP_EXTERNAL_ID = "dup_external_id"
    DUP_URL = "dup_url"
    DUP_TITLE = "dup_title"

    @property
    def is_duplicate(self) -> bool:
        return self is not Verdict.NEW


class DedupGate:
    """Per-activation, per-run dedup state."""

    def __init__(self, store: FeedLookup, activation_id: str) -> None:
        self.store = store
        self.activation_id = activation_id
        self.existing_ids: Set[str] = set()
        self.processed_ids: Set[str] = set()
        self._preloaded: Set[str] = set()

    def preload(self, ids: Iterable[str]) -> int:
        """Load which of *ids* already exist in the feed; returns how many do.

        Ids already preloaded in this run are not queried again.
        """
        pending = [i for i in dict.fromkeys(str(x) for x in ids if x) if i not in self._preloaded]
        if not pending:
            return 0
        found = self.store.batch_exists_by_external_id(self.activation_id, pending)
        self._preloaded.update(pending)
        self.existing_ids.update(found)
        return len(found)

    def known_duplicate(self, item_id: str) -> Verdict:
        """Cheap in-memory layers only (safety net + external id)."""
        if item_id in self.processed_ids:
            return Verdict.DUP_IN_RUN
        if item_id in self.existing_ids:
            return Verdict.DUP_EXTERNAL_ID
        return Verdict.NEW

    def check(self, candidate: FeedEntry) -> Verdict:
        """Run every layer against *candidate*."""
        item_id = candidate.external_id
        if item_id:
            verdict = self.known_duplicate(item_id)
            if verdict.is_duplicate:
                return verdict
            # Another writer may have inserted the id since preload.
            if self.store.batch_exists_by_external_id(self.activation_id, [item_id]):
                self.existing_ids.add(item_id)
                return Verdict.DUP_EXTERNAL_ID
        if is_real_url(candidate.url) and self.store.exists_by_url(candidate.url):
            return Verdict.DUP_URL
        title = candidate.title.strip()
        if is_meaningful_title(title) and self.store.exists_by_title(self.activation_id, title):
            return Verdict.DUP_TITLE
        return Verdict.NEW

    def mark_processed(self, item_id: str | None, inserted: bool = False) -> None:
        """Record that *item_id* was handled in this run."""
        if not item_id:
            return
        self.processed_ids.add(item_id)
        if inserted:
            self.existing_ids.add(item_id)
