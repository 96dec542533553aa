"""Scheduled sync driver.

``SyncOrchestrator`` runs one cycle per tick over every active
activation: people first, then linked channels.  A tick that arrives
while a cycle is still running is dropped (counted, not queued), so
cycles never overlap.

The periodic driver is a daemon thread waiting on a stop event, so
``stop()`` interrupts the sleep between cycles immediately.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ._http import sanitize_exc
from .common_types import Activation
from .config import Config
from .dedup import DedupGate
from .errors import ConfigError
from .ingest_elege import ProviderClient
from .status_export import export_cycle_report
from .store_sqlite import ActivationDirectory, FeedStore, to_iso
from .sync import KeyResult, SyncContext, summarize, sync_channel, sync_person
from .watermark import WatermarkStore

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrchestratorState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"


@dataclass
class CycleReport:
    """Aggregate of one sync cycle."""

    started_at: datetime
    finished_at: Optional[datetime] = None
    activations: int = 0
    results: List[KeyResult] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    dropped_ticks: int = 0

    @property
    def totals(self) -> Dict[str, int]:
        return summarize(self.results)

    @property
    def inserted(self) -> int:
        return self.totals["inserted"]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": to_iso(self.started_at),
            "finished_at": to_iso(self.finished_at),
            "activations": self.activations,
            "totals": self.totals,
            "keys": [r.to_dict() for r in self.results],
            "errors": list(self.errors),
            "dropped_ticks": self.dropped_ticks,
        }


class SyncOrchestrator:
    """Drives sync cycles for every active activation.

    Parameters
    ----------
    cfg : Config
    provider : ProviderClient or None
        ``None`` (no credentials) turns every cycle into an empty report.
    feed_store : FeedStore
    watermarks : WatermarkStore
    directory : ActivationDirectory
    """

    def __init__(
        self,
        cfg: Config,
        provider: Optional[ProviderClient],
        feed_store: FeedStore,
        watermarks: WatermarkStore,
        directory: ActivationDirectory,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.cfg = cfg
        self.provider = provider
        self.feed_store = feed_store
        self.watermarks = watermarks
        self.directory = directory
        self.clock = clock

        self._state = OrchestratorState.IDLE
        self._state_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._warned_no_provider = False

        # Observable status
        self.cycle_count: int = 0
        self.dropped_ticks: int = 0
        self.last_report: Optional[CycleReport] = None

    # ── State ───────────────────────────────────────────────

    @property
    def state(self) -> OrchestratorState:
        with self._state_lock:
            return self._state

    def _try_enter(self) -> bool:
        with self._state_lock:
            if self._state is OrchestratorState.RUNNING:
                self.dropped_ticks += 1
                return False
            self._state = OrchestratorState.RUNNING
            return True

    def _leave(self) -> None:
        with self._state_lock:
            self._state = OrchestratorState.IDLE

    # ── Cycle ───────────────────────────────────────────────

    def tick(self) -> Optional[CycleReport]:
        """Run a cycle unless one is in progress; returns None when dropped."""
        if not self._try_enter():
            logger.info("Sync cycle still running — tick dropped (%d so far).", self.dropped_ticks)
            return None
        try:
            report = self.run_cycle()
        finally:
            self._leave()
        self.cycle_count += 1
        report.dropped_ticks = self.dropped_ticks
        self.last_report = report
        self._export(report)
        return report

    def run_cycle(self) -> CycleReport:
        """One pass over all active activations.

        Only a failure to load the activation list aborts the cycle;
        per-activation errors are logged and the loop moves on.
        """
        report = CycleReport(started_at=self.clock())
        if self.provider is None:
            if not self._warned_no_provider:
                logger.warning("ELEGEAI_API_TOKEN not set — sync disabled.")
                self._warned_no_provider = True
            report.finished_at = self.clock()
            return report

        try:
            activations = self.directory.list_active()
        except Exception as exc:
            logger.error("Could not load active activations: %s", sanitize_exc(exc))
            report.errors.append(f"activations: {sanitize_exc(exc)}")
            report.finished_at = self.clock()
            return report

        logger.info("Sync cycle start: %d active activation(s), scopes=%s",
                    len(activations), ",".join(self.cfg.active_scopes) or "none")
        for activation in activations:
            report.activations += 1
            try:
                report.results.extend(self.sync_activation(activation, report.errors))
            except Exception as exc:
                logger.exception("Sync of activation %s failed", activation.name)
                report.errors.append(f"{activation.id}: {sanitize_exc(exc)}")

        report.finished_at = self.clock()
        totals = report.totals
        logger.info(
            "Sync cycle done: keys=%d failed=%d inserted=%d skipped=%d merged=%d",
            totals["keys"], totals["keys_failed"], totals["inserted"],
            totals["skipped"], totals["merged"],
        )
        return report

    def sync_activation(self, activation: Activation, errors: Optional[List[str]] = None) -> List[KeyResult]:
        """People then channels for one activation, sharing one dedup gate.

        A failure to load the linked channels is logged and appended to
        *errors*; the person results already gathered are still returned.
        """
        if self.provider is None:
            raise ConfigError("ELEGEAI_API_TOKEN not set; no provider to sync with")
        ctx = SyncContext(
            provider=self.provider,
            feed_store=self.feed_store,
            watermarks=self.watermarks,
            lookback_hours=self.cfg.lookback_hours,
            page_limit=self.cfg.page_limit,
            clock=self.clock,
        )
        gate = DedupGate(self.feed_store, activation.id)
        results: List[KeyResult] = []
        if self.cfg.enable_person_sync:
            for name in activation.monitored_people:
                results.append(sync_person(ctx, activation, name, gate))
        if self.cfg.enable_channel_sync:
            try:
                channels = self.directory.list_linked_channels(activation.id)
            except Exception as exc:
                logger.exception("Could not load linked channels for activation %s", activation.name)
                if errors is not None:
                    errors.append(f"{activation.id}: channels: {sanitize_exc(exc)}")
                return results
            for channel in channels:
                results.append(sync_channel(ctx, activation, channel, gate))
        return results

    def _export(self, report: CycleReport) -> None:
        path = self.cfg.status_export_path
        if not path:
            return
        try:
            export_cycle_report(path, report.to_dict(), scopes=self.cfg.active_scopes)
        except OSError as exc:
            logger.warning("Status export to %s failed: %s", path, exc)

    # ── Thread lifecycle ────────────────────────────────────

    @property
    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the periodic driver thread (idempotent).

        The first cycle runs immediately, then every ``sync_interval_s``.
        """
        if self.is_alive:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="feedsync-orchestrator", daemon=True)
        self._thread.start()
        logger.info("Sync orchestrator started (interval=%.1fs)", self.cfg.sync_interval_s)

    def stop(self, timeout: Optional[float] = None) -> None:
        """Signal the driver to stop and wait up to *timeout* for it."""
        self._stop_event.set()
        if self._thread is not None and timeout is not None:
            self._thread.join(timeout)
        logger.info("Sync orchestrator stop requested")

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def _run_loop(self) -> None:
        while True:
            try:
                self.tick()
            except Exception as exc:
                logger.exception("Sync cycle error: %s", sanitize_exc(exc))
            if self._stop_event.wait(timeout=self.cfg.sync_interval_s):
                break
        logger.info("Sync orchestrator loop exited")
