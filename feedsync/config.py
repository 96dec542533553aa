"""Global configuration for the feed sync worker.

All tunables can be overridden via environment variables.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field


def _env_float(key: str, default: float) -> float:
    """Read an env var as float, returning *default* on parse failure."""
    try:
        return float(os.getenv(key, str(default)))
    except (ValueError, TypeError):
        return default


def _env_int(key: str, default: int) -> int:
    """Read an env var as int, returning *default* on parse failure."""
    try:
        return int(os.getenv(key, str(default)))
    except (ValueError, TypeError):
        return default


@dataclass(frozen=True)
class Config:
    """Central configuration – one instance per process.

    Environment variables are read at **instantiation** time (not module
    import time) so callers can set them programmatically before
    creating a ``Config``.
    """

    # ── Elege.AI credentials (repr=False to prevent accidental logging) ──
    elege_api_token: str = field(default_factory=lambda: os.getenv("ELEGEAI_API_TOKEN", ""), repr=False)
    elege_base_url: str = field(default_factory=lambda: os.getenv("ELEGE_BASE_URL", "http://app.elege.ai:3001"))

    # ── Feature flags ───────────────────────────────────────────
    enable_person_sync: bool = field(default_factory=lambda: os.getenv("ENABLE_PERSON_SYNC", "1") == "1")
    enable_channel_sync: bool = field(default_factory=lambda: os.getenv("ENABLE_CHANNEL_SYNC", "1") == "1")

    # ── Cadence ─────────────────────────────────────────────────
    sync_interval_s: float = field(default_factory=lambda: _env_float("SYNC_INTERVAL_S", 300.0))
    lookback_hours: float = field(default_factory=lambda: _env_float("SYNC_LOOKBACK_HOURS", 24.0))
    page_limit: int = field(default_factory=lambda: _env_int("SYNC_PAGE_LIMIT", 50))

    # ── Provider timeouts (seconds) ─────────────────────────────
    list_timeout_s: float = field(default_factory=lambda: _env_float("LIST_TIMEOUT_S", 30.0))
    detail_timeout_s: float = field(default_factory=lambda: _env_float("DETAIL_TIMEOUT_S", 15.0))

    # ── Dedup ───────────────────────────────────────────────────
    # Ids per existence-check round-trip.
    dedup_chunk_size: int = field(default_factory=lambda: _env_int("DEDUP_CHUNK_SIZE", 50))

    # ── State ───────────────────────────────────────────────────
    sqlite_path: str = field(default_factory=lambda: os.getenv("SQLITE_PATH", "feedsync/state.db"))

    # ── Export ──────────────────────────────────────────────────
    # Empty string disables the per-cycle status file.
    status_export_path: str = field(default_factory=lambda: os.getenv(
        "STATUS_EXPORT_PATH", "artifacts/feedsync/last_cycle.json",
    ))

    # ── Derived helpers ─────────────────────────────────────────

    @property
    def api_base(self) -> str:
        """Elege REST root, e.g. ``http://app.elege.ai:3001/api``."""
        return self.elege_base_url.rstrip("/") + "/api"

    @property
    def active_scopes(self) -> list[str]:
        """Enabled sync scopes, for logging and the status export."""
        scopes: list[str] = []
        if self.enable_person_sync:
            scopes.append("people")
        if self.enable_channel_sync:
            scopes.append("channels")
        return scopes
