"""Entry point: ``python -m feedsync.run``

Runs the sync orchestrator until interrupted.  ``--once`` runs a single
cycle and exits (cron-style deployments).

Environment variables control credentials, cadence and scopes; see
``feedsync.config.Config``.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import List, Optional

from .config import Config
from .ingest_elege import ElegeAdapter
from .log_redaction import apply_global_log_redaction
from .orchestrator import SyncOrchestrator
from .store_sqlite import ActivationDirectory, FeedStore, SqliteStore
from .watermark import WatermarkStore

logger = logging.getLogger(__name__)


def build_orchestrator(cfg: Config, db: SqliteStore) -> SyncOrchestrator:
    provider: Optional[ElegeAdapter] = None
    if cfg.elege_api_token:
        provider = ElegeAdapter(
            cfg.elege_api_token,
            cfg.api_base,
            list_timeout_s=cfg.list_timeout_s,
            detail_timeout_s=cfg.detail_timeout_s,
        )
    return SyncOrchestrator(
        cfg,
        provider,
        FeedStore(db, chunk_size=cfg.dedup_chunk_size),
        WatermarkStore(db),
        ActivationDirectory(db),
    )


def _parse_args(argv: Optional[List[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="feedsync", description="Incremental mention sync worker.")
    parser.add_argument("--once", action="store_true", help="run a single cycle and exit")
    parser.add_argument("--db", default=None, help="SQLite path (overrides SQLITE_PATH)")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )
    apply_global_log_redaction()
    # httpx logs every request URL at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)

    cfg = Config()
    db_path = args.db or cfg.sqlite_path
    if db_path != ":memory:":
        os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)
    db = SqliteStore(db_path)
    orchestrator = build_orchestrator(cfg, db)
    logger.info("Active scopes: %s (db=%s)", cfg.active_scopes, db_path)

    try:
        if args.once:
            report = orchestrator.tick()
            return 1 if report is not None and report.errors else 0
        orchestrator.start()
        while orchestrator.is_alive:
            orchestrator.join(timeout=1.0)
    except KeyboardInterrupt:
        logger.info("Interrupted — stopping.")
        orchestrator.stop(timeout=5.0)
    finally:
        if orchestrator.provider is not None:
            orchestrator.provider.close()  # type: ignore[attr-defined]
        db.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
