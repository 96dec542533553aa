"""Per-cycle status file for dashboards and health checks.

The last ``CycleReport`` is written as JSON with a tempfile → rename so
a reader polling the file never sees a half-written cycle.
"""

from __future__ import annotations

import json
import os
import tempfile
from datetime import datetime, timezone
from typing import Any, Dict


def export_cycle_report(path: str, report: Dict[str, Any], scopes: list[str] | None = None) -> None:
    """Atomically write *report* to *path*."""
    dest_dir = os.path.dirname(path) or "."
    os.makedirs(dest_dir, exist_ok=True)
    payload = {
        "meta": {
            "written_at": datetime.now(timezone.utc).isoformat(),
            "scopes": list(scopes or []),
        },
        "cycle": report,
    }
    fd, tmp = tempfile.mkstemp(dir=dest_dir, prefix=".last_cycle.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f, ensure_ascii=False, indent=2, default=str)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise


def read_cycle_report(path: str) -> Dict[str, Any] | None:
    """Last exported cycle, or None when nothing was written yet."""
    try:
        with open(path, encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        return None
