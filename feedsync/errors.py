"""Structured error taxonomy for feedsync.

Provides:
  - A custom exception hierarchy so the per-key pipeline can tell a
    transient provider failure from a permanently empty source without
    matching on bare ``Exception``.
  - ``classify_failure()`` which maps any exception raised inside a key's
    pipeline onto a ``FailureKind``.
"""
from __future__ import annotations

import logging
from enum import Enum

import httpx

logger = logging.getLogger("feedsync.errors")


# ---------------------------------------------------------------------------
# Exception hierarchy
# ---------------------------------------------------------------------------

class FeedSyncError(Exception):
    """Base error for all feedsync subsystems."""
    pass


class FailureKind(str, Enum):
    TRANSIENT = "transient"
    NOT_FOUND = "not_found"
    STORE = "store"
    UNEXPECTED = "unexpected"


class ProviderError(FeedSyncError):
    """Provider call failed.

    ``kind`` is TRANSIENT for timeouts, connection errors, 429/5xx and
    credential errors, NOT_FOUND for 400/404 on a channel or entity.
    """

    def __init__(
        self,
        message: str,
        *,
        kind: FailureKind = FailureKind.TRANSIENT,
        status_code: int | None = None,
        endpoint: str = "",
    ):
        self.kind = kind
        self.status_code = status_code
        self.endpoint = endpoint
        super().__init__(message)


class StoreError(FeedSyncError):
    """Watermark or feed store read/write failed."""

    def __init__(self, message: str, *, operation: str = ""):
        self.operation = operation
        super().__init__(message)


class ConfigError(FeedSyncError):
    """Invalid configuration value."""
    pass


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

NOT_FOUND_CODES: frozenset[int] = frozenset({400, 404})


def classify_failure(exc: BaseException) -> FailureKind:
    """Map *exc* onto the failure taxonomy used by the per-key decision table."""
    if isinstance(exc, ProviderError):
        return exc.kind
    if isinstance(exc, StoreError):
        return FailureKind.STORE
    if isinstance(exc, httpx.HTTPStatusError):
        if exc.response.status_code in NOT_FOUND_CODES:
            return FailureKind.NOT_FOUND
        return FailureKind.TRANSIENT
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return FailureKind.TRANSIENT
    return FailureKind.UNEXPECTED
