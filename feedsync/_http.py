"""Shared HTTP helpers for provider adapters.

Centralises URL/exception sanitisation so that API tokens are never
logged in plain text, and provides the canonical ``request_with_retry``
helper used by the Elege adapter.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from typing import Any

import httpx

from .errors import NOT_FOUND_CODES, FailureKind, ProviderError

logger = logging.getLogger(__name__)

# Regex to strip API keys/tokens from URLs before logging.
_TOKEN_RE = re.compile(r"(apikey|api_key|token|key)=[^&\s]+", re.IGNORECASE)
_BEARER_RE = re.compile(r"(Bearer\s+)\S+", re.IGNORECASE)

# ── Once-per-endpoint error suppression ─────────────────────────
# 400/404 on a channel or person usually means the source is gone or
# never had data.  Warn once, then suppress to avoid log spam every cycle.
_WARNED_ENDPOINTS: set[str] = set()
_warned_lock = threading.Lock()

# Status codes eligible for automatic retry with backoff.
_RETRYABLE: frozenset[int] = frozenset({429, 500, 502, 503, 504})

# Maximum number of attempts (including the first request).
_MAX_ATTEMPTS: int = 3


def sanitize_url(url: str) -> str:
    """Remove apikey/token query params from a URL for safe logging."""
    return _TOKEN_RE.sub(r"\1=***", url)


def sanitize_exc(exc: BaseException) -> str:
    """Strip API keys/tokens from exception text for safe logging."""
    return _BEARER_RE.sub(r"\1***", _TOKEN_RE.sub(r"\1=***", str(exc)))


def log_fetch_warning(label: str, exc: BaseException) -> None:
    """Log a fetch failure, suppressing repeated not-found errors.

    On the first NOT_FOUND for a given *label* the error is logged at
    WARNING with a note that further occurrences will be suppressed.
    Subsequent occurrences for the same *label* go to DEBUG only.

    Other errors (network, 5xx, etc.) are always logged at WARNING.
    """
    msg = sanitize_exc(exc)
    if isinstance(exc, ProviderError) and exc.kind is FailureKind.NOT_FOUND:
        with _warned_lock:
            already_warned = label in _WARNED_ENDPOINTS
            _WARNED_ENDPOINTS.add(label)
        if not already_warned:
            logger.warning(
                "%s fetch returned HTTP %s – treating as no data; "
                "suppressing further warnings: %s",
                label, exc.status_code, msg,
            )
        else:
            logger.debug("%s fetch returned no data (suppressed): %s", label, msg)
    else:
        logger.warning("%s fetch failed: %s", label, msg)


def _status_error(r: httpx.Response, endpoint: str) -> ProviderError:
    kind = FailureKind.NOT_FOUND if r.status_code in NOT_FOUND_CODES else FailureKind.TRANSIENT
    return ProviderError(
        f"HTTP {r.status_code} from {sanitize_url(str(r.url))}",
        kind=kind,
        status_code=r.status_code,
        endpoint=endpoint,
    )


def request_with_retry(
    client: httpx.Client,
    url: str,
    params: dict[str, Any] | None = None,
    *,
    timeout: float | None = None,
    endpoint: str = "",
    backoff_base: float = 1.0,
) -> httpx.Response:
    """GET *url* with exponential backoff on retryable failures.

    Retries up to ``_MAX_ATTEMPTS`` times on 429/5xx responses and on
    transient network errors.  Everything that is still failing after
    that is raised as a ``ProviderError`` so callers only deal with one
    exception type; 400/404 are raised immediately as NOT_FOUND.
    """
    last_exc: Exception | None = None
    for attempt in range(_MAX_ATTEMPTS):
        try:
            r = client.get(url, params=params, timeout=timeout)
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            last_exc = exc
            if attempt < _MAX_ATTEMPTS - 1:
                wait = backoff_base * 2 ** attempt
                logger.warning(
                    "Elege network error on %s (attempt %d/%d): %s – retrying in %.1fs",
                    endpoint or sanitize_url(url), attempt + 1, _MAX_ATTEMPTS,
                    sanitize_exc(exc), wait,
                )
                time.sleep(wait)
                continue
            raise ProviderError(
                f"{type(exc).__name__} calling {endpoint or sanitize_url(url)}: {sanitize_exc(exc)}",
                kind=FailureKind.TRANSIENT,
                endpoint=endpoint,
            ) from None
        if r.status_code in _RETRYABLE and attempt < _MAX_ATTEMPTS - 1:
            wait = backoff_base * 2 ** attempt
            logger.warning(
                "Elege HTTP %s on %s (attempt %d/%d) – retrying in %.1fs",
                r.status_code, endpoint or sanitize_url(url), attempt + 1, _MAX_ATTEMPTS, wait,
            )
            time.sleep(wait)
            continue
        if r.status_code >= 400:
            raise _status_error(r, endpoint)
        return r
    raise ProviderError(
        f"Elege: no response after {_MAX_ATTEMPTS} attempts"
        + (f" (last error: {sanitize_exc(last_exc)})" if last_exc else ""),
        endpoint=endpoint,
    )
