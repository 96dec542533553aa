"""Secret redaction for log output.

The Elege token travels in an ``Authorization: Bearer`` header, and
httpx/our own messages can echo request URLs or headers.  This filter
scrubs those before any handler formats the record.

Usage::

    from feedsync.log_redaction import apply_global_log_redaction
    apply_global_log_redaction()  # once, after logging.basicConfig
"""
from __future__ import annotations

import logging
import re

_SENSITIVE_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    # Authorization headers / bare Bearer tokens
    (
        "auth_header",
        re.compile(r"(?:Authorization\s*[:=]\s*)?Bearer\s+[A-Za-z0-9._~+/=-]+", re.IGNORECASE),
    ),
    # key=value style credentials in URLs, env dumps, exception text
    (
        "api_token",
        re.compile(
            r"(?:api[_-]?key|api[_-]?token|token|secret|password)\s*[:=]\s*[\"']?([^\s&'\"]+)[\"']?",
            re.IGNORECASE,
        ),
    ),
    # Email addresses (operator accounts in provider error bodies)
    (
        "email",
        re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
    ),
]

_REPLACEMENT = "***REDACTED***"


def redact_secrets(msg: str, replacement: str = _REPLACEMENT) -> str:
    """Return *msg* with all recognised secret patterns replaced."""
    if not msg:
        return msg
    for _name, pattern in _SENSITIVE_PATTERNS:
        msg = pattern.sub(replacement, msg)
    return msg


class LogRedactionFilter(logging.Filter):
    """Redacts the message template and any string args of a record."""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        if record.msg and isinstance(record.msg, str):
            record.msg = redact_secrets(record.msg)
        if isinstance(record.args, dict):
            record.args = {
                k: redact_secrets(v) if isinstance(v, str) else v
                for k, v in record.args.items()
            }
        elif isinstance(record.args, tuple):
            record.args = tuple(redact_secrets(v) if isinstance(v, str) else v for v in record.args)
        return True


def apply_log_redaction(logger: logging.Logger) -> None:
    """Attach :class:`LogRedactionFilter` to every handler of *logger*."""
    filt = LogRedactionFilter()
    for handler in logger.handlers:
        handler.addFilter(filt)


def apply_global_log_redaction() -> None:
    apply_log_redaction(logging.getLogger())
