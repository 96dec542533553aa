"""Tests for feedsync.log_redaction."""

from __future__ import annotations

import logging
import unittest

from feedsync.log_redaction import LogRedactionFilter, apply_log_redaction, redact_secrets


class TestRedactSecrets(unittest.TestCase):

    def test_bearer_header(self):
        out = redact_secrets("sent Authorization: Bearer eyJhbGciOi.abc-123 to elege")
        self.assertNotIn("eyJhbGciOi", out)
        self.assertIn("to elege", out)

    def test_query_token(self):
        out = redact_secrets("GET http://x/api/people?q=Jane&token=abc123&limit=5")
        self.assertNotIn("abc123", out)
        self.assertIn("limit=5", out)

    def test_env_style(self):
        self.assertNotIn("s3cr3t", redact_secrets("ELEGEAI_API_TOKEN=s3cr3t"))

    def test_plain_text_untouched(self):
        msg = "[Campaign A] elege_mentions Jane Roe: outcome=synced inserted=1"
        self.assertEqual(redact_secrets(msg), msg)

    def test_empty(self):
        self.assertEqual(redact_secrets(""), "")


class TestLogRedactionFilter(unittest.TestCase):

    def test_args_redacted(self):
        record = logging.LogRecord(
            "feedsync", logging.WARNING, __file__, 1,
            "fetch failed: %s (%d)", ("Bearer abcdef123", 3), None,
        )
        self.assertTrue(LogRedactionFilter().filter(record))
        self.assertNotIn("abcdef123", record.getMessage())
        self.assertIn("(3)", record.getMessage())

    def test_apply_attaches_to_handlers(self):
        logger = logging.getLogger("feedsync.test_redaction")
        handler = logging.NullHandler()
        logger.addHandler(handler)
        try:
            apply_log_redaction(logger)
            self.assertTrue(any(isinstance(f, LogRedactionFilter) for f in handler.filters))
        finally:
            logger.removeHandler(handler)


if __name__ == "__main__":
    unittest.main()
