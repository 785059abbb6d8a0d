"""Tests for creatorpay.log_config -- scrubbing and rotation setup."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler

import pytest

from creatorpay.log_config import ScrubFilter, configure_logging, scrub


class TestScrub:
    @pytest.mark.parametrize(
        "text, secret",
        [
            ("api_key=oy-live-123", "oy-live-123"),
            ('{"X-Api-Key": "oy-live-123"}', "oy-live-123"),
            ("X-OY-Username: oy-live-123", "oy-live-123"),
            ("credential=abc123", "abc123"),
            ("Authorization: Bearer tok.en.value", "tok.en.value"),
        ],
    )
    def test_redacts(self, text, secret):
        cleaned = scrub(text)
        assert secret not in cleaned
        assert "***REDACTED***" in cleaned

    def test_leaves_ordinary_text(self):
        assert scrub("Transaction topup_1_2 paid") == "Transaction topup_1_2 paid"

    def test_filter_scrubs_args(self):
        record = logging.LogRecord(
            "creatorpay", logging.INFO, __file__, 1, "headers %s", ("api_key=oy-live-123",), None
        )
        assert ScrubFilter().filter(record)
        assert "oy-live-123" not in record.getMessage()


class TestConfigureLogging:
    @pytest.fixture(autouse=True)
    def _restore_root(self):
        root = logging.getLogger()
        before, level = list(root.handlers), root.level
        yield
        for handler in list(root.handlers):
            if isinstance(handler, RotatingFileHandler) and handler not in before:
                root.removeHandler(handler)
                handler.close()
        root.setLevel(level)

    def test_installs_rotating_handler_with_filter(self, tmp_path):
        configure_logging(str(tmp_path), level="DEBUG")
        root = logging.getLogger()
        rotating = [h for h in root.handlers if isinstance(h, RotatingFileHandler)]
        assert len(rotating) == 1
        assert any(isinstance(f, ScrubFilter) for f in rotating[0].filters)
        assert root.level == logging.DEBUG

    def test_idempotent(self, tmp_path):
        configure_logging(str(tmp_path))
        configure_logging(str(tmp_path))
        rotating = [h for h in logging.getLogger().handlers if isinstance(h, RotatingFileHandler)]
        assert len(rotating) == 1

    def test_secret_never_reaches_file(self, tmp_path):
        configure_logging(str(tmp_path))
        logging.getLogger("creatorpay.test").warning("sending api_key=oy-live-123")
        for handler in logging.getLogger().handlers:
            handler.flush()
        content = (tmp_path / "creatorpay.log").read_text(encoding="utf-8")
        assert "oy-live-123" not in content
        assert "***REDACTED***" in content
