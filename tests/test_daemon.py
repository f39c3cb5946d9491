"""Tests for daemon fault handling."""

import logging
import sys
from unittest.mock import MagicMock

import pytest

from waypoint.daemon import _log_async_error, _log_uncaught, install_fault_handlers


class TestFaultHandlers:
    def test_uncaught_exception_exits(self, caplog):
        err = RuntimeError("boom")
        with caplog.at_level(logging.CRITICAL), pytest.raises(SystemExit) as exc_info:
            _log_uncaught(RuntimeError, err, None)

        assert exc_info.value.code == 1
        assert "boom" in caplog.text

    def test_background_error_is_only_logged(self, caplog):
        loop = MagicMock()
        with caplog.at_level(logging.ERROR):
            _log_async_error(loop, {"message": "Task exception was never retrieved", "exception": ValueError("x")})

        assert "never retrieved" in caplog.text
        loop.stop.assert_not_called()

    def test_install(self, monkeypatch):
        monkeypatch.setattr(sys, "excepthook", sys.__excepthook__)
        loop = MagicMock()

        install_fault_handlers(loop)

        assert sys.excepthook is _log_uncaught
        loop.set_exception_handler.assert_called_once_with(_log_async_error)
