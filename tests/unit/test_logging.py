"""
Tests for sdforge.core.logging module.
"""

import pytest
from structlog.testing import capture_logs

from sdforge.core.logging import OperationLogger, get_logger


class TestOperationLogger:
    """Tests for OperationLogger."""

    def test_logs_start_and_completion(self) -> None:
        with capture_logs() as logs:
            with OperationLogger("copy", get_logger("test"), source="/dev/sdb"):
                pass

        assert [entry["event"] for entry in logs] == ["Starting copy", "Completed copy"]
        assert all(entry["source"] == "/dev/sdb" for entry in logs)
        assert logs[-1]["duration_seconds"] >= 0

    def test_logs_failure_and_reraises(self) -> None:
        with capture_logs() as logs:
            with pytest.raises(RuntimeError):
                with OperationLogger("copy", get_logger("test")):
                    raise RuntimeError("dd died")

        assert logs[-1]["event"] == "Failed copy"
        assert logs[-1]["log_level"] == "error"
        assert logs[-1]["error_type"] == "RuntimeError"
        assert logs[-1]["error"] == "dd died"
