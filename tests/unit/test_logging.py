"""
Unit tests for structured logging setup.
"""

import json
import logging
from collections.abc import Generator

import pytest
import structlog

from pdfqueue.config import Settings
from pdfqueue.observability import logging as pdfqueue_logging
from pdfqueue.observability.logging import bind_context, clear_context, setup_logging


class TestSetupLogging:
    """Tests for the JSON log pipeline."""

    @pytest.fixture(autouse=True)
    def restore_logging(self, monkeypatch) -> Generator[None]:
        monkeypatch.setattr(
            pdfqueue_logging,
            "get_settings",
            lambda: Settings(_env_file=None, log_format="json", log_level="INFO", queue_name="docs"),
        )
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level

        yield

        clear_context()
        root.handlers = handlers
        root.setLevel(level)
        structlog.reset_defaults()

    def _lines(self, capsys) -> list[dict]:
        return [json.loads(line) for line in capsys.readouterr().out.splitlines() if line]

    def test_stdlib_records_render_as_json(self, capsys):
        setup_logging("worker")

        logging.getLogger("pdfqueue.test").info("Job completed", extra={"job_id": "7"})

        [line] = self._lines(capsys)
        assert line["event"] == "Job completed"
        assert line["level"] == "info"
        assert line["logger"] == "pdfqueue.test"
        assert line["service"] == "worker"
        assert line["queue"] == "docs"
        assert line["job_id"] == "7"
        assert "timestamp" in line

    def test_bound_context_is_merged(self, capsys):
        setup_logging("worker")

        bind_context(job_id="9", attempt=2)
        logging.getLogger("pdfqueue.test").warning("Job failed, will retry")
        clear_context()
        logging.getLogger("pdfqueue.test").warning("Idle")

        first, second = self._lines(capsys)
        assert first["job_id"] == "9"
        assert first["attempt"] == 2
        assert "job_id" not in second

    def test_level_filtering(self, capsys):
        setup_logging("api")

        logging.getLogger("pdfqueue.test").debug("hidden")
        logging.getLogger("httpx").info("noisy")

        assert self._lines(capsys) == []
