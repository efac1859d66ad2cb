"""
Tests for logging configuration.
"""

import json
import logging

import pytest

from minichat.config import Settings
from minichat.logging_config import JsonFormatter, setup_logging


@pytest.fixture(autouse=True)
def reset_minichat_logger():
    yield
    logger = logging.getLogger("minichat")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True


def make_settings(tmp_path, **overrides) -> Settings:
    return Settings(_env_file=None, log_dir=str(tmp_path), **overrides)


class TestSetupLogging:
    """Tests for setup_logging."""

    def test_writes_context_log_file(self, tmp_path):
        setup_logging("cli", make_settings(tmp_path, log_console_enabled=False))

        logging.getLogger("minichat.test").warning("something odd")

        assert "something odd" in (tmp_path / "cli.log").read_text()

    def test_console_split_by_level(self, tmp_path, capsys):
        setup_logging("cli", make_settings(tmp_path, log_file_enabled=False))

        logger = logging.getLogger("minichat.test")
        logger.info("routine")
        logger.error("broken")

        captured = capsys.readouterr()
        assert "routine" in captured.out
        assert "routine" not in captured.err
        assert "broken" in captured.err
        assert "broken" not in captured.out

    def test_level_respected(self, tmp_path):
        setup_logging(
            "cli", make_settings(tmp_path, log_level="WARNING", log_console_enabled=False)
        )

        logging.getLogger("minichat.test").info("quiet")

        assert "quiet" not in (tmp_path / "cli.log").read_text()

    def test_repeated_setup_does_not_duplicate_handlers(self, tmp_path):
        config = make_settings(tmp_path)

        setup_logging("cli", config)
        setup_logging("cli", config)

        assert len(logging.getLogger("minichat").handlers) == 3

    def test_json_format(self, tmp_path):
        setup_logging(
            "api", make_settings(tmp_path, log_format="json", log_console_enabled=False)
        )

        logging.getLogger("minichat.test").warning("structured")

        line = (tmp_path / "api.log").read_text().strip().splitlines()[-1]
        payload = json.loads(line)
        assert payload["message"] == "structured"
        assert payload["level"] == "WARNING"
        assert payload["logger"] == "minichat.test"


class TestJsonFormatter:
    """Tests for JsonFormatter."""

    def test_includes_exception(self):
        try:
            raise ValueError("bad")
        except ValueError:
            import sys

            record = logging.LogRecord(
                "minichat", logging.ERROR, __file__, 1, "failed", None, sys.exc_info()
            )

        payload = json.loads(JsonFormatter().format(record))

        assert "ValueError: bad" in payload["exception"]
