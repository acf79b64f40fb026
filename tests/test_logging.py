"""Tests for console helpers and structlog configuration."""

import json
import logging
from pathlib import Path
from unittest.mock import patch

import pytest
import structlog

from procwatch import logging as console
from procwatch.config import Config


@pytest.fixture
def log_config(tmp_path: Path):
    """Config whose state directory is tmp_path; restores logging afterwards."""
    with patch.object(Config, "state_dir", new_callable=lambda: property(lambda self: tmp_path)):
        yield Config()
    root = logging.getLogger()
    for handler in root.handlers:
        handler.close()
    root.handlers.clear()
    structlog.reset_defaults()


def read_events(path: Path) -> list[dict]:
    for handler in logging.getLogger().handlers:
        handler.flush()
    return [json.loads(line) for line in path.read_text().splitlines()]


class TestConfigure:
    def test_writes_json_lines(self, log_config):
        console.configure(log_config, source="helper")

        structlog.get_logger().info("helper_started", socket="/run/procwatch/helper.sock")

        (event,) = read_events(log_config.log_path)
        assert event["event"] == "helper_started"
        assert event["socket"] == "/run/procwatch/helper.sock"
        assert event["source"] == "helper"
        assert event["level"] == "info"
        assert "ts" in event

    def test_debug_filtered_unless_enabled(self, log_config):
        console.configure(log_config)
        structlog.get_logger().debug("scheduler_started")
        structlog.get_logger().info("monitor_starting")

        events = [e["event"] for e in read_events(log_config.log_path)]

        assert events == ["monitor_starting"]

    def test_debug_enabled(self, log_config):
        console.configure(log_config, debug=True)
        structlog.get_logger().debug("negotiator_state", to_state="connected")

        (event,) = read_events(log_config.log_path)
        assert event["level"] == "debug"
        assert event["source"] == "monitor"

    def test_stdlib_records_share_file(self, log_config):
        console.configure(log_config)

        logging.getLogger("asyncio").warning("loop slow")

        (event,) = read_events(log_config.log_path)
        assert event["event"] == "loop slow"
        assert event["source"] == "monitor"


class TestConsoleHelpers:
    def test_messages_go_to_stderr(self, capsys):
        console.heartbeat(1, 42, 12.34)
        console.source_switched("fallback")

        captured = capsys.readouterr()
        assert captured.out == ""
        assert "1 client, 42 requests, 12.3MB RSS" in captured.err
        assert "Source: fallback" in captured.err

    def test_messages_printed_literally(self, capsys):
        console.status_changed("Error: [/]evil exited")
        console.sample_failed("getProcessSnapshot failed: [bold]x")

        err = capsys.readouterr().err
        assert "Error: [/]evil exited" in err
        assert "getProcessSnapshot failed: [bold]x" in err

    def test_already_running_with_pid(self, capsys):
        console.already_running(4321)

        assert "PID 4321" in capsys.readouterr().err
