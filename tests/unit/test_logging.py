"""Unit tests for logging configuration."""

from __future__ import annotations

import json
import logging
import logging.handlers
from io import StringIO
from pathlib import Path
from typing import Any

import pytest
import structlog

from hotswap.config import LoggingConfig
from hotswap.logging import (
    add_correlation_id,
    bind_deploy_context,
    clear_deploy_context,
    get_correlation_id,
    get_logger,
    set_correlation_id,
    setup_logging,
)


@pytest.fixture(autouse=True)
def reset_logging() -> None:
    """Reset logging configuration before each test."""
    root = logging.getLogger()
    root.handlers.clear()

    structlog.reset_defaults()

    structlog.contextvars.clear_contextvars()
    set_correlation_id(None)


@pytest.fixture
def capture_stream() -> StringIO:
    """Create a StringIO stream for capturing log output."""
    return StringIO()


@pytest.fixture
def json_config() -> LoggingConfig:
    """Create a LoggingConfig for JSON output."""
    return LoggingConfig(level="INFO", format="json", file=None)


def _capture(config: LoggingConfig, stream: StringIO) -> None:
    setup_logging(config)
    logging.getLogger().handlers[0].stream = stream


def _entries(stream: StringIO) -> list[dict[str, Any]]:
    return [json.loads(line) for line in stream.getvalue().splitlines() if line.strip()]


def test_json_output_format(json_config: LoggingConfig, capture_stream: StringIO) -> None:
    """Test that JSON format produces valid JSON output."""
    _capture(json_config, capture_stream)

    logger = get_logger("test.module")
    logger.info("deploy_started", image="svc:v2", attempt=1)

    (entry,) = _entries(capture_stream)
    assert entry["event"] == "deploy_started"
    assert entry["image"] == "svc:v2"
    assert entry["attempt"] == 1
    assert entry["level"] == "info"
    assert entry["logger"] == "test.module"
    assert "timestamp" in entry


def test_console_output_format(capture_stream: StringIO) -> None:
    """Test that console format is human readable."""
    _capture(LoggingConfig(level="DEBUG", format="console"), capture_stream)

    get_logger("test.module").debug("probe_timeout", url="http://localhost/health")

    output = capture_stream.getvalue()
    assert "probe_timeout" in output
    assert "http://localhost/health" in output
    with pytest.raises(json.JSONDecodeError):
        json.loads(output.strip())


def test_log_level_filtering(json_config: LoggingConfig, capture_stream: StringIO) -> None:
    """Test that INFO filters out DEBUG."""
    _capture(json_config, capture_stream)

    logger = get_logger("test.module")
    logger.debug("hidden")
    logger.critical("rollback_failed")

    assert [e["event"] for e in _entries(capture_stream)] == ["rollback_failed"]


def test_correlation_id_processor() -> None:
    """Test the correlation ID processor directly."""
    event_dict: dict[str, Any] = {"event": "test"}

    result = add_correlation_id(None, "", event_dict.copy())
    assert "correlation_id" not in result

    set_correlation_id("run-1")
    result = add_correlation_id(None, "", event_dict.copy())
    assert result["correlation_id"] == "run-1"


def test_deploy_context_binding(json_config: LoggingConfig, capture_stream: StringIO) -> None:
    """Test target and run identifiers are attached until cleared."""
    _capture(json_config, capture_stream)
    logger = get_logger("test.module")

    bind_deploy_context(target="api", run_id="3f2a9c")
    assert get_correlation_id() == "3f2a9c"
    logger.info("inside_run")

    clear_deploy_context()
    assert get_correlation_id() is None
    logger.info("outside_run")

    inside, outside = _entries(capture_stream)
    assert inside["target"] == "api"
    assert inside["run_id"] == "3f2a9c"
    assert inside["correlation_id"] == "3f2a9c"
    assert "target" not in outside
    assert "correlation_id" not in outside


def test_file_rotation_handler_configuration(tmp_path: Path) -> None:
    """Test the rotating file handler honours the configuration."""
    log_file = tmp_path / "logs" / "hotswap.log"
    setup_logging(LoggingConfig(file=log_file, rotation_size_mb=2, retention_count=4))

    handler = logging.getLogger().handlers[0]
    assert isinstance(handler, logging.handlers.RotatingFileHandler)
    assert handler.maxBytes == 2 * 1024 * 1024
    assert handler.backupCount == 4
    assert log_file.parent.exists()

    get_logger("test.module").info("written")
    handler.flush()
    assert "written" in log_file.read_text()
    handler.close()
