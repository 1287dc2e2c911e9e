"""
Tests for logging_setup module.

Verifies:
- JSON structured logging format
- Component and severity tagging
- Session ID correlation
- latency_ms unit rendering
- Log level configuration
"""
import json
import logging
from io import StringIO
from datetime import datetime

import pytest

from logging_setup import (
    setup_logging,
    get_logger,
    Component,
    Severity,
    JSONFormatter,
    StructuredLogger,
)


@pytest.fixture
def capture_logs(monkeypatch):
    """Capture log output to a string buffer."""
    monkeypatch.setenv("NO_COLOR", "1")
    buffer = StringIO()
    handler = logging.StreamHandler(buffer)
    handler.setFormatter(JSONFormatter())

    logger = logging.getLogger()
    logger.handlers = []
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)

    yield buffer

    logger.handlers = []


def test_json_formatter_basic(capture_logs):
    """Test basic JSON log formatting."""
    logger = get_logger(Component.LLM)
    logger.info("Prompt evaluated", n_keep=412)

    log_entry = json.loads(capture_logs.getvalue().strip())

    assert log_entry["severity"] == "info"
    assert log_entry["component"] == "llm"
    assert log_entry["message"] == "Prompt evaluated"
    assert log_entry["n_keep"] == 412
    assert "timestamp" in log_entry


def test_json_formatter_timestamp_format(capture_logs):
    """Test that timestamp is in ISO8601 format."""
    logger = get_logger(Component.TURN_CONTROLLER)
    logger.info("Timestamp test")

    log_entry = json.loads(capture_logs.getvalue().strip())
    dt = datetime.fromisoformat(log_entry["timestamp"].replace("Z", "+00:00"))
    assert dt.tzinfo is not None


def test_session_id_correlation(capture_logs):
    logger = get_logger(Component.SESSION_STORE, session_id="talk")
    logger.info("Session test")

    log_entry = json.loads(capture_logs.getvalue().strip())
    assert log_entry["session_id"] == "talk"


def test_session_id_absent_when_not_provided(capture_logs):
    logger = get_logger(Component.TURN_CONTROLLER)
    logger.info("No session")

    log_entry = json.loads(capture_logs.getvalue().strip())
    assert "session_id" not in log_entry


def test_with_session_creates_new_logger(capture_logs):
    """Test that with_session creates a new logger with session ID."""
    base_logger = get_logger(Component.CONTEXT)
    session_logger = base_logger.with_session("sess_456")

    session_logger.info("With session")

    log_entry = json.loads(capture_logs.getvalue().strip())
    assert log_entry["session_id"] == "sess_456"
    assert log_entry["component"] == "context"
    assert session_logger.logger.name == base_logger.logger.name


def test_latency_rendered_with_unit(capture_logs):
    logger = get_logger(Component.STT)
    logger.info("Segment transcribed", latency_ms=412)

    output = capture_logs.getvalue().strip()
    assert '"latency_ms": 412 ms' in output


def test_severity_levels(capture_logs):
    """Test all severity levels."""
    logger = get_logger(Component.TURN_CONTROLLER)

    logger.debug("Debug message")
    logger.info("Info message")
    logger.warning("Warning message")
    logger.error("Error message")
    logger.critical("Critical message")

    lines = [line for line in capture_logs.getvalue().strip().split("\n") if line]
    assert len(lines) == 5

    severities = [json.loads(line)["severity"] for line in lines]
    assert severities == [s.value for s in Severity]


def test_component_enum():
    assert Component.TURN_CONTROLLER.value == "turn_controller"
    assert Component.VAD.value == "vad"
    assert Component.STT.value == "stt"
    assert Component.LLM.value == "llm"
    assert Component.TTS.value == "tts"
    assert Component.SESSION_STORE.value == "session_store"


def test_component_string_fallback(capture_logs):
    """Test that component can be a plain string."""
    logger = get_logger("custom_component")
    logger.info("Test")

    log_entry = json.loads(capture_logs.getvalue().strip())
    assert log_entry["component"] == "custom_component"


def test_multiple_extra_fields(capture_logs):
    logger = get_logger(Component.CONTEXT)
    logger.info(
        "Context window full, evicting",
        n_past=2040,
        persistence_disabled=True,
        snapshot={"n_keep": 412},
    )

    log_entry = json.loads(capture_logs.getvalue().strip())
    assert log_entry["n_past"] == 2040
    assert log_entry["persistence_disabled"] is True
    assert log_entry["snapshot"] == {"n_keep": 412}


def test_exception_logging(capture_logs):
    logger = get_logger(Component.LLM)

    try:
        raise ValueError("Test exception")
    except ValueError:
        logger.exception("Exception occurred")

    log_entry = json.loads(capture_logs.getvalue().strip())
    assert log_entry["severity"] == "error"
    assert "ValueError: Test exception" in log_entry["exception"]


def test_structured_logger_default_name():
    logger = StructuredLogger(Component.AUDIO)
    assert logger.logger.name == "talk_loop.audio"


def test_setup_logging_json():
    setup_logging(level="DEBUG", use_json=True)

    root_logger = logging.getLogger()
    assert root_logger.level == logging.DEBUG
    assert len(root_logger.handlers) == 1
    assert isinstance(root_logger.handlers[0].formatter, JSONFormatter)


def test_setup_logging_text():
    setup_logging(level="INFO", use_json=False)

    root_logger = logging.getLogger()
    assert root_logger.level == logging.INFO
    assert len(root_logger.handlers) == 1
    assert not isinstance(root_logger.handlers[0].formatter, JSONFormatter)
