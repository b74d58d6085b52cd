"""
Tests for Logging Infrastructure
"""
import pytest
import json
import logging
from io import StringIO

from app.core.logging import (
    REDACTED,
    get_logger,
    set_correlation_id,
    get_correlation_id,
    generate_correlation_id,
    redact_headers,
    violation_log_level,
    JSONFormatter,
)


class TestCorrelationId:
    """Tests for correlation ID management"""

    @pytest.mark.unit
    def test_generate_correlation_id(self):
        """Test correlation ID generation"""
        cid = generate_correlation_id()

        assert cid is not None
        assert len(cid) == 8
        assert cid.isalnum()

    @pytest.mark.unit
    def test_set_and_get_correlation_id(self):
        """Test setting and getting correlation ID"""
        test_id = "test1234"
        result = set_correlation_id(test_id)

        assert result == test_id
        assert get_correlation_id() == test_id

    @pytest.mark.unit
    def test_set_correlation_id_generates_if_none(self):
        """Test that set_correlation_id generates ID if none provided"""
        result = set_correlation_id(None)

        assert result is not None
        assert len(result) == 8


class TestJSONFormatter:
    """Tests for JSON log formatting"""

    @pytest.fixture
    def log_stream(self) -> StringIO:
        """Create a string stream for capturing logs"""
        return StringIO()

    @pytest.fixture
    def json_handler(self, log_stream: StringIO) -> logging.Handler:
        """Create a handler with JSON formatter"""
        handler = logging.StreamHandler(log_stream)
        handler.setFormatter(JSONFormatter())
        return handler

    @pytest.mark.unit
    def test_json_format_basic(self, log_stream: StringIO, json_handler: logging.Handler):
        """Test basic JSON log formatting"""
        logger = logging.getLogger("test_json_basic")
        logger.addHandler(json_handler)
        logger.setLevel(logging.INFO)

        logger.info("Test message")

        log_entry = json.loads(log_stream.getvalue())

        assert log_entry["level"] == "INFO"
        assert log_entry["message"] == "Test message"
        assert "timestamp" in log_entry
        assert log_entry["logger"] == "test_json_basic"

    @pytest.mark.unit
    def test_json_format_with_correlation_id(
        self,
        log_stream: StringIO,
        json_handler: logging.Handler
    ):
        """Test JSON formatting includes correlation ID"""
        set_correlation_id("testcorr")

        logger = logging.getLogger("test_json_corr")
        logger.addHandler(json_handler)
        logger.setLevel(logging.INFO)

        logger.info("Correlated message")

        log_entry = json.loads(log_stream.getvalue())

        assert log_entry.get("correlation_id") == "testcorr"

    @pytest.mark.unit
    def test_json_format_with_exception(
        self,
        log_stream: StringIO,
        json_handler: logging.Handler
    ):
        """Test JSON formatting includes exception info"""
        logger = logging.getLogger("test_json_exc")
        logger.addHandler(json_handler)
        logger.setLevel(logging.ERROR)

        try:
            raise ValueError("Test error")
        except ValueError:
            logger.error("Error occurred", exc_info=True)

        log_entry = json.loads(log_stream.getvalue())

        assert log_entry["level"] == "ERROR"
        assert "ValueError" in log_entry["exception"]


class TestStructuredLogger:
    """Tests for structured logger functionality"""

    @pytest.fixture
    def captured(self):
        stream = StringIO()
        handler = logging.StreamHandler(stream)
        handler.setFormatter(JSONFormatter())
        logger = get_logger("test.structured")
        logger.addHandler(handler)
        logger.setLevel(logging.DEBUG)
        yield logger, stream
        logger.removeHandler(handler)

    @pytest.mark.unit
    def test_get_logger(self):
        logger = get_logger("test.module")

        assert logger.name == "test.module"

    @pytest.mark.unit
    def test_logger_with_extra_data(self, captured):
        logger, stream = captured

        logger.info("Message with data", extra_data={"config_id": 123, "platform": "facebook"})

        log_entry = json.loads(stream.getvalue())
        assert log_entry["extra"]["config_id"] == 123
        assert log_entry["extra"]["platform"] == "facebook"

    @pytest.mark.unit
    def test_log_at_uses_runtime_level(self, captured):
        logger, stream = captured

        logger.log_at(logging.CRITICAL, "Escalated", extra_data={"violation_count": 12})

        log_entry = json.loads(stream.getvalue())
        assert log_entry["level"] == "CRITICAL"
        assert log_entry["extra"]["violation_count"] == 12


class TestRedaction:
    """Signature and credential headers never reach a log line"""

    @pytest.mark.unit
    def test_signature_headers_are_redacted(self):
        headers = {
            "X-Hub-Signature-256": "sha256=abc",
            "x-li-signature": "def",
            "X-Twitter-Webhooks-Signature": "sha256=xyz",
            "X-Admin-API-Key": "secret",
            "Content-Type": "application/json",
        }

        redacted = redact_headers(headers)

        assert redacted["X-Hub-Signature-256"] == REDACTED
        assert redacted["x-li-signature"] == REDACTED
        assert redacted["X-Twitter-Webhooks-Signature"] == REDACTED
        assert redacted["X-Admin-API-Key"] == REDACTED
        assert redacted["Content-Type"] == "application/json"

    @pytest.mark.unit
    def test_original_headers_untouched(self):
        headers = {"Authorization": "Bearer token"}

        redact_headers(headers)

        assert headers["Authorization"] == "Bearer token"


class TestViolationLogLevel:
    """Escalation of repeated violations"""

    @pytest.mark.unit
    @pytest.mark.parametrize("count,expected", [
        (1, logging.INFO),
        (4, logging.INFO),
        (5, logging.WARNING),
        (9, logging.WARNING),
        (10, logging.CRITICAL),
        (100, logging.CRITICAL),
    ])
    def test_levels(self, count: int, expected: int):
        assert violation_log_level(count) == expected
