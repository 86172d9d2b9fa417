"""Tests for logging configuration."""

import json
import logging
import sys

from iaas_connector.config import LoggingConfig
from iaas_connector.logging_config import JSONFormatter, TextFormatter, configure_logging


def _record(msg="test", args=()) -> logging.LogRecord:
    return logging.LogRecord(
        name="test", level=logging.INFO, pathname="", lineno=0,
        msg=msg, args=args, exc_info=None,
    )


class TestJSONFormatter:
    def test_formats_as_json(self):
        output = JSONFormatter().format(_record("hello %s", ("world",)))
        parsed = json.loads(output)
        assert parsed["message"] == "hello world"
        assert parsed["level"] == "INFO"
        assert "timestamp" in parsed

    def test_includes_extra_fields(self):
        record = _record()
        record.infrastructure_id = "infra-1"  # type: ignore
        record.region = "eu-west-1"  # type: ignore
        record.key_pair = "default-eu-west-1-abc"  # type: ignore
        parsed = json.loads(JSONFormatter().format(record))
        assert parsed["infrastructure_id"] == "infra-1"
        assert parsed["region"] == "eu-west-1"
        assert parsed["key_pair"] == "default-eu-west-1-abc"

    def test_ignores_unknown_extra_fields(self):
        record = _record()
        record.unrelated = "x"  # type: ignore
        assert "unrelated" not in json.loads(JSONFormatter().format(record))

    def test_includes_exception(self):
        try:
            raise ValueError("boom")
        except ValueError:
            record = logging.LogRecord(
                name="test", level=logging.ERROR, pathname="", lineno=0,
                msg="failed", args=(), exc_info=sys.exc_info(),
            )
        parsed = json.loads(JSONFormatter().format(record))
        assert "ValueError: boom" in parsed["exception"]


class TestTextFormatter:
    def test_appends_context(self):
        record = _record("Created security group")
        record.region = "eu-west-1"  # type: ignore
        output = TextFormatter().format(record)
        assert output.endswith("Created security group (region=eu-west-1)")

    def test_plain_without_context(self):
        assert TextFormatter().format(_record("hello")).endswith("[test] hello")


class TestConfigureLogging:
    def test_json_format(self):
        configure_logging(LoggingConfig(level="DEBUG", format="json"))
        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert any(isinstance(h.formatter, JSONFormatter) for h in root.handlers)

    def test_text_format(self):
        configure_logging(LoggingConfig(level="WARNING", format="text"))
        root = logging.getLogger()
        assert root.level == logging.WARNING
        assert any(isinstance(h.formatter, TextFormatter) for h in root.handlers)

    def test_replaces_existing_handlers(self):
        configure_logging(LoggingConfig())
        configure_logging(LoggingConfig())
        assert len(logging.getLogger().handlers) == 1

    def test_uvicorn_propagates_to_root(self):
        configure_logging(LoggingConfig())
        assert logging.getLogger("uvicorn.error").propagate
        assert logging.getLogger("uvicorn").handlers == []

    def test_suppresses_noisy_loggers(self):
        configure_logging(LoggingConfig())
        assert logging.getLogger("botocore").level >= logging.WARNING
        assert logging.getLogger("urllib3").level >= logging.WARNING
