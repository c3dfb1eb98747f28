"""Tests for structured logging configuration."""

import pytest
import structlog

from creator_billing.config import configure_logging, get_logger


@pytest.fixture(autouse=True)
def reset_structlog():
    yield
    structlog.reset_defaults()


def test_json_format_uses_json_renderer():
    """Test that the json format ends the chain with a JSON renderer."""
    configure_logging(level="INFO", format="json")

    processors = structlog.get_config()["processors"]
    assert structlog.is_configured()
    assert isinstance(processors[-1], structlog.processors.JSONRenderer)


def test_console_format_uses_console_renderer():
    configure_logging(level="DEBUG", format="console")

    processors = structlog.get_config()["processors"]
    assert isinstance(processors[-1], structlog.dev.ConsoleRenderer)


def test_defaults_come_from_settings(settings):
    """Test that level and format fall back to LOG_LEVEL and LOG_FORMAT."""
    configure_logging()

    processors = structlog.get_config()["processors"]
    assert settings.log_format == "console"
    assert isinstance(processors[-1], structlog.dev.ConsoleRenderer)


def test_captured_events_keep_their_fields():
    """Test that bound loggers emit snake_case events with their fields."""
    with structlog.testing.capture_logs() as logs:
        get_logger("creator_billing.tests").bind(component="ledger").info(
            "payment_recorded", invoice_id="inv-1"
        )

    assert logs == [
        {"event": "payment_recorded", "component": "ledger", "invoice_id": "inv-1", "log_level": "info"}
    ]
