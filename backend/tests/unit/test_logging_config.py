"""Unit tests for the structlog logging configuration."""

import logging

import structlog

from prolocal.logging_config import setup_logging


class TestSetupLogging:
    def test_setup_logging_runs_without_error_debug(self):
        setup_logging(debug=True)
        logger = structlog.get_logger("test")
        # Should not raise
        logger.info("test_event", key="value")

    def test_setup_logging_runs_without_error_production(self, capsys):
        setup_logging(debug=False)
        logger = structlog.get_logger("test")
        logger.info("entitlement_lapsed", user_id="user-1")

        assert '"event": "entitlement_lapsed"' in capsys.readouterr().out

    def test_stripe_sdk_logger_is_quieted(self):
        setup_logging(debug=True)

        assert logging.getLogger("stripe").level == logging.WARNING


class TestStructlogContextBinding:
    def test_context_binding_works(self):
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id="test-123", event_id="evt_1")

        bound = structlog.contextvars.get_contextvars()
        assert bound["request_id"] == "test-123"
        assert bound["event_id"] == "evt_1"

        structlog.contextvars.clear_contextvars()
        assert structlog.contextvars.get_contextvars() == {}

    def test_context_cleared_between_requests(self):
        structlog.contextvars.bind_contextvars(request_id="req-1")
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id="req-2")

        assert structlog.contextvars.get_contextvars()["request_id"] == "req-2"
        structlog.contextvars.clear_contextvars()
