"""
Unit tests for operation-scoped logging context.
"""

from __future__ import annotations

import logging

import structlog

from netforge.config import LoggingConfig
from netforge.telemetry import bind_operation, clear_operation, setup_logging


class TestOperationContext:
    def test_bind_and_clear(self):
        bind_operation("01J0000000", "add", node_id="node3")
        bound = structlog.contextvars.get_contextvars()
        assert bound["operation_id"] == "01J0000000"
        assert bound["operation"] == "add"
        assert bound["node_id"] == "node3"

        clear_operation()
        bound = structlog.contextvars.get_contextvars()
        assert "operation_id" not in bound
        assert "node_id" not in bound

    def test_operation_id_in_json_output(self, capsys):
        setup_logging(LoggingConfig(level="INFO", format="json"))
        try:
            bind_operation("01JTEST", "delete")
            structlog.get_logger("netforge.test").info("step_done", step="render")
        finally:
            clear_operation()
            structlog.reset_defaults()
            logging.getLogger().handlers.clear()

        out = capsys.readouterr().out
        assert '"operation_id": "01JTEST"' in out
        assert '"event": "step_done"' in out
