"""
Netforge -- Observability

Structured logging for every lifecycle operation.
"""

from netforge.telemetry.logging import bind_operation, clear_operation, setup_logging

__all__ = ["setup_logging", "bind_operation", "clear_operation"]
