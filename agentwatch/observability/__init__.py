"""Observability helpers."""

from agentwatch.observability.otel import (
    initialize,
    shutdown,
    start_span,
    record_lines_ingested,
    record_parser_failure,
    record_transition,
    record_tool_activity,
)

__all__ = [
    "initialize",
    "shutdown",
    "start_span",
    "record_lines_ingested",
    "record_parser_failure",
    "record_transition",
    "record_tool_activity",
]
