"""Observability helpers."""

from prioritysync.observability.otel import (
    initialize,
    shutdown,
    start_span,
    record_sync_outcome,
    record_remote_call,
)

__all__ = [
    "initialize",
    "shutdown",
    "start_span",
    "record_sync_outcome",
    "record_remote_call",
]
