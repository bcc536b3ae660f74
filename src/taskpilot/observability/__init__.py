"""Logging and telemetry."""

from .logging import bind_context, get_logger, setup_logging
from .sinks import BroadcastSink, CollectingSink, EventSink
from .thinking import ThinkingEvent, ThinkingTracker, format_duration, format_tokens

__all__ = [
    "BroadcastSink",
    "CollectingSink",
    "EventSink",
    "ThinkingEvent",
    "ThinkingTracker",
    "bind_context",
    "format_duration",
    "format_tokens",
    "get_logger",
    "setup_logging",
]
