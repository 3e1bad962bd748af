"""
Phasekeeper - Events

Typed event bus and the built-in logging and JSONL sinks.
"""

from phasekeeper.events.bus import EventBus, EventSink
from phasekeeper.events.sinks import JsonlEventSink, LoggingSink

__all__ = [
    "EventBus",
    "EventSink",
    "JsonlEventSink",
    "LoggingSink",
]
