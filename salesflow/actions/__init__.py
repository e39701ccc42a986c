"""Action handlers invoked by workflow action steps."""

from __future__ import annotations

from .base import ActionHandler, ActionResult, MessageSender, RecordSink
from .builtin import InMemoryRecordSink, LoggingSender
from .registry import ActionRegistry, default_registry
from .templating import render

__all__ = [
    "ActionHandler",
    "ActionRegistry",
    "ActionResult",
    "InMemoryRecordSink",
    "LoggingSender",
    "MessageSender",
    "RecordSink",
    "default_registry",
    "render",
]
