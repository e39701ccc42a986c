"""Registry mapping action types to their handlers."""

from __future__ import annotations

from typing import Dict, Optional

import httpx

from ..contracts import ActionType
from .base import ActionHandler, MessageSender, RecordSink
from .builtin import (
    AddTagHandler,
    CreateTaskHandler,
    HttpCallHandler,
    InMemoryRecordSink,
    LoggingSender,
    SendEmailHandler,
    SendSmsHandler,
    UpdateRecordHandler,
)


class ActionRegistry:
    """Lookup table of :class:`ActionHandler` instances keyed by type."""

    def __init__(self) -> None:
        self._handlers: Dict[ActionType, ActionHandler] = {}

    def register(self, handler: ActionHandler) -> None:
        """Register ``handler`` for its ``action_type``, replacing any previous one."""
        self._handlers[handler.action_type] = handler

    def get(self, action_type: ActionType) -> ActionHandler | None:
        return self._handlers.get(action_type)

    def __contains__(self, action_type: ActionType) -> bool:
        return action_type in self._handlers


def default_registry(
    sender: Optional[MessageSender] = None,
    sink: Optional[RecordSink] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> ActionRegistry:
    """Build a registry with every built-in handler."""

    sender = sender or LoggingSender()
    sink = sink or InMemoryRecordSink()
    registry = ActionRegistry()
    for handler in (
        SendEmailHandler(sender),
        SendSmsHandler(sender),
        HttpCallHandler(http_client),
        UpdateRecordHandler(sink),
        AddTagHandler(sink),
        CreateTaskHandler(sink),
    ):
        registry.register(handler)
    return registry
