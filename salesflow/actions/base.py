"""Base interfaces for workflow action handlers and their external sinks."""

from __future__ import annotations

import abc
from typing import Any, ClassVar, Dict, Optional, Protocol

from pydantic import BaseModel, JsonValue

from ..contracts import ActionType


class ActionResult(BaseModel):
    """Outcome reported by a handler.

    Handlers may either return ``success=False`` or raise
    :class:`~salesflow.exceptions.ActionHandlerError`; the step executor
    treats both as a failed action.
    """

    success: bool = True
    output: JsonValue = None
    error: Optional[str] = None


class ActionHandler(metaclass=abc.ABCMeta):
    """Abstract handler for one :class:`ActionType`."""

    action_type: ClassVar[ActionType]

    @abc.abstractmethod
    async def execute(
        self, config: Dict[str, Any], context: Dict[str, Any]
    ) -> ActionResult:
        """Perform the action.

        Args:
            config: Step configuration with placeholders already rendered.
            context: Execution variables (trigger payload merged with outputs).
        """
        raise NotImplementedError


class MessageSender(Protocol):
    """Outbound email/SMS provider."""

    async def send(
        self, channel: str, recipient: str, message: Dict[str, Any]
    ) -> Optional[str]:
        """Send ``message`` and return the provider's message id, if any."""


class RecordSink(Protocol):
    """Writes back-office records (customers, tags, tasks) on behalf of actions."""

    async def apply(self, operation: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """Apply ``operation`` and return a JSON-serialisable result."""
