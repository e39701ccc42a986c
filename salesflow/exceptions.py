"""Error taxonomy for the automation and delivery core."""

from __future__ import annotations


class SalesflowError(Exception):
    """Base class for all salesflow errors."""


class InvalidRequest(SalesflowError):
    """A request to a CRUD or trigger entry point is malformed."""


class NotFound(SalesflowError):
    """A referenced workflow, execution, subscription or failure is missing."""


class EvaluationError(SalesflowError):
    """A condition expression is malformed."""


class ActionHandlerError(SalesflowError):
    """An action handler failed to perform its external effect."""


class DeliveryError(SalesflowError):
    """A webhook POST failed (network, timeout or non-2xx)."""

    def __init__(self, message: str, code: str, http_status: int | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.http_status = http_status


class ConcurrencyConflict(SalesflowError):
    """Another process already claimed the row this process tried to claim."""
