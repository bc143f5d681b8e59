"""Exception hierarchy shared by every faultline component."""

from __future__ import annotations


class FaultlineError(Exception):
    """Base exception for all faultline errors."""


class ValidationError(FaultlineError):
    """Unknown id or a call that violates the operation's contract."""


class InvalidStateError(ValidationError):
    """A lifecycle transition was requested from a status that forbids it."""

    def __init__(self, message: str, current_status: str) -> None:
        super().__init__(message)
        self.current_status = current_status


class ConfigurationError(FaultlineError):
    """A channel or component is referenced but not (correctly) configured."""


class DeliveryError(FaultlineError):
    """A channel adapter failed to deliver a notification."""


class PersistenceError(FaultlineError):
    """The durable store is unavailable or rejected a write."""
