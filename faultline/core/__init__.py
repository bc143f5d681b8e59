"""Core module: config, types, logging, bus and scheduling."""

from faultline.core.bus import EventBus, Signal
from faultline.core.config import Settings, get_settings, load_settings, reset_settings
from faultline.core.exceptions import (
    ConfigurationError,
    DeliveryError,
    FaultlineError,
    InvalidStateError,
    PersistenceError,
    ValidationError,
)
from faultline.core.logging import setup_logging
from faultline.core.scheduler import PeriodicTask, TimerRegistry

__all__ = [
    "ConfigurationError",
    "DeliveryError",
    "EventBus",
    "FaultlineError",
    "InvalidStateError",
    "PeriodicTask",
    "PersistenceError",
    "Settings",
    "Signal",
    "TimerRegistry",
    "ValidationError",
    "get_settings",
    "load_settings",
    "reset_settings",
    "setup_logging",
]
