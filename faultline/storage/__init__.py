"""Durable store contracts and the in-memory implementation."""

from faultline.storage.base import AlertStore, ErrorStore
from faultline.storage.memory import MemoryAlertStore, MemoryErrorStore

__all__ = [
    "AlertStore",
    "ErrorStore",
    "MemoryAlertStore",
    "MemoryErrorStore",
]
