"""
Resource stores with watch notifications.
"""

from clusterlink.store.base import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    ResourceStore,
    StoreError,
    StoreUnavailableError,
    WatchEvent,
    WatchEventType,
    WatchHandler,
)
from clusterlink.store.memory import MemoryStore

__all__ = [
    "AlreadyExistsError",
    "ConflictError",
    "MemoryStore",
    "NotFoundError",
    "ResourceStore",
    "StoreError",
    "StoreUnavailableError",
    "WatchEvent",
    "WatchEventType",
    "WatchHandler",
]
