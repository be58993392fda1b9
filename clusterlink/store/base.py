"""
Resource store interface.

A resource store holds the objects of one cluster (or of the broker) and
notifies watchers of every change. Writes are conditional on the object's
resource_version when it is set, which is how concurrent writers detect
each other.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from clusterlink.api.types import Condition
from clusterlink.utils.retry import NonRetryableError, RetryableError


class WatchEventType(str, Enum):
    """Kinds of watch notifications."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


@dataclass
class WatchEvent:
    """
    A watch notification.

    Attributes:
        type: What happened to the object
        obj: Object state after the change (last state for deletions)
    """
    type: WatchEventType
    obj: Any


# Handlers run synchronously inside the write that triggered them, so they
# must not block; they hand keys to a work queue.
WatchHandler = Callable[[WatchEvent], None]


class StoreError(Exception):
    """Base class for store errors."""
    pass


class NotFoundError(StoreError, NonRetryableError):
    """Object does not exist."""
    pass


class AlreadyExistsError(StoreError):
    """Object with the same identity already exists."""
    pass


class ConflictError(StoreError, RetryableError):
    """Conditional write lost against a concurrent writer."""
    pass


class StoreUnavailableError(StoreError, RetryableError):
    """Store cannot be reached."""
    pass


class ResourceStore(ABC):
    """Interface of a store with watch notifications."""

    name: str

    @abstractmethod
    async def create(self, obj: Any) -> Any:
        """
        Create an object.

        Args:
            obj: Object to create

        Returns:
            Stored copy with resource_version assigned

        Raises:
            AlreadyExistsError: If an object with the same identity exists
        """

    @abstractmethod
    async def get(self, kind: str, namespace: str, name: str) -> Optional[Any]:
        """
        Get an object.

        Returns:
            Copy of the object or None
        """

    @abstractmethod
    async def list(
        self,
        kind: str,
        namespace: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> List[Any]:
        """
        List objects of a kind, optionally filtered by namespace and labels.
        """

    @abstractmethod
    async def update(self, obj: Any) -> Any:
        """
        Replace an object.

        The write is conditional when obj.metadata.resource_version is non-zero.

        Raises:
            NotFoundError: If the object does not exist
            ConflictError: If the resource version is stale
        """

    @abstractmethod
    async def update_status(
        self,
        kind: str,
        namespace: str,
        name: str,
        conditions: List[Condition],
    ) -> Any:
        """
        Replace the status conditions of an object.

        Raises:
            NotFoundError: If the object does not exist
        """

    @abstractmethod
    async def delete(
        self,
        kind: str,
        namespace: str,
        name: str,
        resource_version: Optional[int] = None,
    ) -> None:
        """
        Delete an object, conditionally when resource_version is given.

        Raises:
            NotFoundError: If the object does not exist
            ConflictError: If the resource version is stale
        """

    @abstractmethod
    def add_watch(self, kind: str, handler: WatchHandler) -> None:
        """Register a handler for changes to objects of a kind."""

    @abstractmethod
    def remove_watch(self, kind: str, handler: WatchHandler) -> None:
        """Unregister a handler."""
