"""
In-memory resource store.

Stands in for a cluster API server or for the broker in tests and demos.
Objects are deep-copied on the way in and out so callers never share state
with the store.
"""

import asyncio
import copy
from typing import Any, Dict, List, Optional, Tuple

from clusterlink.api.types import Condition
from clusterlink.store.base import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    ResourceStore,
    StoreUnavailableError,
    WatchEvent,
    WatchEventType,
    WatchHandler,
)
from clusterlink.utils.logging import get_logger

logger = get_logger(__name__)


class MemoryStore(ResourceStore):
    """
    Resource store held in process memory.

    Features:
    - Monotonic resource versions and conditional writes
    - Watch notifications delivered in write order
    - Fault injection (unavailability, failing the next N calls)
    - History of status writes for assertions
    """

    def __init__(self, name: str):
        """
        Initialize store.

        Args:
            name: Store name used in logs (cluster ID or "broker")
        """
        self.name = name

        # (kind, namespace, name) -> object
        self._objects: Dict[Tuple[str, str, str], Any] = {}
        self._version = 0

        self._watchers: Dict[str, List[WatchHandler]] = {}

        self._available = True
        self._fail_count = 0

        # (namespace, name, conditions) for every status write
        self.status_history: List[Tuple[str, str, List[Condition]]] = []

    # Fault injection

    def set_available(self, available: bool) -> None:
        """
        Make the store reachable or unreachable.

        Args:
            available: False makes every call raise StoreUnavailableError
        """
        self._available = available

        logger.info("Store availability changed", store=self.name, available=available)

    def fail_next(self, count: int) -> None:
        """
        Fail the next count calls with StoreUnavailableError.

        Args:
            count: Number of calls to fail
        """
        self._fail_count = count

    async def _enter(self) -> None:
        # Yield like a network round trip would.
        await asyncio.sleep(0)

        if not self._available:
            raise StoreUnavailableError(f"store {self.name} is unavailable")

        if self._fail_count > 0:
            self._fail_count -= 1
            raise StoreUnavailableError(f"store {self.name} is temporarily unavailable")

    # Helpers

    @staticmethod
    def _kind_of(obj: Any) -> str:
        return type(obj).KIND

    def _key_of(self, obj: Any) -> Tuple[str, str, str]:
        return (self._kind_of(obj), obj.metadata.namespace, obj.metadata.name)

    def _next_version(self) -> int:
        self._version += 1
        return self._version

    def _notify(self, kind: str, event_type: WatchEventType, obj: Any) -> None:
        for handler in list(self._watchers.get(kind, [])):
            try:
                handler(WatchEvent(type=event_type, obj=copy.deepcopy(obj)))
            except Exception as e:
                logger.error(
                    "Watch handler failed",
                    store=self.name,
                    kind=kind,
                    error=str(e),
                    exc_info=True,
                )

    # ResourceStore

    async def create(self, obj: Any) -> Any:
        await self._enter()

        key = self._key_of(obj)
        if key in self._objects:
            raise AlreadyExistsError(f"{key[0]} {key[1]}/{key[2]} already exists in {self.name}")

        stored = copy.deepcopy(obj)
        stored.metadata.resource_version = self._next_version()
        self._objects[key] = stored

        self._notify(key[0], WatchEventType.ADDED, stored)

        return copy.deepcopy(stored)

    async def get(self, kind: str, namespace: str, name: str) -> Optional[Any]:
        await self._enter()

        stored = self._objects.get((kind, namespace, name))
        return copy.deepcopy(stored) if stored is not None else None

    async def list(
        self,
        kind: str,
        namespace: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> List[Any]:
        await self._enter()

        result = []
        for (obj_kind, obj_namespace, _), stored in sorted(self._objects.items()):
            if obj_kind != kind:
                continue
            if namespace is not None and obj_namespace != namespace:
                continue
            if labels and any(stored.metadata.labels.get(k) != v for k, v in labels.items()):
                continue
            result.append(copy.deepcopy(stored))

        return result

    async def update(self, obj: Any) -> Any:
        await self._enter()

        key = self._key_of(obj)
        current = self._objects.get(key)
        if current is None:
            raise NotFoundError(f"{key[0]} {key[1]}/{key[2]} not found in {self.name}")

        expected = obj.metadata.resource_version
        if expected and expected != current.metadata.resource_version:
            raise ConflictError(
                f"{key[0]} {key[1]}/{key[2]} was modified "
                f"(expected version {expected}, found {current.metadata.resource_version})"
            )

        stored = copy.deepcopy(obj)
        stored.metadata.resource_version = self._next_version()
        self._objects[key] = stored

        self._notify(key[0], WatchEventType.MODIFIED, stored)

        return copy.deepcopy(stored)

    async def update_status(
        self,
        kind: str,
        namespace: str,
        name: str,
        conditions: List[Condition],
    ) -> Any:
        await self._enter()

        key = (kind, namespace, name)
        current = self._objects.get(key)
        if current is None:
            raise NotFoundError(f"{kind} {namespace}/{name} not found in {self.name}")

        current.conditions = copy.deepcopy(conditions)
        current.metadata.resource_version = self._next_version()

        self.status_history.append((namespace, name, copy.deepcopy(conditions)))

        self._notify(kind, WatchEventType.MODIFIED, current)

        return copy.deepcopy(current)

    async def delete(
        self,
        kind: str,
        namespace: str,
        name: str,
        resource_version: Optional[int] = None,
    ) -> None:
        await self._enter()

        key = (kind, namespace, name)
        current = self._objects.get(key)
        if current is None:
            raise NotFoundError(f"{kind} {namespace}/{name} not found in {self.name}")

        if resource_version and resource_version != current.metadata.resource_version:
            raise ConflictError(
                f"{kind} {namespace}/{name} was modified "
                f"(expected version {resource_version}, found {current.metadata.resource_version})"
            )

        del self._objects[key]

        self._notify(kind, WatchEventType.DELETED, current)

    def add_watch(self, kind: str, handler: WatchHandler) -> None:
        self._watchers.setdefault(kind, []).append(handler)

    def remove_watch(self, kind: str, handler: WatchHandler) -> None:
        handlers = self._watchers.get(kind, [])
        if handler in handlers:
            handlers.remove(handler)
