"""
Object Store - Client interface consumed by the propagator.

Defines the error taxonomy and the async CRUD contract of the declarative
object store, plus an in-memory implementation used for local runs and tests.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Dict, List, Optional, Tuple, Type, TypeVar

from models import StoredObject

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=StoredObject)

# Called with the object after every create, update or delete
Watcher = Callable[[StoredObject], Awaitable[None]]


class StoreError(Exception):
    """Base class for object store failures."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class NotFoundError(StoreError):
    """The addressed object does not exist."""

    def __init__(self, kind: str, namespace: str, name: str):
        self.kind = kind
        self.namespace = namespace
        self.name = name
        super().__init__(f"{kind} {namespace}/{name} not found")


class ConflictError(StoreError):
    """A concurrent create or update won the race for this object."""

    def __init__(self, kind: str, namespace: str, name: str, reason: str = ""):
        self.kind = kind
        self.namespace = namespace
        self.name = name
        message = f"Conflict on {kind} {namespace}/{name}"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class ObjectStore(ABC):
    """
    Async client for the declarative object store.

    Implementations must give per-object atomic create/update/delete.
    ``update`` never touches ``status`` and ``update_status`` touches nothing
    else, mirroring a status subresource.

    Watchers registered with ``add_watcher`` are awaited after every
    successful create, update and delete. Status writes are not reported.
    """

    def __init__(self):
        self._watchers: List[Watcher] = []

    def add_watcher(self, watcher: Watcher) -> None:
        self._watchers.append(watcher)

    async def _notify(self, obj: StoredObject) -> None:
        for watcher in self._watchers:
            try:
                await watcher(obj)
            except Exception as e:
                # The write itself succeeded; resync covers the missed trigger
                logger.error(
                    f"Watcher failed for {obj.kind} {obj.key}: {e}", exc_info=True
                )

    @abstractmethod
    async def list(
        self,
        model: Type[T],
        namespace: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> List[T]:
        """
        List objects of a kind.

        Args:
            model: The model class; its ``kind`` selects the objects.
            namespace: Restrict to one namespace (``None`` = all).
            labels: Only return objects carrying all of these labels.
        """
        pass

    @abstractmethod
    async def get(self, model: Type[T], namespace: str, name: str) -> T:
        """Fetch one object. Raises NotFoundError."""
        pass

    @abstractmethod
    async def create(self, obj: T) -> T:
        """Create an object. Raises ConflictError if it already exists."""
        pass

    @abstractmethod
    async def update(self, obj: T) -> T:
        """
        Replace an object's metadata and spec.

        Raises ConflictError on a stale resource version and NotFoundError
        if the object is gone.
        """
        pass

    @abstractmethod
    async def delete(self, obj: StoredObject) -> None:
        """Delete an object. Raises NotFoundError."""
        pass

    @abstractmethod
    async def update_status(self, obj: T) -> T:
        """Replace an object's status only. Raises NotFoundError."""
        pass

    async def close(self) -> None:
        """Release any held resources."""
        pass


def _matches_labels(obj: StoredObject, labels: Optional[Dict[str, str]]) -> bool:
    if not labels:
        return True
    own = obj.metadata.labels
    return all(own.get(k) == v for k, v in labels.items())


class MemoryObjectStore(ObjectStore):
    """
    Dict-backed object store.

    Objects are copied on the way in and out so callers never share state
    with the store. Resource versions are a global integer counter.
    """

    def __init__(self):
        super().__init__()
        self._objects: Dict[Tuple[str, str, str], StoredObject] = {}
        self._version = 0
        self._lock = asyncio.Lock()

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    @staticmethod
    def _key(obj: StoredObject) -> Tuple[str, str, str]:
        return (obj.kind, obj.namespace, obj.name)

    async def list(self, model, namespace=None, labels=None):
        async with self._lock:
            items = [
                obj.model_copy(deep=True)
                for (kind, ns, _), obj in sorted(self._objects.items())
                if kind == model.kind
                and (namespace is None or ns == namespace)
                and _matches_labels(obj, labels)
            ]
        return items

    async def get(self, model, namespace, name):
        async with self._lock:
            obj = self._objects.get((model.kind, namespace, name))
            if obj is None:
                raise NotFoundError(model.kind, namespace, name)
            return obj.model_copy(deep=True)

    async def create(self, obj):
        async with self._lock:
            key = self._key(obj)
            if key in self._objects:
                raise ConflictError(obj.kind, obj.namespace, obj.name, "already exists")
            stored = obj.model_copy(deep=True)
            stored.metadata.resource_version = self._next_version()
            self._objects[key] = stored
            created = stored.model_copy(deep=True)

        logger.debug(f"Created {obj.kind} {obj.key}")
        # Watchers may read the store, so they run after the lock is released
        await self._notify(created.model_copy(deep=True))
        return created

    async def update(self, obj):
        async with self._lock:
            key = self._key(obj)
            current = self._objects.get(key)
            if current is None:
                raise NotFoundError(obj.kind, obj.namespace, obj.name)
            if (
                obj.metadata.resource_version
                and obj.metadata.resource_version != current.metadata.resource_version
            ):
                raise ConflictError(
                    obj.kind, obj.namespace, obj.name, "resource version is stale"
                )
            stored = obj.model_copy(deep=True)
            if hasattr(current, "status"):
                stored.status = current.status.model_copy(deep=True)
            stored.metadata.resource_version = self._next_version()
            self._objects[key] = stored
            updated = stored.model_copy(deep=True)

        await self._notify(updated.model_copy(deep=True))
        return updated

    async def delete(self, obj):
        async with self._lock:
            key = self._key(obj)
            removed = self._objects.pop(key, None)
            if removed is None:
                raise NotFoundError(obj.kind, obj.namespace, obj.name)

        await self._notify(removed)

    async def update_status(self, obj):
        async with self._lock:
            key = self._key(obj)
            current = self._objects.get(key)
            if current is None:
                raise NotFoundError(obj.kind, obj.namespace, obj.name)
            stored = current.model_copy(deep=True)
            stored.status = obj.status.model_copy(deep=True)
            stored.metadata.resource_version = self._next_version()
            self._objects[key] = stored
            return stored.model_copy(deep=True)
