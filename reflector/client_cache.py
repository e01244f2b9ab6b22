"""
Namespaced client cache.

Memoizes one API handle per namespace so handles are not rebuilt on every
call. Handles are created on first use and live for the process lifetime.
"""

import asyncio
import functools
from typing import Any, Callable, Dict, Generic, List, TypeVar

from common.logging_config import get_logger
from common.rwlock import ReadWriteLock
from common.types import SecretRef

logger = get_logger(__name__)

T = TypeVar("T")


class NamespacedClientCache(Generic[T]):
    """
    Thread-safe namespace -> handle mapping with async get/create/replace.

    Lookups take the shared lock; a miss builds the handle with no lock held
    and inserts it under the exclusive lock if still absent. When two callers
    race on the same namespace, the loser's handle is discarded and both get
    the stored one. The lock is never held across a network call.
    """

    def __init__(self, handle_factory: Callable[[str], Any]):
        """
        Initialize an empty cache.

        Args:
            handle_factory: Builds the API handle for a namespace. The handle
                must offer blocking get(name), create(item) and
                replace(name, item).
        """
        self._handle_factory = handle_factory
        self._handles: Dict[str, Any] = {}
        self._lock = ReadWriteLock()

    def handle(self, namespace: str):
        """
        Return the handle for namespace, constructing it on first use.

        Args:
            namespace: Kubernetes namespace

        Returns:
            The single cached handle for that namespace
        """
        with self._lock.read_locked():
            existing = self._handles.get(namespace)
        if existing is not None:
            return existing

        candidate = self._handle_factory(namespace)

        with self._lock.write_locked():
            stored = self._handles.setdefault(namespace, candidate)

        if stored is candidate:
            logger.debug(f"Created API handle for namespace {namespace}")
        return stored

    def namespaces(self) -> List[str]:
        with self._lock.read_locked():
            return sorted(self._handles)

    def __len__(self) -> int:
        with self._lock.read_locked():
            return len(self._handles)

    async def _call(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args))

    async def get(self, full_name: str) -> T:
        """
        Read an object by "<namespace>/<name>".

        Raises:
            NotFoundError: If the object does not exist
            TransportError: For any other API failure
        """
        ref = SecretRef.parse(full_name)
        handle = self.handle(ref.namespace)
        return await self._call(handle.get, ref.name)

    async def create(self, namespace: str, item: T) -> T:
        """
        Create an object in namespace.

        Raises:
            ConflictError: If the object already exists
            TransportError: For any other API failure
        """
        handle = self.handle(namespace)
        return await self._call(handle.create, item)

    async def replace(self, full_name: str, item: T) -> T:
        """
        Replace an existing object by "<namespace>/<name>".

        Raises:
            ConflictError: If the resourceVersion is stale
            NotFoundError: If the object vanished since it was read
            TransportError: For any other API failure
        """
        ref = SecretRef.parse(full_name)
        handle = self.handle(ref.namespace)
        return await self._call(handle.replace, ref.name, item)
