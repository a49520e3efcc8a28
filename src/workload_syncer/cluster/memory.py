"""
In-memory object store with Kubernetes-like write semantics.

Used by the test suite and for dry runs. Behaves like an API server for
the parts the syncer depends on: a global resource version counter,
generation bumps on spec changes only, optimistic-concurrency
preconditions, finalizer-gated deletion and watch streams. Connectivity
loss and per-operation failures can be injected.
"""
import asyncio
import copy
import logging
import uuid
from collections import deque
from typing import Any, AsyncIterator, Deque, Dict, List, Optional, Tuple

from ..errors import (
    AlreadyExistsError,
    NotFoundError,
    OptimisticConflictError,
    SyncerError,
    TransientConnectivityError,
)
from ..models import ResourceType, format_time, get_name, get_namespace, utc_now
from .base import WatchEvent, WatchEventType, matches_selector

logger = logging.getLogger(__name__)

ObjectKey = Tuple[tuple, str, str]

# Fields that never count as spec for generation tracking
_NON_SPEC_FIELDS = ("apiVersion", "kind", "metadata", "status")


def _spec_view(obj: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in obj.items() if k not in _NON_SPEC_FIELDS}


class InMemoryCluster:
    """A single cluster's object store."""

    def __init__(self, name: str = "memory", resources: Optional[List[ResourceType]] = None):
        self.name = name
        self._resources: Dict[tuple, ResourceType] = {}
        self._objects: Dict[ObjectKey, Dict[str, Any]] = {}
        self._watchers: Dict[tuple, List[Tuple[Optional[str], asyncio.Queue]]] = {}
        self._failures: Dict[Tuple[str, Optional[str]], Deque[SyncerError]] = {}
        self._rv = 0
        self.reachable = True
        self.latency = 0.0
        self.writes: List[Tuple[str, str, str, str]] = []
        for rtype in resources or []:
            self.register(rtype)

    # --- test controls ---

    def register(self, rtype: ResourceType) -> None:
        """Advertise a resource type."""
        self._resources[rtype.gvk] = rtype

    def unregister(self, rtype: ResourceType) -> None:
        self._resources.pop(rtype.gvk, None)

    def set_reachable(self, reachable: bool) -> None:
        self.reachable = reachable
        logger.info(f"Cluster '{self.name}' reachable={reachable}")

    def fail_next(self, operation: str, error: SyncerError, times: int = 1, kind: Optional[str] = None) -> None:
        """Make the next ``times`` calls of ``operation`` (optionally only for ``kind``) raise ``error``."""
        queue = self._failures.setdefault((operation, kind), deque())
        for _ in range(times):
            queue.append(error)

    def writes_for(self, operation: Optional[str] = None) -> List[Tuple[str, str, str, str]]:
        return [w for w in self.writes if operation is None or w[0] == operation]

    # --- internals ---

    async def _enter(self, operation: str, rtype: Optional[ResourceType] = None) -> None:
        if self.latency:
            await asyncio.sleep(self.latency)
        if not self.reachable:
            raise TransientConnectivityError(f"cluster '{self.name}' is unreachable")
        for key in ((operation, rtype.kind if rtype else None), (operation, None)):
            pending = self._failures.get(key)
            if pending:
                raise pending.popleft()

    def _next_rv(self) -> str:
        self._rv += 1
        return str(self._rv)

    @staticmethod
    def _key(rtype: ResourceType, namespace: str, name: str) -> ObjectKey:
        return (rtype.gvk, namespace if rtype.namespaced else "", name)

    def _notify(self, rtype: ResourceType, event_type: WatchEventType, obj: Dict[str, Any]) -> None:
        namespace = get_namespace(obj)
        for watch_ns, queue in self._watchers.get(rtype.gvk, []):
            if watch_ns and watch_ns != namespace:
                continue
            queue.put_nowait(WatchEvent(event_type, copy.deepcopy(obj)))

    def _record(self, operation: str, rtype: ResourceType, obj_or_ns: Any, name: str = "") -> None:
        if isinstance(obj_or_ns, dict):
            self.writes.append((operation, rtype.kind, get_namespace(obj_or_ns), get_name(obj_or_ns)))
        else:
            self.writes.append((operation, rtype.kind, obj_or_ns, name))

    # --- ClusterClient ---

    async def get(self, rtype: ResourceType, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        await self._enter("get", rtype)
        obj = self._objects.get(self._key(rtype, namespace, name))
        return copy.deepcopy(obj) if obj is not None else None

    async def list(
        self,
        rtype: ResourceType,
        namespace: Optional[str] = None,
        label_selector: Optional[Dict[str, str]] = None,
    ) -> List[Dict[str, Any]]:
        await self._enter("list", rtype)
        result = []
        for (gvk, ns, _), obj in sorted(self._objects.items(), key=lambda item: item[0][1:]):
            if gvk != rtype.gvk:
                continue
            if namespace and ns != namespace:
                continue
            if not matches_selector(obj["metadata"].get("labels"), label_selector):
                continue
            result.append(copy.deepcopy(obj))
        return result

    async def create(self, rtype: ResourceType, obj: Dict[str, Any]) -> Dict[str, Any]:
        await self._enter("create", rtype)
        stored = copy.deepcopy(obj)
        metadata = stored.setdefault("metadata", {})
        if not rtype.namespaced:
            metadata.pop("namespace", None)
        key = self._key(rtype, get_namespace(stored), get_name(stored))
        if key in self._objects:
            raise AlreadyExistsError(f"{rtype.kind} {get_namespace(stored)}/{get_name(stored)} already exists")
        stored.setdefault("apiVersion", rtype.api_version)
        stored.setdefault("kind", rtype.kind)
        for server_field in ("deletionTimestamp", "resourceVersion", "generation"):
            metadata.pop(server_field, None)
        metadata["uid"] = metadata.get("uid") or str(uuid.uuid4())
        metadata["resourceVersion"] = self._next_rv()
        metadata["generation"] = 1
        metadata["creationTimestamp"] = format_time(utc_now())
        self._objects[key] = stored
        self._record("create", rtype, stored)
        self._notify(rtype, WatchEventType.ADDED, stored)
        return copy.deepcopy(stored)

    def _existing(self, rtype: ResourceType, obj: Dict[str, Any]) -> Tuple[ObjectKey, Dict[str, Any]]:
        key = self._key(rtype, get_namespace(obj), get_name(obj))
        current = self._objects.get(key)
        if current is None:
            raise NotFoundError(f"{rtype.kind} {get_namespace(obj)}/{get_name(obj)} not found")
        expected = obj.get("metadata", {}).get("resourceVersion")
        if expected and str(expected) != current["metadata"]["resourceVersion"]:
            raise OptimisticConflictError(
                f"{rtype.kind} {get_name(obj)}: resourceVersion {expected} is stale "
                f"(current {current['metadata']['resourceVersion']})"
            )
        return key, current

    async def update(self, rtype: ResourceType, obj: Dict[str, Any]) -> Dict[str, Any]:
        await self._enter("update", rtype)
        key, current = self._existing(rtype, obj)
        stored = copy.deepcopy(obj)
        metadata = stored.setdefault("metadata", {})
        old_meta = current["metadata"]
        for server_field in ("uid", "creationTimestamp", "deletionTimestamp"):
            if server_field in old_meta:
                metadata[server_field] = old_meta[server_field]
            else:
                metadata.pop(server_field, None)
        if "status" in current:
            stored["status"] = copy.deepcopy(current["status"])
        else:
            stored.pop("status", None)
        generation = int(old_meta.get("generation", 1))
        if _spec_view(stored) != _spec_view(current):
            generation += 1
        metadata["generation"] = generation
        metadata["resourceVersion"] = self._next_rv()
        self._record("update", rtype, stored)
        if metadata.get("deletionTimestamp") and not metadata.get("finalizers"):
            del self._objects[key]
            self._notify(rtype, WatchEventType.DELETED, stored)
        else:
            self._objects[key] = stored
            self._notify(rtype, WatchEventType.MODIFIED, stored)
        return copy.deepcopy(stored)

    async def update_status(self, rtype: ResourceType, obj: Dict[str, Any]) -> Dict[str, Any]:
        await self._enter("update_status", rtype)
        key, current = self._existing(rtype, obj)
        stored = copy.deepcopy(current)
        stored["status"] = copy.deepcopy(obj.get("status") or {})
        stored["metadata"]["resourceVersion"] = self._next_rv()
        self._objects[key] = stored
        self._record("update_status", rtype, stored)
        self._notify(rtype, WatchEventType.MODIFIED, stored)
        return copy.deepcopy(stored)

    async def delete(
        self,
        rtype: ResourceType,
        namespace: str,
        name: str,
        resource_version: Optional[str] = None,
    ) -> None:
        await self._enter("delete", rtype)
        key = self._key(rtype, namespace, name)
        current = self._objects.get(key)
        if current is None:
            raise NotFoundError(f"{rtype.kind} {namespace}/{name} not found")
        if resource_version and str(resource_version) != current["metadata"]["resourceVersion"]:
            raise OptimisticConflictError(f"{rtype.kind} {namespace}/{name}: delete precondition failed")
        self._record("delete", rtype, namespace, name)
        if current["metadata"].get("finalizers"):
            if not current["metadata"].get("deletionTimestamp"):
                current["metadata"]["deletionTimestamp"] = format_time(utc_now())
                current["metadata"]["resourceVersion"] = self._next_rv()
                self._notify(rtype, WatchEventType.MODIFIED, current)
            return
        del self._objects[key]
        self._notify(rtype, WatchEventType.DELETED, current)

    async def watch(self, rtype: ResourceType, namespace: Optional[str] = None) -> AsyncIterator[WatchEvent]:
        """Yield synthetic ADDED events for existing objects, then live changes."""
        await self._enter("watch", rtype)
        queue: asyncio.Queue = asyncio.Queue()
        entry = (namespace, queue)
        self._watchers.setdefault(rtype.gvk, []).append(entry)
        try:
            for (gvk, ns, _), obj in list(self._objects.items()):
                if gvk == rtype.gvk and (not namespace or ns == namespace):
                    queue.put_nowait(WatchEvent(WatchEventType.ADDED, copy.deepcopy(obj)))
            while True:
                yield await queue.get()
        finally:
            self._watchers[rtype.gvk].remove(entry)

    async def server_resources(self) -> List[ResourceType]:
        await self._enter("discovery")
        return list(self._resources.values())

    async def probe(self) -> None:
        await self._enter("probe")


__all__ = ["InMemoryCluster"]
