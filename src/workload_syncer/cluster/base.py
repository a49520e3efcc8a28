"""
Cluster client contract shared by the HTTP and in-memory stores.

Every method is a coroutine and raises the exceptions from
``workload_syncer.errors``; callers never see transport-specific errors.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, runtime_checkable

from ..models import ResourceType


class WatchEventType(str, Enum):
    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


@dataclass
class WatchEvent:
    """One change notification from a watch stream."""
    type: WatchEventType
    object: Dict[str, Any]


@runtime_checkable
class ClusterClient(Protocol):
    """Minimal object-store API the syncer needs from either side."""

    async def get(self, rtype: ResourceType, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        """Return the object, or None when it does not exist."""
        ...

    async def list(
        self,
        rtype: ResourceType,
        namespace: Optional[str] = None,
        label_selector: Optional[Dict[str, str]] = None,
    ) -> List[Dict[str, Any]]:
        ...

    async def create(self, rtype: ResourceType, obj: Dict[str, Any]) -> Dict[str, Any]:
        ...

    async def update(self, rtype: ResourceType, obj: Dict[str, Any]) -> Dict[str, Any]:
        """Replace the object; ``metadata.resourceVersion`` acts as the precondition."""
        ...

    async def update_status(self, rtype: ResourceType, obj: Dict[str, Any]) -> Dict[str, Any]:
        """Replace only the status subresource."""
        ...

    async def delete(
        self,
        rtype: ResourceType,
        namespace: str,
        name: str,
        resource_version: Optional[str] = None,
    ) -> None:
        ...

    def watch(self, rtype: ResourceType, namespace: Optional[str] = None) -> AsyncIterator[WatchEvent]:
        ...

    async def server_resources(self) -> List[ResourceType]:
        """Resource types the server advertises."""
        ...

    async def probe(self) -> None:
        """Lightweight metadata-only read; raises TransientConnectivityError when unreachable."""
        ...


def matches_selector(labels: Optional[Dict[str, str]], selector: Optional[Dict[str, str]]) -> bool:
    """Equality-based label selector match. An empty selector matches everything."""
    if not selector:
        return True
    labels = labels or {}
    return all(labels.get(k) == v for k, v in selector.items())


def format_selector(selector: Dict[str, str]) -> str:
    return ",".join(f"{k}={v}" for k, v in sorted(selector.items()))


__all__ = [
    "ClusterClient",
    "WatchEvent",
    "WatchEventType",
    "matches_selector",
    "format_selector",
]
