"""
Resource discovery: decides which resource types are synchronized.

A type is eligible when it is served by the logical workspace, advertised
by the physical cluster, listed in the SyncTarget's capabilities and
passes the configured allow/deny patterns. Discovery starts a
synchronizer for every newly eligible type and stops the synchronizer of
every type that lost eligibility. Physical objects of a dropped type are
never deleted here; their pairs are marked orphaned for operator review.
"""
import asyncio
import fnmatch
import logging
from typing import Any, Callable, Dict, List, Optional, Set

from .cluster.base import ClusterClient
from .config import SyncerSettings
from .errors import SyncerError
from .models import SYNC_TARGET_TYPE, ResourceType
from .self_healing import call_with_timeout
from .synchronizer import ResourceSynchronizer, SynchronizerRegistry, default_registry

logger = logging.getLogger(__name__)


def capability_matches(rtype: ResourceType, capabilities: List[str]) -> bool:
    """Check a type against SyncTarget capability entries (``plural.group``, ``plural`` or ``*``)."""
    names = {rtype.capability_name, rtype.plural}
    return any(entry == "*" or entry in names for entry in capabilities)


def passes_filters(rtype: ResourceType, allow: List[str], deny: List[str]) -> bool:
    name = rtype.capability_name
    if any(fnmatch.fnmatchcase(name, pattern) for pattern in deny):
        return False
    return any(fnmatch.fnmatchcase(name, pattern) for pattern in allow)


class ResourceDiscovery:
    """
    Keeps the set of running synchronizers equal to the eligible types.

    Args:
        logical: Client for the logical workspace
        physical: Client for the physical cluster
        settings: Syncer settings (filters, discovery period, timeouts)
        capabilities: Returns the SyncTarget's declared capability list
        synchronizer_kwargs: Extra constructor arguments for every synchronizer
        registry: Synchronizer flavors by type
    """

    def __init__(
        self,
        logical: ClusterClient,
        physical: ClusterClient,
        settings: SyncerSettings,
        capabilities: Callable[[], List[str]],
        synchronizer_kwargs: Dict[str, Any],
        registry: Optional[SynchronizerRegistry] = None,
    ):
        self.logical = logical
        self.physical = physical
        self.settings = settings
        self.capabilities = capabilities
        self.synchronizer_kwargs = synchronizer_kwargs
        self.registry = registry or default_registry()
        self.synchronizers: Dict[ResourceType, ResourceSynchronizer] = {}
        self.orphaned: Dict[str, int] = {}
        self._changed = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()

    async def discover(self) -> Set[ResourceType]:
        """Return the currently eligible resource types."""
        timeout = self.settings.request_timeout_seconds
        logical_types = await call_with_timeout(self.logical.server_resources(), timeout, "logical discovery")
        physical_types = await call_with_timeout(self.physical.server_resources(), timeout, "physical discovery")
        physical_gvks = {rtype.gvk for rtype in physical_types}
        capabilities = list(self.capabilities() or [])

        eligible = set()
        for rtype in logical_types:
            if rtype == SYNC_TARGET_TYPE:
                continue
            if rtype.gvk not in physical_gvks:
                continue
            if not capability_matches(rtype, capabilities):
                continue
            if not passes_filters(rtype, self.settings.resource_allow, self.settings.resource_deny):
                continue
            eligible.add(rtype)
        return eligible

    async def reconcile(self) -> Dict[str, List[str]]:
        """Start and stop synchronizers to match the eligible set."""
        async with self._lock:
            eligible = await self.discover()
            running = set(self.synchronizers)
            added = sorted(eligible - running, key=str)
            removed = sorted(running - eligible, key=str)

            for rtype in removed:
                synchronizer = self.synchronizers.pop(rtype)
                await synchronizer.stop()
                count = synchronizer.mark_orphaned()
                self.orphaned[str(rtype)] = self.orphaned.get(str(rtype), 0) + count
                logger.info(f"{rtype} is no longer eligible; stopped syncing, {count} pairs orphaned")

            for rtype in added:
                synchronizer = self.registry.create(rtype, **self.synchronizer_kwargs)
                self.synchronizers[rtype] = synchronizer
                await synchronizer.start()
                self.orphaned.pop(str(rtype), None)
                logger.info(f"{rtype} became eligible; started syncing")

            return {"added": [str(t) for t in added], "removed": [str(t) for t in removed]}

    def notify_capabilities_changed(self) -> None:
        """Trigger a discovery pass without waiting for the next period."""
        self._changed.set()

    async def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._run(), name="resource-discovery")

    async def _run(self) -> None:
        while True:
            self._changed.clear()
            try:
                await self.reconcile()
            except SyncerError as e:
                logger.warning(f"Resource discovery failed: {e}")
            try:
                await asyncio.wait_for(self._changed.wait(), timeout=self.settings.discovery_period_seconds)
            except asyncio.TimeoutError:
                pass

    async def stop(self) -> None:
        """Stop the discovery loop and every running synchronizer."""
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        async with self._lock:
            await asyncio.gather(*(s.stop() for s in self.synchronizers.values()))

    def failed_count(self) -> int:
        """Degraded plus permanently failed keys across all synchronizers."""
        return sum(len(s.failed_keys()) for s in self.synchronizers.values())

    def get_stats(self) -> Dict[str, Any]:
        return {
            "eligible": sorted(str(t) for t in self.synchronizers),
            "synchronizers": {str(t): s.get_stats() for t, s in self.synchronizers.items()},
            "orphaned": dict(self.orphaned),
        }


__all__ = ["ResourceDiscovery", "capability_matches", "passes_filters"]
