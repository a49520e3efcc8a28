"""
Per-resource-type bidirectional synchronizer.

Each ResourceSynchronizer owns two watch streams (logical and physical),
a WorkQueue and a pool of workers. Workers fetch both snapshots for a key,
ask the ConflictResolver what to write and perform the writes with
resource-version preconditions.

Error policy:
    TransientConnectivityError      requeue with backoff, forever
    OptimisticConflictError         requeue with backoff, counts toward degrade
    SemanticConflictError           requeue with backoff, counts toward degrade
    InvalidObjectError              permanent; recorded, never retried

A degraded key is left alone until a resync sweep or a manual ``resync``.
"""
import asyncio
import functools
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from .cluster.base import ClusterClient
from .config import SyncerSettings
from .errors import (
    InvalidObjectError,
    NotFoundError,
    OptimisticConflictError,
    SemanticConflictError,
    SyncerError,
    TransientConnectivityError,
)
from .models import (
    LABEL_SYNC_TARGET,
    ConditionStatus,
    PairKey,
    ResourceType,
    TrackedResourcePair,
    WorkItem,
    WorkReason,
    get_generation,
    get_name,
    get_namespace,
    get_resource_version,
    utc_now,
)
from .resolver import Action, ConflictResolver, Reason, Resolution, Write, with_synced_condition
from .self_healing import BackoffStrategy, KeyedRateLimiter, RetryConfig, call_with_timeout
from .transform import TransformPipeline, is_managed_by
from .workqueue import QueueShutDown, WorkQueue

logger = logging.getLogger(__name__)

# Reasons that mean "an automatic retry", as opposed to a fresh observation
_RETRY_REASONS = (WorkReason.RETRY,)


class ResourceSynchronizer:
    """
    Keeps every object of one resource type converged between both sides.

    Args:
        rtype: Resource type handled by this synchronizer
        logical: Client for the logical workspace
        physical: Client for the physical cluster
        settings: Syncer settings (workers, backoff, thresholds, timeouts)
        pipeline: Transform pipeline shared by all synchronizers
        propagate_status: Whether physical status flows back upstream
        clock: Returns the current time; injectable for tests
    """

    def __init__(
        self,
        rtype: ResourceType,
        logical: ClusterClient,
        physical: ClusterClient,
        settings: SyncerSettings,
        pipeline: TransformPipeline,
        propagate_status: bool = True,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.rtype = rtype
        self.logical = logical
        self.physical = physical
        self.settings = settings
        self.pipeline = pipeline
        self.sync_target = pipeline.ctx.sync_target
        self.propagate_status = propagate_status
        self.clock = clock
        self.resolver = ConflictResolver(self.sync_target, pipeline, propagate_status=propagate_status)
        self.backoff_config = RetryConfig(
            base_delay=settings.backoff_base_seconds,
            max_delay=settings.backoff_max_seconds,
            jitter=settings.backoff_jitter,
        )
        self.queue = self._new_queue()
        self.pairs: Dict[PairKey, TrackedResourcePair] = {}
        self.stats = {
            "synced": 0,
            "errors": 0,
            "conflicts": 0,
            "permanent_errors": 0,
        }
        self._workers: List[asyncio.Task] = []
        self._background: List[asyncio.Task] = []
        self._stopping = False
        self.started = False

    def __repr__(self) -> str:
        return f"ResourceSynchronizer({self.rtype})"

    def _new_queue(self) -> WorkQueue:
        return WorkQueue(
            str(self.rtype),
            capacity=self.settings.queue_capacity,
            rate_limiter=KeyedRateLimiter(self.backoff_config),
        )

    # --- lifecycle ---

    async def start(self) -> None:
        """Start watches, workers and the periodic resync sweep."""
        if self.started:
            return
        self.started = True
        self._stopping = False
        if self.queue.shutting_down:
            # A stopped queue never hands out work again
            self.queue = self._new_queue()
        loop = asyncio.get_running_loop()
        self._background = [
            loop.create_task(self._watch(self.logical, WorkReason.LOGICAL_EVENT), name=f"{self.rtype}-watch-logical"),
            loop.create_task(self._watch(self.physical, WorkReason.PHYSICAL_EVENT), name=f"{self.rtype}-watch-physical"),
            loop.create_task(self._resync_loop(), name=f"{self.rtype}-resync"),
        ]
        self._workers = [
            loop.create_task(self._worker(i), name=f"{self.rtype}-worker-{i}")
            for i in range(self.settings.workers_per_resource)
        ]
        logger.info(f"Started synchronizer for {self.rtype} with {len(self._workers)} workers")

    async def stop(self) -> None:
        """Stop producing work; workers finish the item they hold and exit."""
        if not self.started:
            return
        self._stopping = True
        for task in self._background:
            task.cancel()
        await self.queue.shutdown()
        await asyncio.gather(*self._background, return_exceptions=True)
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._background = []
        self._workers = []
        self.started = False
        logger.info(f"Stopped synchronizer for {self.rtype}")

    # --- keys ---

    def key_for_logical(self, obj: Dict[str, Any]) -> PairKey:
        namespace = get_namespace(obj) if self.rtype.namespaced else ""
        return PairKey.for_object(self.rtype, namespace, get_name(obj), self.sync_target)

    def key_for_physical(self, obj: Dict[str, Any]) -> Optional[PairKey]:
        """Key of the logical object a physical object was synced from; None for foreign objects."""
        if not is_managed_by(obj, self.sync_target):
            return None
        namespace = ""
        if self.rtype.namespaced:
            namespace = get_namespace(self.pipeline.upstream(self.rtype, obj))
        return PairKey.for_object(self.rtype, namespace, get_name(obj), self.sync_target)

    def physical_namespace(self, key: PairKey) -> str:
        if not self.rtype.namespaced:
            return ""
        return self.pipeline.ctx.physical_namespace(key.namespace)

    # --- background tasks ---

    async def _watch(self, client: ClusterClient, reason: WorkReason) -> None:
        side = "logical" if reason == WorkReason.LOGICAL_EVENT else "physical"
        backoff = BackoffStrategy(self.backoff_config)
        while not self._stopping:
            try:
                async for event in client.watch(self.rtype):
                    backoff.reset()
                    if side == "logical":
                        key = self.key_for_logical(event.object)
                    else:
                        key = self.key_for_physical(event.object)
                    if key is None:
                        continue
                    logger.debug(f"{side} {event.type.value} for {key}")
                    await self.queue.add(WorkItem(key, reason))
            except QueueShutDown:
                return
            except SyncerError as e:
                delay = backoff.get_delay()
                logger.warning(f"{side} watch for {self.rtype} failed: {e}; restarting in {delay:.1f}s")
                await asyncio.sleep(delay)

    async def _resync_loop(self) -> None:
        while not self._stopping:
            await asyncio.sleep(self.settings.resync_period_seconds)
            try:
                await self.resync_all()
            except QueueShutDown:
                return
            except SyncerError as e:
                logger.warning(f"Resync sweep for {self.rtype} failed: {e}")

    async def _worker(self, index: int) -> None:
        while True:
            item = await self.queue.get()
            if item is None:
                return
            try:
                await self.process(item)
            except Exception as e:
                logger.exception(f"Unexpected error processing {item.key}")
                self.stats["errors"] += 1
                self._record_failure(item.key, e)
            finally:
                await self.queue.done(item)

    # --- resync ---

    async def resync_all(self) -> int:
        """
        Re-list both sides and enqueue every known key.

        Degraded keys are re-enabled. Keys with a permanent error stay
        parked until their logical object changes or ``resync`` is called.
        """
        keys = set(self.pairs)
        logical_objects = await self._call(self.logical.list(self.rtype), "list logical")
        keys.update(self.key_for_logical(obj) for obj in logical_objects)
        physical_objects = await self._call(
            self.physical.list(self.rtype, label_selector={LABEL_SYNC_TARGET: self.sync_target}),
            "list physical",
        )
        for obj in physical_objects:
            key = self.key_for_physical(obj)
            if key is not None:
                keys.add(key)

        queued = 0
        for key in sorted(keys, key=str):
            pair = self.pairs.get(key)
            if pair is not None:
                if pair.permanent_error is not None:
                    continue
                if pair.degraded:
                    logger.info(f"Resync re-enabling degraded key {key}")
                    pair.degraded = False
                    pair.consecutive_failures = 0
                    self.queue.forget(key)
            await self.queue.add(WorkItem(key, WorkReason.RESYNC))
            queued += 1
        logger.debug(f"Resync sweep for {self.rtype} queued {queued} keys")
        return queued

    async def resync(self, key: PairKey) -> None:
        """Manually retry one key, clearing degraded and permanent-error state."""
        pair = self.pairs.get(key)
        if pair is not None:
            pair.degraded = False
            pair.permanent_error = None
            pair.consecutive_failures = 0
        self.queue.forget(key)
        await self.queue.add(WorkItem(key, WorkReason.MANUAL))

    # --- processing ---

    async def _call(self, awaitable: Awaitable, operation: str):
        return await call_with_timeout(awaitable, self.settings.request_timeout_seconds, operation)

    async def process(self, item: WorkItem) -> None:
        """Reconcile one work item and apply the error policy."""
        key = item.key
        pair = self.pairs.get(key)
        if pair is not None and item.reason in _RETRY_REASONS and pair.failed_permanently:
            logger.debug(f"Skipping retry for parked key {key}")
            return

        try:
            await self.reconcile(key)
        except InvalidObjectError as e:
            await self._record_permanent(key, e)
        except TransientConnectivityError as e:
            self.stats["errors"] += 1
            delay = self.queue.add_rate_limited(WorkItem(key, WorkReason.RETRY))
            logger.warning(f"Transient error syncing {key}: {e}; retry in {delay:.1f}s")
        except (OptimisticConflictError, SemanticConflictError, NotFoundError) as e:
            self.stats["errors"] += 1
            if isinstance(e, SemanticConflictError):
                self.stats["conflicts"] += 1
            self._record_failure(key, e)
        else:
            self.queue.forget(key)

    def _record_failure(self, key: PairKey, error: Exception) -> None:
        pair = self.pairs.setdefault(key, TrackedResourcePair(key))
        pair.consecutive_failures += 1
        if pair.consecutive_failures >= self.settings.max_consecutive_failures:
            pair.degraded = True
            self.queue.forget(key)
            logger.error(
                f"Key {key} degraded after {pair.consecutive_failures} consecutive failures: {error}"
            )
            return
        delay = self.queue.add_rate_limited(WorkItem(key, WorkReason.RETRY))
        logger.info(
            f"Conflict syncing {key} ({pair.consecutive_failures}/"
            f"{self.settings.max_consecutive_failures}): {error}; retry in {delay:.1f}s"
        )

    async def _record_permanent(self, key: PairKey, error: InvalidObjectError) -> None:
        pair = self.pairs.setdefault(key, TrackedResourcePair(key))
        if pair.permanent_error != str(error):
            self.stats["permanent_errors"] += 1
        pair.permanent_error = str(error)
        self.queue.forget(key)
        logger.error(f"Permanent error syncing {key}: {error}")

        if not self.propagate_status:
            return
        try:
            logical = await self._call(self.logical.get(self.rtype, key.namespace, key.name), "get logical")
            if logical is None:
                return
            current = logical.get("status") or {}
            status = with_synced_condition(
                current, current, ConditionStatus.FALSE, error.reason, str(error), self.clock()
            )
            if status == current:
                return
            logical["status"] = status
            updated = await self._call(self.logical.update_status(self.rtype, logical), "update logical status")
            pair.logical_resource_version = get_resource_version(updated)
            pair.logical_generation = get_generation(updated)
        except SyncerError as e:
            # The next observation of the key records the condition again
            logger.warning(f"Could not record permanent error on {key}: {e}")

    async def reconcile(self, key: PairKey) -> Resolution:
        """Fetch both sides, resolve and write. Raises on failure."""
        logical = await self._call(self.logical.get(self.rtype, key.namespace, key.name), "get logical")
        physical = await self._call(
            self.physical.get(self.rtype, self.physical_namespace(key), key.name), "get physical"
        )
        pair = self.pairs.get(key)
        now = self.clock()
        resolution = self.resolver.resolve(self.rtype, logical, physical, pair, now)

        if resolution.reason == Reason.GONE:
            self.pairs.pop(key, None)
            return resolution

        logical_after, physical_after = await self._apply(resolution.writes, logical, physical)

        if resolution.reason == Reason.FOREIGN_OBJECT:
            # Never overwritten; keeps failing until degraded or the object goes away
            raise SemanticConflictError(resolution.message)

        if resolution.conflict:
            self.stats["conflicts"] += 1
        if resolution.writes:
            self.stats["synced"] += 1
            logger.info(f"Synced {key}: {resolution.reason.value} ({len(resolution.writes)} writes)")

        self._update_pair(key, resolution, logical_after, physical_after, now)
        return resolution

    async def _apply(
        self,
        writes: List[Write],
        logical: Optional[Dict[str, Any]],
        physical: Optional[Dict[str, Any]],
    ) -> Tuple[Optional[Dict[str, Any]], Optional[Dict[str, Any]]]:
        """Perform writes in order; returns the post-write view of both sides."""
        for write in writes:
            if write.action == Action.CREATE_PHYSICAL:
                physical = await self._call(self.physical.create(self.rtype, write.object), "create physical")
            elif write.action == Action.UPDATE_PHYSICAL:
                physical = await self._call(self.physical.update(self.rtype, write.object), "update physical")
            elif write.action == Action.DELETE_PHYSICAL:
                try:
                    await self._call(
                        self.physical.delete(self.rtype, write.namespace, write.name, write.resource_version),
                        "delete physical",
                    )
                except NotFoundError:
                    logger.debug(f"Physical {write.namespace}/{write.name} already gone")
                physical = None
            elif write.action == Action.UPDATE_LOGICAL_STATUS:
                logical = await self._call(
                    self.logical.update_status(self.rtype, write.object), "update logical status"
                )
        return logical, physical

    def _update_pair(
        self,
        key: PairKey,
        resolution: Resolution,
        logical: Optional[Dict[str, Any]],
        physical: Optional[Dict[str, Any]],
        now: datetime,
    ) -> None:
        if logical is None and physical is None:
            self.pairs.pop(key, None)
            return
        pair = self.pairs.setdefault(key, TrackedResourcePair(key))
        pair.logical_resource_version = get_resource_version(logical)
        pair.logical_generation = get_generation(logical)
        pair.physical_resource_version = get_resource_version(physical)
        pair.physical_generation = get_generation(physical)
        if physical is not None:
            pair.physical_synced = is_managed_by(physical, self.sync_target)
        elif resolution.reason != Reason.PHYSICAL_DELETED:
            pair.physical_synced = False
        pair.conflict = resolution.conflict
        pair.consecutive_failures = 0
        pair.degraded = False
        pair.permanent_error = None
        if resolution.writes or pair.last_sync_time is None:
            pair.last_sync_time = now

    # --- reporting ---

    def mark_orphaned(self) -> int:
        """Flag every pair as orphaned; physical objects are left in place."""
        for pair in self.pairs.values():
            pair.orphaned = True
        if self.pairs:
            logger.warning(f"Marked {len(self.pairs)} {self.rtype} pairs as orphaned")
        return len(self.pairs)

    def failed_keys(self) -> List[PairKey]:
        """Keys that are degraded or carry a permanent error."""
        return [key for key, pair in self.pairs.items() if pair.failed_permanently]

    def get_stats(self) -> Dict[str, Any]:
        pairs = list(self.pairs.values())
        return {
            "resource_type": str(self.rtype),
            "running": self.started,
            **self.stats,
            "pairs": len(pairs),
            "degraded": sum(1 for p in pairs if p.degraded),
            "permanent_failures": sum(1 for p in pairs if p.permanent_error is not None),
            "orphaned": sum(1 for p in pairs if p.orphaned),
            "queue_depth": len(self.queue),
        }


SynchronizerFactory = Callable[..., ResourceSynchronizer]


class SynchronizerRegistry:
    """
    Maps resource types to synchronizer constructors.

    Lookups match on (group, kind) so a flavor applies to every served
    version of a kind. Unregistered types get the default constructor.
    """

    def __init__(self, default: SynchronizerFactory = ResourceSynchronizer):
        self._default = default
        self._factories: Dict[Tuple[str, str], SynchronizerFactory] = {}

    def register(self, group: str, kind: str, factory: SynchronizerFactory) -> None:
        self._factories[(group, kind)] = factory

    def factory_for(self, rtype: ResourceType) -> SynchronizerFactory:
        return self._factories.get((rtype.group, rtype.kind), self._default)

    def create(self, rtype: ResourceType, **kwargs) -> ResourceSynchronizer:
        return self.factory_for(rtype)(rtype, **kwargs)


def default_registry() -> SynchronizerRegistry:
    """Registry with status-less flavors for core ConfigMaps and Secrets."""
    registry = SynchronizerRegistry()
    statusless = functools.partial(ResourceSynchronizer, propagate_status=False)
    registry.register("", "ConfigMap", statusless)
    registry.register("", "Secret", statusless)
    return registry


__all__ = [
    "ResourceSynchronizer",
    "SynchronizerRegistry",
    "SynchronizerFactory",
    "default_registry",
]
