"""
Registration and lifecycle management for a SyncTarget.

The LifecycleManager is the root of the syncer. It drives the SyncTarget
state machine, starts Resource Discovery and the Status Reporter, and is
the only component that writes the SyncTarget record.

    Pending      -> Active        connection validated, agent deployed
    Active      <-> Unavailable   heartbeat proposals
    Active/Unavailable -> Terminating on deletion request

Termination cleanup runs in order and only then removes the finalizer:

    1. stop synchronizers and the status reporter
    2. tear down the on-target agent
    3. delete or orphan synced physical objects (retention policy)
    4. remove the finalizer

Any failing step keeps the finalizer and is retried with backoff.
"""
import asyncio
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set

import structlog

from .cluster.base import ClusterClient
from .config import SyncerSettings
from .deployment import AgentDeploymentManager
from .discovery import ResourceDiscovery
from .errors import (
    CleanupError,
    InvalidSyncTargetError,
    NotFoundError,
    OptimisticConflictError,
    SyncerError,
    TransientConnectivityError,
)
from .models import (
    HEARTBEAT_READY_CONDITION,
    LABEL_SYNC_TARGET,
    READY_CONDITION,
    SYNC_TARGET_FINALIZER,
    SYNC_TARGET_TYPE,
    Condition,
    ConditionStatus,
    ResourceType,
    RetentionPolicy,
    SyncTarget,
    SyncTargetPhase,
    format_time,
    get_name,
    get_namespace,
    get_resource_version,
    set_condition,
    utc_now,
)
from .self_healing import BackoffStrategy, RetryConfig, call_with_timeout
from .status import StatusProposal, StatusReporter
from .synchronizer import SynchronizerRegistry
from .transform import TransformContext, TransformPipeline, is_managed_by

logger = structlog.get_logger(__name__)

MAX_WRITE_ATTEMPTS = 5


def validate_sync_target(target: SyncTarget, settings: SyncerSettings) -> None:
    """Raise InvalidSyncTargetError when the record cannot be served by these settings."""
    if not target.name:
        raise InvalidSyncTargetError("SyncTarget has no name")
    if target.name != settings.sync_target_name:
        raise InvalidSyncTargetError(
            f"SyncTarget {target.name} does not match configured {settings.sync_target_name}"
        )
    if target.workspace and settings.workspace and target.workspace != settings.workspace:
        raise InvalidSyncTargetError(
            f"SyncTarget workspace {target.workspace} does not match configured {settings.workspace}"
        )


class LifecycleManager:
    """
    Owns the SyncTarget record and every long-running task of the syncer.

    Args:
        settings: Syncer settings, injected once at construction
        logical: Client for the logical workspace (holds the SyncTarget)
        physical: Client for the physical cluster
        registry: Synchronizer flavors; defaults to the built-in registry
        clock: Returns the current time
    """

    def __init__(
        self,
        settings: SyncerSettings,
        logical: ClusterClient,
        physical: ClusterClient,
        registry: Optional[SynchronizerRegistry] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.settings = settings
        self.logical = logical
        self.physical = physical
        self.registry = registry
        self.clock = clock
        self.deployment = AgentDeploymentManager(physical, settings)
        self.target: Optional[SyncTarget] = None
        self.discovery: Optional[ResourceDiscovery] = None
        self.reporter: Optional[StatusReporter] = None
        self.pipeline: Optional[TransformPipeline] = None
        self.cleanup_attempts = 0
        self.last_cleanup_error: Optional[str] = None
        self.finished = False
        self._seen = False
        self._known_types: Set[ResourceType] = set()
        self._capabilities: List[str] = []
        self._cleanup_backoff = BackoffStrategy(RetryConfig(
            base_delay=settings.backoff_base_seconds,
            max_delay=settings.backoff_max_seconds,
            jitter=settings.backoff_jitter,
        ))
        self._retry_at: Optional[float] = None
        self._write_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None

    @property
    def name(self) -> str:
        return self.settings.sync_target_name

    @property
    def phase(self) -> Optional[SyncTargetPhase]:
        return self.target.phase if self.target else None

    def _timeout(self, awaitable, operation: str):
        return call_with_timeout(awaitable, self.settings.request_timeout_seconds, operation)

    # --- SyncTarget access (single writer) ---

    async def _read(self) -> Optional[SyncTarget]:
        obj = await self._timeout(self.logical.get(SYNC_TARGET_TYPE, "", self.name), "get SyncTarget")
        if obj is None:
            return None
        try:
            return SyncTarget.from_object(obj)
        except ValueError as e:
            raise InvalidSyncTargetError(f"SyncTarget {self.name} is malformed: {e}") from e

    async def _write(self, mutate: Callable[[SyncTarget], None], status: bool = True) -> Optional[SyncTarget]:
        """
        Apply ``mutate`` to a fresh copy of the record and write it back.

        Re-reads and retries when the resource version moved. Skips the
        write entirely when ``mutate`` changed nothing.
        """
        async with self._write_lock:
            for attempt in range(MAX_WRITE_ATTEMPTS):
                target = await self._read()
                if target is None:
                    self.target = None
                    return None
                before = target.to_object()
                mutate(target)
                desired = target.to_object()
                if desired == before:
                    self.target = target
                    return target
                writer = self.logical.update_status if status else self.logical.update
                try:
                    updated = await self._timeout(writer(SYNC_TARGET_TYPE, desired), "write SyncTarget")
                except OptimisticConflictError:
                    logger.debug("sync_target_write_conflict", name=self.name, attempt=attempt + 1)
                    continue
                except NotFoundError:
                    self.target = None
                    return None
                self.target = SyncTarget.from_object(updated)
                return self.target
        raise OptimisticConflictError(f"SyncTarget {self.name}: gave up after {MAX_WRITE_ATTEMPTS} conflicting writes")

    def _set_conditions(self, target: SyncTarget, conditions: List[Condition]) -> None:
        now = self.clock()
        for condition in conditions:
            target.conditions = set_condition(target.conditions, condition, now=now)

    # --- state machine ---

    async def reconcile(self) -> Optional[SyncTargetPhase]:
        """
        One pass of the state machine.

        Returns:
            The phase after this pass, or None once the record is gone.
        """
        target = await self._read()
        if target is None:
            if self._seen:
                logger.info("sync_target_gone", name=self.name)
                await self._shutdown_components()
                self.target = None
                self.finished = True
            else:
                logger.info("sync_target_not_found", name=self.name)
            return None

        self._seen = True
        self.target = target

        if target.deleting:
            return await self._terminate(target)

        if not target.has_finalizer:
            def add_finalizer(t: SyncTarget) -> None:
                if not t.has_finalizer:
                    t.finalizers.append(SYNC_TARGET_FINALIZER)

            target = await self._write(add_finalizer, status=False) or target
            logger.info("finalizer_added", name=self.name)

        if target.phase == SyncTargetPhase.PENDING or self.discovery is None:
            return await self._activate(target)

        if target.supported_resource_types != self._capabilities:
            self._capabilities = list(target.supported_resource_types)
            self.discovery.notify_capabilities_changed()
        return target.phase

    async def _activate(self, target: SyncTarget) -> SyncTargetPhase:
        try:
            validate_sync_target(target, self.settings)
            await self._timeout(self.physical.probe(), "probe physical cluster")
            await self.deployment.ensure(target)
        except InvalidSyncTargetError as e:
            logger.error("sync_target_invalid", name=self.name, error=str(e))
            await self._write(lambda t: self._set_conditions(t, [
                Condition(READY_CONDITION, ConditionStatus.FALSE, "InvalidSyncTarget", str(e)),
            ]))
            return target.phase
        except TransientConnectivityError as e:
            logger.warning("physical_cluster_unreachable", name=self.name, error=str(e))
            await self._write(lambda t: self._set_conditions(t, [
                Condition(READY_CONDITION, ConditionStatus.FALSE, "PhysicalClusterUnreachable", str(e)),
            ]))
            return target.phase
        except SyncerError as e:
            logger.warning("agent_deployment_failed", name=self.name, error=str(e))
            await self._write(lambda t: self._set_conditions(t, [
                Condition(READY_CONDITION, ConditionStatus.FALSE, "AgentDeploymentFailed", str(e)),
            ]))
            return target.phase

        await self._start_components(target)

        def activate(t: SyncTarget) -> None:
            if t.phase == SyncTargetPhase.PENDING:
                t.phase = SyncTargetPhase.ACTIVE
            self._set_conditions(t, [
                Condition(READY_CONDITION, ConditionStatus.TRUE, "Ready"),
                Condition(HEARTBEAT_READY_CONDITION, ConditionStatus.TRUE, "HeartbeatSucceeded"),
            ])
            t.last_heartbeat_time = format_time(self.clock())

        updated = await self._write(activate)
        if updated is None:
            return target.phase
        logger.info("sync_target_active", name=self.name, phase=updated.phase.value)
        return updated.phase

    async def _start_components(self, target: SyncTarget) -> None:
        if self.discovery is not None:
            return
        ctx = TransformContext.from_settings(self.settings, sync_target_uid=target.uid)
        self.pipeline = TransformPipeline(ctx)
        self._capabilities = list(target.supported_resource_types)
        self.discovery = ResourceDiscovery(
            self.logical,
            self.physical,
            self.settings,
            capabilities=lambda: self.target.supported_resource_types if self.target else [],
            synchronizer_kwargs={
                "logical": self.logical,
                "physical": self.physical,
                "settings": self.settings,
                "pipeline": self.pipeline,
                "clock": self.clock,
            },
            registry=self.registry,
        )
        self.reporter = StatusReporter(
            self.physical,
            self.settings,
            failed_count=self.discovery.failed_count,
            on_proposal=self.handle_proposal,
            clock=self.clock,
        )
        await self.discovery.start()
        await self.reporter.start()
        logger.info("components_started", name=self.name)

    async def _shutdown_components(self) -> None:
        if self.reporter is not None:
            await self.reporter.stop()
            self.reporter = None
        if self.discovery is not None:
            self._known_types.update(self.discovery.synchronizers)
            await self.discovery.stop()
            self.discovery = None
            logger.info("components_stopped", name=self.name)

    async def handle_proposal(self, proposal: StatusProposal) -> None:
        """Commit Status Reporter proposals; flips Active and Unavailable."""
        def apply(t: SyncTarget) -> None:
            if t.deleting or t.phase == SyncTargetPhase.TERMINATING:
                return
            self._set_conditions(t, proposal.conditions)
            if proposal.last_heartbeat is not None:
                t.last_heartbeat_time = format_time(proposal.last_heartbeat)
            if t.phase == SyncTargetPhase.ACTIVE and not proposal.available:
                t.phase = SyncTargetPhase.UNAVAILABLE
                logger.warning("sync_target_unavailable", name=self.name)
            elif t.phase == SyncTargetPhase.UNAVAILABLE and proposal.available:
                t.phase = SyncTargetPhase.ACTIVE
                logger.info("sync_target_recovered", name=self.name)

        await self._write(apply)

    # --- termination ---

    async def _terminate(self, target: SyncTarget) -> SyncTargetPhase:
        if target.phase != SyncTargetPhase.TERMINATING:
            def mark(t: SyncTarget) -> None:
                t.phase = SyncTargetPhase.TERMINATING
            target = await self._write(mark) or target
            logger.info("sync_target_terminating", name=self.name)

        if not target.has_finalizer:
            await self._shutdown_components()
            return SyncTargetPhase.TERMINATING

        loop = asyncio.get_running_loop()
        if self._retry_at is not None and loop.time() < self._retry_at:
            return SyncTargetPhase.TERMINATING

        try:
            await self._run_cleanup(target)
        except CleanupError as e:
            self.cleanup_attempts += 1
            self.last_cleanup_error = str(e)
            delay = self._cleanup_backoff.get_delay()
            self._retry_at = loop.time() + delay
            logger.warning(
                "cleanup_failed",
                name=self.name,
                step=e.step,
                error=str(e),
                attempt=self.cleanup_attempts,
                retry_in=round(delay, 2),
            )
            try:
                await self._write(lambda t: self._set_conditions(t, [
                    Condition(READY_CONDITION, ConditionStatus.FALSE, "CleanupFailed", str(e)),
                ]))
            except SyncerError as write_error:
                logger.warning("cleanup_condition_write_failed", name=self.name, error=str(write_error))
            return SyncTargetPhase.TERMINATING

        self._retry_at = None
        self._cleanup_backoff.reset()
        return SyncTargetPhase.TERMINATING

    async def _run_cleanup(self, target: SyncTarget) -> None:
        # 1. no new writes
        await self._shutdown_components()

        # 2. on-target agent
        await self.deployment.teardown(target)

        # 3. synced physical objects
        await self._cleanup_synced_objects(target)

        # 4. finalizer
        def remove(t: SyncTarget) -> None:
            t.finalizers = [f for f in t.finalizers if f != SYNC_TARGET_FINALIZER]

        try:
            await self._write(remove, status=False)
        except SyncerError as e:
            raise CleanupError("remove-finalizer", str(e)) from e
        logger.info("finalizer_removed", name=self.name, attempts=self.cleanup_attempts + 1)

    async def _cleanup_synced_objects(self, target: SyncTarget) -> None:
        policy = target.retention_policy or self.settings.retention_policy
        if policy == RetentionPolicy.ORPHAN:
            logger.info("synced_objects_orphaned", name=self.name)
            return

        try:
            types = set(self._known_types)
            discovery = ResourceDiscovery(
                self.logical,
                self.physical,
                self.settings,
                capabilities=lambda: target.supported_resource_types,
                synchronizer_kwargs={},
                registry=self.registry,
            )
            types.update(await discovery.discover())
            deleted = 0
            for rtype in sorted(types, key=str):
                objects = await self._timeout(
                    self.physical.list(rtype, label_selector={LABEL_SYNC_TARGET: target.name}),
                    f"list {rtype.kind}",
                )
                for obj in objects:
                    if not is_managed_by(obj, target.name):
                        continue
                    try:
                        await self._timeout(
                            self.physical.delete(rtype, get_namespace(obj), get_name(obj), get_resource_version(obj)),
                            f"delete {rtype.kind}",
                        )
                    except NotFoundError:
                        continue
                    deleted += 1
        except SyncerError as e:
            raise CleanupError("object-cleanup", str(e)) from e
        logger.info("synced_objects_deleted", name=self.name, count=deleted)

    # --- run loop ---

    async def start(self) -> None:
        """Run the state machine until the SyncTarget is gone or ``stop`` is called."""
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._run(), name="lifecycle-manager")

    async def _run(self) -> None:
        while not self.finished:
            try:
                await self.reconcile()
            except SyncerError as e:
                logger.warning("lifecycle_reconcile_failed", name=self.name, error=str(e))
            if self.finished:
                break
            await asyncio.sleep(self._next_wait())
        logger.info("lifecycle_exited", name=self.name)

    def _next_wait(self) -> float:
        wait = self.settings.lifecycle_period_seconds
        if self._retry_at is not None:
            remaining = self._retry_at - asyncio.get_running_loop().time()
            wait = max(0.0, min(wait, remaining))
        return wait

    async def wait(self) -> None:
        """Wait for the run loop to exit."""
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    async def stop(self) -> None:
        """Cancel every task the syncer owns."""
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        await self._shutdown_components()

    def get_stats(self) -> Dict[str, Any]:
        target = self.target
        return {
            "name": self.name,
            "phase": target.phase.value if target else None,
            "conditions": [c.to_dict() for c in target.conditions] if target else [],
            "last_heartbeat_time": target.last_heartbeat_time if target else None,
            "heartbeat": self.reporter.get_metrics() if self.reporter else None,
            "resources": self.discovery.get_stats() if self.discovery else {},
            "cleanup_attempts": self.cleanup_attempts,
            "last_cleanup_error": self.last_cleanup_error,
        }


__all__ = ["LifecycleManager", "validate_sync_target"]
