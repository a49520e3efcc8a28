"""
Tests for the SyncTarget lifecycle manager.

Covers activation, heartbeat-driven availability, capability changes and
the finalizer-guarded termination cleanup.
"""
import asyncio

import pytest

from workload_syncer.deployment import DEPLOYMENT_TYPE, SERVICE_ACCOUNT_TYPE
from workload_syncer.errors import (
    InvalidSyncTargetError,
    OptimisticConflictError,
    TransientConnectivityError,
)
from workload_syncer.lifecycle import LifecycleManager, validate_sync_target
from workload_syncer.models import (
    HEARTBEAT_READY_CONDITION,
    READY_CONDITION,
    SYNC_TARGET_FINALIZER,
    SYNC_TARGET_TYPE,
    Condition,
    ConditionStatus,
    SyncTarget,
    SyncTargetPhase,
)
from workload_syncer.status import StatusProposal

from conftest import CONFIG_MAP, DEPLOYMENT

AGENT_NS = "workload-syncer-system"
PHYSICAL_NS = "root-org-team-a"


@pytest.fixture
def manager(settings, logical, physical, clock):
    return LifecycleManager(settings, logical, physical, clock=clock)


async def _stored(logical):
    obj = await logical.get(SYNC_TARGET_TYPE, "", "edge-1")
    return SyncTarget.from_object(obj) if obj is not None else None


async def _activate(manager, logical, sync_target_factory, eventually, **kwargs):
    await logical.create(SYNC_TARGET_TYPE, sync_target_factory(**kwargs))
    assert await manager.reconcile() == SyncTargetPhase.ACTIVE
    await eventually(lambda: manager.reporter.record.last_heartbeat is not None)


# =============================================================================
# Validation
# =============================================================================


class TestValidation:
    """Tests for validate_sync_target."""

    def test_matching_record_passes(self, settings, sync_target_factory):
        """Test a record matching the configured name and workspace is valid."""
        validate_sync_target(SyncTarget.from_object(sync_target_factory()), settings)

    def test_name_mismatch(self, settings, sync_target_factory):
        """Test a record for another SyncTarget is rejected."""
        with pytest.raises(InvalidSyncTargetError):
            validate_sync_target(SyncTarget.from_object(sync_target_factory(name="edge-2")), settings)

    def test_workspace_mismatch(self, settings, sync_target_factory):
        """Test a record bound to another workspace is rejected."""
        with pytest.raises(InvalidSyncTargetError, match="workspace"):
            validate_sync_target(SyncTarget.from_object(sync_target_factory(workspace="root:other")), settings)


# =============================================================================
# Activation
# =============================================================================


class TestActivation:
    """Tests for the Pending to Active transition."""

    @pytest.mark.asyncio
    async def test_missing_record(self, manager):
        """Test reconciling before the record exists does nothing."""
        assert await manager.reconcile() is None
        assert not manager.finished

    @pytest.mark.asyncio
    async def test_pending_to_active(self, manager, logical, physical, sync_target_factory, eventually):
        """Test activation adds the finalizer, deploys the agent and starts discovery."""
        try:
            await _activate(manager, logical, sync_target_factory, eventually)

            stored = await _stored(logical)
            assert stored.phase == SyncTargetPhase.ACTIVE
            assert SYNC_TARGET_FINALIZER in stored.finalizers
            assert stored.condition(READY_CONDITION).status == ConditionStatus.TRUE
            assert stored.condition(HEARTBEAT_READY_CONDITION).status == ConditionStatus.TRUE
            assert stored.last_heartbeat_time == "2026-03-01T12:00:00Z"

            assert await physical.get(DEPLOYMENT_TYPE, AGENT_NS, "syncer-edge-1") is not None
            await eventually(lambda: DEPLOYMENT in manager.discovery.synchronizers)

            # Already active: a second pass changes nothing
            assert await manager.reconcile() == SyncTargetPhase.ACTIVE
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_invalid_record_stays_pending(self, manager, logical, sync_target_factory):
        """Test an invalid record is reported and not activated."""
        await logical.create(SYNC_TARGET_TYPE, sync_target_factory(workspace="root:other"))

        assert await manager.reconcile() == SyncTargetPhase.PENDING

        stored = await _stored(logical)
        ready = stored.condition(READY_CONDITION)
        assert ready.status == ConditionStatus.FALSE
        assert ready.reason == "InvalidSyncTarget"
        assert manager.discovery is None

    @pytest.mark.asyncio
    async def test_unreachable_physical_retried(self, manager, logical, physical, sync_target_factory):
        """Test an unreachable physical cluster blocks activation until it recovers."""
        await logical.create(SYNC_TARGET_TYPE, sync_target_factory())
        physical.set_reachable(False)
        try:
            assert await manager.reconcile() == SyncTargetPhase.PENDING
            stored = await _stored(logical)
            assert stored.condition(READY_CONDITION).reason == "PhysicalClusterUnreachable"

            physical.set_reachable(True)
            assert await manager.reconcile() == SyncTargetPhase.ACTIVE
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_capability_change_starts_synchronizer(self, manager, logical, sync_target_factory, eventually):
        """Test adding a supported resource type starts its synchronizer."""
        try:
            await _activate(manager, logical, sync_target_factory, eventually)
            obj = await logical.get(SYNC_TARGET_TYPE, "", "edge-1")
            obj["spec"]["supportedResourceTypes"].append("configmaps")
            await logical.update(SYNC_TARGET_TYPE, obj)

            await manager.reconcile()

            await eventually(lambda: CONFIG_MAP in manager.discovery.synchronizers)
        finally:
            await manager.stop()


# =============================================================================
# Heartbeat
# =============================================================================


class TestAvailability:
    """Tests for Active and Unavailable transitions."""

    @pytest.mark.asyncio
    async def test_heartbeat_loss_and_recovery(self, manager, logical, physical, sync_target_factory, eventually):
        """Test three missed heartbeats make the target Unavailable until it reconnects."""
        try:
            await _activate(manager, logical, sync_target_factory, eventually)
            physical.set_reachable(False)

            await manager.reporter.tick()
            await manager.reporter.tick()
            assert (await _stored(logical)).phase == SyncTargetPhase.ACTIVE

            await manager.reporter.tick()
            stored = await _stored(logical)
            assert stored.phase == SyncTargetPhase.UNAVAILABLE
            assert stored.condition(READY_CONDITION).status == ConditionStatus.FALSE
            assert stored.condition(HEARTBEAT_READY_CONDITION).status == ConditionStatus.FALSE

            physical.set_reachable(True)
            await manager.reporter.tick()
            stored = await _stored(logical)
            assert stored.phase == SyncTargetPhase.ACTIVE
            assert stored.condition(HEARTBEAT_READY_CONDITION).status == ConditionStatus.TRUE
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_proposal_survives_write_conflict(self, manager, logical, sync_target_factory, eventually):
        """Test a stale resourceVersion is re-read and the proposal still lands."""
        try:
            await _activate(manager, logical, sync_target_factory, eventually)
            await manager.reporter.stop()
            logical.fail_next("update_status", OptimisticConflictError("SyncTarget moved"), times=2)

            await manager.handle_proposal(StatusProposal(
                conditions=[Condition(HEARTBEAT_READY_CONDITION, ConditionStatus.FALSE, "HeartbeatFailed")],
                available=False,
            ))

            stored = await _stored(logical)
            assert stored.phase == SyncTargetPhase.UNAVAILABLE
            assert stored.condition(HEARTBEAT_READY_CONDITION).reason == "HeartbeatFailed"
        finally:
            await manager.stop()


# =============================================================================
# Termination
# =============================================================================


class TestTermination:
    """Tests for deletion with the finalizer held until cleanup completes."""

    async def _sync_workload(self, manager, logical, physical, deployment_factory, eventually):
        await eventually(lambda: DEPLOYMENT in manager.discovery.synchronizers)
        await logical.create(DEPLOYMENT, deployment_factory())
        await eventually(lambda: physical.get(DEPLOYMENT, PHYSICAL_NS, "web"))

    @pytest.mark.asyncio
    async def test_cleanup_failure_keeps_finalizer(
        self, manager, logical, physical, sync_target_factory, deployment_factory, eventually
    ):
        """Test a failed cleanup step is retried and the finalizer is removed only afterwards."""
        try:
            await _activate(manager, logical, sync_target_factory, eventually)
            await self._sync_workload(manager, logical, physical, deployment_factory, eventually)

            await logical.delete(SYNC_TARGET_TYPE, "", "edge-1")
            physical.fail_next("list", TransientConnectivityError("connection reset"), kind="Deployment")

            assert await manager.reconcile() == SyncTargetPhase.TERMINATING
            stored = await _stored(logical)
            assert stored.phase == SyncTargetPhase.TERMINATING
            assert SYNC_TARGET_FINALIZER in stored.finalizers
            assert stored.condition(READY_CONDITION).reason == "CleanupFailed"
            assert manager.cleanup_attempts == 1
            assert "object-cleanup" in manager.last_cleanup_error
            assert await physical.get(DEPLOYMENT, PHYSICAL_NS, "web") is not None

            await asyncio.sleep(0.05)
            assert await manager.reconcile() == SyncTargetPhase.TERMINATING

            assert await physical.get(DEPLOYMENT, PHYSICAL_NS, "web") is None
            assert await physical.get(DEPLOYMENT_TYPE, AGENT_NS, "syncer-edge-1") is None
            assert await _stored(logical) is None

            assert await manager.reconcile() is None
            assert manager.finished
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_orphan_policy_keeps_objects(
        self, manager, logical, physical, sync_target_factory, deployment_factory, eventually
    ):
        """Test the Orphan retention policy leaves synced objects in place."""
        try:
            await _activate(manager, logical, sync_target_factory, eventually, retention="Orphan")
            await self._sync_workload(manager, logical, physical, deployment_factory, eventually)

            await logical.delete(SYNC_TARGET_TYPE, "", "edge-1")
            await manager.reconcile()

            assert await _stored(logical) is None
            assert await physical.get(DEPLOYMENT, PHYSICAL_NS, "web") is not None
            assert await physical.get(DEPLOYMENT_TYPE, AGENT_NS, "syncer-edge-1") is None
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_agent_teardown_failure(self, manager, logical, physical, sync_target_factory, eventually):
        """Test a failed agent teardown keeps the finalizer and records the step."""
        try:
            await _activate(manager, logical, sync_target_factory, eventually)
            await logical.delete(SYNC_TARGET_TYPE, "", "edge-1")
            physical.fail_next("delete", TransientConnectivityError("connection reset"), kind="ServiceAccount")

            await manager.reconcile()

            stored = await _stored(logical)
            assert SYNC_TARGET_FINALIZER in stored.finalizers
            assert "agent-teardown" in manager.last_cleanup_error
            assert await physical.get(SERVICE_ACCOUNT_TYPE, AGENT_NS, "syncer-edge-1") is not None
            assert manager.discovery is None
        finally:
            await manager.stop()


# =============================================================================
# Run loop
# =============================================================================


class TestRunLoop:
    """Tests for the background run loop."""

    @pytest.mark.asyncio
    async def test_runs_until_record_removed(self, manager, logical, sync_target_factory, eventually):
        """Test the loop activates the target and exits after the record is gone."""
        await logical.create(SYNC_TARGET_TYPE, sync_target_factory())
        await manager.start()
        try:
            await eventually(lambda: manager.phase == SyncTargetPhase.ACTIVE)

            stats = manager.get_stats()
            assert stats["name"] == "edge-1"
            assert stats["phase"] == "Active"
            assert stats["cleanup_attempts"] == 0

            await logical.delete(SYNC_TARGET_TYPE, "", "edge-1")
            await eventually(lambda: manager.finished)
            await asyncio.wait_for(manager.wait(), timeout=1.0)

            assert await _stored(logical) is None
            assert manager.get_stats()["phase"] is None
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, manager):
        """Test stopping a manager that never started succeeds."""
        await manager.stop()
        await manager.stop()
