"""
Tests for resource discovery and synchronizer management.
"""
import pytest

from workload_syncer.discovery import ResourceDiscovery, capability_matches, passes_filters
from workload_syncer.models import SYNC_TARGET_TYPE, PairKey, ResourceType, TrackedResourcePair

from conftest import CONFIG_MAP, DEPLOYMENT, SECRET

WIDGET = ResourceType("example.io", "v1", "Widget")


@pytest.fixture
def capabilities():
    return ["deployments.apps", "configmaps"]


@pytest.fixture
def discovery(logical, physical, settings, pipeline, clock, capabilities):
    logical.register(WIDGET)
    return ResourceDiscovery(
        logical,
        physical,
        settings,
        capabilities=lambda: capabilities,
        synchronizer_kwargs={
            "logical": logical,
            "physical": physical,
            "settings": settings,
            "pipeline": pipeline,
            "clock": clock,
        },
    )


class TestEligibility:
    """Tests for capability and filter matching."""

    def test_capability_forms(self):
        """Test plural.group, bare plural and wildcard entries."""
        assert capability_matches(DEPLOYMENT, ["deployments.apps"])
        assert capability_matches(DEPLOYMENT, ["deployments"])
        assert capability_matches(CONFIG_MAP, ["*"])
        assert not capability_matches(DEPLOYMENT, ["deployments.extensions"])
        assert not capability_matches(DEPLOYMENT, [])

    def test_deny_wins_over_allow(self):
        """Test deny patterns override allow patterns."""
        assert passes_filters(DEPLOYMENT, ["*"], [])
        assert not passes_filters(DEPLOYMENT, ["*"], ["*.apps"])
        assert not passes_filters(SECRET, ["deployments.*"], [])

    @pytest.mark.asyncio
    async def test_intersection_of_both_sides(self, discovery):
        """Test only types served by both clusters and listed as capabilities are eligible."""
        eligible = await discovery.discover()

        assert eligible == {DEPLOYMENT, CONFIG_MAP}

    @pytest.mark.asyncio
    async def test_physical_must_serve_type(self, discovery, capabilities):
        """Test types missing from the physical cluster are excluded."""
        capabilities.append("widgets.example.io")

        assert WIDGET not in await discovery.discover()

    @pytest.mark.asyncio
    async def test_deny_filter_applied(self, discovery, settings):
        """Test configured deny patterns remove eligible types."""
        discovery.settings = settings.model_copy(update={"resource_deny": ["configmaps"]})

        assert await discovery.discover() == {DEPLOYMENT}

    @pytest.mark.asyncio
    async def test_sync_target_type_never_synced(self, discovery, physical, capabilities):
        """Test the SyncTarget type is excluded even when everything is allowed."""
        physical.register(SYNC_TARGET_TYPE)
        capabilities[:] = ["*"]

        eligible = await discovery.discover()

        assert SYNC_TARGET_TYPE not in eligible
        assert SECRET in eligible

    @pytest.mark.asyncio
    async def test_empty_capabilities_sync_nothing(self, discovery, capabilities):
        """Test a SyncTarget without capabilities gets no synchronizers."""
        capabilities.clear()

        assert await discovery.discover() == set()


class TestReconcile:
    """Tests for starting and stopping synchronizers."""

    @pytest.mark.asyncio
    async def test_starts_and_orphans(self, discovery, capabilities, logical, physical, deployment_factory, eventually):
        """Test synchronizers follow eligibility and dropped types keep their physical objects."""
        try:
            changes = await discovery.reconcile()
            assert changes == {"added": ["configmaps/v1", "deployments.apps/v1"], "removed": []}
            assert all(s.started for s in discovery.synchronizers.values())

            await logical.create(DEPLOYMENT, deployment_factory())
            await eventually(lambda: physical.get(DEPLOYMENT, "root-org-team-a", "web"))

            capabilities.remove("deployments.apps")
            changes = await discovery.reconcile()

            assert changes == {"added": [], "removed": ["deployments.apps/v1"]}
            assert DEPLOYMENT not in discovery.synchronizers
            assert discovery.orphaned == {"deployments.apps/v1": 1}
            assert await physical.get(DEPLOYMENT, "root-org-team-a", "web") is not None
        finally:
            await discovery.stop()

    @pytest.mark.asyncio
    async def test_reconcile_is_stable(self, discovery):
        """Test a second pass without changes starts nothing new."""
        try:
            await discovery.reconcile()
            assert await discovery.reconcile() == {"added": [], "removed": []}
        finally:
            await discovery.stop()

    @pytest.mark.asyncio
    async def test_capability_change_notification(self, discovery, capabilities, eventually):
        """Test notify_capabilities_changed triggers an immediate pass."""
        capabilities.clear()
        await discovery.start()
        try:
            capabilities.append("secrets")
            discovery.notify_capabilities_changed()

            await eventually(lambda: SECRET in discovery.synchronizers)
            assert discovery.synchronizers[SECRET].propagate_status is False
        finally:
            await discovery.stop()

    @pytest.mark.asyncio
    async def test_failed_count_and_stats(self, discovery):
        """Test failure counts aggregate across synchronizers."""
        try:
            await discovery.reconcile()
            synchronizer = discovery.synchronizers[DEPLOYMENT]
            key = PairKey.for_object(DEPLOYMENT, "team-a", "web", "edge-1")
            synchronizer.pairs[key] = TrackedResourcePair(key, degraded=True)

            assert discovery.failed_count() == 1
            stats = discovery.get_stats()
            assert stats["eligible"] == ["configmaps/v1", "deployments.apps/v1"]
            assert stats["synchronizers"]["deployments.apps/v1"]["degraded"] == 1
        finally:
            await discovery.stop()
