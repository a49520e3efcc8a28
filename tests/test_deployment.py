"""
Tests for the on-target agent deployment.
"""
import pytest

from workload_syncer.deployment import (
    CONFIG_MAP_TYPE,
    DEPLOYMENT_TYPE,
    NAMESPACE_TYPE,
    SECRET_TYPE,
    SERVICE_ACCOUNT_TYPE,
    AgentDeploymentManager,
    agent_name,
    deployment_drifted,
)
from workload_syncer.errors import CleanupError, TransientConnectivityError
from workload_syncer.models import SyncTarget

AGENT_NS = "workload-syncer-system"


@pytest.fixture
def target(sync_target_factory):
    return SyncTarget.from_object(sync_target_factory())


@pytest.fixture
def manager(physical, settings):
    return AgentDeploymentManager(physical, settings)


class TestDesiredState:
    """Tests for the generated agent objects."""

    def test_deployment_shape(self, manager, target):
        """Test the agent Deployment carries identity args and a readiness check."""
        deployment = manager.build_deployment(target)

        container = deployment["spec"]["template"]["spec"]["containers"][0]
        assert deployment["metadata"]["name"] == "syncer-edge-1"
        assert deployment["metadata"]["namespace"] == AGENT_NS
        assert container["args"][:4] == ["--sync-target", "edge-1", "--cluster", "root:org"]
        assert container["readinessProbe"]["httpGet"]["port"] == 8080
        assert deployment["spec"]["template"]["spec"]["serviceAccountName"] == agent_name(target)

    def test_drift_detection(self, manager, target):
        """Test replicas, images and labels count as drift; other fields do not."""
        desired = manager.build_deployment(target)
        same = manager.build_deployment(target)
        same["metadata"]["annotations"] = {"deployment.kubernetes.io/revision": "3"}

        scaled = manager.build_deployment(target)
        scaled["spec"]["replicas"] = 3
        retagged = manager.build_deployment(target)
        retagged["spec"]["template"]["spec"]["containers"][0]["image"] = "syncer:old"
        relabelled = manager.build_deployment(target)
        relabelled["metadata"]["labels"]["sync-target"] = "other"

        assert not deployment_drifted(same, desired)
        assert deployment_drifted(scaled, desired)
        assert deployment_drifted(retagged, desired)
        assert deployment_drifted(relabelled, desired)

    def test_pod_template_changes_are_drift(self, manager, target):
        """Test args, ports, readiness checks and the service account count as drift."""
        desired = manager.build_deployment(target)

        def changed(mutate):
            existing = manager.build_deployment(target)
            mutate(existing["spec"]["template"]["spec"])
            return existing

        def retarget(pod):
            pod["containers"][0]["args"][1] = "edge-2"

        def repoint_readiness(pod):
            pod["containers"][0]["readinessProbe"]["httpGet"]["path"] = "/ready"

        assert deployment_drifted(changed(retarget), desired)
        assert deployment_drifted(changed(lambda pod: pod["containers"][0]["ports"].clear()), desired)
        assert deployment_drifted(changed(repoint_readiness), desired)
        assert deployment_drifted(changed(lambda pod: pod.update(serviceAccountName="default")), desired)

    def test_server_defaults_are_not_drift(self, manager, target):
        """Test fields the API server fills in do not trigger an update."""
        desired = manager.build_deployment(target)
        existing = manager.build_deployment(target)
        pod = existing["spec"]["template"]["spec"]
        pod["restartPolicy"] = "Always"
        pod["containers"][0]["imagePullPolicy"] = "IfNotPresent"
        existing["spec"]["strategy"] = {"type": "RollingUpdate"}

        assert not deployment_drifted(existing, desired)


class TestEnsure:
    """Tests for idempotent agent deployment."""

    @pytest.mark.asyncio
    async def test_creates_everything_once(self, manager, physical, target):
        """Test the first ensure creates, the second is a no-op."""
        assert await manager.ensure(target) is True

        assert await physical.get(NAMESPACE_TYPE, "", AGENT_NS) is not None
        assert await physical.get(SERVICE_ACCOUNT_TYPE, AGENT_NS, "syncer-edge-1") is not None
        assert await physical.get(DEPLOYMENT_TYPE, AGENT_NS, "syncer-edge-1") is not None

        writes = len(physical.writes)
        assert await manager.ensure(target) is False
        assert len(physical.writes) == writes

    @pytest.mark.asyncio
    async def test_repairs_drift(self, manager, physical, target):
        """Test a drifted Deployment is updated back to the desired state."""
        await manager.ensure(target)
        existing = await physical.get(DEPLOYMENT_TYPE, AGENT_NS, "syncer-edge-1")
        existing["spec"]["replicas"] = 0
        await physical.update(DEPLOYMENT_TYPE, existing)

        assert await manager.ensure(target) is True

        repaired = await physical.get(DEPLOYMENT_TYPE, AGENT_NS, "syncer-edge-1")
        assert repaired["spec"]["replicas"] == 1

    @pytest.mark.asyncio
    async def test_metrics_port_change_rolls_out(self, physical, settings, target):
        """Test a new metrics port updates the existing agent Deployment."""
        await AgentDeploymentManager(physical, settings).ensure(target)
        moved = AgentDeploymentManager(physical, settings.model_copy(update={"agent_metrics_port": 9090}))

        assert await moved.ensure(target) is True

        container = (await physical.get(DEPLOYMENT_TYPE, AGENT_NS, "syncer-edge-1"))["spec"]["template"]["spec"]["containers"][0]
        assert container["ports"][0]["containerPort"] == 9090
        assert container["readinessProbe"]["httpGet"]["port"] == 9090
        assert "--metrics-bind-address" in container["args"]
        assert ":9090" in container["args"]
        assert physical.writes_for("update") == [("update", "Deployment", AGENT_NS, "syncer-edge-1")]

    @pytest.mark.asyncio
    async def test_transient_failures_retried(self, manager, physical, target):
        """Test a single transient failure is retried in place."""
        physical.fail_next("create", TransientConnectivityError("reset"), kind="ServiceAccount")

        assert await manager.ensure(target) is True
        assert await physical.get(SERVICE_ACCOUNT_TYPE, AGENT_NS, "syncer-edge-1") is not None


class TestTeardown:
    """Tests for agent removal."""

    @pytest.mark.asyncio
    async def test_removes_agent_and_labelled_objects(self, manager, physical, target):
        """Test teardown deletes the agent and its labelled ConfigMaps and Secrets only."""
        await manager.ensure(target)
        labelled = {"sync-target": "edge-1"}
        await physical.create(CONFIG_MAP_TYPE, {"metadata": {"name": "agent-cfg", "namespace": AGENT_NS, "labels": labelled}})
        await physical.create(SECRET_TYPE, {"metadata": {"name": "agent-kubeconfig", "namespace": AGENT_NS, "labels": labelled}})
        await physical.create(CONFIG_MAP_TYPE, {"metadata": {"name": "unrelated", "namespace": AGENT_NS}})

        await manager.teardown(target)

        assert await physical.get(DEPLOYMENT_TYPE, AGENT_NS, "syncer-edge-1") is None
        assert await physical.get(SERVICE_ACCOUNT_TYPE, AGENT_NS, "syncer-edge-1") is None
        assert await physical.get(CONFIG_MAP_TYPE, AGENT_NS, "agent-cfg") is None
        assert await physical.get(SECRET_TYPE, AGENT_NS, "agent-kubeconfig") is None
        assert await physical.get(CONFIG_MAP_TYPE, AGENT_NS, "unrelated") is not None

    @pytest.mark.asyncio
    async def test_teardown_is_idempotent(self, manager, target):
        """Test tearing down a missing agent succeeds."""
        await manager.teardown(target)
        await manager.teardown(target)

    @pytest.mark.asyncio
    async def test_failure_raises_cleanup_error(self, manager, physical, target):
        """Test teardown failures surface as CleanupError for the agent step."""
        await manager.ensure(target)
        physical.fail_next("delete", TransientConnectivityError("reset"), kind="Deployment")

        with pytest.raises(CleanupError) as exc_info:
            await manager.teardown(target)

        assert exc_info.value.step == "agent-teardown"
        assert await physical.get(DEPLOYMENT_TYPE, AGENT_NS, "syncer-edge-1") is not None
