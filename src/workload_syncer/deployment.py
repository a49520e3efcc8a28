"""
On-target deployment of the sync agent.

The agent runs in the physical cluster as a Deployment with its own
ServiceAccount inside the agent namespace. ``ensure`` is idempotent: it
creates what is missing and updates the Deployment only when it drifted
from the desired replicas, images or labels. ``teardown`` removes the
Deployment, the ServiceAccount and every ConfigMap and Secret labelled
for the SyncTarget.
"""
from typing import Any, Dict

import structlog

from .cluster.base import ClusterClient
from .config import SyncerSettings
from .errors import AlreadyExistsError, CleanupError, NotFoundError, SyncerError
from .models import ResourceType, SyncTarget, get_labels, get_resource_version
from .self_healing import call_with_timeout, with_retry

logger = structlog.get_logger(__name__)

NAMESPACE_TYPE = ResourceType("", "v1", "Namespace", namespaced=False)
SERVICE_ACCOUNT_TYPE = ResourceType("", "v1", "ServiceAccount")
DEPLOYMENT_TYPE = ResourceType("apps", "v1", "Deployment")
CONFIG_MAP_TYPE = ResourceType("", "v1", "ConfigMap")
SECRET_TYPE = ResourceType("", "v1", "Secret")

AGENT_PORT_NAME = "metrics"


def agent_name(target: SyncTarget) -> str:
    return f"syncer-{target.name}"


def agent_labels(target: SyncTarget) -> Dict[str, str]:
    return {
        "app": "syncer",
        "sync-target": target.name,
        "component": "syncer",
        "part-of": "workload-syncer",
    }


def _covers(existing: Any, desired: Any) -> bool:
    """
    True when every field set in ``desired`` has the same value in ``existing``.

    Fields only present on ``existing`` (server defaults) are ignored; lists
    must match element by element.
    """
    if isinstance(desired, dict):
        if not isinstance(existing, dict):
            return False
        return all(k in existing and _covers(existing[k], v) for k, v in desired.items())
    if isinstance(desired, list):
        if not isinstance(existing, list) or len(existing) != len(desired):
            return False
        return all(_covers(e, d) for e, d in zip(existing, desired))
    return existing == desired


def deployment_drifted(existing: Dict[str, Any], desired: Dict[str, Any]) -> bool:
    """Compare replicas, desired labels and the whole desired pod template."""
    existing_spec = existing.get("spec") or {}
    if existing_spec.get("replicas") != desired["spec"]["replicas"]:
        return True
    if not _covers(get_labels(existing), get_labels(desired)):
        return True
    return not _covers(existing_spec.get("template") or {}, desired["spec"]["template"])


class AgentDeploymentManager:
    """
    Creates, updates and removes the sync agent on the physical cluster.

    Args:
        physical: Client for the physical cluster
        settings: Syncer settings (agent image, namespace, replicas, port)
    """

    def __init__(self, physical: ClusterClient, settings: SyncerSettings):
        self.physical = physical
        self.settings = settings

    @property
    def namespace(self) -> str:
        return self.settings.agent_namespace

    def _timeout(self, awaitable, operation: str):
        return call_with_timeout(awaitable, self.settings.request_timeout_seconds, operation)

    # --- desired state ---

    def build_namespace(self, target: SyncTarget) -> Dict[str, Any]:
        return {
            "apiVersion": "v1",
            "kind": "Namespace",
            "metadata": {"name": self.namespace, "labels": {"app": "syncer"}},
        }

    def build_service_account(self, target: SyncTarget) -> Dict[str, Any]:
        return {
            "apiVersion": "v1",
            "kind": "ServiceAccount",
            "metadata": {
                "name": agent_name(target),
                "namespace": self.namespace,
                "labels": agent_labels(target),
            },
        }

    def build_deployment(self, target: SyncTarget) -> Dict[str, Any]:
        labels = agent_labels(target)
        port = self.settings.agent_metrics_port
        return {
            "apiVersion": "apps/v1",
            "kind": "Deployment",
            "metadata": {
                "name": agent_name(target),
                "namespace": self.namespace,
                "labels": dict(labels),
            },
            "spec": {
                "replicas": self.settings.agent_replicas,
                "selector": {"matchLabels": dict(labels)},
                "template": {
                    "metadata": {"labels": dict(labels)},
                    "spec": {
                        "serviceAccountName": agent_name(target),
                        "containers": [{
                            "name": "syncer",
                            "image": self.settings.agent_image,
                            "args": [
                                "--sync-target", target.name,
                                "--cluster", target.workspace or self.settings.workspace,
                                "--metrics-bind-address", f":{port}",
                            ],
                            "ports": [{"name": AGENT_PORT_NAME, "containerPort": port, "protocol": "TCP"}],
                            "readinessProbe": {
                                "httpGet": {"path": "/readyz", "port": port},
                                "initialDelaySeconds": 15,
                                "periodSeconds": 10,
                            },
                            "livenessProbe": {
                                "httpGet": {"path": "/healthz", "port": port},
                                "initialDelaySeconds": 30,
                                "periodSeconds": 30,
                            },
                        }],
                    },
                },
            },
        }

    # --- ensure ---

    async def ensure(self, target: SyncTarget) -> bool:
        """
        Bring the agent to the desired state.

        Returns:
            True if anything was created or updated.
        """
        changed = await self._ensure_exists(NAMESPACE_TYPE, self.build_namespace(target))
        changed = await self._ensure_exists(SERVICE_ACCOUNT_TYPE, self.build_service_account(target)) or changed
        changed = await self._ensure_deployment(target) or changed
        if changed:
            logger.info("agent_ensured", sync_target=target.name, namespace=self.namespace)
        return changed

    @with_retry(max_retries=2, base_delay=0.5, max_delay=5.0)
    async def _ensure_exists(self, rtype: ResourceType, desired: Dict[str, Any]) -> bool:
        name = desired["metadata"]["name"]
        namespace = desired["metadata"].get("namespace", "")
        existing = await self._timeout(self.physical.get(rtype, namespace, name), f"get {rtype.kind}")
        if existing is not None:
            return False
        try:
            await self._timeout(self.physical.create(rtype, desired), f"create {rtype.kind}")
        except AlreadyExistsError:
            return False
        logger.info("agent_object_created", kind=rtype.kind, namespace=namespace, name=name)
        return True

    @with_retry(max_retries=2, base_delay=0.5, max_delay=5.0)
    async def _ensure_deployment(self, target: SyncTarget) -> bool:
        desired = self.build_deployment(target)
        name = desired["metadata"]["name"]
        existing = await self._timeout(
            self.physical.get(DEPLOYMENT_TYPE, self.namespace, name), "get Deployment"
        )
        if existing is None:
            await self._timeout(self.physical.create(DEPLOYMENT_TYPE, desired), "create Deployment")
            logger.info("agent_deployment_created", sync_target=target.name, name=name)
            return True

        if not deployment_drifted(existing, desired):
            logger.debug("agent_deployment_current", sync_target=target.name, name=name)
            return False

        desired["metadata"]["resourceVersion"] = get_resource_version(existing)
        await self._timeout(self.physical.update(DEPLOYMENT_TYPE, desired), "update Deployment")
        logger.info("agent_deployment_updated", sync_target=target.name, name=name)
        return True

    # --- teardown ---

    async def teardown(self, target: SyncTarget) -> None:
        """Remove every agent object. Raises CleanupError on the first failure."""
        try:
            await self._delete(DEPLOYMENT_TYPE, agent_name(target))
            await self._delete(SERVICE_ACCOUNT_TYPE, agent_name(target))
            selector = {"sync-target": target.name}
            for rtype in (CONFIG_MAP_TYPE, SECRET_TYPE):
                objects = await self._timeout(
                    self.physical.list(rtype, namespace=self.namespace, label_selector=selector),
                    f"list {rtype.kind}",
                )
                for obj in objects:
                    await self._delete(rtype, obj["metadata"]["name"])
        except SyncerError as e:
            logger.warning("agent_teardown_failed", sync_target=target.name, error=str(e))
            raise CleanupError("agent-teardown", str(e)) from e
        logger.info("agent_torn_down", sync_target=target.name, namespace=self.namespace)

    async def _delete(self, rtype: ResourceType, name: str) -> None:
        try:
            await self._timeout(self.physical.delete(rtype, self.namespace, name), f"delete {rtype.kind}")
        except NotFoundError:
            return
        logger.info("agent_object_deleted", kind=rtype.kind, namespace=self.namespace, name=name)


__all__ = [
    "AgentDeploymentManager",
    "agent_name",
    "agent_labels",
    "deployment_drifted",
    "DEPLOYMENT_TYPE",
    "SERVICE_ACCOUNT_TYPE",
    "NAMESPACE_TYPE",
]
