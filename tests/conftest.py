"""Pytest fixtures for workload syncer tests."""
import asyncio
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import pytest

from workload_syncer.cluster import InMemoryCluster
from workload_syncer.config import SyncerSettings
from workload_syncer.models import SYNC_TARGET_TYPE, ResourceType
from workload_syncer.synchronizer import ResourceSynchronizer
from workload_syncer.transform import TransformContext, TransformPipeline

DEPLOYMENT = ResourceType("apps", "v1", "Deployment")
CONFIG_MAP = ResourceType("", "v1", "ConfigMap")
SECRET = ResourceType("", "v1", "Secret")
NAMESPACE = ResourceType("", "v1", "Namespace", namespaced=False)
SERVICE_ACCOUNT = ResourceType("", "v1", "ServiceAccount")

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


# --- Settings ---

@pytest.fixture
def settings() -> SyncerSettings:
    """Settings tuned for fast, deterministic tests."""
    return SyncerSettings(
        _env_file=None,
        sync_target_name="edge-1",
        workspace="root:org",
        workers_per_resource=2,
        resync_period_seconds=3600,
        max_consecutive_failures=5,
        backoff_base_seconds=0.01,
        backoff_max_seconds=0.05,
        backoff_jitter=0.0,
        request_timeout_seconds=1.0,
        heartbeat_period_seconds=3600,
        heartbeat_failure_threshold=3,
        discovery_period_seconds=3600,
        lifecycle_period_seconds=0.02,
    )


# --- Clusters ---

@pytest.fixture
def logical() -> InMemoryCluster:
    """Logical workspace serving workloads and SyncTargets."""
    return InMemoryCluster("logical", [DEPLOYMENT, CONFIG_MAP, SECRET, SYNC_TARGET_TYPE])


@pytest.fixture
def physical() -> InMemoryCluster:
    """Physical cluster serving workloads and agent resources."""
    return InMemoryCluster("physical", [DEPLOYMENT, CONFIG_MAP, SECRET, NAMESPACE, SERVICE_ACCOUNT])


# --- Sync machinery ---

@pytest.fixture
def pipeline(settings: SyncerSettings) -> TransformPipeline:
    return TransformPipeline(TransformContext.from_settings(settings, sync_target_uid="st-uid-1"))


@pytest.fixture
def clock() -> Callable[[], datetime]:
    return lambda: NOW


@pytest.fixture
def synchronizer(logical, physical, settings, pipeline, clock) -> ResourceSynchronizer:
    """Deployment synchronizer that is not started; tests drive it directly."""
    return ResourceSynchronizer(DEPLOYMENT, logical, physical, settings, pipeline, clock=clock)


# --- Object factories ---

@pytest.fixture
def deployment_factory() -> Callable[..., Dict[str, Any]]:
    """Factory fixture building Deployment objects."""
    def _create(
        name: str = "web",
        namespace: str = "team-a",
        image: str = "nginx:1.25",
        replicas: int = 2,
        annotations: Optional[Dict[str, str]] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        return {
            "apiVersion": "apps/v1",
            "kind": "Deployment",
            "metadata": {
                "name": name,
                "namespace": namespace,
                "annotations": dict(annotations or {}),
                "labels": dict(labels or {"app": name}),
            },
            "spec": {
                "replicas": replicas,
                "selector": {"matchLabels": {"app": name}},
                "template": {
                    "metadata": {"labels": {"app": name}},
                    "spec": {"containers": [{"name": name, "image": image}]},
                },
            },
        }
    return _create


@pytest.fixture
def sync_target_factory() -> Callable[..., Dict[str, Any]]:
    """Factory fixture building SyncTarget objects."""
    def _create(
        name: str = "edge-1",
        workspace: str = "root:org",
        resources: Optional[list] = None,
        retention: Optional[str] = "Delete",
    ) -> Dict[str, Any]:
        spec: Dict[str, Any] = {
            "workspace": workspace,
            "supportedResourceTypes": resources if resources is not None else ["deployments.apps"],
        }
        if retention:
            spec["retentionPolicy"] = retention
        return {
            "apiVersion": SYNC_TARGET_TYPE.api_version,
            "kind": SYNC_TARGET_TYPE.kind,
            "metadata": {"name": name},
            "spec": spec,
        }
    return _create


# --- Async helpers ---

@pytest.fixture
def eventually() -> Callable:
    """Poll a (possibly async) predicate until it is truthy or the timeout expires."""
    async def _eventually(predicate: Callable, timeout: float = 3.0, interval: float = 0.01):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            result = predicate()
            if asyncio.iscoroutine(result):
                result = await result
            if result:
                return result
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(interval)
    return _eventually
