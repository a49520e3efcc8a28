"""Configuration settings for the workload syncer."""
from typing import Dict, List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import RetentionPolicy


class SyncerSettings(BaseSettings):
    """
    Syncer settings loaded from environment.

    Read once at startup and passed explicitly to the LifecycleManager;
    nothing in the package reads process-wide configuration on its own.
    """

    model_config = SettingsConfigDict(
        env_prefix="WORKLOAD_SYNCER_",
        env_file=".env",
        extra="ignore",
    )

    # Identity
    sync_target_name: str = "default"
    workspace: str = "root"

    # Logical workspace connection
    logical_server: str = "https://127.0.0.1:6443"
    logical_token: Optional[str] = None
    logical_verify_tls: bool = True

    # Physical cluster connection
    physical_server: str = "https://127.0.0.1:7443"
    physical_token: Optional[str] = None
    physical_verify_tls: bool = True

    # Synchronizer
    workers_per_resource: int = Field(default=2, ge=1)
    queue_capacity: int = Field(default=10000, ge=1)
    resync_period_seconds: float = Field(default=300.0, gt=0)
    max_consecutive_failures: int = Field(default=5, ge=1)
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 300.0
    backoff_jitter: float = 0.1
    request_timeout_seconds: float = Field(default=30.0, gt=0)

    # Status reporting
    heartbeat_period_seconds: float = Field(default=30.0, gt=0)
    heartbeat_failure_threshold: int = Field(default=3, ge=1)
    permanent_failure_threshold: int = Field(default=0, ge=0)

    # Discovery
    discovery_period_seconds: float = Field(default=300.0, gt=0)
    resource_allow: List[str] = ["*"]
    resource_deny: List[str] = []

    # Transformations
    namespace_prefix: Optional[str] = None
    control_plane_prefixes: List[str] = [
        "internal.workload.io/",
        "tenancy.workload.io/",
        "scheduling.workload.io/",
        "kubectl.kubernetes.io/last-applied-configuration",
    ]
    limit_overrides: Dict[str, Dict[str, str]] = {}
    disallowed_secret_types: List[str] = ["kubernetes.io/service-account-token"]

    # Lifecycle
    retention_policy: RetentionPolicy = RetentionPolicy.ORPHAN
    agent_namespace: str = "workload-syncer-system"
    agent_image: str = "ghcr.io/workload-syncer/syncer:v0.4.0"
    agent_replicas: int = 1
    agent_metrics_port: int = 8080
    lifecycle_period_seconds: float = Field(default=10.0, gt=0)


def load_settings(**overrides) -> SyncerSettings:
    """Build settings from the environment with explicit overrides applied."""
    return SyncerSettings(**overrides)


__all__ = ["SyncerSettings", "load_settings"]
