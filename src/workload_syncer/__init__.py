"""
Workload syncer.

Keeps resources of a logical control-plane workspace synchronized with
one physical cluster, reflects physical status back, and manages its own
SyncTarget lifecycle.

Usage:
    from workload_syncer import LifecycleManager, HttpClusterClient, load_settings

    settings = load_settings()
    logical = HttpClusterClient(settings.logical_server, settings.logical_token, workspace=settings.workspace)
    physical = HttpClusterClient(settings.physical_server, settings.physical_token)
    manager = LifecycleManager(settings, logical, physical)
    await manager.start()
"""
from .cluster import ClusterClient, HttpClusterClient, InMemoryCluster, WatchEvent, WatchEventType
from .config import SyncerSettings, load_settings
from .deployment import AgentDeploymentManager
from .discovery import ResourceDiscovery
from .errors import (
    AlreadyExistsError,
    CleanupError,
    InvalidObjectError,
    InvalidSyncTargetError,
    NotFoundError,
    OptimisticConflictError,
    SemanticConflictError,
    SyncerError,
    TransientConnectivityError,
)
from .lifecycle import LifecycleManager
from .models import (
    PairKey,
    ResourceType,
    RetentionPolicy,
    SyncTarget,
    SyncTargetPhase,
    TrackedResourcePair,
    WorkItem,
    WorkReason,
)
from .resolver import ConflictResolver, Resolution
from .status import StatusProposal, StatusReporter
from .synchronizer import ResourceSynchronizer, SynchronizerRegistry, default_registry
from .transform import TransformContext, TransformPipeline
from .workqueue import WorkQueue

__version__ = "0.4.0"

__all__ = [
    "AgentDeploymentManager",
    "AlreadyExistsError",
    "CleanupError",
    "ClusterClient",
    "ConflictResolver",
    "HttpClusterClient",
    "InMemoryCluster",
    "InvalidObjectError",
    "InvalidSyncTargetError",
    "LifecycleManager",
    "NotFoundError",
    "OptimisticConflictError",
    "PairKey",
    "Resolution",
    "ResourceDiscovery",
    "ResourceSynchronizer",
    "ResourceType",
    "RetentionPolicy",
    "SemanticConflictError",
    "StatusProposal",
    "StatusReporter",
    "SyncTarget",
    "SyncTargetPhase",
    "SyncerError",
    "SyncerSettings",
    "SynchronizerRegistry",
    "TrackedResourcePair",
    "TransformContext",
    "TransformPipeline",
    "TransientConnectivityError",
    "WatchEvent",
    "WatchEventType",
    "WorkItem",
    "WorkQueue",
    "WorkReason",
    "default_registry",
    "load_settings",
]
