"""
Data model for the workload syncer.

Objects on both sides are Kubernetes-style unstructured dictionaries.
This module holds the typed records the syncer keeps about them: resource
types, tracked pairs, work items, the SyncTarget record and heartbeat
counters, plus small helpers for reading object metadata.
"""
import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

# Tracking metadata written by the syncer on physical objects
TRACKING_PREFIX = "syncer.workload.io/"
ANNOTATION_SYNC_TARGET = TRACKING_PREFIX + "sync-target"
ANNOTATION_SYNC_TARGET_UID = TRACKING_PREFIX + "sync-target-uid"
ANNOTATION_WORKSPACE = TRACKING_PREFIX + "workspace"
ANNOTATION_LAST_SYNC = TRACKING_PREFIX + "last-sync"
ANNOTATION_ORIGINAL_NAMESPACE = TRACKING_PREFIX + "original-namespace"
ANNOTATION_SKIP = TRACKING_PREFIX + "skip"
ANNOTATION_SKIP_LIMIT_OVERRIDES = TRACKING_PREFIX + "skip-limit-overrides"
LABEL_MANAGED = TRACKING_PREFIX + "managed"
LABEL_SYNC_TARGET = TRACKING_PREFIX + "sync-target"

# Annotations that change on every write and never count as drift
VOLATILE_ANNOTATIONS = frozenset({ANNOTATION_LAST_SYNC})

SYNC_TARGET_GROUP = "workload.syncer.io"
SYNC_TARGET_VERSION = "v1alpha1"
SYNC_TARGET_FINALIZER = f"{SYNC_TARGET_GROUP}/synctarget"

# Condition type the syncer maintains on synced logical objects
SYNCED_CONDITION = "Synced"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_time(value: datetime) -> str:
    """Render a timestamp the way the API server does (RFC 3339, Z suffix)."""
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


@dataclass(frozen=True)
class ResourceType:
    """
    A group/version/kind together with its REST naming.

    Identity is (group, version, kind); plural and scope only affect how
    the type is addressed on the wire.
    """
    group: str
    version: str
    kind: str
    plural: str = ""
    namespaced: bool = True

    def __post_init__(self) -> None:
        if not self.plural:
            object.__setattr__(self, "plural", self.kind.lower() + "s")

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}" if self.group else self.version

    @property
    def gvk(self) -> tuple:
        return (self.group, self.version, self.kind)

    @property
    def capability_name(self) -> str:
        """Name used in SyncTarget capability lists: ``plural.group`` or ``plural``."""
        return f"{self.plural}.{self.group}" if self.group else self.plural

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ResourceType):
            return NotImplemented
        return self.gvk == other.gvk

    def __hash__(self) -> int:
        return hash(self.gvk)

    def __str__(self) -> str:
        return f"{self.capability_name}/{self.version}"


SYNC_TARGET_TYPE = ResourceType(
    group=SYNC_TARGET_GROUP,
    version=SYNC_TARGET_VERSION,
    kind="SyncTarget",
    plural="synctargets",
    namespaced=False,
)


# --- Unstructured object helpers ---

def meta(obj: Dict[str, Any]) -> Dict[str, Any]:
    """Return the metadata dict of an object, creating it if needed."""
    return obj.setdefault("metadata", {})


def get_name(obj: Dict[str, Any]) -> str:
    return obj.get("metadata", {}).get("name", "")


def get_namespace(obj: Dict[str, Any]) -> str:
    return obj.get("metadata", {}).get("namespace") or ""


def get_resource_version(obj: Optional[Dict[str, Any]]) -> str:
    if obj is None:
        return ""
    return str(obj.get("metadata", {}).get("resourceVersion") or "")


def get_generation(obj: Optional[Dict[str, Any]]) -> int:
    if obj is None:
        return 0
    return int(obj.get("metadata", {}).get("generation") or 0)


def get_annotations(obj: Dict[str, Any]) -> Dict[str, str]:
    return dict(obj.get("metadata", {}).get("annotations") or {})


def get_labels(obj: Dict[str, Any]) -> Dict[str, str]:
    return dict(obj.get("metadata", {}).get("labels") or {})


def is_deleting(obj: Optional[Dict[str, Any]]) -> bool:
    return bool(obj and obj.get("metadata", {}).get("deletionTimestamp"))


def deep_copy(obj: Dict[str, Any]) -> Dict[str, Any]:
    return copy.deepcopy(obj)


# --- Conditions ---

class ConditionStatus(str, Enum):
    """Tri-state condition status."""
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


@dataclass
class Condition:
    """A standard status condition."""
    type: str
    status: ConditionStatus
    reason: str = ""
    message: str = ""
    last_transition_time: Optional[str] = None

    @property
    def is_true(self) -> bool:
        return self.status == ConditionStatus.TRUE

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": self.type, "status": self.status.value}
        if self.reason:
            data["reason"] = self.reason
        if self.message:
            data["message"] = self.message
        if self.last_transition_time:
            data["lastTransitionTime"] = self.last_transition_time
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Condition":
        return cls(
            type=data["type"],
            status=ConditionStatus(data.get("status", "Unknown")),
            reason=data.get("reason", ""),
            message=data.get("message", ""),
            last_transition_time=data.get("lastTransitionTime"),
        )


def set_condition(conditions: List[Condition], condition: Condition, now: Optional[datetime] = None) -> List[Condition]:
    """
    Upsert a condition by type.

    The transition time only moves when the status flips, so re-asserting
    an unchanged condition produces an identical list.
    """
    result: List[Condition] = []
    replaced = False
    stamp = format_time(now or utc_now())
    for existing in conditions:
        if existing.type != condition.type:
            result.append(existing)
            continue
        replaced = True
        transition = existing.last_transition_time
        if existing.status != condition.status or not transition:
            transition = condition.last_transition_time or stamp
        result.append(Condition(
            type=condition.type,
            status=condition.status,
            reason=condition.reason,
            message=condition.message,
            last_transition_time=transition,
        ))
    if not replaced:
        result.append(Condition(
            type=condition.type,
            status=condition.status,
            reason=condition.reason,
            message=condition.message,
            last_transition_time=condition.last_transition_time or stamp,
        ))
    return result


def find_condition(conditions: List[Condition], condition_type: str) -> Optional[Condition]:
    for condition in conditions:
        if condition.type == condition_type:
            return condition
    return None


# --- Sync bookkeeping ---

@dataclass(frozen=True)
class PairKey:
    """Identity of a Tracked Resource Pair."""
    group: str
    version: str
    kind: str
    namespace: str
    name: str
    sync_target: str

    @classmethod
    def for_object(cls, rtype: ResourceType, namespace: str, name: str, sync_target: str) -> "PairKey":
        return cls(rtype.group, rtype.version, rtype.kind, namespace, name, sync_target)

    @property
    def gvk(self) -> tuple:
        return (self.group, self.version, self.kind)

    def __str__(self) -> str:
        prefix = f"{self.namespace}/" if self.namespace else ""
        return f"{self.kind}:{prefix}{self.name}@{self.sync_target}"


@dataclass
class TrackedResourcePair:
    """
    Bookkeeping for one logical object and its physical counterpart.

    Markers record what both sides looked like after the last successful
    reconcile; the resolver compares fresh snapshots against them.
    """
    key: PairKey
    logical_resource_version: str = ""
    physical_resource_version: str = ""
    logical_generation: int = 0
    physical_generation: int = 0
    physical_synced: bool = False
    last_sync_time: Optional[datetime] = None
    conflict: bool = False
    consecutive_failures: int = 0
    degraded: bool = False
    permanent_error: Optional[str] = None
    orphaned: bool = False

    @property
    def failed_permanently(self) -> bool:
        return self.degraded or self.permanent_error is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": str(self.key),
            "logical_resource_version": self.logical_resource_version,
            "physical_resource_version": self.physical_resource_version,
            "logical_generation": self.logical_generation,
            "physical_generation": self.physical_generation,
            "last_sync_time": self.last_sync_time.isoformat() if self.last_sync_time else None,
            "conflict": self.conflict,
            "consecutive_failures": self.consecutive_failures,
            "degraded": self.degraded,
            "permanent_error": self.permanent_error,
            "orphaned": self.orphaned,
        }


class WorkReason(str, Enum):
    """Why a key was queued."""
    LOGICAL_EVENT = "logical-event"
    PHYSICAL_EVENT = "physical-event"
    RESYNC = "resync"
    RETRY = "retry"
    MANUAL = "manual"


@dataclass(frozen=True)
class WorkItem:
    """A queued request to reconcile one pair."""
    key: PairKey
    reason: WorkReason


@dataclass
class HeartbeatRecord:
    """Heartbeat counters owned by the status reporter."""
    sequence: int = 0
    last_heartbeat: Optional[datetime] = None
    error_count: int = 0
    consecutive_failures: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequence": self.sequence,
            "last_heartbeat": self.last_heartbeat.isoformat() if self.last_heartbeat else None,
            "error_count": self.error_count,
            "consecutive_failures": self.consecutive_failures,
        }


# --- SyncTarget ---

class SyncTargetPhase(str, Enum):
    """Lifecycle phases of a SyncTarget."""
    PENDING = "Pending"
    ACTIVE = "Active"
    UNAVAILABLE = "Unavailable"
    TERMINATING = "Terminating"


class RetentionPolicy(str, Enum):
    """What happens to synced physical objects when a SyncTarget is deleted."""
    DELETE = "Delete"
    ORPHAN = "Orphan"


READY_CONDITION = "Ready"
SYNCER_READY_CONDITION = "SyncerReady"
HEARTBEAT_READY_CONDITION = "HeartbeatReady"


@dataclass
class SyncTarget:
    """
    Typed view of the SyncTarget control-plane record.

    ``raw`` keeps the full object so writes round-trip fields this class
    does not model.
    """
    name: str
    uid: str = ""
    workspace: str = ""
    supported_resource_types: List[str] = field(default_factory=list)
    retention_policy: Optional[RetentionPolicy] = None
    phase: SyncTargetPhase = SyncTargetPhase.PENDING
    conditions: List[Condition] = field(default_factory=list)
    last_heartbeat_time: Optional[str] = None
    finalizers: List[str] = field(default_factory=list)
    deletion_timestamp: Optional[str] = None
    resource_version: str = ""
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def deleting(self) -> bool:
        return self.deletion_timestamp is not None

    @property
    def has_finalizer(self) -> bool:
        return SYNC_TARGET_FINALIZER in self.finalizers

    def condition(self, condition_type: str) -> Optional[Condition]:
        return find_condition(self.conditions, condition_type)

    @classmethod
    def from_object(cls, obj: Dict[str, Any]) -> "SyncTarget":
        metadata = obj.get("metadata", {})
        spec = obj.get("spec", {}) or {}
        status = obj.get("status", {}) or {}
        retention = spec.get("retentionPolicy")
        phase = status.get("phase") or SyncTargetPhase.PENDING.value
        return cls(
            name=metadata.get("name", ""),
            uid=metadata.get("uid", ""),
            workspace=spec.get("workspace", ""),
            supported_resource_types=list(spec.get("supportedResourceTypes") or []),
            retention_policy=RetentionPolicy(retention) if retention else None,
            phase=SyncTargetPhase(phase),
            conditions=[Condition.from_dict(c) for c in status.get("conditions") or []],
            last_heartbeat_time=status.get("lastHeartbeatTime"),
            finalizers=list(metadata.get("finalizers") or []),
            deletion_timestamp=metadata.get("deletionTimestamp"),
            resource_version=str(metadata.get("resourceVersion") or ""),
            raw=copy.deepcopy(obj),
        )

    def to_object(self) -> Dict[str, Any]:
        obj = copy.deepcopy(self.raw) if self.raw else {}
        obj["apiVersion"] = SYNC_TARGET_TYPE.api_version
        obj["kind"] = SYNC_TARGET_TYPE.kind
        metadata = obj.setdefault("metadata", {})
        metadata["name"] = self.name
        if self.uid:
            metadata["uid"] = self.uid
        if self.resource_version:
            metadata["resourceVersion"] = self.resource_version
        metadata["finalizers"] = list(self.finalizers)
        status = obj.setdefault("status", {})
        status["phase"] = self.phase.value
        status["conditions"] = [c.to_dict() for c in self.conditions]
        if self.last_heartbeat_time:
            status["lastHeartbeatTime"] = self.last_heartbeat_time
        return obj


__all__ = [
    "ResourceType",
    "SYNC_TARGET_TYPE",
    "PairKey",
    "TrackedResourcePair",
    "WorkItem",
    "WorkReason",
    "HeartbeatRecord",
    "SyncTarget",
    "SyncTargetPhase",
    "RetentionPolicy",
    "Condition",
    "ConditionStatus",
    "set_condition",
    "find_condition",
]
