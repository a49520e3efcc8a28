"""
Conflict resolution between a logical object and its physical counterpart.

The resolver decides what to write given two snapshots (either may be
absent) and the markers recorded on the Tracked Resource Pair after the
last successful reconcile. It performs no I/O: the current time is an
argument, so resolving the same inputs twice yields the same decision.

Ownership is asymmetric. The logical side owns labels, annotations and
spec; the physical side owns status. When both sides changed spec since
the last sync the logical side wins and the conflict is recorded.
"""
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

from .models import (
    SYNCED_CONDITION,
    VOLATILE_ANNOTATIONS,
    Condition,
    ConditionStatus,
    PairKey,
    ResourceType,
    TrackedResourcePair,
    deep_copy,
    get_annotations,
    get_generation,
    get_labels,
    get_name,
    get_namespace,
    get_resource_version,
    is_deleting,
    set_condition,
)
from .transform import TransformPipeline, is_managed_by, preserve_downstream_fields, should_skip

logger = logging.getLogger(__name__)

_NON_SPEC_FIELDS = ("apiVersion", "kind", "metadata", "status")


class Action(str, Enum):
    """Write operations the resolver can request."""
    CREATE_PHYSICAL = "create-physical"
    UPDATE_PHYSICAL = "update-physical"
    DELETE_PHYSICAL = "delete-physical"
    UPDATE_LOGICAL_STATUS = "update-logical-status"


class Reason(str, Enum):
    """Why the resolver reached its decision."""
    IN_SYNC = "InSync"
    UNCHANGED = "Unchanged"
    CREATED = "Created"
    SPEC_CHANGED = "SpecChanged"
    STATUS_CHANGED = "StatusChanged"
    BOTH_CHANGED = "BothSidesChanged"
    LOGICAL_DELETED = "LogicalObjectDeleted"
    PHYSICAL_DELETED = "PhysicalObjectDeleted"
    PHYSICAL_DELETING = "PhysicalObjectDeleting"
    FOREIGN_OBJECT = "ForeignObjectExists"
    FOREIGN_IGNORED = "ForeignObjectIgnored"
    SKIPPED = "Skipped"
    GONE = "Gone"


@dataclass
class Write:
    """One write against either side, with its optimistic-concurrency precondition."""
    action: Action
    namespace: str
    name: str
    object: Optional[Dict[str, Any]] = None
    resource_version: str = ""


@dataclass
class Resolution:
    """Outcome of resolving one pair."""
    writes: List[Write] = field(default_factory=list)
    reason: Reason = Reason.IN_SYNC
    conflict: bool = False
    message: str = ""

    @property
    def noop(self) -> bool:
        return not self.writes


@dataclass
class ConflictRecord:
    """Audit trail record for a detected conflict."""
    key: str
    timestamp: datetime
    reason: Reason
    logical_resource_version: str
    physical_resource_version: str
    resolution_source: str


def comparable_spec(obj: Dict[str, Any]) -> Dict[str, Any]:
    """The parts of an object the logical side owns, minus volatile tracking annotations."""
    annotations = {k: v for k, v in get_annotations(obj).items() if k not in VOLATILE_ANNOTATIONS}
    body = {k: v for k, v in obj.items() if k not in _NON_SPEC_FIELDS}
    return {"labels": get_labels(obj), "annotations": annotations, "body": body}


def _without_synced(status: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    status = deep_copy(status or {})
    conditions = [c for c in status.get("conditions") or [] if c.get("type") != SYNCED_CONDITION]
    if conditions:
        status["conditions"] = conditions
    else:
        status.pop("conditions", None)
    return status


def with_synced_condition(
    status: Optional[Dict[str, Any]],
    current: Optional[Dict[str, Any]],
    condition_status: ConditionStatus,
    reason: str,
    message: str,
    now: datetime,
) -> Dict[str, Any]:
    """
    Return ``status`` with the Synced condition set.

    ``current`` is the logical object's present status; its Synced
    condition supplies the transition time when the status is unchanged.
    """
    result = deep_copy(status or {})
    existing = [
        Condition.from_dict(c) for c in (current or {}).get("conditions") or []
        if c.get("type") == SYNCED_CONDITION
    ]
    synced = set_condition(
        existing,
        Condition(type=SYNCED_CONDITION, status=condition_status, reason=reason, message=message),
        now=now,
    )
    conditions = [c for c in result.get("conditions") or [] if c.get("type") != SYNCED_CONDITION]
    conditions.extend(c.to_dict() for c in synced)
    result["conditions"] = conditions
    return result


def _moved(obj: Dict[str, Any], generation: int, resource_version: str) -> bool:
    """Spec change detection: generation when the type tracks one, resource version otherwise."""
    current = get_generation(obj)
    if current:
        return current != generation
    return get_resource_version(obj) != resource_version


class ConflictResolver:
    """
    Decides the writes needed to converge one Tracked Resource Pair.

    Args:
        sync_target: Name of the SyncTarget this syncer serves
        pipeline: Downstream/upstream transform pipeline
        propagate_status: Whether physical status flows back to the logical object
        audit_limit: Maximum number of conflict records kept
        on_conflict: Callback invoked with each new ConflictRecord
    """

    def __init__(
        self,
        sync_target: str,
        pipeline: TransformPipeline,
        propagate_status: bool = True,
        audit_limit: int = 100,
        on_conflict: Optional[Callable[[ConflictRecord], None]] = None,
    ):
        self.sync_target = sync_target
        self.pipeline = pipeline
        self.propagate_status = propagate_status
        self.audit_trail: Deque[ConflictRecord] = deque(maxlen=audit_limit)
        self._callback = on_conflict

    def resolve(
        self,
        rtype: ResourceType,
        logical: Optional[Dict[str, Any]],
        physical: Optional[Dict[str, Any]],
        pair: Optional[TrackedResourcePair],
        now: datetime,
    ) -> Resolution:
        """
        Resolve one pair.

        Args:
            rtype: Resource type of both objects
            logical: Logical snapshot, or None when absent
            physical: Physical snapshot, or None when absent
            pair: Markers from the last successful reconcile, or None
            now: Current time, used for tracking annotations and conditions

        Returns:
            Resolution listing the writes to perform (empty for a no-op).
        """
        if should_skip(logical):
            return Resolution(reason=Reason.SKIPPED)

        if logical is None and physical is None:
            return Resolution(reason=Reason.GONE)

        if logical is None:
            return self._logical_absent(physical)

        if physical is None:
            return self._physical_absent(rtype, logical, pair, now)

        return self._both_present(rtype, logical, physical, pair, now)

    # --- cases ---

    def _logical_absent(self, physical: Dict[str, Any]) -> Resolution:
        if not is_managed_by(physical, self.sync_target):
            return Resolution(reason=Reason.FOREIGN_IGNORED)
        if is_deleting(physical):
            return Resolution(reason=Reason.PHYSICAL_DELETING)
        return Resolution(
            writes=[self._delete(physical)],
            reason=Reason.LOGICAL_DELETED,
        )

    def _physical_absent(
        self,
        rtype: ResourceType,
        logical: Dict[str, Any],
        pair: Optional[TrackedResourcePair],
        now: datetime,
    ) -> Resolution:
        if is_deleting(logical):
            return Resolution(reason=Reason.LOGICAL_DELETED)

        previously_synced = pair is not None and pair.physical_synced
        if previously_synced and not _moved(logical, pair.logical_generation, pair.logical_resource_version):
            # Removed on the physical side only: report it, do not recreate
            message = "physical object was deleted outside the syncer"
            return Resolution(
                writes=self._logical_status(logical, None, ConditionStatus.FALSE,
                                            Reason.PHYSICAL_DELETED.value, message, now),
                reason=Reason.PHYSICAL_DELETED,
                message=message,
            )

        desired = self.pipeline.downstream(rtype, logical, now=now)
        writes = [Write(Action.CREATE_PHYSICAL, get_namespace(desired), get_name(desired), desired)]
        writes.extend(self._logical_status(logical, None, ConditionStatus.TRUE, "Synced", "", now))
        return Resolution(writes=writes, reason=Reason.CREATED)

    def _both_present(
        self,
        rtype: ResourceType,
        logical: Dict[str, Any],
        physical: Dict[str, Any],
        pair: Optional[TrackedResourcePair],
        now: datetime,
    ) -> Resolution:
        key = PairKey.for_object(rtype, get_namespace(logical), get_name(logical), self.sync_target)

        if (
            pair is not None
            and pair.logical_resource_version == get_resource_version(logical)
            and pair.physical_resource_version == get_resource_version(physical)
        ):
            return Resolution(reason=Reason.UNCHANGED)

        if not is_managed_by(physical, self.sync_target):
            message = f"physical object {get_namespace(physical)}/{get_name(physical)} is not managed by this syncer"
            self._audit(key, Reason.FOREIGN_OBJECT, logical, physical, "none", now)
            return Resolution(
                writes=self._logical_status(logical, None, ConditionStatus.FALSE,
                                            Reason.FOREIGN_OBJECT.value, message, now),
                reason=Reason.FOREIGN_OBJECT,
                conflict=True,
                message=message,
            )

        if is_deleting(logical):
            if is_deleting(physical):
                return Resolution(reason=Reason.PHYSICAL_DELETING)
            return Resolution(writes=[self._delete(physical)], reason=Reason.LOGICAL_DELETED)

        if is_deleting(physical):
            return Resolution(reason=Reason.PHYSICAL_DELETING)

        writes: List[Write] = []
        reason = Reason.IN_SYNC
        conflict = False

        logical_moved = pair is None or _moved(logical, pair.logical_generation, pair.logical_resource_version)
        physical_moved = pair is None or _moved(physical, pair.physical_generation, pair.physical_resource_version)

        if logical_moved or physical_moved:
            desired = preserve_downstream_fields(physical, self.pipeline.downstream(rtype, logical, now=now))
            if comparable_spec(desired) != comparable_spec(physical):
                writes.append(Write(
                    Action.UPDATE_PHYSICAL,
                    get_namespace(physical),
                    get_name(physical),
                    desired,
                    get_resource_version(physical),
                ))
                reason = Reason.SPEC_CHANGED
                if pair is not None and pair.physical_synced and logical_moved and physical_moved:
                    conflict = True
                    reason = Reason.BOTH_CHANGED
                    self._audit(key, reason, logical, physical, "logical", now)

        if self.propagate_status:
            status_writes = self._logical_status(
                logical, physical.get("status"), ConditionStatus.TRUE, "Synced", "", now
            )
            if status_writes and not writes:
                reason = Reason.STATUS_CHANGED
            writes.extend(status_writes)

        return Resolution(writes=writes, reason=reason, conflict=conflict)

    # --- helpers ---

    def _delete(self, physical: Dict[str, Any]) -> Write:
        return Write(
            Action.DELETE_PHYSICAL,
            get_namespace(physical),
            get_name(physical),
            resource_version=get_resource_version(physical),
        )

    def _logical_status(
        self,
        logical: Dict[str, Any],
        physical_status: Optional[Dict[str, Any]],
        condition_status: ConditionStatus,
        reason: str,
        message: str,
        now: datetime,
    ) -> List[Write]:
        """Status write for the logical object, or nothing when it already matches."""
        if not self.propagate_status:
            return []
        current = logical.get("status") or {}
        base = _without_synced(physical_status) if physical_status is not None else _without_synced(current)
        desired = with_synced_condition(base, current, condition_status, reason, message, now)
        if desired == current:
            return []
        updated = deep_copy(logical)
        updated["status"] = desired
        return [Write(
            Action.UPDATE_LOGICAL_STATUS,
            get_namespace(logical),
            get_name(logical),
            updated,
            get_resource_version(logical),
        )]

    def _audit(
        self,
        key: PairKey,
        reason: Reason,
        logical: Dict[str, Any],
        physical: Dict[str, Any],
        source: str,
        now: datetime,
    ) -> None:
        record = ConflictRecord(
            key=str(key),
            timestamp=now,
            reason=reason,
            logical_resource_version=get_resource_version(logical),
            physical_resource_version=get_resource_version(physical),
            resolution_source=source,
        )
        self.audit_trail.append(record)
        logger.warning(f"Conflict on {key}: {reason.value}, resolved from {source}")

        if self._callback:
            try:
                self._callback(record)
            except Exception as e:
                logger.error(f"Error in conflict callback: {e}")

    def get_audit_trail(self) -> List[ConflictRecord]:
        """Returns the history of detected conflicts."""
        return list(self.audit_trail)


__all__ = [
    "ConflictResolver",
    "ConflictRecord",
    "Resolution",
    "Write",
    "Action",
    "Reason",
    "comparable_spec",
    "with_synced_condition",
]
