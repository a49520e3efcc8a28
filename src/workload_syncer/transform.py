"""
Object transformation between the logical workspace and the physical cluster.

Downstream, a logical object passes through an ordered pipeline of named
transformers before it is written to the physical cluster:

    metadata -> namespace -> resource-limits -> secret -> tracking

Upstream, the pipeline runs in reverse to undo what can be undone
(tracking metadata, namespace remapping). All transformers are pure: the
current time is part of the TransformContext.
"""
import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Type

from .errors import InvalidObjectError
from .models import (
    ANNOTATION_LAST_SYNC,
    ANNOTATION_ORIGINAL_NAMESPACE,
    ANNOTATION_SKIP,
    ANNOTATION_SKIP_LIMIT_OVERRIDES,
    ANNOTATION_SYNC_TARGET,
    ANNOTATION_SYNC_TARGET_UID,
    ANNOTATION_WORKSPACE,
    LABEL_MANAGED,
    LABEL_SYNC_TARGET,
    TRACKING_PREFIX,
    ResourceType,
    deep_copy,
    format_time,
    get_annotations,
    get_namespace,
    meta,
    utc_now,
)

logger = logging.getLogger(__name__)

# Server-owned metadata that must never be copied across clusters
SERVER_METADATA_FIELDS = (
    "uid",
    "resourceVersion",
    "generation",
    "creationTimestamp",
    "deletionTimestamp",
    "deletionGracePeriodSeconds",
    "managedFields",
    "ownerReferences",
    "finalizers",
    "selfLink",
)

SYSTEM_NAMESPACES = frozenset({"kube-system", "kube-public", "kube-node-lease"})

NAMESPACE_PREFIX_MAX = 15
NAMESPACE_PREFIX_HASH_LEN = 6


def derive_namespace_prefix(workspace: str) -> str:
    """Short DNS-safe prefix derived from a workspace path such as ``root:org:team``."""
    prefix = workspace.lower().replace(":", "-").replace("/", "-").strip("-")
    if len(prefix) <= NAMESPACE_PREFIX_MAX:
        return prefix or "ws"
    # Truncated paths keep a digest of the full path so siblings stay distinct
    digest = hashlib.sha256(workspace.encode()).hexdigest()[:NAMESPACE_PREFIX_HASH_LEN]
    head = prefix[:NAMESPACE_PREFIX_MAX - NAMESPACE_PREFIX_HASH_LEN - 1].strip("-")
    return f"{head}-{digest}" if head else digest


@dataclass
class TransformContext:
    """Everything a transformer may depend on besides the object itself."""
    sync_target: str
    sync_target_uid: str = ""
    workspace: str = ""
    namespace_prefix: Optional[str] = None
    control_plane_prefixes: List[str] = field(default_factory=list)
    limit_overrides: Dict[str, Dict[str, str]] = field(default_factory=dict)
    disallowed_secret_types: List[str] = field(default_factory=list)
    now: Optional[datetime] = None

    @classmethod
    def from_settings(cls, settings, sync_target_uid: str = "", now: Optional[datetime] = None) -> "TransformContext":
        return cls(
            sync_target=settings.sync_target_name,
            sync_target_uid=sync_target_uid,
            workspace=settings.workspace,
            namespace_prefix=settings.namespace_prefix,
            control_plane_prefixes=list(settings.control_plane_prefixes),
            limit_overrides=dict(settings.limit_overrides),
            disallowed_secret_types=list(settings.disallowed_secret_types),
            now=now,
        )

    def at(self, now: datetime) -> "TransformContext":
        """Copy of this context with a different clock reading."""
        clone = TransformContext(**{k: getattr(self, k) for k in self.__dataclass_fields__})
        clone.now = now
        return clone

    @property
    def prefix(self) -> str:
        return self.namespace_prefix or derive_namespace_prefix(self.workspace)

    def physical_namespace(self, namespace: str) -> str:
        if not namespace or namespace in SYSTEM_NAMESPACES:
            return namespace
        return f"{self.prefix}-{namespace}"

    def logical_namespace(self, physical_namespace: str, annotations: Optional[Dict[str, str]] = None) -> str:
        original = (annotations or {}).get(ANNOTATION_ORIGINAL_NAMESPACE)
        if original:
            return original
        marker = f"{self.prefix}-"
        if physical_namespace.startswith(marker):
            return physical_namespace[len(marker):]
        return physical_namespace


class Transformer:
    """Base class for named, ordered transformers."""

    name = ""

    def applies(self, rtype: ResourceType, obj: Dict[str, Any]) -> bool:
        return True

    def downstream(self, rtype: ResourceType, obj: Dict[str, Any], ctx: TransformContext) -> Dict[str, Any]:
        return obj

    def upstream(self, rtype: ResourceType, obj: Dict[str, Any], ctx: TransformContext) -> Dict[str, Any]:
        return obj


TRANSFORMERS: Dict[str, Type[Transformer]] = {}

DEFAULT_ORDER = ("metadata", "namespace", "resource-limits", "secret", "tracking")


def register_transformer(name: str) -> Callable[[Type[Transformer]], Type[Transformer]]:
    """Class decorator adding a transformer to the registry under ``name``."""
    def decorator(cls: Type[Transformer]) -> Type[Transformer]:
        cls.name = name
        TRANSFORMERS[name] = cls
        return cls
    return decorator


def _strip_prefixed(values: Dict[str, str], prefixes: List[str]) -> Dict[str, str]:
    return {k: v for k, v in values.items() if not any(k.startswith(p) for p in prefixes)}


@register_transformer("metadata")
class MetadataTransformer(Transformer):
    """Drops server-owned metadata, status and control-plane-only annotations and labels."""

    def downstream(self, rtype, obj, ctx):
        metadata = meta(obj)
        for name in SERVER_METADATA_FIELDS:
            metadata.pop(name, None)
        obj.pop("status", None)
        if ctx.control_plane_prefixes:
            for key in ("annotations", "labels"):
                if metadata.get(key):
                    metadata[key] = _strip_prefixed(metadata[key], ctx.control_plane_prefixes)
        return obj


@register_transformer("namespace")
class NamespaceTransformer(Transformer):

    def applies(self, rtype, obj):
        return rtype.namespaced and bool(get_namespace(obj))

    def downstream(self, rtype, obj, ctx):
        original = get_namespace(obj)
        target = ctx.physical_namespace(original)
        if target == original:
            return obj
        metadata = meta(obj)
        metadata["namespace"] = target
        metadata.setdefault("annotations", {})[ANNOTATION_ORIGINAL_NAMESPACE] = original
        return obj

    def upstream(self, rtype, obj, ctx):
        if not get_namespace(obj):
            return obj
        metadata = meta(obj)
        annotations = metadata.get("annotations") or {}
        metadata["namespace"] = ctx.logical_namespace(get_namespace(obj), annotations)
        annotations.pop(ANNOTATION_ORIGINAL_NAMESPACE, None)
        return obj


def _pod_specs(kind: str, obj: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Pod specs embedded in a workload object, at the usual locations."""
    spec = obj.get("spec") or {}
    if kind == "Pod":
        return [spec]
    if kind == "CronJob":
        spec = ((spec.get("jobTemplate") or {}).get("spec")) or {}
    template_spec = (spec.get("template") or {}).get("spec")
    return [template_spec] if isinstance(template_spec, dict) else []


@register_transformer("resource-limits")
class ResourceLimitsTransformer(Transformer):
    """Applies per-kind container limit overrides."""

    def applies(self, rtype, obj):
        return get_annotations(obj).get(ANNOTATION_SKIP_LIMIT_OVERRIDES) != "true"

    def downstream(self, rtype, obj, ctx):
        overrides = ctx.limit_overrides.get(rtype.kind)
        if not overrides:
            return obj
        for pod_spec in _pod_specs(rtype.kind, obj):
            for key in ("initContainers", "containers"):
                for container in pod_spec.get(key) or []:
                    limits = container.setdefault("resources", {}).setdefault("limits", {})
                    limits.update(overrides)
        return obj


@register_transformer("secret")
class SecretTransformer(Transformer):
    """Rejects secrets whose type may not leave the control plane."""

    def applies(self, rtype, obj):
        return rtype.kind == "Secret" and not rtype.group

    def downstream(self, rtype, obj, ctx):
        secret_type = obj.get("type") or "Opaque"
        if secret_type in ctx.disallowed_secret_types:
            logger.info(f"Blocking secret {get_namespace(obj)}/{obj.get('metadata', {}).get('name')} of type {secret_type}")
            raise InvalidObjectError(
                f"secret type {secret_type} is not allowed for synchronization",
                reason="DisallowedSecretType",
            )
        return obj


@register_transformer("tracking")
class TrackingTransformer(Transformer):
    """Stamps physical objects with the syncer's ownership markers."""

    def downstream(self, rtype, obj, ctx):
        metadata = meta(obj)
        annotations = metadata.setdefault("annotations", {})
        annotations[ANNOTATION_SYNC_TARGET] = ctx.sync_target
        if ctx.sync_target_uid:
            annotations[ANNOTATION_SYNC_TARGET_UID] = ctx.sync_target_uid
        if ctx.workspace:
            annotations[ANNOTATION_WORKSPACE] = ctx.workspace
        annotations[ANNOTATION_LAST_SYNC] = format_time(ctx.now or utc_now())
        labels = metadata.setdefault("labels", {})
        labels[LABEL_MANAGED] = "true"
        labels[LABEL_SYNC_TARGET] = ctx.sync_target
        return obj

    def upstream(self, rtype, obj, ctx):
        metadata = meta(obj)
        for key in ("annotations", "labels"):
            if metadata.get(key):
                metadata[key] = {
                    k: v for k, v in metadata[key].items()
                    if not k.startswith(TRACKING_PREFIX) or k == ANNOTATION_ORIGINAL_NAMESPACE
                }
        return obj


class TransformPipeline:
    """
    Ordered chain of registered transformers.

    Args:
        ctx: Shared transform context
        order: Transformer names in downstream order
    """

    def __init__(self, ctx: TransformContext, order: tuple = DEFAULT_ORDER):
        unknown = [name for name in order if name not in TRANSFORMERS]
        if unknown:
            raise ValueError(f"Unknown transformers: {', '.join(unknown)}")
        self.ctx = ctx
        self.transformers: List[Transformer] = [TRANSFORMERS[name]() for name in order]

    def downstream(self, rtype: ResourceType, obj: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
        """Transform a logical object into the physical object to write."""
        ctx = self.ctx.at(now) if now is not None else self.ctx
        result = deep_copy(obj)
        for transformer in self.transformers:
            if transformer.applies(rtype, result):
                result = transformer.downstream(rtype, result, ctx)
        return result

    def upstream(self, rtype: ResourceType, obj: Dict[str, Any]) -> Dict[str, Any]:
        """Undo downstream metadata changes on a physical object."""
        result = deep_copy(obj)
        for transformer in reversed(self.transformers):
            result = transformer.upstream(rtype, result, self.ctx)
        return result


# Metadata the physical cluster owns on an object the syncer updates
PRESERVED_METADATA_FIELDS = ("uid", "resourceVersion", "generation", "creationTimestamp", "managedFields")

# Spec fields allocated by the physical cluster, per kind
PRESERVED_SPEC_FIELDS = {
    "Service": ("clusterIP", "clusterIPs"),
    "PersistentVolume": ("claimRef",),
    "PersistentVolumeClaim": ("volumeName",),
}


def preserve_downstream_fields(existing: Dict[str, Any], desired: Dict[str, Any]) -> Dict[str, Any]:
    """
    Merge what the physical cluster owns into an object about to replace ``existing``.

    Finalizers are unioned, owner references merged by UID (desired wins on
    the same UID), server-managed metadata, status and cluster-allocated
    spec fields are copied from ``existing``. ``desired`` is not modified.
    """
    merged = deep_copy(desired)
    existing_meta = existing.get("metadata") or {}
    metadata = meta(merged)

    for name in PRESERVED_METADATA_FIELDS:
        if name in existing_meta:
            metadata[name] = deep_copy(existing_meta[name])

    finalizers = list(existing_meta.get("finalizers") or [])
    for finalizer in metadata.get("finalizers") or []:
        finalizers.append(finalizer)
    if finalizers:
        metadata["finalizers"] = list(dict.fromkeys(finalizers))

    owners = {ref.get("uid") or ref.get("name"): ref for ref in existing_meta.get("ownerReferences") or []}
    for ref in metadata.get("ownerReferences") or []:
        owners[ref.get("uid") or ref.get("name")] = ref
    if owners:
        metadata["ownerReferences"] = deep_copy(list(owners.values()))

    if "status" in existing:
        merged["status"] = deep_copy(existing["status"])

    kind = existing.get("kind") or desired.get("kind")
    existing_spec = existing.get("spec") or {}
    for name in PRESERVED_SPEC_FIELDS.get(kind, ()):
        if name in existing_spec and name not in (merged.get("spec") or {}):
            merged.setdefault("spec", {})[name] = deep_copy(existing_spec[name])
    return merged


def should_skip(obj: Optional[Dict[str, Any]]) -> bool:
    return bool(obj) and get_annotations(obj).get(ANNOTATION_SKIP) == "true"


def is_managed_by(obj: Optional[Dict[str, Any]], sync_target: str) -> bool:
    """Check whether a physical object carries this syncer's tracking annotation."""
    return bool(obj) and get_annotations(obj).get(ANNOTATION_SYNC_TARGET) == sync_target


__all__ = [
    "TransformContext",
    "TransformPipeline",
    "Transformer",
    "TRANSFORMERS",
    "DEFAULT_ORDER",
    "register_transformer",
    "derive_namespace_prefix",
    "should_skip",
    "is_managed_by",
    "preserve_downstream_fields",
    "SYSTEM_NAMESPACES",
]
