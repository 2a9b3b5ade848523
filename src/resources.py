"""
Resource Model - Identities, declared resources and live resource views.

Declared resources come fresh from the source every cycle and are never
mutated in place; live resources are thin views over the object dicts
returned by the cluster API.
"""

import copy
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

from errors import SourceError

logger = logging.getLogger(__name__)

# Ownership stamp
MANAGER_ANNOTATION = "driftsync.dev/manager"
DECLARED_FIELDS_ANNOTATION = "driftsync.dev/declared-fields"
RESOURCE_ID_ANNOTATION = "driftsync.dev/resource-id"
OWNING_INVENTORY_ANNOTATION = "config.k8s.io/owning-inventory"
MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "driftsync"

# Directives
MANAGEMENT_ANNOTATION = "driftsync.dev/managed"
LOCAL_CONFIG_ANNOTATION = "config.kubernetes.io/local-config"
DEPENDS_ON_ANNOTATION = "config.kubernetes.io/depends-on"
DELETION_ANNOTATION = "client.lifecycle.config.k8s.io/deletion"
DELETION_DETACH = "detach"
MUTATION_ANNOTATION = "client.lifecycle.config.k8s.io/mutation"
MUTATION_IGNORE = "ignore"

STAMP_ANNOTATIONS = (
    MANAGER_ANNOTATION,
    DECLARED_FIELDS_ANNOTATION,
    RESOURCE_ID_ANNOTATION,
    OWNING_INVENTORY_ANNOTATION,
)
STAMP_LABELS = (MANAGED_BY_LABEL,)

# Namespaces that are released instead of deleted when pruned.
PROTECTED_NAMESPACES = frozenset(
    {"default", "kube-system", "kube-public", "kube-node-lease", "gatekeeper-system"}
)

# Metadata populated by the API server; never part of a declaration.
SERVER_METADATA_FIELDS = (
    "resourceVersion",
    "uid",
    "generation",
    "creationTimestamp",
    "deletionTimestamp",
    "deletionGracePeriodSeconds",
    "managedFields",
    "selfLink",
)


class Lifecycle(Enum):
    """Lifecycle directive of a declared resource."""

    NORMAL = "normal"
    PREVENT_DELETION = "prevent-deletion"


class Management(Enum):
    """Management directive of a declared resource."""

    ENABLED = "enabled"
    DISABLED = "disabled"
    LOCAL_CONFIG = "local-config"


@dataclass(frozen=True)
class GroupVersionKind:
    """API group, version and kind of a resource type."""

    group: str
    version: str
    kind: str

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}" if self.group else self.version

    @classmethod
    def from_api_version(cls, api_version: str, kind: str) -> "GroupVersionKind":
        if "/" in api_version:
            group, version = api_version.split("/", 1)
        else:
            group, version = "", api_version
        return cls(group=group, version=version, kind=kind)

    def __str__(self) -> str:
        return f"{self.api_version}, Kind={self.kind}"


@dataclass(frozen=True)
class ResourceID:
    """Identity key of a resource: (group, version, kind, namespace, name)."""

    group: str
    version: str
    kind: str
    namespace: str
    name: str

    @property
    def gvk(self) -> GroupVersionKind:
        return GroupVersionKind(self.group, self.version, self.kind)

    @property
    def key(self) -> Tuple[str, str, str, str]:
        """Version-independent identity used for ownership and inventory."""
        return (self.group, self.kind, self.namespace, self.name)

    @property
    def sort_key(self) -> Tuple[str, str, str, str]:
        return (self.kind, self.namespace, self.name, self.group)

    @property
    def is_namespace(self) -> bool:
        return self.group == "" and self.kind == "Namespace"

    @classmethod
    def from_object(cls, obj: Dict[str, Any]) -> "ResourceID":
        gvk = GroupVersionKind.from_api_version(
            obj.get("apiVersion", ""), obj.get("kind", "")
        )
        metadata = obj.get("metadata") or {}
        return cls(
            group=gvk.group,
            version=gvk.version,
            kind=gvk.kind,
            namespace=metadata.get("namespace") or "",
            name=metadata.get("name", ""),
        )

    def to_dict(self) -> Dict[str, str]:
        return {
            "group": self.group,
            "version": self.version,
            "kind": self.kind,
            "namespace": self.namespace,
            "name": self.name,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResourceID":
        return cls(
            group=data.get("group", ""),
            version=data.get("version", ""),
            kind=data["kind"],
            namespace=data.get("namespace", ""),
            name=data["name"],
        )

    def __str__(self) -> str:
        group = self.group or "core"
        if self.namespace:
            return f"{group}/{self.kind}/{self.namespace}/{self.name}"
        return f"{group}/{self.kind}/{self.name}"


@dataclass(frozen=True)
class DeclaredResource:
    """A resource as declared in the source for one revision."""

    id: ResourceID
    payload: Dict[str, Any] = field(compare=False, hash=False)
    depends_on: FrozenSet[ResourceID] = frozenset()
    lifecycle: Lifecycle = Lifecycle.NORMAL
    management: Management = Management.ENABLED

    def __post_init__(self):
        payload = copy.deepcopy(self.payload)
        if self.lifecycle == Lifecycle.PREVENT_DELETION:
            # The directive travels with the object so prune sees it live.
            metadata = payload.setdefault("metadata", {})
            annotations = metadata.get("annotations") or {}
            annotations[DELETION_ANNOTATION] = DELETION_DETACH
            metadata["annotations"] = annotations
        object.__setattr__(self, "payload", payload)
        object.__setattr__(self, "depends_on", frozenset(self.depends_on))

    @property
    def enabled(self) -> bool:
        return self.management == Management.ENABLED

    @property
    def ignores_mutation(self) -> bool:
        return _annotations(self.payload).get(MUTATION_ANNOTATION) == MUTATION_IGNORE


class DeclaredSet:
    """The fully-resolved desired state of one scope at one revision."""

    def __init__(self, revision: str, resources: Iterable[DeclaredResource]):
        self.revision = revision
        self._resources: Dict[ResourceID, DeclaredResource] = {}
        keys = set()
        for resource in resources:
            if resource.id.key in keys:
                raise SourceError(
                    f"duplicate declaration of {resource.id}", [resource.id]
                )
            keys.add(resource.id.key)
            self._resources[resource.id] = resource

    @property
    def resources(self) -> List[DeclaredResource]:
        return list(self._resources.values())

    @property
    def ids(self) -> FrozenSet[ResourceID]:
        return frozenset(self._resources)

    @property
    def by_id(self) -> Dict[ResourceID, DeclaredResource]:
        return dict(self._resources)

    def enabled(self) -> List[DeclaredResource]:
        return [r for r in self._resources.values() if r.enabled]

    def disabled(self) -> List[DeclaredResource]:
        return [
            r
            for r in self._resources.values()
            if r.management == Management.DISABLED
        ]

    def without_local_config(self) -> "DeclaredSet":
        """Return the set minus resources that are never sent to the cluster."""
        return DeclaredSet(
            self.revision,
            [
                r
                for r in self._resources.values()
                if r.management != Management.LOCAL_CONFIG
            ],
        )

    def __len__(self) -> int:
        return len(self._resources)

    def __contains__(self, resource_id: ResourceID) -> bool:
        return resource_id in self._resources


class LiveResource:
    """Read-only view over an object dict returned by the cluster."""

    def __init__(self, obj: Dict[str, Any]):
        self.object = obj

    @property
    def id(self) -> ResourceID:
        return ResourceID.from_object(self.object)

    @property
    def metadata(self) -> Dict[str, Any]:
        return self.object.get("metadata") or {}

    @property
    def annotations(self) -> Dict[str, str]:
        return _annotations(self.object)

    @property
    def labels(self) -> Dict[str, str]:
        return self.metadata.get("labels") or {}

    @property
    def resource_version(self) -> Optional[str]:
        return self.metadata.get("resourceVersion")

    @property
    def generation(self) -> int:
        return int(self.metadata.get("generation") or 0)

    @property
    def manager(self) -> str:
        return self.annotations.get(MANAGER_ANNOTATION, "")

    @property
    def declared_fields(self) -> str:
        return self.annotations.get(DECLARED_FIELDS_ANNOTATION, "")

    @property
    def owner_references(self) -> List[Dict[str, Any]]:
        return self.metadata.get("ownerReferences") or []

    @property
    def prevents_deletion(self) -> bool:
        return self.annotations.get(DELETION_ANNOTATION) == DELETION_DETACH

    @property
    def ignores_mutation(self) -> bool:
        return self.annotations.get(MUTATION_ANNOTATION) == MUTATION_IGNORE

    @property
    def has_stamp(self) -> bool:
        annotations = self.annotations
        return any(key in annotations for key in STAMP_ANNOTATIONS) or (
            self.labels.get(MANAGED_BY_LABEL) == MANAGED_BY_VALUE
        )

    @property
    def is_protected_namespace(self) -> bool:
        return self.id.is_namespace and self.id.name in PROTECTED_NAMESPACES

    def depends_on(self) -> List[ResourceID]:
        """Parse the depends-on annotation carried by the live object."""
        value = self.annotations.get(DEPENDS_ON_ANNOTATION, "")
        if not value:
            return []
        try:
            return parse_depends_on(value)
        except ValueError as e:
            logger.warning(f"Ignoring malformed depends-on on {self.id}: {e}")
            return []


def _annotations(obj: Dict[str, Any]) -> Dict[str, str]:
    return (obj.get("metadata") or {}).get("annotations") or {}


def parse_depends_on(value: str) -> List[ResourceID]:
    """
    Parse a depends-on annotation value.

    References are comma separated, each either ``group/kind/name`` for
    cluster-scoped objects or ``group/namespaces/<ns>/kind/name`` for
    namespaced ones; an empty group means the core API group. References
    carry no version, so the version field is left empty and matched by
    group-kind identity.

    Raises:
        ValueError: If a reference is malformed.
    """
    refs = []
    for raw in value.split(","):
        ref = raw.strip()
        if not ref:
            continue
        parts = ref.split("/")
        if len(parts) == 3:
            group, kind, name = parts
            namespace = ""
        elif len(parts) == 5 and parts[1] == "namespaces":
            group, _, namespace, kind, name = parts
        else:
            raise ValueError(f"invalid depends-on reference {ref!r}")
        if not kind or not name:
            raise ValueError(f"invalid depends-on reference {ref!r}")
        refs.append(
            ResourceID(
                group=group, version="", kind=kind, namespace=namespace, name=name
            )
        )
    return refs


def format_depends_on(refs: Iterable[ResourceID]) -> str:
    """Inverse of parse_depends_on."""
    out = []
    for ref in sorted(refs, key=lambda r: r.sort_key):
        if ref.namespace:
            out.append(f"{ref.group}/namespaces/{ref.namespace}/{ref.kind}/{ref.name}")
        else:
            out.append(f"{ref.group}/{ref.kind}/{ref.name}")
    return ",".join(out)


def strip_server_fields(obj: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy without status and server-populated metadata."""
    result = copy.deepcopy(obj)
    result.pop("status", None)
    metadata = result.get("metadata") or {}
    for key in SERVER_METADATA_FIELDS:
        metadata.pop(key, None)
    return result


def object_size(obj: Dict[str, Any]) -> int:
    """Serialized size of an object in bytes."""
    return len(json.dumps(obj, separators=(",", ":")).encode("utf-8"))
