"""
Inventory - Durable record of the objects a scope currently owns.

Persisted on the cluster as one ResourceGroup object per scope and written
with read-modify-write under optimistic concurrency: a version conflict
retries the whole read-modify-write, never the apply that preceded it.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Iterable, Optional

from backoff import Backoff, retry_async
from errors import ClusterAPIError, InventoryConflictError
from kube import ClusterClient
from ownership import Scope
from resources import (
    OWNING_INVENTORY_ANNOTATION,
    ResourceID,
    object_size,
)

logger = logging.getLogger(__name__)

INVENTORY_GROUP = "kpt.dev"
INVENTORY_VERSION = "v1alpha1"
INVENTORY_KIND = "ResourceGroup"
INVENTORY_ID_LABEL = "cli-utils.sigs.k8s.io/inventory-id"
INVENTORY_OWNER_ANNOTATION = "driftsync.dev/inventory-owner"
GENERATION_ANNOTATION = "driftsync.dev/inventory-generation"

# The API server rejects requests above 1.5 MiB.
MAX_REQUEST_BYTES = int(1.5 * 1024 * 1024)


def dedupe(ids: Iterable[ResourceID]) -> FrozenSet[ResourceID]:
    """Collapse identities differing only in version; later entries win."""
    by_key: Dict[Any, ResourceID] = {}
    for rid in ids:
        by_key[rid.key] = rid
    return frozenset(by_key.values())


@dataclass
class Inventory:
    """The set of object identities a scope is responsible for."""

    owner: str
    name: str
    namespace: str
    generation: int = 0
    ids: FrozenSet[ResourceID] = field(default_factory=frozenset)
    resource_version: Optional[str] = None

    @property
    def exists(self) -> bool:
        return self.resource_version is not None

    @property
    def keys(self):
        return {rid.key for rid in self.ids}

    def to_object(self) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {
            "name": self.name,
            "namespace": self.namespace,
            "labels": {INVENTORY_ID_LABEL: inventory_id(self.namespace, self.name)},
            "annotations": {
                INVENTORY_OWNER_ANNOTATION: self.owner,
                OWNING_INVENTORY_ANNOTATION: inventory_id(self.namespace, self.name),
                GENERATION_ANNOTATION: str(self.generation),
            },
        }
        if self.resource_version:
            metadata["resourceVersion"] = self.resource_version
        return {
            "apiVersion": f"{INVENTORY_GROUP}/{INVENTORY_VERSION}",
            "kind": INVENTORY_KIND,
            "metadata": metadata,
            "spec": {
                "resources": [
                    rid.to_dict() for rid in sorted(self.ids, key=lambda r: r.sort_key)
                ]
            },
        }

    @classmethod
    def from_object(cls, obj: Dict[str, Any]) -> "Inventory":
        metadata = obj.get("metadata") or {}
        annotations = metadata.get("annotations") or {}
        entries = (obj.get("spec") or {}).get("resources") or []
        ids = []
        for entry in entries:
            try:
                ids.append(ResourceID.from_dict(entry))
            except (KeyError, TypeError):
                logger.warning(f"Skipping malformed inventory entry: {entry!r}")
        try:
            generation = int(annotations.get(GENERATION_ANNOTATION, "0"))
        except ValueError:
            generation = 0
        return cls(
            owner=annotations.get(INVENTORY_OWNER_ANNOTATION, ""),
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace", ""),
            generation=generation,
            ids=dedupe(ids),
            resource_version=metadata.get("resourceVersion"),
        )


def inventory_id(namespace: str, name: str) -> str:
    return f"{namespace}_{name}"


class InventoryStore:
    """Reads and writes a scope's inventory object."""

    def __init__(
        self,
        client: ClusterClient,
        scope: Scope,
        namespace: str,
        backoff: Optional[Backoff] = None,
        sleep=None,
    ):
        self.client = client
        self.scope = scope
        self.name = scope.sync_name
        # Namespace scopes keep their inventory in their own namespace.
        self.namespace = namespace if scope.is_root else scope.namespace
        self.backoff = backoff or Backoff()
        self._sleep = sleep

    @property
    def resource_id(self) -> ResourceID:
        return ResourceID(
            group=INVENTORY_GROUP,
            version=INVENTORY_VERSION,
            kind=INVENTORY_KIND,
            namespace=self.namespace,
            name=self.name,
        )

    @property
    def inventory_id(self) -> str:
        return inventory_id(self.namespace, self.name)

    def _empty(self) -> Inventory:
        return Inventory(owner=self.scope.manager, name=self.name, namespace=self.namespace)

    async def _read(self) -> Inventory:
        obj = await self.client.get(self.resource_id)
        if obj is None:
            return self._empty()
        return Inventory.from_object(obj)

    async def load(self) -> Inventory:
        """Return the current inventory; empty when none was ever written."""
        return await retry_async(
            self._read, self.backoff, f"read inventory {self.inventory_id}",
            sleep=self._sleep,
        )

    async def update(
        self, mutate: Callable[[FrozenSet[ResourceID]], Iterable[ResourceID]]
    ) -> Inventory:
        """
        Read-modify-write the inventory.

        Args:
            mutate: Maps the current id set to the new one

        Returns:
            The inventory as written (or as read when nothing changed)

        Raises:
            InventoryConflictError: When optimistic-concurrency retries run out
        """

        async def read_modify_write() -> Inventory:
            current = await self._read()
            new_ids = dedupe(mutate(current.ids))
            if current.exists and new_ids == current.ids:
                return current
            updated = Inventory(
                owner=self.scope.manager,
                name=self.name,
                namespace=self.namespace,
                generation=current.generation + 1,
                ids=new_ids,
                resource_version=current.resource_version,
            )
            obj = updated.to_object()
            size = object_size(obj)
            if size > MAX_REQUEST_BYTES // 2:
                logger.warning(
                    f"ResourceGroup {self.inventory_id} is close to the maximum "
                    f"object size limit (size: {size}, max: {MAX_REQUEST_BYTES}). "
                    f"Split the source into smaller ones to avoid future failure."
                )
            if current.exists:
                written = await self.client.update(obj)
            else:
                written = await self.client.create(obj)
            result = Inventory.from_object(written)
            logger.info(
                f"Inventory {self.inventory_id} updated to generation "
                f"{result.generation} ({len(result.ids)} objects)"
            )
            return result

        try:
            return await retry_async(
                read_modify_write,
                self.backoff,
                f"write inventory {self.inventory_id}",
                sleep=self._sleep,
            )
        except ClusterAPIError as e:
            if e.conflict:
                raise InventoryConflictError(
                    f"inventory {self.inventory_id} could not be written after "
                    f"{self.backoff.max_attempts} attempts: {e.message}",
                    [self.resource_id],
                ) from e
            raise

    async def replace(self, ids: Iterable[ResourceID]) -> Inventory:
        ids = frozenset(ids)
        return await self.update(lambda _current: ids)

    async def widen(self, ids: Iterable[ResourceID]) -> Inventory:
        """Add ids without removing any."""
        ids = list(ids)
        return await self.update(lambda current: list(current) + ids)
