"""
Declared Cache - The declared set shared between the Applier and Remediator.

The reconciler loop installs a new snapshot at the end of each successful
cycle, and the Remediator reads whichever snapshot is current. A snapshot is
never modified after it is built, so a reader sees either the old set or
the new one and never a mix.
"""

import logging
from types import MappingProxyType
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from resources import DeclaredResource, DeclaredSet, ResourceID

logger = logging.getLogger(__name__)


class DeclaredSnapshot:
    """Immutable view of one declared set, keyed for lookup by identity."""

    def __init__(self, declared_set: Optional[DeclaredSet] = None):
        declared_set = declared_set or DeclaredSet("", [])
        self.revision = declared_set.revision
        self._by_key: Mapping[Tuple[str, str, str, str], DeclaredResource] = MappingProxyType(
            {r.id.key: r for r in declared_set.resources}
        )

    def without(self, resource_ids: Iterable[ResourceID]) -> "DeclaredSnapshot":
        keys = {rid.key for rid in resource_ids}
        return DeclaredSnapshot(
            DeclaredSet(
                self.revision,
                [r for key, r in self._by_key.items() if key not in keys],
            )
        )

    def get(self, resource_id: ResourceID) -> Optional[DeclaredResource]:
        """Look up by identity, ignoring version."""
        return self._by_key.get(resource_id.key)

    def __contains__(self, resource_id: ResourceID) -> bool:
        return resource_id.key in self._by_key

    def __len__(self) -> int:
        return len(self._by_key)

    def resources(self):
        return list(self._by_key.values())

    def to_dict(self) -> Dict[str, Any]:
        return {"revision": self.revision, "resources": len(self)}


class DeclaredCache:
    """Holds the current DeclaredSnapshot; swaps are a single reference store."""

    def __init__(self):
        self._snapshot = DeclaredSnapshot()

    def snapshot(self) -> DeclaredSnapshot:
        return self._snapshot

    def swap(self, declared_set: DeclaredSet) -> DeclaredSnapshot:
        """Install ``declared_set`` as the current snapshot and return it."""
        snapshot = DeclaredSnapshot(declared_set)
        previous = self._snapshot
        self._snapshot = snapshot
        if previous.revision != snapshot.revision:
            logger.info(
                f"Declared set updated to revision {snapshot.revision} "
                f"({len(snapshot)} resources)"
            )
        return snapshot

    def withdraw(self, resource_ids: Iterable[ResourceID]) -> DeclaredSnapshot:
        """Drop ``resource_ids`` from the current snapshot."""
        resource_ids = list(resource_ids)
        current = self._snapshot
        if not any(rid in current for rid in resource_ids):
            return current
        self._snapshot = current.without(resource_ids)
        return self._snapshot
