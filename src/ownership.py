"""
Ownership Registry - Which reconciler scope may manage which object.

Ownership is not held in memory or behind a lock: it is the manager
annotation stamped on each live object, read as part of the same get that
precedes every update. This module decides claims against that stamp,
writes and strips the stamp, and keeps the ledger of standing conflicts
that the status surface reports.
"""

import copy
import logging
from dataclasses import dataclass
from typing import AbstractSet, Any, Dict, List, Optional, Tuple

from errors import ManagementConflictError, ScopeError, SyncError
from fields import declared_field_paths, encode_fields
from resources import (
    DECLARED_FIELDS_ANNOTATION,
    MANAGED_BY_LABEL,
    MANAGED_BY_VALUE,
    MANAGER_ANNOTATION,
    OWNING_INVENTORY_ANNOTATION,
    RESOURCE_ID_ANNOTATION,
    STAMP_ANNOTATIONS,
    STAMP_LABELS,
    LiveResource,
    ResourceID,
)

logger = logging.getLogger(__name__)

ROOT_SCOPE = ":root"

# Owner changes observed on one object before it is reported as a fight.
FIGHT_THRESHOLD = 3


@dataclass(frozen=True)
class Scope:
    """A reconciler's authority boundary: root, or a single namespace."""

    sync_name: str
    namespace: Optional[str] = None

    @property
    def is_root(self) -> bool:
        return self.namespace is None

    @property
    def manager(self) -> str:
        """Value written to the manager annotation."""
        scope = ROOT_SCOPE if self.is_root else self.namespace
        return f"{scope}_{self.sync_name}"

    @property
    def key(self) -> str:
        return self.manager

    @classmethod
    def parse_manager(cls, manager: str) -> Optional["Scope"]:
        """Parse a manager annotation value; None when it is malformed."""
        if not manager or "_" not in manager:
            return None
        scope, name = manager.split("_", 1)
        if not scope or not name:
            return None
        if scope == ROOT_SCOPE:
            return cls(sync_name=name)
        if scope.startswith(":"):
            return None
        return cls(sync_name=name, namespace=scope)

    @classmethod
    def from_string(cls, scope: str, sync_name: str) -> "Scope":
        """Build from configuration: ``:root`` or a namespace name."""
        if scope in ("", ROOT_SCOPE):
            return cls(sync_name=sync_name)
        return cls(sync_name=sync_name, namespace=scope)

    def __str__(self) -> str:
        return self.manager


@dataclass(frozen=True)
class ConflictPolicy:
    """Precedence policy between scopes contending for one object."""

    # Let a root scope adopt objects currently managed by a namespace scope.
    root_precedence: bool = False


@dataclass
class Claim:
    """Outcome of a claim: granted, or denied with the current owner."""

    granted: bool
    current_owner: str = ""
    error: Optional[SyncError] = None
    adopted: bool = False


class OwnershipRegistry:
    """
    Decides ownership claims and tracks standing management conflicts.

    Claim resolution, in priority order:
      a. unowned objects are granted to the claimant;
      b. objects owned by the claimant's scope are granted (refresh);
      c. objects owned by another scope of the same class are denied;
      d. a root claimant may adopt from a namespace owner when the policy
         allows it.
    A namespace scope can never claim objects outside its namespace.
    """

    def __init__(self, policy: Optional[ConflictPolicy] = None):
        self.policy = policy or ConflictPolicy()
        self._conflicts: Dict[Tuple[str, Tuple[str, str, str, str]], ManagementConflictError] = {}
        self._last_owner: Dict[Tuple[str, str, str, str], str] = {}
        self._flips: Dict[Tuple[str, str, str, str], int] = {}
        self._previous_owner: Dict[Tuple[str, str, str, str], str] = {}

    def claim(
        self,
        scope: Scope,
        resource_id: ResourceID,
        live: Optional[Dict[str, Any]],
    ) -> Claim:
        """
        Decide whether ``scope`` may manage ``resource_id``.

        Args:
            scope: The claiming scope
            resource_id: The declared identity
            live: The live object, or None when it does not exist

        Returns:
            A Claim; denied claims carry the error to report.
        """
        if not scope.is_root and resource_id.namespace != scope.namespace:
            return Claim(
                granted=False,
                error=ScopeError(
                    f"{scope} may only manage objects in namespace "
                    f"{scope.namespace!r}, not {resource_id}",
                    [resource_id],
                ),
            )

        if live is None:
            return Claim(granted=True)

        owner = LiveResource(live).manager
        if not owner or owner == scope.manager:
            return Claim(granted=True, current_owner=owner)

        owner_scope = Scope.parse_manager(owner)
        if owner_scope is None:
            logger.warning(
                f"Invalid manager annotation on {resource_id}: "
                f"{MANAGER_ANNOTATION}={owner!r}; treating as unowned"
            )
            return Claim(granted=True, current_owner=owner)

        if scope.is_root and not owner_scope.is_root and self.policy.root_precedence:
            logger.info(f"{scope} adopting {resource_id} from {owner}")
            return Claim(granted=True, current_owner=owner, adopted=True)

        return Claim(
            granted=False,
            current_owner=owner,
            error=ManagementConflictError(resource_id, owner, scope.manager),
        )

    # Conflict ledger

    def record_conflict(self, scope: Scope, error: ManagementConflictError) -> None:
        key = (scope.key, error.resource_id.key)
        if key not in self._conflicts:
            logger.warning(f"Management conflict: {error.message}")
        self._conflicts[key] = error

    def clear_conflict(self, scope: Scope, resource_id: ResourceID) -> bool:
        """Clear a recorded conflict; returns True when one existed."""
        removed = self._conflicts.pop((scope.key, resource_id.key), None)
        if removed is not None:
            logger.info(f"Management conflict on {resource_id} resolved for {scope}")
        return removed is not None

    def has_conflict(self, scope: Scope, resource_id: ResourceID) -> bool:
        return (scope.key, resource_id.key) in self._conflicts

    def retain_conflicts(
        self, scope: Scope, keys: AbstractSet[Tuple[str, str, str, str]]
    ) -> int:
        """Drop conflicts recorded by ``scope`` on objects outside ``keys``."""
        stale = [
            entry
            for entry in self._conflicts
            if entry[0] == scope.key and entry[1] not in keys
        ]
        for entry in stale:
            error = self._conflicts.pop(entry)
            logger.info(
                f"Dropping conflict on {error.resource_id}: no longer declared by {scope}"
            )
        return len(stale)

    def conflicts(self, scope: Scope) -> List[ManagementConflictError]:
        return [
            error
            for (scope_key, _), error in sorted(
                self._conflicts.items(), key=lambda item: item[0]
            )
            if scope_key == scope.key
        ]

    def observe_owner(self, resource_id: ResourceID, owner: str) -> None:
        """Track ownership changes seen on an object."""
        if not owner:
            return
        key = resource_id.key
        previous = self._last_owner.get(key)
        if previous is not None and previous != owner:
            self._flips[key] = self._flips.get(key, 0) + 1
            self._previous_owner[key] = previous
            logger.info(
                f"Ownership of {resource_id} moved from {previous} to {owner} "
                f"({self._flips[key]} changes)"
            )
        self._last_owner[key] = owner

    def is_fighting(self, resource_id: ResourceID) -> bool:
        return self._flips.get(resource_id.key, 0) >= FIGHT_THRESHOLD

    def rival(self, resource_id: ResourceID, scope: Scope) -> str:
        """The other manager ownership of an object has been moving to."""
        key = resource_id.key
        for owner in (self._last_owner.get(key), self._previous_owner.get(key)):
            if owner and owner != scope.manager:
                return owner
        return ""

    def settle(self, resource_id: ResourceID, owner: str) -> None:
        """Restart change counting once ``owner`` has reclaimed an object."""
        key = resource_id.key
        if self._flips.pop(key, 0) >= FIGHT_THRESHOLD:
            logger.info(f"Ownership of {resource_id} reclaimed by {owner}")
        self._previous_owner.pop(key, None)
        self._last_owner[key] = owner

    def forget(self, resource_id: ResourceID) -> None:
        """Drop ownership history for an object no longer managed."""
        self._last_owner.pop(resource_id.key, None)
        self._flips.pop(resource_id.key, None)
        self._previous_owner.pop(resource_id.key, None)


def stamp(
    obj: Dict[str, Any],
    scope: Scope,
    resource_id: ResourceID,
    payload: Dict[str, Any],
    inventory_id: str,
) -> Dict[str, Any]:
    """Return a copy of ``obj`` carrying ``scope``'s ownership stamp."""
    result = copy.deepcopy(obj)
    metadata = result.setdefault("metadata", {})
    annotations = metadata.get("annotations") or {}
    annotations[MANAGER_ANNOTATION] = scope.manager
    annotations[DECLARED_FIELDS_ANNOTATION] = encode_fields(
        declared_field_paths(payload)
    )
    annotations[RESOURCE_ID_ANNOTATION] = str(resource_id)
    annotations[OWNING_INVENTORY_ANNOTATION] = inventory_id
    metadata["annotations"] = annotations
    labels = metadata.get("labels") or {}
    labels[MANAGED_BY_LABEL] = MANAGED_BY_VALUE
    metadata["labels"] = labels
    return result


def unstamp(obj: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of ``obj`` with the ownership stamp removed."""
    result = copy.deepcopy(obj)
    metadata = result.get("metadata") or {}
    for field_name, keys in (("annotations", STAMP_ANNOTATIONS), ("labels", STAMP_LABELS)):
        values = metadata.get(field_name)
        if not values:
            continue
        for key in keys:
            values.pop(key, None)
        if not values:
            del metadata[field_name]
    return result
