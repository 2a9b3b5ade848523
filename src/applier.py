"""
Applier - Converges the cluster toward a declared set.

Creates and updates declared objects in dependency order, releases objects
whose management was disabled, prunes objects that left the declared set
in reverse dependency order, and records the outcome in the inventory.

Per-object failures never abort a cycle: they are collected and reported,
and unaffected objects still converge.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Set

from backoff import Backoff, retry_async
from declared import DeclaredCache
from errors import (
    ApplyError,
    ClusterAPIError,
    InventoryConflictError,
    ManagementConflictError,
    PruneBlockedError,
    SyncError,
    UnknownKindError,
)
from events import EventBus, EventType, SyncEvent
from fields import decode_fields, merge
from graph import DependencyGraph, GraphOrder
from inventory import InventoryStore
from kube import ClusterClient
from ownership import OwnershipRegistry, Scope, stamp, unstamp
from resources import (
    DeclaredResource,
    DeclaredSet,
    GroupVersionKind,
    LiveResource,
    ResourceID,
    strip_server_fields,
)

logger = logging.getLogger(__name__)


class Operation(Enum):
    """What a write did to one object."""

    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    DENIED = "denied"
    DELETED = "deleted"
    UNMANAGED = "unmanaged"
    SKIPPED = "skipped"


@dataclass
class WriteResult:
    """Outcome of a single-object write."""

    operation: Operation
    object: Optional[Dict[str, Any]] = None
    error: Optional[SyncError] = None


class ResourceWriter:
    """
    Single-object writes shared by the Applier and the Remediator.

    Each write is one get/claim/write unit. The claim is decided from the
    ownership stamp read by that same get, and the whole unit is retried on
    transient failures, so a version conflict re-reads and re-decides.
    """

    def __init__(
        self,
        scope: Scope,
        client: ClusterClient,
        registry: OwnershipRegistry,
        inventory_id: str,
        backoff: Optional[Backoff] = None,
        sleep=None,
    ):
        self.scope = scope
        self.client = client
        self.registry = registry
        self.inventory_id = inventory_id
        self.backoff = backoff or Backoff()
        self._sleep = sleep

    async def _retry(self, operation, description: str):
        return await retry_async(operation, self.backoff, description, sleep=self._sleep)

    def desired(self, declared: DeclaredResource, live: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """
        Compute the object this scope wants on the cluster.

        For an existing object this is the field-scoped merge: declared
        fields are set, fields this scope declared before but no longer
        declares are cleared, and everything else is left as it is live.
        """
        if live is None:
            return stamp(
                strip_server_fields(declared.payload),
                self.scope,
                declared.id,
                declared.payload,
                self.inventory_id,
            )
        view = LiveResource(live)
        previous = (
            decode_fields(view.declared_fields)
            if view.manager == self.scope.manager
            else frozenset()
        )
        merged = merge(live, declared.payload, previous)
        return stamp(merged, self.scope, declared.id, declared.payload, self.inventory_id)

    async def apply(self, declared: DeclaredResource) -> WriteResult:
        """Create or field-merge one declared object if this scope may own it."""

        async def unit() -> WriteResult:
            live = await self.client.get(declared.id)
            claim = self.registry.claim(self.scope, declared.id, live)
            if not claim.granted:
                return WriteResult(Operation.DENIED, live, claim.error)
            if live is None:
                created = await self.client.create(self.desired(declared, None))
                return WriteResult(Operation.CREATED, created)
            if declared.ignores_mutation and LiveResource(live).ignores_mutation:
                return WriteResult(Operation.UNCHANGED, live)
            desired = self.desired(declared, live)
            if desired == live:
                return WriteResult(Operation.UNCHANGED, live)
            updated = await self.client.update(desired)
            return WriteResult(Operation.UPDATED, updated)

        return await self._retry(unit, f"apply {declared.id}")

    async def unmanage(self, resource_id: ResourceID) -> WriteResult:
        """Strip this scope's stamp from an object without deleting it."""

        async def unit() -> WriteResult:
            live = await self.client.get(resource_id)
            if live is None or LiveResource(live).manager != self.scope.manager:
                return WriteResult(Operation.SKIPPED, live)
            released = unstamp(live)
            if released == live:
                return WriteResult(Operation.SKIPPED, live)
            updated = await self.client.update(released)
            return WriteResult(Operation.UNMANAGED, updated)

        return await self._retry(unit, f"unmanage {resource_id}")

    async def prune(self, resource_id: ResourceID) -> WriteResult:
        """
        Delete an object that left the declared set, if it is still ours.

        The stamp is re-checked immediately before the delete and the delete
        carries the read resource version as a precondition, so an object
        adopted by another scope in between is never removed.
        """

        async def unit() -> WriteResult:
            live = await self.client.get(resource_id)
            if live is None:
                return WriteResult(Operation.SKIPPED)
            view = LiveResource(live)
            if view.manager != self.scope.manager:
                logger.info(
                    f"Not pruning {resource_id}: managed by {view.manager or 'nobody'}"
                )
                return WriteResult(Operation.SKIPPED, live)
            if view.owner_references:
                logger.info(f"Not pruning {resource_id}: it has owner references")
                return WriteResult(Operation.SKIPPED, live)
            if view.prevents_deletion or view.is_protected_namespace:
                released = unstamp(live)
                updated = await self.client.update(released)
                return WriteResult(Operation.UNMANAGED, updated)
            try:
                await self.client.delete(resource_id, view.resource_version)
            except ClusterAPIError as e:
                if not e.not_found:
                    raise
            return WriteResult(Operation.DELETED, live)

        return await self._retry(unit, f"prune {resource_id}")


@dataclass
class ApplyStats:
    """Per-kind operation counters for one cycle."""

    operations: Dict[str, Dict[str, int]] = field(default_factory=dict)
    errors: int = 0

    def record(self, kind: str, operation: Operation) -> None:
        counts = self.operations.setdefault(
            kind, {"created": 0, "updated": 0, "deleted": 0, "unmanaged": 0}
        )
        counts[operation.value] = counts.get(operation.value, 0) + 1

    def total(self, operation: Operation) -> int:
        return sum(c.get(operation.value, 0) for c in self.operations.values())

    def empty(self) -> bool:
        return not any(v for c in self.operations.values() for v in c.values())

    def __str__(self) -> str:
        return (
            f"created {self.total(Operation.CREATED)}, "
            f"updated {self.total(Operation.UPDATED)}, "
            f"deleted {self.total(Operation.DELETED)}, "
            f"unmanaged {self.total(Operation.UNMANAGED)}, "
            f"errors {self.errors}"
        )


@dataclass
class ApplyResult:
    """Outcome of one Apply cycle."""

    applied_gvks: Set[GroupVersionKind] = field(default_factory=set)
    errors: List[SyncError] = field(default_factory=list)
    stats: ApplyStats = field(default_factory=ApplyStats)
    inventory_ids: FrozenSet[ResourceID] = frozenset()
    order: Optional[GraphOrder] = None
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return not self.errors


class Applier:
    """Runs Apply cycles for one scope. Never call apply() concurrently."""

    def __init__(
        self,
        scope: Scope,
        client: ClusterClient,
        registry: OwnershipRegistry,
        inventory: InventoryStore,
        backoff: Optional[Backoff] = None,
        event_bus: Optional[EventBus] = None,
        cache: Optional[DeclaredCache] = None,
        max_concurrent_writes: int = 8,
        sleep=None,
    ):
        self.scope = scope
        self.client = client
        self.registry = registry
        self.inventory = inventory
        self.backoff = backoff or Backoff()
        self._event_bus = event_bus
        self.cache = cache
        self.semaphore = asyncio.Semaphore(max_concurrent_writes)
        self._sleep = sleep
        self.writer = ResourceWriter(
            scope, client, registry, inventory.inventory_id, self.backoff, sleep
        )

    async def _publish(self, event_type: EventType, resource_id: ResourceID, message: str = "") -> None:
        if self._event_bus:
            await self._event_bus.publish(
                SyncEvent.for_resource(event_type, self.scope.manager, resource_id, message)
            )

    async def apply(self, declared_set: DeclaredSet) -> ApplyResult:
        """
        Converge the cluster toward ``declared_set``.

        Returns:
            ApplyResult with the kinds applied (for the Remediator's watches),
            per-object errors and per-kind counters
        """
        start = time.monotonic()
        result = ApplyResult()
        declared_set = declared_set.without_local_config()
        enabled = declared_set.enabled()
        by_id = {r.id: r for r in enabled}
        declared_keys = {r.id.key for r in declared_set.resources}

        logger.info(
            f"{len(enabled)} objects to be applied, "
            f"{len(declared_set.disabled())} to be disabled "
            f"(revision {declared_set.revision})"
        )

        if self.cache is not None:
            self.cache.withdraw(r.id for r in declared_set.disabled())
        await self._release_disabled(declared_set.disabled(), result)

        try:
            previous = await self.inventory.load()
            # Record new objects before creating them so a crash mid-cycle
            # cannot orphan them.
            await self.inventory.widen(by_id)
        except (SyncError, ClusterAPIError) as e:
            result.errors.append(_as_sync_error(e, [self.inventory.resource_id]))
            result.duration_seconds = time.monotonic() - start
            logger.error(f"Inventory unavailable, skipping apply: {e}")
            return result

        graph = DependencyGraph.for_declared(enabled)
        order = graph.order()
        result.order = order
        result.errors.extend(order.errors)

        succeeded: Set[ResourceID] = set()
        failed: Set[ResourceID] = set(order.excluded)
        denied: Set[ResourceID] = set()
        unknown: Set[GroupVersionKind] = set()

        for layer in order.layers:
            outcomes = await asyncio.gather(
                *(
                    self._apply_one(by_id[rid], graph, failed)
                    for rid in layer
                )
            )
            for rid, (outcome, error) in zip(layer, outcomes):
                if error is not None:
                    result.errors.append(error)
                    if isinstance(error, UnknownKindError):
                        unknown.add(rid.gvk)
                if outcome is None:
                    failed.add(rid)
                elif outcome == Operation.DENIED:
                    denied.add(rid)
                    failed.add(rid)
                else:
                    succeeded.add(rid)
                    if outcome in (Operation.CREATED, Operation.UPDATED):
                        result.stats.record(rid.kind, outcome)

        pruned, prune_kept = await self._prune(
            previous.ids, declared_keys, enabled, result
        )
        self.registry.retain_conflicts(self.scope, {r.id.key for r in enabled})

        previous_keys = previous.keys
        final = set(succeeded) | prune_kept
        final |= {
            rid for rid in by_id if rid.key in previous_keys and rid not in denied
        }
        try:
            written = await self.inventory.replace(final)
            result.inventory_ids = written.ids
        except (SyncError, ClusterAPIError) as e:
            result.errors.append(_as_sync_error(e, [self.inventory.resource_id]))

        result.applied_gvks = {r.id.gvk for r in enabled} - unknown
        result.stats.errors = len(result.errors)
        result.duration_seconds = time.monotonic() - start

        if result.stats.empty():
            logger.info("The applier made no new progress")
        else:
            logger.info(f"The applier made new progress: {result.stats}")
        if not result.errors:
            logger.info("All resources are up to date")
        return result

    async def _apply_one(
        self,
        declared: DeclaredResource,
        graph: DependencyGraph,
        failed: Set[ResourceID],
    ):
        """Apply one object; returns (operation or None on failure, error)."""
        rid = declared.id
        failed_deps = [d for d in graph.dependencies(rid) if d in failed]
        if failed_deps:
            return None, ApplyError(
                f"skipped {rid}: dependencies were not applied: "
                + ", ".join(str(d) for d in failed_deps),
                [rid],
            )

        async with self.semaphore:
            try:
                write = await self.writer.apply(declared)
            except UnknownKindError as e:
                return None, UnknownKindError(e.message, [rid])
            except Exception as e:
                logger.error(f"Failed to apply {rid}: {e}")
                return None, ApplyError(f"failed to apply {rid}: {e}", [rid])

        if write.operation == Operation.DENIED:
            if isinstance(write.error, ManagementConflictError):
                self.registry.record_conflict(self.scope, write.error)
                await self._publish(EventType.CONFLICT, rid, write.error.message)
                return Operation.DENIED, write.error
            return None, write.error

        self.registry.clear_conflict(self.scope, rid)
        self.registry.settle(rid, self.scope.manager)
        if write.operation != Operation.UNCHANGED:
            logger.info(f"applied [op: {write.operation.value}] resource {rid}")
            await self._publish(EventType.APPLIED, rid, write.operation.value)
        return write.operation, None

    async def _release_disabled(
        self, disabled: List[DeclaredResource], result: ApplyResult
    ) -> None:
        for declared in disabled:
            try:
                write = await self.writer.unmanage(declared.id)
            except UnknownKindError:
                continue
            except Exception as e:
                result.errors.append(
                    ApplyError(f"failed to unmanage {declared.id}: {e}", [declared.id])
                )
                continue
            if write.operation == Operation.UNMANAGED:
                logger.info(f"Removed management metadata from {declared.id}")
                result.stats.record(declared.id.kind, Operation.UNMANAGED)
                self.registry.forget(declared.id)
                await self._publish(EventType.UNMANAGED, declared.id)

    async def _prune(
        self,
        previous_ids: FrozenSet[ResourceID],
        declared_keys: Set[Any],
        enabled: List[DeclaredResource],
        result: ApplyResult,
    ):
        """
        Delete previously owned objects that left the declared set.

        Returns:
            (pruned ids, ids to keep in the inventory)
        """
        candidates = sorted(
            (rid for rid in previous_ids if rid.key not in declared_keys),
            key=lambda r: r.sort_key,
        )
        pruned: Set[ResourceID] = set()
        kept: Set[ResourceID] = set()
        if not candidates:
            return pruned, kept
        logger.info(f"{len(candidates)} objects to be pruned")
        if self.cache is not None:
            self.cache.withdraw(candidates)

        live_objects = []
        for rid in candidates:
            try:
                live = await retry_async(
                    lambda rid=rid: self.client.get(rid),
                    self.backoff,
                    f"get {rid}",
                    sleep=self._sleep,
                )
            except UnknownKindError:
                # The kind is gone, and with it every object of that kind.
                pruned.add(rid)
                continue
            except Exception as e:
                result.errors.append(ApplyError(f"failed to read {rid}: {e}", [rid]))
                kept.add(rid)
                continue
            if live is None:
                pruned.add(rid)
            else:
                live_objects.append(live)

        by_key = {rid.key: rid for rid in candidates}
        blockers: Dict[Any, List[ResourceID]] = {}
        for declared in enabled:
            for dep in declared.depends_on:
                if dep.key in by_key:
                    blockers.setdefault(dep.key, []).append(declared.id)

        order = DependencyGraph.for_live(live_objects).order()
        sequence = [rid for layer in order.reverse_layers() for rid in layer]
        # Cyclic leftovers still go, after everything that was orderable.
        sequence += sorted(order.excluded, key=lambda r: r.sort_key, reverse=True)
        if order.excluded:
            logger.warning(
                f"Pruning {len(order.excluded)} objects with cyclic dependencies last"
            )

        for live_id in sequence:
            rid = by_key.get(live_id.key, live_id)
            if live_id.key in blockers:
                dependents = sorted(blockers[live_id.key], key=lambda r: r.sort_key)
                result.errors.append(
                    PruneBlockedError(
                        f"not pruning {rid}: still a dependency of "
                        + ", ".join(str(d) for d in dependents),
                        [rid],
                    )
                )
                kept.add(rid)
                continue
            try:
                write = await self.writer.prune(rid)
            except Exception as e:
                logger.error(f"Failed to prune {rid}: {e}")
                result.errors.append(ApplyError(f"failed to prune {rid}: {e}", [rid]))
                kept.add(rid)
                continue
            pruned.add(rid)
            self.registry.forget(rid)
            self.registry.clear_conflict(self.scope, rid)
            if write.operation == Operation.DELETED:
                logger.info(f"pruned resource {rid}")
                result.stats.record(rid.kind, Operation.DELETED)
                await self._publish(EventType.PRUNED, rid)
            elif write.operation == Operation.UNMANAGED:
                logger.info(f"released resource {rid} instead of pruning it")
                result.stats.record(rid.kind, Operation.UNMANAGED)
                await self._publish(EventType.UNMANAGED, rid)
            else:
                logger.info(f"skipped pruning resource {rid}")
        return pruned, kept


def _as_sync_error(error: Exception, resources) -> SyncError:
    if isinstance(error, SyncError):
        return error
    if isinstance(error, ClusterAPIError) and error.conflict:
        return InventoryConflictError(str(error), resources)
    return ApplyError(f"inventory update failed: {error}", resources)
