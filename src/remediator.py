"""
Remediator - Continuous drift correction between Apply cycles.

Watches every kind the last Apply cycle applied and, when a watched object
diverges from its declaration (edited, stripped of its stamp, or deleted),
corrects it through the same field-scoped write the Applier uses. Objects
another scope has taken over are reported as conflicts and left alone.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple

from applier import Operation, ResourceWriter
from backoff import Backoff
from declared import DeclaredCache
from errors import ApplyError, ClusterAPIError, ManagementConflictError, SyncError
from events import EventBus, EventType, SyncEvent
from fields import drifted_paths, format_path
from kube import ClusterClient, WatchEvent
from ownership import OwnershipRegistry, Scope
from resources import GroupVersionKind, LiveResource, ResourceID

logger = logging.getLogger(__name__)

EventHandler = Callable[[WatchEvent], Awaitable[None]]

Key = Tuple[str, str, str, str]


class RemediationState(Enum):
    """Per-object remediation state."""

    WATCHING = "watching"
    DRIFT_DETECTED = "drift_detected"
    CORRECTING = "correcting"
    CONFLICT_REPORTED = "conflict_reported"


class Watcher:
    """
    List-then-watch loop for one kind.

    Every listed object is handed to the handler, then changes are streamed
    from the list's resource version. An expired resource version (410 Gone)
    re-lists; objects that vanished while disconnected are reported as
    deleted. Other failures reconnect after a jittered backoff.
    """

    def __init__(
        self,
        client: ClusterClient,
        gvk: GroupVersionKind,
        handler: EventHandler,
        backoff: Optional[Backoff] = None,
        sleep=None,
    ):
        self.client = client
        self.gvk = gvk
        self.handler = handler
        self.backoff = backoff or Backoff()
        self._sleep = sleep or asyncio.sleep
        self._task: Optional[asyncio.Task] = None
        self._known: Dict[Key, Dict[str, Any]] = {}
        self.relists = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if not self.running:
            self._task = asyncio.create_task(self._run())
            logger.info(f"Started watch for {self.gvk}")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info(f"Stopped watch for {self.gvk}")

    async def _relist(self) -> str:
        items, resource_version = await self.client.list(self.gvk)
        self.relists += 1
        current = {}
        for item in items:
            current[ResourceID.from_object(item).key] = item
        vanished = [obj for key, obj in self._known.items() if key not in current]
        self._known = current
        for obj in vanished:
            await self.handler(WatchEvent("DELETED", obj))
        for item in items:
            await self.handler(WatchEvent("ADDED", item))
        return resource_version

    async def _run(self) -> None:
        resource_version = ""
        attempt = 0
        while True:
            try:
                if not resource_version:
                    resource_version = await self._relist()
                stream = self.client.watch(self.gvk, resource_version)
                try:
                    async for event in stream:
                        attempt = 0
                        if event.type == "ERROR":
                            code = event.object.get("code", 500)
                            raise ClusterAPIError(
                                code,
                                event.object.get("reason", ""),
                                event.object.get("message", ""),
                            )
                        metadata = event.object.get("metadata") or {}
                        resource_version = metadata.get("resourceVersion") or resource_version
                        if event.type == "BOOKMARK":
                            continue
                        key = ResourceID.from_object(event.object).key
                        if event.type == "DELETED":
                            self._known.pop(key, None)
                        else:
                            self._known[key] = event.object
                        await self.handler(event)
                finally:
                    await stream.aclose()
                continue
            except asyncio.CancelledError:
                raise
            except ClusterAPIError as e:
                if e.gone:
                    logger.info(f"Watch for {self.gvk} expired, re-listing")
                    resource_version = ""
                    continue
                logger.warning(f"Watch for {self.gvk} failed: {e}")
            except Exception as e:
                logger.error(f"Watch for {self.gvk} failed: {e}", exc_info=True)
            await self._sleep(self.backoff.delay(attempt))
            attempt += 1


class WatchManager:
    """
    One watcher per kind, shared by every scope interested in it.

    Interest is reference counted per scope: a watcher starts when its kind
    gains its first scope and stops when the last one drops it.
    """

    def __init__(self, client: ClusterClient, backoff: Optional[Backoff] = None, sleep=None):
        self.client = client
        self.backoff = backoff or Backoff()
        self._sleep = sleep
        self._watchers: Dict[GroupVersionKind, Watcher] = {}
        self._interest: Dict[GroupVersionKind, Dict[str, EventHandler]] = {}
        self._lock = asyncio.Lock()

    def refcount(self, gvk: GroupVersionKind) -> int:
        return len(self._interest.get(gvk, {}))

    def watched(self) -> List[GroupVersionKind]:
        return sorted(self._watchers, key=str)

    def watcher(self, gvk: GroupVersionKind) -> Optional[Watcher]:
        return self._watchers.get(gvk)

    async def update_watches(
        self, scope_key: str, gvks: Iterable[GroupVersionKind], handler: EventHandler
    ) -> None:
        """Make ``gvks`` exactly the kinds ``scope_key`` is watching."""
        wanted = set(gvks)
        to_stop = []
        async with self._lock:
            for gvk in sorted(wanted, key=str):
                interested = self._interest.setdefault(gvk, {})
                interested[scope_key] = handler
                if gvk not in self._watchers:
                    watcher = Watcher(
                        self.client,
                        gvk,
                        lambda event, gvk=gvk: self._dispatch(gvk, event),
                        self.backoff,
                        self._sleep,
                    )
                    self._watchers[gvk] = watcher
                    watcher.start()
            for gvk in list(self._interest):
                if gvk in wanted:
                    continue
                interested = self._interest[gvk]
                interested.pop(scope_key, None)
                if not interested:
                    del self._interest[gvk]
                    watcher = self._watchers.pop(gvk, None)
                    if watcher is not None:
                        to_stop.append(watcher)
        for watcher in to_stop:
            await watcher.stop()

    async def _dispatch(self, gvk: GroupVersionKind, event: WatchEvent) -> None:
        for handler in list(self._interest.get(gvk, {}).values()):
            await handler(event)

    async def stop(self) -> None:
        async with self._lock:
            watchers = list(self._watchers.values())
            self._watchers.clear()
            self._interest.clear()
        for watcher in watchers:
            await watcher.stop()


@dataclass
class RemediationItem:
    resource_id: ResourceID
    event_type: str
    object: Dict[str, Any]

    @property
    def generation(self) -> int:
        return int((self.object.get("metadata") or {}).get("generation") or 0)


def _newer(current: Optional[RemediationItem], incoming: RemediationItem) -> RemediationItem:
    if current is None or incoming.generation >= current.generation:
        return incoming
    return current


class RemediationQueue:
    """
    Work queue deduplicated by object identity.

    A key is never handed to two workers at once: events for a key being
    processed are held and re-queued when the worker finishes.
    """

    def __init__(self):
        self._keys: asyncio.Queue = asyncio.Queue()
        self._pending: Dict[Key, RemediationItem] = {}
        self._processing: Set[Key] = set()
        self._dirty: Dict[Key, RemediationItem] = {}

    def add(self, item: RemediationItem) -> None:
        key = item.resource_id.key
        if key in self._processing:
            self._dirty[key] = _newer(self._dirty.get(key), item)
            return
        if key in self._pending:
            self._pending[key] = _newer(self._pending[key], item)
            return
        self._pending[key] = item
        self._keys.put_nowait(key)

    async def get(self) -> RemediationItem:
        key = await self._keys.get()
        item = self._pending.pop(key)
        self._processing.add(key)
        return item

    def done(self, resource_id: ResourceID) -> None:
        key = resource_id.key
        self._processing.discard(key)
        item = self._dirty.pop(key, None)
        if item is not None:
            self._pending[key] = item
            self._keys.put_nowait(key)

    def __len__(self) -> int:
        return len(self._pending)


class Remediator:
    """Corrects drift on the objects one scope declares."""

    def __init__(
        self,
        scope: Scope,
        client: ClusterClient,
        registry: OwnershipRegistry,
        cache: DeclaredCache,
        watch_manager: WatchManager,
        writer: ResourceWriter,
        event_bus: Optional[EventBus] = None,
        workers: int = 4,
    ):
        self.scope = scope
        self.client = client
        self.registry = registry
        self.cache = cache
        self.watch_manager = watch_manager
        self.writer = writer
        self._event_bus = event_bus
        self.num_workers = workers
        self.queue = RemediationQueue()
        self.corrections = 0
        self._states: Dict[Key, RemediationState] = {}
        self._errors: Dict[Key, SyncError] = {}
        self._workers: List[asyncio.Task] = []

    def state(self, resource_id: ResourceID) -> RemediationState:
        return self._states.get(resource_id.key, RemediationState.WATCHING)

    def conflicts(self) -> List[ManagementConflictError]:
        return self.registry.conflicts(self.scope)

    def errors(self) -> List[SyncError]:
        return [self._errors[k] for k in sorted(self._errors)]

    async def start(self) -> None:
        if self._workers:
            return
        for n in range(self.num_workers):
            self._workers.append(asyncio.create_task(self._worker(n)))
        logger.info(f"Remediator for {self.scope} started with {self.num_workers} workers")

    async def stop(self) -> None:
        await self.watch_manager.update_watches(self.scope.key, [], self.handle_event)
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()
        logger.info(f"Remediator for {self.scope} stopped")

    async def update_watches(self, gvks: Iterable[GroupVersionKind]) -> None:
        await self.watch_manager.update_watches(self.scope.key, gvks, self.handle_event)

    async def handle_event(self, event: WatchEvent) -> None:
        """Queue an event if it concerns an object this scope declares."""
        try:
            resource_id = ResourceID.from_object(event.object)
        except (KeyError, ValueError):
            logger.debug(f"Ignoring watch event without identity: {event.type}")
            return
        if not self.scope.is_root and resource_id.namespace != self.scope.namespace:
            return
        declared = self.cache.snapshot().get(resource_id)
        if declared is None or not declared.enabled:
            return
        self.queue.add(RemediationItem(declared.id, event.type, event.object))

    async def _worker(self, n: int) -> None:
        while True:
            item = await self.queue.get()
            try:
                await self.remediate(item)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    f"Remediator worker {n} failed on {item.resource_id}: {e}",
                    exc_info=True,
                )
            finally:
                self.queue.done(item.resource_id)

    def _set_state(self, resource_id: ResourceID, state: RemediationState) -> RemediationState:
        self._states[resource_id.key] = state
        return state

    async def _report_conflict(self, error: ManagementConflictError) -> RemediationState:
        resource_id = error.resource_id
        if not self.registry.has_conflict(self.scope, resource_id):
            self.registry.record_conflict(self.scope, error)
            if self._event_bus:
                await self._event_bus.publish(
                    SyncEvent.for_resource(
                        EventType.CONFLICT, self.scope.manager, resource_id, error.message
                    )
                )
        return self._set_state(resource_id, RemediationState.CONFLICT_REPORTED)

    async def remediate(self, item: RemediationItem) -> RemediationState:
        """
        Process one queued event.

        Returns:
            The object's state afterwards
        """
        declared = self.cache.snapshot().get(item.resource_id)
        if declared is None or not declared.enabled:
            self._states.pop(item.resource_id.key, None)
            self._errors.pop(item.resource_id.key, None)
            return RemediationState.WATCHING
        resource_id = declared.id

        live = None if item.event_type == "DELETED" else item.object
        if live is not None:
            owner = LiveResource(live).manager
            self.registry.observe_owner(resource_id, owner)
            claim = self.registry.claim(self.scope, resource_id, live)
            if not claim.granted:
                if isinstance(claim.error, ManagementConflictError):
                    return await self._report_conflict(claim.error)
                logger.warning(f"Not remediating {resource_id}: {claim.error}")
                return self.state(resource_id)
            if self.registry.is_fighting(resource_id):
                logger.warning(
                    f"Not remediating {resource_id}: ownership keeps changing "
                    f"between reconcilers"
                )
                rival = self.registry.rival(resource_id, self.scope) or owner
                return await self._report_conflict(
                    ManagementConflictError(resource_id, rival, self.scope.manager)
                )
            if owner == self.scope.manager and self.registry.clear_conflict(
                self.scope, resource_id
            ):
                self._set_state(resource_id, RemediationState.WATCHING)
            if declared.ignores_mutation and LiveResource(live).ignores_mutation:
                return self._set_state(resource_id, RemediationState.WATCHING)
            if self.writer.desired(declared, live) == live:
                self._errors.pop(resource_id.key, None)
                return self._set_state(resource_id, RemediationState.WATCHING)
            drift = drifted_paths(live, declared.payload)
            logger.info(
                f"Drift detected on {resource_id}: "
                + (", ".join(format_path(p) for p in drift) or "ownership metadata")
            )
        else:
            logger.info(f"Declared object {resource_id} was deleted")

        self._set_state(resource_id, RemediationState.DRIFT_DETECTED)
        self._set_state(resource_id, RemediationState.CORRECTING)
        try:
            write = await self.writer.apply(declared)
        except Exception as e:
            logger.error(f"Failed to remediate {resource_id}: {e}")
            self._errors[resource_id.key] = ApplyError(
                f"failed to remediate {resource_id}: {e}", [resource_id]
            )
            return self._set_state(resource_id, RemediationState.WATCHING)

        if write.operation == Operation.DENIED:
            if isinstance(write.error, ManagementConflictError):
                return await self._report_conflict(write.error)
            return self._set_state(resource_id, RemediationState.WATCHING)

        self._errors.pop(resource_id.key, None)
        if write.operation in (Operation.CREATED, Operation.UPDATED):
            self.corrections += 1
            logger.info(f"Remediated {resource_id} [op: {write.operation.value}]")
            if self._event_bus:
                await self._event_bus.publish(
                    SyncEvent.for_resource(
                        EventType.DRIFT_CORRECTED,
                        self.scope.manager,
                        resource_id,
                        write.operation.value,
                    )
                )
        return self._set_state(resource_id, RemediationState.WATCHING)
