"""
Reconciler Loop - Periodic and triggered Apply cycles for one scope.

Each cycle reads the declared set, applies it, installs it as the
Remediator's last-declared snapshot and publishes status. Cycles for a
scope never overlap; the Remediator runs alongside them.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from applier import ApplyResult, Applier
from declared import DeclaredCache
from errors import SourceError
from events import EventBus, EventType, SyncEvent
from inventory import Inventory, InventoryStore
from ownership import Scope
from remediator import Remediator
from resources import DeclaredSet
from source import DeclaredSetSource
from status import StatusReporter, SyncStatus

logger = logging.getLogger(__name__)


@dataclass
class ControllerConfig:
    """Configuration for the reconciler loop."""

    resync_interval: float = 60  # seconds
    error_pause: float = 10  # seconds after an unexpected cycle failure


class Controller:
    """
    Runs Apply cycles for one scope.

    A cycle runs every ``resync_interval`` seconds, or earlier when
    ``trigger()`` is called. A trigger that arrives while a cycle is running
    is served by the next cycle.
    """

    def __init__(
        self,
        scope: Scope,
        source: DeclaredSetSource,
        applier: Applier,
        remediator: Remediator,
        cache: DeclaredCache,
        inventory_store: InventoryStore,
        status: Optional[StatusReporter] = None,
        config: Optional[ControllerConfig] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self.scope = scope
        self.source = source
        self.applier = applier
        self.remediator = remediator
        self.cache = cache
        self.inventory_store = inventory_store
        self.status_reporter = status or StatusReporter(scope.manager)
        self.config = config or ControllerConfig()
        self.running = False
        self.cycles = 0
        self._event_bus = event_bus
        self._wake = asyncio.Event()

    async def _publish(self, event: SyncEvent) -> None:
        if self._event_bus:
            await self._event_bus.publish(event)

    async def run_cycle(self) -> Optional[ApplyResult]:
        """
        Run one Apply cycle.

        Returns:
            The ApplyResult, or None when the declared set could not be read
            (the previous snapshot then stays in place)
        """
        self.status_reporter.begin_sync()
        try:
            declared_set = await self.source.read()
        except SourceError as e:
            logger.error(f"Failed to read declared set: {e.message}")
            self.status_reporter.record_source_error(e)
            await self._publish(
                SyncEvent(EventType.SYNC_FAILED, self.scope.manager, message=e.message)
            )
            return None

        logger.info(f"Starting sync of revision {declared_set.revision}")
        result = await self.applier.apply(declared_set)

        excluded = {rid.key for rid in (result.order.excluded if result.order else ())}
        self.cache.swap(
            DeclaredSet(
                declared_set.revision,
                [
                    r
                    for r in declared_set.without_local_config().enabled()
                    if r.id.key not in excluded
                ],
            )
        )
        await self.remediator.update_watches(result.applied_gvks)

        self.status_reporter.record_cycle(
            revision=declared_set.revision,
            errors=result.errors,
            operations=result.stats.operations,
            duration_seconds=result.duration_seconds,
            watched_kinds=result.applied_gvks,
            inventory_size=len(result.inventory_ids),
        )
        self._refresh_remediation()
        self.cycles += 1

        event_type = EventType.SYNCED if result.success else EventType.SYNC_FAILED
        await self._publish(
            SyncEvent.for_cycle(
                event_type,
                self.scope.manager,
                declared_set.revision,
                {"errors": len(result.errors), "summary": str(result.stats)},
            )
        )
        logger.info(
            f"Finished sync of revision {declared_set.revision} in "
            f"{result.duration_seconds:.2f}s: {result.stats}"
        )
        return result

    def _refresh_remediation(self) -> None:
        self.status_reporter.record_remediation(
            self.remediator.conflicts(),
            self.remediator.errors(),
            self.remediator.corrections,
        )

    def status(self) -> SyncStatus:
        self._refresh_remediation()
        return self.status_reporter.status

    async def inventory(self) -> Inventory:
        return await self.inventory_store.load()

    def trigger(self) -> None:
        """Request a cycle as soon as the current one (if any) finishes."""
        self._wake.set()

    async def start(self) -> None:
        """Run cycles until stop() is called."""
        logger.info(f"Starting reconciler for {self.scope}")
        self.running = True
        await self.remediator.start()

        while self.running:
            self._wake.clear()
            try:
                await self.run_cycle()
            except Exception as e:
                logger.error(f"Error in reconciliation cycle: {e}", exc_info=True)
                await asyncio.sleep(self.config.error_pause)
            if not self.running:
                break
            try:
                await asyncio.wait_for(
                    self._wake.wait(), timeout=self.config.resync_interval
                )
            except asyncio.TimeoutError:
                logger.debug("Resync interval elapsed")

    async def stop(self) -> None:
        logger.info(f"Stopping reconciler for {self.scope}")
        self.running = False
        self._wake.set()
        await self.remediator.stop()
