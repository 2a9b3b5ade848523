"""
Main entry point for driftsync.

Wires one reconciler scope: cluster client, applier, remediator, reconciler
loop and status API.
"""

import asyncio
import logging
import signal
from typing import List, Optional

from api import StatusServer
from applier import Applier
from backoff import Backoff
from config import get_config
from controller import Controller, ControllerConfig
from declared import DeclaredCache
from events import EventBus
from inventory import InventoryStore
from kube import KubeClient
from ownership import ConflictPolicy, OwnershipRegistry, Scope
from remediator import Remediator, WatchManager
from source import DirectorySource
from status import StatusReporter

logger = logging.getLogger(__name__)


class Application:
    """Main application that orchestrates the reconciler components."""

    def __init__(self):
        self.config = get_config()
        self.client: Optional[KubeClient] = None
        self.controller: Optional[Controller] = None
        self.watch_manager: Optional[WatchManager] = None
        self.server: Optional[StatusServer] = None
        self.event_bus: Optional[EventBus] = None
        self._tasks: List[asyncio.Task] = []
        self.running = False

    async def initialize(self):
        """Initialize all components."""
        reconciler_config = self.config.reconciler
        scope = Scope.from_string(reconciler_config.scope, reconciler_config.sync_name)
        logger.info(f"Initializing reconciler {scope}")

        self.client = KubeClient.from_config(self.config.kube)
        await self.client.connect()

        backoff_config = self.config.backoff
        backoff = Backoff(
            base_delay=backoff_config.base_delay,
            max_delay=backoff_config.max_delay,
            jitter_factor=backoff_config.jitter_factor,
            max_attempts=backoff_config.max_attempts,
        )

        self.event_bus = EventBus()
        registry = OwnershipRegistry(
            ConflictPolicy(root_precedence=reconciler_config.root_precedence)
        )
        cache = DeclaredCache()
        inventory_store = InventoryStore(
            self.client, scope, reconciler_config.inventory_namespace, backoff
        )
        applier = Applier(
            scope,
            self.client,
            registry,
            inventory_store,
            backoff=backoff,
            event_bus=self.event_bus,
            cache=cache,
        )
        self.watch_manager = WatchManager(self.client, backoff)
        remediator = Remediator(
            scope,
            self.client,
            registry,
            cache,
            self.watch_manager,
            applier.writer,
            event_bus=self.event_bus,
            workers=reconciler_config.remediator_workers,
        )
        self.controller = Controller(
            scope,
            DirectorySource(reconciler_config.source_dir, scope),
            applier,
            remediator,
            cache,
            inventory_store,
            status=StatusReporter(scope.manager),
            config=ControllerConfig(resync_interval=reconciler_config.resync_interval),
            event_bus=self.event_bus,
        )

        api_config = self.config.api
        self.server = StatusServer(
            self.controller,
            self.event_bus,
            host=api_config.host,
            port=api_config.port,
            log_level=api_config.log_level,
        )
        logger.info("All components initialized")

    async def start(self):
        """Start the application."""
        if not self.controller:
            await self.initialize()

        self.running = True
        self._tasks = [
            asyncio.create_task(self.controller.start()),
            asyncio.create_task(self.server.start()),
        ]
        try:
            await asyncio.gather(*self._tasks)
        except asyncio.CancelledError:
            logger.info("Application tasks cancelled")

    async def stop(self):
        """Stop the application gracefully."""
        if not self.running:
            return
        logger.info("Stopping driftsync")
        self.running = False

        if self.controller:
            await self.controller.stop()
        if self.watch_manager:
            await self.watch_manager.stop()
        if self.server:
            await self.server.stop()
        if self.client:
            await self.client.close()

        logger.info("driftsync stopped")


async def main():
    """Main entry point."""
    logging.basicConfig(
        level=get_config().api.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    app = Application()

    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(app.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        await app.stop()


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
