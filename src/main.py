"""
Main entry point for the Policy Propagator.

Wires configuration, logging, the object store, the event bus and the
controller together and runs until SIGINT/SIGTERM.
"""

import asyncio
import logging
import signal
from typing import Optional

from config import Config, LoggingConfig, get_config
from controller import Controller
from db import PostgresObjectStore
from events import EventBus
from propagator import PolicyPropagator
from store import MemoryObjectStore, ObjectStore

logger = logging.getLogger(__name__)


def configure_logging(logging_config: LoggingConfig) -> None:
    logging.basicConfig(level=logging_config.level, format=logging_config.format)


class Application:
    """Main application that owns the store, event bus and controller."""

    def __init__(self, config: Optional[Config] = None):
        self.config = config or get_config()
        self.store: Optional[ObjectStore] = None
        self.event_bus: Optional[EventBus] = None
        self.controller: Optional[Controller] = None
        self._audit_task: Optional[asyncio.Task] = None
        self._audit_subscriber: Optional[str] = None

    async def _create_store(self) -> ObjectStore:
        if self.config.store.backend == "memory":
            logger.warning("Using in-memory object store, state is not persisted")
            return MemoryObjectStore()

        db_config = self.config.database
        store = PostgresObjectStore(
            host=db_config.host,
            port=db_config.port,
            database=db_config.database,
            user=db_config.user,
            password=db_config.password,
            min_pool_size=db_config.min_pool_size,
            max_pool_size=db_config.max_pool_size,
        )
        await store.connect()
        await store.initialize_schema()
        logger.info("Database initialized")
        return store

    async def initialize(self):
        """Initialize all components."""
        logger.info("Initializing Policy Propagator")

        self.store = await self._create_store()
        self.event_bus = EventBus()

        propagator = PolicyPropagator(
            store=self.store,
            recorder=self.event_bus,
            logger=logging.getLogger("propagator"),
        )

        self.controller = Controller(
            store=self.store,
            propagator=propagator,
            config=self.config.controller,
        )
        self.store.add_watcher(self.controller.on_change)
        logger.info("All components initialized")

    async def _audit_events(self) -> None:
        """Log every propagation event as an audit record."""
        audit_logger = logging.getLogger("propagator.audit")
        self._audit_subscriber, subscription = await self.event_bus.subscribe()
        async for event in subscription:
            audit_logger.info(event.to_json())

    async def start(self):
        """Start the application."""
        if not self.controller:
            await self.initialize()

        self._audit_task = asyncio.create_task(self._audit_events())
        await self.controller.start()

    async def stop(self):
        """Stop the application gracefully."""
        logger.info("Stopping Policy Propagator")

        if self.controller:
            await self.controller.stop()

        if self._audit_task:
            if self._audit_subscriber:
                # The stop marker lands behind queued events, so the task drains them
                await self.event_bus.unsubscribe(self._audit_subscriber)
                self._audit_subscriber = None
            else:
                self._audit_task.cancel()
            try:
                await self._audit_task
            except asyncio.CancelledError:
                logger.debug("Audit task cancelled")
            self._audit_task = None

        if self.store:
            await self.store.close()
            self.store = None

        logger.info("Policy Propagator stopped")


async def main():
    """Main entry point."""
    config = get_config()
    configure_logging(config.logging)
    app = Application(config)

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
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
