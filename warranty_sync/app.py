"""Main application - one sync instance sharing the device's local store."""
import asyncio
import signal
import sys
from typing import Optional

from warranty_sync.logging_conf import logger
from warranty_sync import settings
from warranty_sync.api_client import SyncApiClient
from warranty_sync.broadcast import BroadcastMessage, Broadcaster
from warranty_sync.cache import CacheInvalidator, QueryCache
from warranty_sync.connectivity import ConnectivityMonitor
from warranty_sync.db import Database
from warranty_sync.engine import SyncEngine
from warranty_sync.queue.store import QueueStore
from warranty_sync.repository import EntityRepository
from warranty_sync.scheduler import SyncScheduler
from warranty_sync.session import AuthSession


class Application:
    """Wires one instance together: store, write path, engine, scheduler, broadcast."""

    def __init__(
        self,
        db: Optional[Database] = None,
        broadcaster: Optional[Broadcaster] = None,
        auth: Optional[AuthSession] = None,
        connectivity: Optional[ConnectivityMonitor] = None,
        client: Optional[SyncApiClient] = None,
    ):
        self.db = db or Database()
        self.auth = auth or AuthSession(settings.USER_ID, settings.API_TOKEN)
        self.connectivity = connectivity or ConnectivityMonitor()
        self.broadcaster = broadcaster or Broadcaster()
        self.queue = QueueStore(self.db)
        self.repository = EntityRepository(self.db, self.queue, self.broadcaster)
        self.client = client or SyncApiClient(self.auth)
        self.engine = SyncEngine(
            self.queue, self.client, self.auth, self.connectivity,
            broadcaster=self.broadcaster, repository=self.repository,
        )
        self.scheduler = SyncScheduler(self.engine, self.auth, self.connectivity, broadcaster=self.broadcaster)
        self.cache = QueryCache()
        self._subscriptions = []
        self.running = False

    async def start(self):
        """Start the instance."""
        logger.info("=" * 50)
        logger.info("Receipt & Warranty Sync")
        logger.info("=" * 50)
        logger.info(f"Instance: {self.broadcaster.instance_id}")
        logger.info(f"Local store: {self.db.path}")
        logger.info(f"Pending mutations: {self.queue.size()}")
        logger.info("=" * 50)

        # Items a crashed instance claimed but never settled
        self.queue.reset_stuck_in_flight(settings.STALE_IN_FLIGHT_SECONDS)

        await self.broadcaster.start()
        self._subscriptions = [
            self.broadcaster.subscribe(CacheInvalidator(self.cache)),
            self.auth.subscribe(self._on_auth_change),
        ]
        self.running = True
        self.scheduler.start()

    async def stop(self):
        """Stop the instance; a drain in progress finishes first."""
        if not self.running:
            return
        self.running = False
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions = []
        self.scheduler.close()
        await self.scheduler.wait_idle()
        await self.broadcaster.close()
        self.client.close()
        self.db.close()
        logger.info("Stopped")

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()
        return False

    async def force_push_all(self):
        """Queue every local entity that has nothing queued, then drain."""
        enqueued = self.repository.enqueue_all()
        logger.info(f"Enqueued all local data: {enqueued}")
        return await self.scheduler.sync_now()

    def _on_auth_change(self, user_id: Optional[str]):
        self.cache.clear()
        self.broadcaster.publish(BroadcastMessage.auth_changed(user_id))

    async def run(self, stop_event: asyncio.Event):
        """Run until ``stop_event`` is set."""
        async with self:
            await stop_event.wait()


def main():
    """Entry point."""
    try:
        settings.validate_config()
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    async def serve():
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)
        await Application().run(stop_event)

    asyncio.run(serve())


if __name__ == "__main__":
    main()
