"""Sync engine - pulls server data and drains the mutation queue against the remote service."""
import asyncio
from dataclasses import dataclass, replace
from typing import Callable, Dict, Optional

from warranty_sync import settings
from warranty_sync.api_client import SyncApiClient
from warranty_sync.broadcast import BroadcastMessage, Broadcaster
from warranty_sync.connectivity import ConnectivityMonitor
from warranty_sync.errors import TerminalSyncError
from warranty_sync.events import Listeners, Subscription
from warranty_sync.logging_conf import logger
from warranty_sync.queue.models import QueueItem, SyncResult, utcnow_iso, PENDING
from warranty_sync.queue.store import QueueStore
from warranty_sync.repository import EntityRepository
from warranty_sync.session import AuthSession

MergeResult = Dict[str, Dict[str, int]]


@dataclass(frozen=True)
class SyncStatus:
    """What a status indicator shows about both directions of sync."""

    is_pulling: bool = False
    last_pull_at: Optional[str] = None
    pull_error: Optional[str] = None
    is_pushing: bool = False
    last_push_at: Optional[str] = None
    push_error: Optional[str] = None


class SyncEngine:
    """Pulls the server copy and applies pending queue items in insertion order, one remote call at a time."""

    def __init__(
        self,
        queue: QueueStore,
        client: SyncApiClient,
        auth: AuthSession,
        connectivity: ConnectivityMonitor,
        broadcaster: Optional[Broadcaster] = None,
        repository: Optional[EntityRepository] = None,
    ):
        self.queue = queue
        self.client = client
        self.auth = auth
        self.connectivity = connectivity
        self.broadcaster = broadcaster
        self.repository = repository
        self.status = SyncStatus()
        self._status_listeners = Listeners("sync status")

    def subscribe_status(self, handler: Callable[[SyncStatus], None]) -> Subscription:
        return self._status_listeners.add(handler)

    def _update_status(self, **changes) -> None:
        self.status = replace(self.status, **changes)
        self._status_listeners.emit(self.status)

    async def pull(self) -> Optional[MergeResult]:
        """
        Fetch the server copy and merge it into the local store.

        Returns:
            Per-collection merge counts, or None when signed out, offline or
            a pull is already running.

        Raises:
            SyncError from the client and storage errors from the merge.
        """
        if self.repository is None:
            raise RuntimeError("Pulling needs an EntityRepository to merge into")
        if not self.auth.is_authenticated:
            logger.debug("Skipping pull - not authenticated")
            return None
        if not self.connectivity.online:
            logger.debug("Skipping pull - offline")
            return None
        if self.status.is_pulling:
            logger.warning("Pull already in progress")
            return None

        logger.info("Starting pull")
        self._update_status(is_pulling=True, pull_error=None)
        try:
            data = await asyncio.to_thread(self.client.pull)
            merged = self.repository.merge_server_data(data) if data else {}
        except Exception as e:
            self._update_status(is_pulling=False, pull_error=str(e))
            raise

        self._update_status(is_pulling=False, last_pull_at=utcnow_iso())
        logger.info(f"Pull merged: {merged}")
        return merged

    async def full_sync(self) -> SyncResult:
        """Pull, then push. A failed pull raises before anything is pushed."""
        await self.pull()
        return await self.drain_queue()

    async def drain_queue(self) -> SyncResult:
        """
        Try every pending item once.

        Returns:
            SyncResult with succeeded/failed/removed counts. All zero, with no
            item touched, when signed out or offline.

        Raises:
            Storage errors. Per-item remote failures are recorded on the item
            and never abort the drain.
        """
        result = SyncResult()
        if not self.auth.is_authenticated:
            logger.debug("Skipping drain - not authenticated")
            return result
        if not self.connectivity.online:
            logger.debug("Skipping drain - offline")
            return result

        # Claims whose owner died, or could not settle them, go back in line
        self.queue.reset_stuck_in_flight(settings.STALE_IN_FLIGHT_SECONDS)
        items = self.queue.get_pending()
        if not items:
            return result

        logger.info(f"Draining {len(items)} queued mutations")
        self._update_status(is_pushing=True, push_error=None)
        try:
            await self._drain(items, result)
        except Exception as e:
            self._update_status(is_pushing=False, push_error=str(e))
            raise

        push_error = f"{result.failed} mutations failed" if result.failed else None
        self._update_status(is_pushing=False, last_push_at=utcnow_iso(), push_error=push_error)
        logger.info(f"Drain finished: {result.to_dict()}")
        return result

    async def _drain(self, items, result: SyncResult) -> None:
        # Entities with an unsettled earlier item; their later items wait for the next drain
        blocked = set()
        rekeyed = False

        for item in items:
            if not self.connectivity.online:
                logger.info("Connectivity lost mid-drain; leaving remaining items pending")
                break

            if rekeyed:
                # Ids or references may have been re-keyed since the batch was read
                item = self.queue.get(item.id)
                if item is None or item.status != PENDING:
                    continue
            if item.entity_key in blocked:
                logger.debug(f"Holding #{item.id}: earlier {item.entity_type}:{item.entity_id} mutation unsettled")
                continue
            if not self.queue.mark_in_flight(item):
                # Another instance holds the entity, or an earlier item of it is unsettled
                blocked.add(item.entity_key)
                continue

            try:
                applied = await self._apply(item, result)
            except Exception:
                # A storage error while settling must not leave the claim behind
                self._release(item)
                raise
            if applied is None:
                blocked.add(item.entity_key)
            elif self._confirm(item, applied) is not None:
                rekeyed = True

    async def _apply(self, item: QueueItem, result: SyncResult) -> Optional[Dict]:
        """Send one claimed item and settle it. Returns the response, or None if it failed."""
        try:
            response = await asyncio.to_thread(self.client.apply, item)
        except TerminalSyncError as e:
            self.queue.mark_failed(item, str(e))
            result.failed += 1
            return None
        except Exception as e:
            self.queue.mark_retry(item, str(e))
            result.failed += 1
            return None

        self.queue.mark_done(item)
        result.succeeded += 1
        result.removed += 1
        return response

    def _release(self, item: QueueItem) -> None:
        try:
            if self.queue.release(item):
                logger.warning(f"Released #{item.id} {item.entity_type}:{item.entity_id} back to pending")
        except Exception as e:
            logger.error(f"Could not release #{item.id}; it stays claimed until the stale window passes: {e}")

    def _confirm(self, item: QueueItem, response: Dict) -> Optional[str]:
        """Follow-up for an applied item. Returns the canonical id if the server assigned a new one."""
        canonical = response.get("id") if item.operation == "create" else None
        if canonical is None or str(canonical) == item.entity_id:
            self._announce(BroadcastMessage.entity_changed(item.entity_type, item.operation, item.entity_id))
            return None

        new_id = str(canonical)
        moved = self.queue.remap_entity_id(item.entity_type, item.entity_id, new_id)
        if self.repository is not None:
            self.repository.remap_entity_id(item.entity_type, item.entity_id, new_id)
        logger.info(f"{item.entity_type}:{item.entity_id} is now {new_id} ({moved} queued items re-keyed)")
        self._announce(BroadcastMessage.entity_changed(item.entity_type, "delete", item.entity_id))
        self._announce(BroadcastMessage.entity_changed(item.entity_type, "create", new_id))
        return new_id

    def _announce(self, message: BroadcastMessage) -> None:
        if self.broadcaster is not None:
            self.broadcaster.publish(message)
