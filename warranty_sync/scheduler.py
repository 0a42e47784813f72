"""Decides when the sync engine runs.

Drains start on application start, reconnect, visibility regain, an
explicit ``sync_now`` and the backoff timer. Sign-in and ``full_sync`` pull
the server copy first. Only one sync runs at a time; overlapping triggers
are dropped, not queued.
"""
import asyncio
from dataclasses import dataclass
from typing import Callable, List, Optional

from warranty_sync import retry_policy
from warranty_sync.broadcast import BroadcastMessage, Broadcaster
from warranty_sync.connectivity import ConnectivityMonitor
from warranty_sync.engine import SyncEngine
from warranty_sync.events import Subscription
from warranty_sync.logging_conf import logger
from warranty_sync.queue.models import SyncResult
from warranty_sync.session import AuthSession

IDLE = "idle"
SYNCING = "syncing"
RETRY_ARMED = "retry_armed"


@dataclass
class RetryState:
    """Backoff bookkeeping. Lives in memory only; a restart starts from zero."""

    attempt_count: int = 0
    timer_handle: Optional[asyncio.TimerHandle] = None
    delay: Optional[float] = None

    @property
    def armed(self) -> bool:
        return self.timer_handle is not None

    def cancel_timer(self) -> None:
        if self.timer_handle is not None:
            self.timer_handle.cancel()
            self.timer_handle = None
            self.delay = None

    def reset(self) -> None:
        self.cancel_timer()
        self.attempt_count = 0


class SyncScheduler:
    """Single-flight trigger logic around ``SyncEngine.drain_queue``."""

    def __init__(
        self,
        engine: SyncEngine,
        auth: AuthSession,
        connectivity: ConnectivityMonitor,
        broadcaster: Optional[Broadcaster] = None,
        next_delay: Callable[[int], float] = retry_policy.next_delay,
        max_attempts: int = retry_policy.MAX_ATTEMPTS,
    ):
        self.engine = engine
        self.auth = auth
        self.connectivity = connectivity
        self.broadcaster = broadcaster
        self.next_delay = next_delay
        self.max_attempts = max_attempts

        self.retry = RetryState()
        self.last_result: Optional[SyncResult] = None
        self._syncing = False
        self._task: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._subscriptions: List[Subscription] = []
        self._started = False
        self._closed = False

    @property
    def state(self) -> str:
        if self._syncing:
            return SYNCING
        if self.retry.armed:
            return RETRY_ARMED
        return IDLE

    @property
    def is_syncing(self) -> bool:
        return self._syncing

    def start(self) -> None:
        """Subscribe to environment signals and run the start-up sync. Needs a running loop."""
        if self._started:
            logger.warning("Scheduler is already running")
            return
        self._loop = asyncio.get_running_loop()
        self._started = True
        self._subscriptions = [
            self.connectivity.subscribe_online(self._on_online_change),
            self.connectivity.subscribe_visibility(self._on_visibility_change),
            self.auth.subscribe(self._on_auth_change),
        ]
        logger.info("Sync scheduler started")
        self.trigger("startup")

    def close(self) -> None:
        """Drop listeners and the retry timer. A drain already running is left to finish."""
        if self._closed:
            return
        self._closed = True
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions = []
        self.retry.cancel_timer()
        logger.info("Sync scheduler stopped")

    async def wait_idle(self) -> None:
        """Wait for the running drain, if any."""
        task = self._task
        if task is not None and not task.done():
            await asyncio.shield(task)

    async def __aenter__(self):
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.close()
        await self.wait_idle()
        return False

    def trigger(self, reason: str, full: bool = False) -> Optional[asyncio.Task]:
        """Start a drain unless one is running or the context forbids it.

        ``full`` pulls the server copy before draining.
        Returns the drain task, or None when the trigger collapsed into a no-op.
        """
        if self._closed or not self._started:
            return None
        if not self.auth.is_authenticated:
            logger.debug(f"Skipping sync ({reason}) - not authenticated")
            return None
        if not self.connectivity.online:
            logger.debug(f"Skipping sync ({reason}) - offline")
            return None
        if self._syncing:
            logger.debug(f"Sync already in progress, ignoring {reason}")
            return None

        # Claimed before the task exists, so triggers in the same tick collapse
        self._syncing = True
        self.retry.cancel_timer()
        self._task = self._loop.create_task(self._run(reason, full))
        return self._task

    async def sync_now(self) -> Optional[SyncResult]:
        """Manual trigger; supersedes an armed retry timer. None if nothing ran."""
        task = self.trigger("manual")
        if task is None:
            return None
        return await task

    async def full_sync(self) -> Optional[SyncResult]:
        """Pull, then push. None if nothing ran or the sync raised."""
        task = self.trigger("full", full=True)
        if task is None:
            return None
        return await task

    async def _run(self, reason: str, full: bool = False) -> Optional[SyncResult]:
        logger.info(f"Sync triggered ({reason})")
        result: Optional[SyncResult] = None
        pulled = False
        try:
            if full:
                await self.engine.pull()
                pulled = True
            result = await self.engine.drain_queue()
        except Exception as e:
            logger.error(f"Sync failed: {e}", exc_info=True)
        finally:
            self._syncing = False

        self.last_result = result
        if self.broadcaster is not None and (pulled or (result is not None and result.removed)):
            self.broadcaster.publish(BroadcastMessage.sync_completed())

        if result is not None and not result.failed:
            if self.retry.attempt_count:
                logger.info("Sync recovered; backoff reset")
            self.retry.reset()
        elif not self.auth.is_authenticated:
            # Signed out mid-drain; the next user starts with a clean budget
            self.retry.reset()
        else:
            self._schedule_retry()
        return result

    def _schedule_retry(self) -> None:
        self.retry.cancel_timer()
        if self._closed:
            return
        if self.retry.attempt_count >= self.max_attempts:
            logger.warning(
                f"Sync still failing after {self.retry.attempt_count} retries; "
                "waiting for reconnect, visibility change or restart"
            )
            return

        delay = self.next_delay(self.retry.attempt_count)
        self.retry.attempt_count += 1
        self.retry.delay = delay
        self.retry.timer_handle = self._loop.call_later(delay, self._on_retry_timer)
        logger.info(f"Retry {self.retry.attempt_count}/{self.max_attempts} in {delay:.0f}s")

    def _on_retry_timer(self) -> None:
        self.retry.timer_handle = None
        self.retry.delay = None
        self.trigger("retry")

    def _on_online_change(self, online: bool) -> None:
        if online:
            self.trigger("reconnect")

    def _on_visibility_change(self, visible: bool) -> None:
        if visible and self.connectivity.online:
            self.trigger("visible")

    def _on_auth_change(self, user_id: Optional[str]) -> None:
        if user_id:
            self.trigger("sign-in", full=True)
        else:
            # The next user's failures start their own budget
            self.retry.reset()
