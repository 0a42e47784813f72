"""Cross-instance invalidation messages.

Instances that share the local store tell each other *that* something
changed, never *what* it changed to: receivers drop the matching cache scope
and re-read the store. Delivery is best-effort, unordered and never replayed.
"""
import asyncio
import json
import os
import re
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set

from warranty_sync import settings
from warranty_sync.events import Listeners, Subscription
from warranty_sync.logging_conf import logger
from warranty_sync.queue.models import ENTITY_TYPES

SYNC_COMPLETED = "sync-completed"
AUTH_CHANGED = "auth-changed"
SETTINGS_CHANGED = "settings-changed"
GLOBAL_TYPES = frozenset({SYNC_COMPLETED, AUTH_CHANGED})

ENTITY_ACTIONS = ("created", "updated", "deleted")
OPERATION_ACTIONS = {"create": "created", "update": "updated", "delete": "deleted"}

Wire = Dict[str, Any]


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class BroadcastMessage:
    """An invalidation hint. Carries identifiers only, never entity data."""

    type: str
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    user_id: Optional[str] = None
    timestamp: Optional[int] = None
    origin: Optional[str] = None  # publishing instance

    @classmethod
    def entity_changed(cls, entity_type: str, operation: str, entity_id: str) -> "BroadcastMessage":
        """``<entity>-created|updated|deleted`` for a create/update/delete of one entity."""
        if entity_type == "settings":
            return cls.settings_changed()
        if entity_type not in ENTITY_TYPES:
            raise ValueError(f"Unknown entity type: {entity_type}")
        action = OPERATION_ACTIONS[operation]
        return cls(type=f"{entity_type}-{action}", entity_type=entity_type, entity_id=str(entity_id))

    @classmethod
    def sync_completed(cls) -> "BroadcastMessage":
        return cls(type=SYNC_COMPLETED, timestamp=now_ms())

    @classmethod
    def auth_changed(cls, user_id: Optional[str]) -> "BroadcastMessage":
        return cls(type=AUTH_CHANGED, user_id=user_id)

    @classmethod
    def settings_changed(cls) -> "BroadcastMessage":
        return cls(type=SETTINGS_CHANGED)

    @property
    def action(self) -> Optional[str]:
        if self.entity_type is None:
            return None
        return self.type[len(self.entity_type) + 1:]

    @property
    def is_global(self) -> bool:
        return self.type in GLOBAL_TYPES

    def to_wire(self) -> Wire:
        wire: Wire = {"type": self.type}
        if self.entity_type is not None:
            wire[f"{self.entity_type}Id"] = self.entity_id
        if self.type == AUTH_CHANGED:
            wire["userId"] = self.user_id
        if self.timestamp is not None:
            wire["timestamp"] = self.timestamp
        if self.origin is not None:
            wire["origin"] = self.origin
        return wire

    @classmethod
    def from_wire(cls, wire: Wire) -> Optional["BroadcastMessage"]:
        """Decode a wire dict; unknown or malformed messages give None."""
        msg_type = wire.get("type") if isinstance(wire, dict) else None
        if not isinstance(msg_type, str):
            return None

        common = {"timestamp": wire.get("timestamp"), "origin": wire.get("origin")}
        if msg_type in (SYNC_COMPLETED, SETTINGS_CHANGED):
            return cls(type=msg_type, **common)
        if msg_type == AUTH_CHANGED:
            return cls(type=msg_type, user_id=wire.get("userId"), **common)

        entity_type, _, action = msg_type.rpartition("-")
        entity_id = wire.get(f"{entity_type}Id")
        if entity_type not in ENTITY_TYPES or action not in ENTITY_ACTIONS or entity_id is None:
            return None
        return cls(type=msg_type, entity_type=entity_type, entity_id=str(entity_id), **common)


class LocalBus:
    """Embedded message bus for instances living in one process.

    Every attached broadcaster receives every message sent on the bus,
    its own included; the broadcaster drops its own by origin.
    """

    def __init__(self):
        self._receivers: List[Callable[[Wire], None]] = []

    async def start(self, deliver: Callable[[Wire], None]) -> None:
        self._receivers.append(deliver)

    async def stop(self, deliver: Callable[[Wire], None]) -> None:
        if deliver in self._receivers:
            self._receivers.remove(deliver)

    def send(self, wire: Wire) -> None:
        for deliver in list(self._receivers):
            deliver(dict(wire))


class SpoolTransport:
    """Broadcast over a spool directory shared by every process on the device.

    ``send`` drops one small ``.msg`` file per message; a background task in
    each process picks up every file it has not seen yet and removes
    files older than the TTL. A process only sees messages sent after it
    started.
    """

    def __init__(self, directory: Optional[str] = None, poll_interval: Optional[float] = None,
                 ttl: Optional[int] = None):
        self.directory = Path(directory or settings.BROADCAST_SPOOL_DIR)
        self.poll_interval = poll_interval if poll_interval is not None else settings.BROADCAST_POLL_INTERVAL
        self.ttl = ttl if ttl is not None else settings.BROADCAST_MESSAGE_TTL
        self.directory.mkdir(parents=True, exist_ok=True)

        self._deliver: Optional[Callable[[Wire], None]] = None
        self._seen: Set[str] = set()
        self._task: Optional[asyncio.Task] = None

    async def start(self, deliver: Callable[[Wire], None]) -> None:
        if self._task is not None:
            return
        self._deliver = deliver
        self._seen = {path.name for path in self._list_messages()}
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info(f"Broadcast spool reader started on {self.directory} (interval: {self.poll_interval}s)")

    async def stop(self, deliver: Callable[[Wire], None]) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        self._deliver = None
        logger.info("Broadcast spool reader stopped")

    def send(self, wire: Wire) -> None:
        origin = self._safe_id(str(wire.get("origin") or "anon"))
        name = f"{time.time_ns():020d}-{origin}-{uuid.uuid4().hex[:8]}"
        tmp_path = self.directory / f"{name}.tmp"
        with open(tmp_path, "w") as f:
            json.dump(wire, f)
        # Readers only list .msg files, so they never see a half-written message
        os.replace(tmp_path, self.directory / f"{name}.msg")

    async def _run(self):
        while True:
            try:
                self.poll_once()
            except Exception as e:
                logger.error(f"Broadcast spool scan failed: {e}", exc_info=True)
            await asyncio.sleep(self.poll_interval)

    def poll_once(self) -> int:
        """Deliver every message not seen yet. Returns count delivered.

        Names are remembered for as long as their file exists, so a message
        whose rename lands late (after a later-stamped one) is still picked up.
        """
        delivered = 0
        present = set()
        for path in self._list_messages():
            present.add(path.name)
            if path.name in self._seen:
                self._prune(path)
                continue
            self._seen.add(path.name)
            try:
                with open(path, "r") as f:
                    wire = json.load(f)
            except FileNotFoundError:
                continue  # pruned by another instance
            except ValueError as e:
                logger.warning(f"Skipping unreadable broadcast file {path.name}: {e}")
                continue
            if self._deliver is not None:
                self._deliver(wire)
                delivered += 1
        # Files gone from the spool can never reappear under the same name
        self._seen &= present
        return delivered

    def _list_messages(self) -> List[Path]:
        try:
            return sorted(p for p in self.directory.iterdir() if p.suffix == ".msg")
        except FileNotFoundError:
            return []

    def _prune(self, path: Path) -> None:
        try:
            if time.time() - path.stat().st_mtime >= self.ttl:
                path.unlink(missing_ok=True)
        except FileNotFoundError:
            pass

    def _safe_id(self, value: str) -> str:
        return re.sub(r"[^A-Za-z0-9_]", "_", value)[:32]


class Broadcaster:
    """Publish/subscribe endpoint of one instance."""

    def __init__(self, transport=None, instance_id: Optional[str] = None):
        self.transport = transport if transport is not None else SpoolTransport()
        self.instance_id = instance_id or settings.INSTANCE_ID
        self._listeners = Listeners("broadcast")
        self._started = False

    async def start(self) -> None:
        if self._started:
            return
        await self.transport.start(self._on_wire)
        self._started = True

    async def close(self) -> None:
        if not self._started:
            return
        self._started = False
        await self.transport.stop(self._on_wire)

    def subscribe(self, handler: Callable[[BroadcastMessage], None]) -> Subscription:
        """Register ``handler`` for messages from *other* instances."""
        return self._listeners.add(handler)

    def publish(self, message: BroadcastMessage) -> None:
        """Fire-and-forget; a transport failure is logged, never raised."""
        message.origin = self.instance_id
        try:
            self.transport.send(message.to_wire())
            logger.debug(f"Broadcast {message.type}")
        except Exception as e:
            logger.warning(f"Failed to broadcast {message.type}: {e}")

    def _on_wire(self, wire: Wire) -> None:
        message = BroadcastMessage.from_wire(wire)
        if message is None:
            logger.debug(f"Ignoring unknown broadcast: {wire.get('type') if isinstance(wire, dict) else wire!r}")
            return
        if message.origin == self.instance_id:
            return
        self._listeners.emit(message)
