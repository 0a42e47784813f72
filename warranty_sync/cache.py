"""Per-instance cache of entity views and its broadcast-driven invalidation."""
from typing import Any, Callable, Dict, Hashable, Optional, Tuple

from warranty_sync.broadcast import AUTH_CHANGED, SETTINGS_CHANGED, SYNC_COMPLETED, BroadcastMessage
from warranty_sync.logging_conf import logger
from warranty_sync.queue.models import ENTITY_COLLECTIONS

Key = Tuple[Hashable, ...]

_MISSING = object()


def list_key(entity_type: str) -> Key:
    """Key of an entity kind's aggregate list, e.g. ``("devices",)``."""
    return (ENTITY_COLLECTIONS[entity_type],)


def detail_key(entity_type: str, entity_id: str) -> Key:
    """Key of one entity's view, e.g. ``("device", "D-7")``."""
    return (entity_type, str(entity_id))


class QueryCache:
    """Views keyed by tuples; invalidation drops every key under a prefix."""

    def __init__(self):
        self._entries: Dict[Key, Any] = {}

    def get(self, key: Key, default: Any = None) -> Any:
        return self._entries.get(key, default)

    def set(self, key: Key, value: Any) -> None:
        self._entries[key] = value

    def __contains__(self, key: Key) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get_or_load(self, key: Key, loader: Callable[[], Any]) -> Any:
        """Cached value, or the loader's result (cached) on a miss."""
        value = self._entries.get(key, _MISSING)
        if value is _MISSING:
            value = loader()
            self._entries[key] = value
        return value

    def invalidate(self, prefix: Optional[Key] = None) -> int:
        """Drop keys starting with ``prefix`` (everything when None). Returns count dropped."""
        if prefix is None:
            count = len(self._entries)
            self._entries.clear()
            return count
        doomed = [key for key in self._entries if key[:len(prefix)] == prefix]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    def clear(self) -> None:
        self._entries.clear()


class CacheInvalidator:
    """Broadcast handler: maps each message to the cache scope it touches."""

    def __init__(self, cache: QueryCache):
        self.cache = cache

    def __call__(self, message: BroadcastMessage) -> None:
        if message.type == SYNC_COMPLETED:
            dropped = self.cache.invalidate()
        elif message.type == AUTH_CHANGED:
            # Another user's data must not survive in memory
            dropped = len(self.cache)
            self.cache.clear()
        elif message.type == SETTINGS_CHANGED:
            dropped = self.cache.invalidate(("settings",))
        elif message.entity_type is not None:
            dropped = self.cache.invalidate(list_key(message.entity_type))
            dropped += self.cache.invalidate(detail_key(message.entity_type, message.entity_id))
        else:
            return
        logger.debug(f"{message.type}: invalidated {dropped} cached views")
