"""Connectivity and visibility signals reported by the host environment."""
from typing import Callable

from warranty_sync.events import Listeners, Subscription


class ConnectivityMonitor:
    """Current online/visible state plus transition events.

    The host (a UI shell, a network watcher, the OS) calls ``set_online`` and
    ``set_visible``; subscribers hear about real transitions only.
    """

    def __init__(self, online: bool = True, visible: bool = True):
        self._online = online
        self._visible = visible
        self._online_listeners = Listeners("connectivity")
        self._visibility_listeners = Listeners("visibility")

    @property
    def online(self) -> bool:
        return self._online

    @property
    def visible(self) -> bool:
        return self._visible

    def subscribe_online(self, handler: Callable[[bool], None]) -> Subscription:
        return self._online_listeners.add(handler)

    def subscribe_visibility(self, handler: Callable[[bool], None]) -> Subscription:
        return self._visibility_listeners.add(handler)

    def set_online(self, online: bool) -> None:
        if online == self._online:
            return
        self._online = online
        self._online_listeners.emit(online)

    def set_visible(self, visible: bool) -> None:
        if visible == self._visible:
            return
        self._visible = visible
        self._visibility_listeners.emit(visible)
