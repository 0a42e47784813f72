"""Authentication context consulted before every drain."""
from typing import Callable, Optional

from warranty_sync.events import Listeners, Subscription
from warranty_sync.logging_conf import logger


class AuthSession:
    """The signed-in user and bearer token for this instance."""

    def __init__(self, user_id: Optional[str] = None, token: Optional[str] = None):
        self.user_id = user_id if token else None
        self.token = token if user_id else None
        self._listeners = Listeners("auth")

    @property
    def is_authenticated(self) -> bool:
        return bool(self.user_id and self.token)

    def subscribe(self, handler: Callable[[Optional[str]], None]) -> Subscription:
        """``handler(user_id)`` runs after every sign-in (user id) or sign-out (None)."""
        return self._listeners.add(handler)

    def sign_in(self, user_id: str, token: str) -> None:
        if not user_id or not token:
            raise ValueError("user_id and token are required")
        self.user_id = user_id
        self.token = token
        logger.info(f"Signed in as {user_id}")
        self._listeners.emit(user_id)

    def sign_out(self) -> None:
        if not self.is_authenticated:
            return
        logger.info(f"Signed out {self.user_id}")
        self.user_id = None
        self.token = None
        self._listeners.emit(None)
