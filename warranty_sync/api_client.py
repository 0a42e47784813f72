"""Minimal client for the backend's mutation sync endpoint."""
from typing import Optional, Dict, Any
import requests

from warranty_sync import settings
from warranty_sync.errors import RetryableSyncError, TerminalSyncError
from warranty_sync.logging_conf import logger
from warranty_sync.queue.models import QueueItem
from warranty_sync.session import AuthSession

# 401 means the session expired: the mutation itself is fine
RETRYABLE_STATUS = {401, 408, 425, 429}


class SyncApiClient:
    """Pushes queued mutations to ``POST {base_url}/sync`` and pulls from ``GET {base_url}/sync/pull``."""

    def __init__(self, auth: AuthSession, base_url: Optional[str] = None, timeout: Optional[int] = None):
        self.auth = auth
        self.base_url = (base_url or settings.API_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.REQUEST_TIMEOUT
        self.session = requests.Session()
        self.session.headers.update({
            "Accept": "application/json",
            "Content-Type": "application/json",
        })

    def apply(self, item: QueueItem) -> Dict[str, Any]:
        """
        Send one mutation to the backend.

        Args:
            item: The queued mutation

        Returns:
            The decoded response body (``{}`` when the server sent none).
            A confirmed create may carry the canonical ``id``.

        Raises:
            RetryableSyncError: transport failure, timeout, 401/408/425/429 or 5xx
            TerminalSyncError: any other 4xx; retrying the same payload cannot succeed
        """
        body = {
            "entityType": item.entity_type,
            "entityId": item.entity_id,
            "operation": item.operation,
            "data": item.payload,
        }
        return self._request("POST", "/sync", body)

    def pull(self) -> Dict[str, Any]:
        """
        Fetch everything the signed-in user owns on the server.

        Returns:
            The ``data`` mapping of collection name to records
            (``{"receipts": [...], "settings": {...}, ...}``), ``{}`` when
            the server has nothing.

        Raises:
            RetryableSyncError / TerminalSyncError as for ``apply``; a body
            reporting ``success: false`` is retryable.
        """
        body = self._request("GET", "/sync/pull")
        if body.get("success") is False:
            raise RetryableSyncError(f"Pull failed: {body.get('error') or 'unknown error'}")
        counts = (body.get("meta") or {}).get("counts")
        if counts:
            logger.info(f"Pull received from server: {counts}")
        data = body.get("data")
        return data if isinstance(data, dict) else {}

    def close(self):
        self.session.close()

    def _request(self, method: str, endpoint: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Make one API request and classify the outcome. No inline retries."""
        url = f"{self.base_url}{endpoint}"
        headers = {"Authorization": f"Bearer {self.auth.token}"}

        try:
            response = self.session.request(method=method, url=url, json=body, headers=headers, timeout=self.timeout)
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            raise RetryableSyncError(f"Network error: {e}") from e
        except requests.exceptions.RequestException as e:
            raise RetryableSyncError(f"Request failed: {e}") from e

        status = response.status_code
        if status < 400:
            return self._decode(response)

        detail = self._error_detail(response)
        if status >= 500 or status in RETRYABLE_STATUS:
            if status == 429:
                logger.warning(f"Rate limited (Retry-After: {response.headers.get('Retry-After', '?')})")
            raise RetryableSyncError(f"HTTP {status}: {detail}", status_code=status)
        raise TerminalSyncError(f"HTTP {status}: {detail}", status_code=status)

    def _decode(self, response) -> Dict[str, Any]:
        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError:
            logger.debug(f"Non-JSON success body from {response.url}")
            return {}
        return data if isinstance(data, dict) else {}

    def _error_detail(self, response) -> str:
        try:
            data = response.json()
            if isinstance(data, dict) and data.get("error"):
                return str(data["error"])[:200]
        except ValueError:
            pass
        return (response.text or response.reason or "")[:200]
