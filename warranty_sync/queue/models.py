"""Queue data models."""
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Any, Optional

# Closed set of synced entity kinds -> name of their aggregate list
ENTITY_COLLECTIONS = {
    "receipt": "receipts",
    "device": "devices",  # a device carries its warranty
    "reminder": "reminders",
    "householdBill": "householdBills",
    "document": "documents",
    "settings": "settings",
}
ENTITY_TYPES = frozenset(ENTITY_COLLECTIONS)

OPERATIONS = frozenset({"create", "update", "delete"})

# Item status values
PENDING = "pending"
IN_FLIGHT = "in_flight"
FAILED = "failed"
DONE = "done"


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class QueueItem:
    """A local mutation waiting to be applied against the remote service."""

    entity_type: str  # one of ENTITY_TYPES
    entity_id: str  # server id, or a client-generated temporary id
    operation: str  # "create", "update" or "delete"
    payload: Dict[str, Any] = field(default_factory=dict)
    id: Optional[int] = None  # assigned by the store; defines processing order
    attempts: int = 0
    status: str = PENDING
    last_error: Optional[str] = None
    created_at: str = field(default_factory=utcnow_iso)

    @classmethod
    def create(cls, entity_type: str, entity_id: str, operation: str, payload: Optional[Dict[str, Any]] = None):
        """Factory method that validates the mutation before it is enqueued."""
        if entity_type not in ENTITY_TYPES:
            raise ValueError(f"Unknown entity type: {entity_type}")
        if operation not in OPERATIONS:
            raise ValueError(f"Unknown operation: {operation}")
        if not entity_id:
            raise ValueError("entity_id is required")
        return cls(
            entity_type=entity_type,
            entity_id=str(entity_id),
            operation=operation,
            payload=dict(payload or {}),
        )

    @classmethod
    def from_row(cls, row) -> "QueueItem":
        """Build an item from a ``sync_queue`` row."""
        return cls(
            id=row["id"],
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            operation=row["operation"],
            payload=json.loads(row["payload"]) if row["payload"] else {},
            attempts=row["attempts"],
            status=row["status"],
            last_error=row["last_error"],
            created_at=row["created_at"],
        )

    @property
    def entity_key(self):
        return (self.entity_type, self.entity_id)

    def to_record(self) -> Dict[str, Any]:
        """Persisted layout of the item."""
        return {
            "id": self.id,
            "entityType": self.entity_type,
            "entityId": self.entity_id,
            "operation": self.operation,
            "payload": self.payload,
            "attempts": self.attempts,
            "status": self.status,
            "createdAt": self.created_at,
        }


@dataclass
class SyncResult:
    """Aggregate outcome of one drain."""

    succeeded: int = 0
    failed: int = 0
    removed: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"succeeded": self.succeeded, "failed": self.failed, "removed": self.removed}
