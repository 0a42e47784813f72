"""Durable mutation queue backed by the local SQLite store."""
import json
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Set, Tuple

from warranty_sync.db import Database
from warranty_sync.logging_conf import logger
from warranty_sync.queue.models import QueueItem, utcnow_iso, PENDING, IN_FLIGHT, FAILED, DONE


class QueueStore:
    """Ordered record of local mutations and their state transitions."""

    def __init__(self, db: Database):
        self.db = db

    def enqueue(self, item: QueueItem) -> QueueItem:
        """Append an item; its new id fixes its place in processing order."""
        with self.db.cursor() as cur:
            return self.enqueue_with(cur, item)

    def enqueue_with(self, cur, item: QueueItem) -> QueueItem:
        """Append an item inside a transaction the caller already holds."""
        now = utcnow_iso()
        cur.execute("""
            INSERT INTO sync_queue
                (entity_type, entity_id, operation, payload, attempts, status, created_at, updated_at)
            VALUES (?, ?, ?, ?, 0, 'pending', ?, ?)
        """, (item.entity_type, item.entity_id, item.operation, json.dumps(item.payload), item.created_at, now))
        item.id = cur.lastrowid
        item.attempts = 0
        item.status = PENDING
        logger.debug(f"Enqueued {item.operation} {item.entity_type}:{item.entity_id} (#{item.id})")
        return item

    def get(self, item_id: int) -> Optional[QueueItem]:
        with self.db.cursor() as cur:
            cur.execute("SELECT * FROM sync_queue WHERE id = ?", (item_id,))
            row = cur.fetchone()
        return QueueItem.from_row(row) if row else None

    def get_pending(self, limit: Optional[int] = None) -> List[QueueItem]:
        """Pending items in insertion order."""
        with self.db.cursor() as cur:
            cur.execute("""
                SELECT * FROM sync_queue
                WHERE status = 'pending'
                ORDER BY id ASC
                LIMIT ?
            """, (-1 if limit is None else limit,))
            return [QueueItem.from_row(row) for row in cur.fetchall()]

    def get_failed(self) -> List[QueueItem]:
        """Items parked after a terminal rejection, oldest first."""
        with self.db.cursor() as cur:
            cur.execute("SELECT * FROM sync_queue WHERE status = 'failed' ORDER BY id ASC")
            return [QueueItem.from_row(row) for row in cur.fetchall()]

    def mark_in_flight(self, item: QueueItem) -> bool:
        """Atomically claim a pending item.

        Fails if another instance already claimed it, if any item for the
        same entity is in flight, or if an earlier item for the same entity
        is still unsettled (pending, or parked as failed).
        """
        with self.db.cursor() as cur:
            cur.execute("""
                UPDATE sync_queue
                SET status = 'in_flight', updated_at = ?
                WHERE id = ? AND status = 'pending'
                  AND NOT EXISTS (
                      SELECT 1 FROM sync_queue AS other
                      WHERE other.entity_type = ? AND other.entity_id = ?
                        AND (other.status = 'in_flight'
                             OR (other.id < ? AND other.status IN ('pending', 'failed')))
                  )
            """, (utcnow_iso(), item.id, item.entity_type, item.entity_id, item.id))
            claimed = cur.rowcount == 1
        if claimed:
            item.status = IN_FLIGHT
        return claimed

    def release(self, item: QueueItem) -> bool:
        """Hand a claimed item back to pending without counting an attempt."""
        with self.db.cursor() as cur:
            cur.execute("""
                UPDATE sync_queue
                SET status = 'pending', updated_at = ?
                WHERE id = ? AND status = 'in_flight'
            """, (utcnow_iso(), item.id))
            released = cur.rowcount == 1
        if released:
            item.status = PENDING
        return released

    def mark_done(self, item: QueueItem) -> None:
        """Acknowledge an applied item by deleting it."""
        with self.db.cursor() as cur:
            cur.execute("DELETE FROM sync_queue WHERE id = ?", (item.id,))
        item.status = DONE
        logger.debug(f"Removed #{item.id} {item.entity_type}:{item.entity_id}")

    def mark_retry(self, item: QueueItem, error: str) -> None:
        """Return an item to pending after a retryable failure."""
        self._record_failure(item, PENDING, error)
        logger.info(f"Will retry #{item.id} {item.entity_type}:{item.entity_id} (attempt {item.attempts}): {error}")

    def mark_failed(self, item: QueueItem, error: str) -> None:
        """Park an item after a terminal rejection; it is not retried automatically."""
        self._record_failure(item, FAILED, error)
        logger.warning(f"Rejected #{item.id} {item.entity_type}:{item.entity_id}: {error}")

    def _record_failure(self, item: QueueItem, status: str, error: str) -> None:
        error = (error or "")[:500]
        with self.db.cursor() as cur:
            cur.execute("""
                UPDATE sync_queue
                SET status = ?, attempts = attempts + 1, last_error = ?, updated_at = ?
                WHERE id = ?
            """, (status, error, utcnow_iso(), item.id))
        item.status = status
        item.attempts += 1
        item.last_error = error

    def requeue(self, item_id: int) -> bool:
        """Give a rejected item a fresh start (e.g. after the user fixed the data)."""
        with self.db.cursor() as cur:
            cur.execute("""
                UPDATE sync_queue
                SET status = 'pending', attempts = 0, last_error = NULL, updated_at = ?
                WHERE id = ? AND status = 'failed'
            """, (utcnow_iso(), item_id))
            return cur.rowcount == 1

    def discard(self, item_id: int) -> bool:
        """Drop a rejected item for good."""
        with self.db.cursor() as cur:
            cur.execute("DELETE FROM sync_queue WHERE id = ? AND status = 'failed'", (item_id,))
            return cur.rowcount == 1

    def remap_entity_id(self, entity_type: str, old_id: str, new_id: str) -> int:
        """Point queued items at the canonical id the server assigned on create."""
        with self.db.cursor() as cur:
            cur.execute("""
                UPDATE sync_queue
                SET entity_id = ?, updated_at = ?
                WHERE entity_type = ? AND entity_id = ?
            """, (new_id, utcnow_iso(), entity_type, old_id))
            moved = cur.rowcount
            if entity_type == "receipt":
                # Queued device payloads reference their receipt
                cur.execute("""
                    UPDATE sync_queue
                    SET payload = json_set(payload, '$.receiptId', ?), updated_at = ?
                    WHERE entity_type = 'device' AND json_extract(payload, '$.receiptId') = ?
                """, (new_id, utcnow_iso(), old_id))
            return moved

    def reset_stuck_in_flight(self, seconds: int) -> int:
        """Return items an instance claimed but never settled to pending."""
        cutoff = (datetime.now(timezone.utc) - timedelta(seconds=seconds)).isoformat()
        with self.db.cursor() as cur:
            cur.execute("""
                UPDATE sync_queue
                SET status = 'pending', updated_at = ?
                WHERE status = 'in_flight' AND updated_at < ?
            """, (utcnow_iso(), cutoff))
            count = cur.rowcount
        if count > 0:
            logger.warning(f"Reset {count} stuck in-flight items")
        return count

    def unsettled_entities(self, cur) -> Set[Tuple[str, str]]:
        """(entity_type, entity_id) of every entity with a queued mutation, inside the caller's transaction."""
        cur.execute("SELECT DISTINCT entity_type, entity_id FROM sync_queue WHERE status != 'done'")
        return {(row["entity_type"], row["entity_id"]) for row in cur.fetchall()}

    def counts(self) -> Dict[str, int]:
        """Number of items per status."""
        with self.db.cursor() as cur:
            cur.execute("SELECT status, COUNT(*) AS n FROM sync_queue GROUP BY status")
            counts = {PENDING: 0, IN_FLIGHT: 0, FAILED: 0}
            counts.update({row["status"]: row["n"] for row in cur.fetchall()})
        return counts

    def size(self) -> int:
        """Items still waiting to reach the server."""
        counts = self.counts()
        return counts[PENDING] + counts[IN_FLIGHT]
