"""Local write path: entity snapshots plus their queued mutations."""
import json
import uuid
from typing import Any, Dict, List, Optional

from warranty_sync.broadcast import BroadcastMessage, Broadcaster
from warranty_sync.db import Database
from warranty_sync.logging_conf import logger
from warranty_sync.queue.models import QueueItem, ENTITY_COLLECTIONS, ENTITY_TYPES, utcnow_iso
from warranty_sync.queue.store import QueueStore


class EntityRepository:
    """Writes entities locally and enqueues the matching remote mutation.

    The snapshot and the queue item are written in one transaction, so the
    queue never holds a mutation for a write that did not happen (or the
    reverse). Other instances are told right away; they do not wait for the
    server to confirm.
    """

    def __init__(self, db: Database, queue: QueueStore, broadcaster: Optional[Broadcaster] = None):
        self.db = db
        self.queue = queue
        self.broadcaster = broadcaster

    def get(self, entity_type: str, entity_id: str) -> Optional[Dict[str, Any]]:
        with self.db.cursor() as cur:
            cur.execute(
                "SELECT data FROM entities WHERE entity_type = ? AND entity_id = ?",
                (entity_type, str(entity_id)),
            )
            row = cur.fetchone()
        return json.loads(row["data"]) if row else None

    def list(self, entity_type: str) -> List[Dict[str, Any]]:
        with self.db.cursor() as cur:
            cur.execute(
                "SELECT data FROM entities WHERE entity_type = ? ORDER BY updated_at, entity_id",
                (entity_type,),
            )
            return [json.loads(row["data"]) for row in cur.fetchall()]

    def create(self, entity_type: str, data: Dict[str, Any], entity_id: Optional[str] = None) -> Dict[str, Any]:
        """Store a new entity under a client-generated id unless one is given."""
        self._check_type(entity_type)
        entity_id = str(entity_id or uuid.uuid4())
        record = {**data, "id": entity_id}
        with self.db.cursor() as cur:
            self._write(cur, entity_type, entity_id, record)
            self.queue.enqueue_with(cur, QueueItem.create(entity_type, entity_id, "create", data))
        self._announce(entity_type, "create", entity_id)
        return record

    def update(self, entity_type: str, entity_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        """Merge ``changes`` into the stored entity; only the changes are queued."""
        self._check_type(entity_type)
        entity_id = str(entity_id)
        with self.db.cursor() as cur:
            current = self._read(cur, entity_type, entity_id)
            if current is None:
                raise KeyError(f"{entity_type}:{entity_id} not found")
            record = {**current, **changes, "id": entity_id}
            self._write(cur, entity_type, entity_id, record)
            self.queue.enqueue_with(cur, QueueItem.create(entity_type, entity_id, "update", changes))
        self._announce(entity_type, "update", entity_id)
        return record

    def delete(self, entity_type: str, entity_id: str) -> List[str]:
        """Delete an entity; a receipt takes its devices with it. Returns deleted device ids."""
        self._check_type(entity_type)
        entity_id = str(entity_id)
        cascaded: List[str] = []
        with self.db.cursor() as cur:
            if entity_type == "receipt":
                cur.execute("""
                    SELECT entity_id FROM entities
                    WHERE entity_type = 'device' AND json_extract(data, '$.receiptId') = ?
                """, (entity_id,))
                cascaded = [row["entity_id"] for row in cur.fetchall()]
            cur.execute("DELETE FROM entities WHERE entity_type = ? AND entity_id = ?", (entity_type, entity_id))
            self.queue.enqueue_with(cur, QueueItem.create(entity_type, entity_id, "delete", {"id": entity_id}))
            for device_id in cascaded:
                cur.execute("DELETE FROM entities WHERE entity_type = 'device' AND entity_id = ?", (device_id,))
                self.queue.enqueue_with(cur, QueueItem.create("device", device_id, "delete", {"id": device_id}))
        self._announce(entity_type, "delete", entity_id)
        for device_id in cascaded:
            self._announce("device", "delete", device_id)
        if cascaded:
            logger.info(f"Deleted receipt {entity_id} with {len(cascaded)} devices")
        return cascaded

    def remap_entity_id(self, entity_type: str, old_id: str, new_id: str) -> bool:
        """Move a snapshot from its temporary id to the canonical one."""
        with self.db.cursor() as cur:
            record = self._read(cur, entity_type, old_id)
            if record is None:
                return False
            cur.execute("DELETE FROM entities WHERE entity_type = ? AND entity_id = ?", (entity_type, old_id))
            self._write(cur, entity_type, new_id, {**record, "id": new_id})
            if entity_type == "receipt":
                # Devices point at their receipt
                cur.execute("""
                    UPDATE entities
                    SET data = json_set(data, '$.receiptId', ?)
                    WHERE entity_type = 'device' AND json_extract(data, '$.receiptId') = ?
                """, (new_id, old_id))
        return True

    def merge_server_data(self, data: Dict[str, Any]) -> Dict[str, Dict[str, int]]:
        """Fold a pulled server copy into the local store.

        Entities with a queued local mutation keep the local version; the
        queue will push it. Nothing is enqueued or broadcast.

        Returns:
            ``{collection: {"added": n, "updated": n, "skipped": n}}`` for
            every known collection present in ``data``.
        """
        merged: Dict[str, Dict[str, int]] = {}
        with self.db.cursor() as cur:
            unsettled = self.queue.unsettled_entities(cur)
            for entity_type, collection in ENTITY_COLLECTIONS.items():
                records = data.get(collection)
                if records is None:
                    continue
                if isinstance(records, dict):
                    # settings arrive as a single object
                    records = [records]
                counts = {"added": 0, "updated": 0, "skipped": 0}
                for record in records:
                    entity_id = record.get("id") if isinstance(record, dict) else None
                    if entity_id is None or (entity_type, str(entity_id)) in unsettled:
                        counts["skipped"] += 1
                        continue
                    entity_id = str(entity_id)
                    current = self._read(cur, entity_type, entity_id)
                    self._write(cur, entity_type, entity_id, {**record, "id": entity_id})
                    counts["added" if current is None else "updated"] += 1
                merged[collection] = counts
        ignored = set(data) - set(ENTITY_COLLECTIONS.values())
        if ignored:
            logger.debug(f"Ignoring unsynced collections from server: {sorted(ignored)}")
        return merged

    def enqueue_all(self) -> Dict[str, int]:
        """Queue a create for every local entity with nothing queued yet.

        For data that exists locally but never reached the server.
        Returns the number enqueued per collection.
        """
        enqueued = {collection: 0 for collection in ENTITY_COLLECTIONS.values()}
        with self.db.cursor() as cur:
            unsettled = self.queue.unsettled_entities(cur)
            cur.execute("SELECT entity_type, entity_id, data FROM entities ORDER BY updated_at, entity_id")
            for row in cur.fetchall():
                key = (row["entity_type"], row["entity_id"])
                if key in unsettled or row["entity_type"] not in ENTITY_TYPES:
                    continue
                payload = json.loads(row["data"])
                payload.pop("id", None)
                self.queue.enqueue_with(cur, QueueItem.create(key[0], key[1], "create", payload))
                enqueued[ENTITY_COLLECTIONS[key[0]]] += 1
        return enqueued

    def _read(self, cur, entity_type: str, entity_id: str) -> Optional[Dict[str, Any]]:
        cur.execute("SELECT data FROM entities WHERE entity_type = ? AND entity_id = ?", (entity_type, entity_id))
        row = cur.fetchone()
        return json.loads(row["data"]) if row else None

    def _write(self, cur, entity_type: str, entity_id: str, record: Dict[str, Any]) -> None:
        cur.execute("""
            INSERT INTO entities (entity_type, entity_id, data, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT (entity_type, entity_id) DO UPDATE SET
                data = excluded.data,
                updated_at = excluded.updated_at
        """, (entity_type, entity_id, json.dumps(record), utcnow_iso()))

    def _announce(self, entity_type: str, operation: str, entity_id: str) -> None:
        if self.broadcaster is not None:
            self.broadcaster.publish(BroadcastMessage.entity_changed(entity_type, operation, entity_id))

    def _check_type(self, entity_type: str) -> None:
        if entity_type not in ENTITY_TYPES:
            raise ValueError(f"Unknown entity type: {entity_type}")
