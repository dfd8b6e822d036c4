"""Durable, ordered queue of pending mutations and its state machine."""
from __future__ import annotations

import json
import logging
import sqlite3
import time
from typing import Callable, Dict, Iterable, List, Optional

from .backoff import DEFAULT_BASE_DELAY_MS, DEFAULT_MAX_DELAY_MS, backoff_delay_ms
from .exceptions import DuplicateOperationError, InvalidTransitionError, OperationNotFound
from .models import REFERENCE_FIELDS, TRANSITIONS, Operation, OperationKind, OperationStatus
from .storage import LocalDatabase

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = (OperationStatus.PENDING.value, OperationStatus.IN_FLIGHT.value)

SCHEMA = """
CREATE TABLE IF NOT EXISTS operations (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    local_id TEXT NOT NULL UNIQUE,
    entity_type TEXT NOT NULL,
    entity_id TEXT NOT NULL DEFAULT '',
    kind TEXT NOT NULL,
    payload TEXT NOT NULL,
    client_timestamp TEXT NOT NULL,
    priority INTEGER NOT NULL DEFAULT 3,
    retry_count INTEGER NOT NULL DEFAULT 0,
    max_retries INTEGER NOT NULL DEFAULT 3,
    status TEXT NOT NULL,
    scheduled_at REAL NOT NULL DEFAULT 0,
    error_message TEXT,
    server_id TEXT,
    conflict_id TEXT,
    updated_at REAL
);
CREATE INDEX IF NOT EXISTS idx_operations_ready ON operations (status, priority, client_timestamp);
CREATE INDEX IF NOT EXISTS idx_operations_entity ON operations (entity_type, entity_id);
"""


class OperationQueue:
    def __init__(
        self,
        db: LocalDatabase,
        base_delay_ms: int = DEFAULT_BASE_DELAY_MS,
        max_delay_ms: int = DEFAULT_MAX_DELAY_MS,
        clock: Callable[[], float] = time.time,
    ):
        self.db = db
        self.base_delay_ms = base_delay_ms
        self.max_delay_ms = max_delay_ms
        self.clock = clock
        with self.db.transaction() as conn:
            conn.executescript(SCHEMA)

    # --- writes ---

    def enqueue(self, op: Operation) -> Operation:
        now = self.clock()
        op.status = OperationStatus.PENDING
        op.scheduled_at = op.scheduled_at or now
        try:
            with self.db.transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO operations (
                        local_id, entity_type, entity_id, kind, payload, client_timestamp, priority,
                        retry_count, max_retries, status, scheduled_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        op.local_id,
                        op.entity_type.value,
                        op.entity_id,
                        op.kind.value,
                        json.dumps(op.payload),
                        op.client_timestamp,
                        op.priority,
                        op.retry_count,
                        op.max_retries,
                        op.status.value,
                        op.scheduled_at,
                        now,
                    ),
                )
        except sqlite3.IntegrityError as exc:
            raise DuplicateOperationError(f"Operation {op.local_id} is already queued") from exc
        logger.debug("Queued %s %s %s", op.kind.value, op.entity_type.value, op.local_id)
        return op

    def next_batch(self, limit: int = 100) -> List[Operation]:
        """
        Claim up to `limit` ready operations, ordered by (priority, client_timestamp).
        An operation waits while an earlier one on the same entity is still pending
        or in flight, unless that earlier one is claimed into the same batch first.
        """
        if limit <= 0:
            return []
        now = self.clock()
        with self.db.transaction() as conn:
            rows = conn.execute(
                f"SELECT * FROM operations WHERE status IN ({', '.join('?' * len(ACTIVE_STATUSES))}) "
                "ORDER BY client_timestamp, seq",
                ACTIVE_STATUSES,
            ).fetchall()
            active = [Operation.from_row(row) for row in rows]
            predecessors: Dict[tuple, List[str]] = {}
            waiting_on: Dict[str, List[str]] = {}
            for op in active:
                earlier = predecessors.setdefault(op.entity_key, [])
                waiting_on[op.local_id] = list(earlier)
                earlier.append(op.local_id)

            candidates = sorted(
                (op for op in active if op.status == OperationStatus.PENDING and op.scheduled_at <= now),
                key=lambda op: (op.priority, op.client_timestamp),
            )
            selected: List[Operation] = []
            claimed = set()
            progress = True
            while progress and len(selected) < limit:
                progress = False
                for op in candidates:
                    if len(selected) >= limit:
                        break
                    if op.local_id in claimed:
                        continue
                    if all(prior in claimed for prior in waiting_on[op.local_id]):
                        selected.append(op)
                        claimed.add(op.local_id)
                        progress = True

            for op in selected:
                op.status = OperationStatus.IN_FLIGHT
                conn.execute(
                    "UPDATE operations SET status = ?, updated_at = ? WHERE local_id = ?",
                    (OperationStatus.IN_FLIGHT.value, now, op.local_id),
                )
        return selected

    def _transition(self, local_id: str, target: OperationStatus, **fields) -> Operation:
        with self.db.transaction() as conn:
            row = conn.execute("SELECT * FROM operations WHERE local_id = ?", (local_id,)).fetchone()
            if row is None:
                raise OperationNotFound(local_id)
            current = OperationStatus(row["status"])
            if target not in TRANSITIONS[current]:
                raise InvalidTransitionError(f"{local_id}: {current.value} -> {target.value} is not allowed")
            fields["status"] = target.value
            fields["updated_at"] = self.clock()
            assignments = ", ".join(f"{name} = ?" for name in fields)
            conn.execute(
                f"UPDATE operations SET {assignments} WHERE local_id = ?",
                (*fields.values(), local_id),
            )
            row = conn.execute("SELECT * FROM operations WHERE local_id = ?", (local_id,)).fetchone()
        return Operation.from_row(row)

    def mark_synced(self, local_id: str, server_id: Optional[str] = None) -> Operation:
        return self._transition(local_id, OperationStatus.SYNCED, server_id=server_id, error_message=None)

    def mark_conflict(self, local_id: str, conflict: Optional[Dict] = None) -> Operation:
        conflict = conflict or {}
        message = conflict.get("conflict_type") or "CONFLICT"
        return self._transition(
            local_id,
            OperationStatus.CONFLICT,
            conflict_id=conflict.get("conflict_id"),
            error_message=message,
        )

    def mark_failed(self, local_id: str, error: str, retryable: bool = True) -> Operation:
        op = self.get(local_id)
        retry_count = op.retry_count + 1
        if retryable and retry_count < op.max_retries:
            delay_ms = backoff_delay_ms(retry_count, self.base_delay_ms, self.max_delay_ms)
            logger.info("Operation %s failed (%s); retry %s in %sms", local_id, error, retry_count, delay_ms)
            return self._transition(
                local_id,
                OperationStatus.PENDING,
                retry_count=retry_count,
                scheduled_at=self.clock() + delay_ms / 1000.0,
                error_message=error,
            )
        if retryable:
            error = f"MaxRetriesExceeded after {retry_count} attempts: {error}"
        logger.warning("Operation %s failed permanently: %s", local_id, error)
        return self._transition(local_id, OperationStatus.FAILED, retry_count=retry_count, error_message=error)

    def requeue(self, local_id: str) -> Operation:
        """Manual retry of a FAILED or CONFLICT operation, with a fresh retry budget."""
        return self._transition(
            local_id,
            OperationStatus.PENDING,
            retry_count=0,
            scheduled_at=self.clock(),
            error_message=None,
            conflict_id=None,
        )

    def recover_in_flight(self) -> int:
        """Operations left IN_FLIGHT by a crash go back to PENDING without using a retry."""
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "UPDATE operations SET status = ?, updated_at = ? WHERE status = ?",
                (OperationStatus.PENDING.value, self.clock(), OperationStatus.IN_FLIGHT.value),
            )
        if cursor.rowcount:
            logger.info("Recovered %s in-flight operations", cursor.rowcount)
        return cursor.rowcount

    def rewrite_entity_reference(self, local_id: str, server_id: str) -> int:
        """Point not-yet-synced operations at the server id that replaced a temporary id."""
        changed = 0
        with self.db.transaction() as conn:
            rows = conn.execute(
                "SELECT local_id, entity_id, kind, payload FROM operations WHERE status != ? AND (entity_id = ? OR payload LIKE ?)",
                (OperationStatus.SYNCED.value, local_id, f"%{local_id}%"),
            ).fetchall()
            for row in rows:
                payload = json.loads(row["payload"] or "{}")
                touched = False
                for name in REFERENCE_FIELDS:
                    if payload.get(name) == local_id:
                        payload[name] = server_id
                        touched = True
                entity_id = row["entity_id"]
                if entity_id == local_id and row["kind"] != OperationKind.CREATE.value:
                    entity_id = server_id
                if entity_id != row["entity_id"] or touched:
                    conn.execute(
                        "UPDATE operations SET entity_id = ?, payload = ? WHERE local_id = ?",
                        (entity_id, json.dumps(payload), row["local_id"]),
                    )
                    changed += 1
        if changed:
            logger.debug("Rewrote %s queued operations from %s to %s", changed, local_id, server_id)
        return changed

    def rebase_entity(self, entity_type: str, entity_ids: Iterable[str], old_base: str, new_base: str) -> int:
        """
        After the device's own write to an entity syncs, move later queued operations on
        that entity from the base they were built on to the version the write produced.
        """
        ids = [entity_id for entity_id in dict.fromkeys(entity_ids) if entity_id]
        if not ids or not old_base or not new_base:
            return 0
        changed = 0
        with self.db.transaction() as conn:
            rows = conn.execute(
                f"SELECT local_id, payload FROM operations WHERE status != ? AND kind != ? AND entity_type = ? "
                f"AND entity_id IN ({', '.join('?' * len(ids))})",
                (OperationStatus.SYNCED.value, OperationKind.CREATE.value, entity_type, *ids),
            ).fetchall()
            for row in rows:
                payload = json.loads(row["payload"] or "{}")
                if payload.get("base_updated_at") != old_base:
                    continue
                payload["base_updated_at"] = new_base
                conn.execute(
                    "UPDATE operations SET payload = ? WHERE local_id = ?",
                    (json.dumps(payload), row["local_id"]),
                )
                changed += 1
        if changed:
            logger.debug("Rebased %s queued operations on %s %s to %s", changed, entity_type, ids[-1], new_base)
        return changed

    def clear(self, statuses: Iterable[OperationStatus] = (OperationStatus.SYNCED,)) -> int:
        values = [OperationStatus(status).value for status in statuses]
        if not values:
            return 0
        with self.db.transaction() as conn:
            cursor = conn.execute(
                f"DELETE FROM operations WHERE status IN ({', '.join('?' * len(values))})",
                values,
            )
        return cursor.rowcount

    # --- reads ---

    def get(self, local_id: str) -> Operation:
        rows = self.db.query("SELECT * FROM operations WHERE local_id = ?", (local_id,))
        if not rows:
            raise OperationNotFound(local_id)
        return Operation.from_row(rows[0])

    def list(self, status: Optional[OperationStatus] = None) -> List[Operation]:
        if status is None:
            rows = self.db.query("SELECT * FROM operations ORDER BY client_timestamp, seq")
        else:
            rows = self.db.query(
                "SELECT * FROM operations WHERE status = ? ORDER BY client_timestamp, seq",
                (OperationStatus(status).value,),
            )
        return [Operation.from_row(row) for row in rows]

    def counts(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in OperationStatus}
        for row in self.db.query("SELECT status, COUNT(*) AS n FROM operations GROUP BY status"):
            counts[row["status"]] = row["n"]
        return counts

    def pending_count(self) -> int:
        rows = self.db.query(
            "SELECT COUNT(*) AS n FROM operations WHERE status = ?",
            (OperationStatus.PENDING.value,),
        )
        return rows[0]["n"]

    def has_ready(self) -> bool:
        rows = self.db.query(
            "SELECT 1 FROM operations WHERE status = ? AND scheduled_at <= ? LIMIT 1",
            (OperationStatus.PENDING.value, self.clock()),
        )
        return bool(rows)

    def next_retry_at(self) -> Optional[float]:
        rows = self.db.query(
            "SELECT MIN(scheduled_at) AS next_at FROM operations WHERE status = ? AND scheduled_at > ?",
            (OperationStatus.PENDING.value, self.clock()),
        )
        return rows[0]["next_at"] if rows else None
