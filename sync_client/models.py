from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class EntityType(str, Enum):
    PRODUCT = "PRODUCT"
    SALE = "SALE"
    STOCK_MOVEMENT = "STOCK_MOVEMENT"


class OperationKind(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class OperationStatus(str, Enum):
    PENDING = "PENDING"
    IN_FLIGHT = "IN_FLIGHT"
    SYNCED = "SYNCED"
    CONFLICT = "CONFLICT"
    FAILED = "FAILED"


class SyncState(str, Enum):
    IDLE = "IDLE"
    SYNCING = "SYNCING"
    ERROR = "ERROR"


# CONFLICT and FAILED leave only through an explicit requeue.
TRANSITIONS = {
    OperationStatus.PENDING: {OperationStatus.IN_FLIGHT},
    OperationStatus.IN_FLIGHT: {
        OperationStatus.SYNCED,
        OperationStatus.CONFLICT,
        OperationStatus.PENDING,
        OperationStatus.FAILED,
    },
    OperationStatus.CONFLICT: {OperationStatus.PENDING},
    OperationStatus.FAILED: {OperationStatus.PENDING},
    OperationStatus.SYNCED: set(),
}

# Payload fields holding the id of another entity, rewritten on id mapping.
REFERENCE_FIELDS = ("product_id",)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


@dataclass
class Operation:
    """
    One pending mutation. For CREATE the entity has no server id yet; its
    temporary id is the operation's own local_id, and later operations on the
    same entity reference it through entity_id until the server id is known.
    """

    entity_type: EntityType
    kind: OperationKind
    payload: Dict[str, Any] = field(default_factory=dict)
    entity_id: str = ""
    local_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    client_timestamp: str = field(default_factory=utc_now_iso)
    priority: int = 3
    retry_count: int = 0
    max_retries: int = 3
    status: OperationStatus = OperationStatus.PENDING
    scheduled_at: float = 0.0
    error_message: Optional[str] = None
    server_id: Optional[str] = None
    conflict_id: Optional[str] = None

    def __post_init__(self):
        self.entity_type = EntityType(self.entity_type)
        self.kind = OperationKind(self.kind)
        self.status = OperationStatus(self.status)
        if self.kind == OperationKind.CREATE:
            if self.entity_id and self.entity_id != self.local_id:
                raise ValueError("A CREATE operation's temporary entity id is its local_id")
            self.entity_id = self.local_id
        elif not self.entity_id:
            raise ValueError(f"{self.kind.value} operation needs an entity_id")

    @property
    def entity_key(self):
        return self.entity_type.value, self.entity_id

    @classmethod
    def update(cls, entity_type, entity_id: str, payload: Dict, base_updated_at: Optional[str], **kwargs) -> "Operation":
        return cls(
            entity_type=entity_type,
            kind=OperationKind.UPDATE,
            entity_id=entity_id,
            payload=dict(payload, base_updated_at=base_updated_at),
            **kwargs,
        )

    @classmethod
    def delete(cls, entity_type, entity_id: str, base_updated_at: Optional[str], **kwargs) -> "Operation":
        return cls(
            entity_type=entity_type,
            kind=OperationKind.DELETE,
            entity_id=entity_id,
            payload={"base_updated_at": base_updated_at},
            **kwargs,
        )

    def to_wire(self) -> Dict[str, Any]:
        return {
            "local_id": self.local_id,
            "entity_type": self.entity_type.value,
            "entity_id": "" if self.kind == OperationKind.CREATE else self.entity_id,
            "kind": self.kind.value,
            "payload": self.payload,
            "client_timestamp": self.client_timestamp,
            "priority": self.priority,
        }

    @classmethod
    def from_row(cls, row) -> "Operation":
        return cls(
            local_id=row["local_id"],
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            kind=row["kind"],
            payload=json.loads(row["payload"] or "{}"),
            client_timestamp=row["client_timestamp"],
            priority=row["priority"],
            retry_count=row["retry_count"],
            max_retries=row["max_retries"],
            status=row["status"],
            scheduled_at=row["scheduled_at"],
            error_message=row["error_message"],
            server_id=row["server_id"],
            conflict_id=row["conflict_id"],
        )


@dataclass(frozen=True)
class IdMapping:
    local_id: str
    server_id: str
    entity_type: EntityType


@dataclass
class SyncEvent:
    type: str
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PassReport:
    reason: str
    batches: int = 0
    synced: int = 0
    conflicts: int = 0
    failed: int = 0
    retried: int = 0
    delta_updates: int = 0
    delta_deletes: int = 0
    aborted: Optional[str] = None
    error: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "reason": self.reason,
            "batches": self.batches,
            "synced": self.synced,
            "conflicts": self.conflicts,
            "failed": self.failed,
            "retried": self.retried,
            "delta_updates": self.delta_updates,
            "delta_deletes": self.delta_deletes,
            "aborted": self.aborted,
            "error": self.error,
        }
