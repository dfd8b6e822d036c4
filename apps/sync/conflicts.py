"""Optimistic-concurrency classification of incoming operations."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone as dt_timezone
from typing import Optional

from django.utils import timezone
from django.utils.dateparse import parse_datetime
from rest_framework import serializers

from .models import ConflictType, OperationKind

APPLY = "APPLY"
ALREADY_DELETED = "ALREADY_DELETED"
CONFLICT = "CONFLICT"


@dataclass(frozen=True)
class Verdict:
    outcome: str
    conflict_type: Optional[str] = None

    @property
    def is_conflict(self) -> bool:
        return self.outcome == CONFLICT


def parse_base_updated_at(payload: dict) -> datetime:
    """Read the client's last-known `updated_at`; required on UPDATE and DELETE."""
    raw = payload.get("base_updated_at")
    if not raw:
        raise serializers.ValidationError({"base_updated_at": "Required for UPDATE and DELETE."})
    try:
        value = parse_datetime(str(raw))
    except ValueError:
        value = None
    if value is None:
        raise serializers.ValidationError({"base_updated_at": f"Invalid timestamp: {raw}"})
    if timezone.is_naive(value):
        value = timezone.make_aware(value, dt_timezone.utc)
    return value


def classify(kind: str, base_updated_at: Optional[datetime], current_updated_at: Optional[datetime]) -> Verdict:
    """
    Compare the client's base against the current server record.
    `current_updated_at` is None when the record no longer exists; `base_updated_at`
    is None for a record the sending device created and has not pulled yet.
    """
    if kind == OperationKind.CREATE:
        return Verdict(APPLY)
    if current_updated_at is None:
        return Verdict(ALREADY_DELETED)
    if base_updated_at is None:
        return Verdict(APPLY)
    if base_updated_at == current_updated_at:
        return Verdict(APPLY)
    if kind == OperationKind.UPDATE:
        return Verdict(CONFLICT, ConflictType.VERSION_MISMATCH)
    if current_updated_at > base_updated_at:
        return Verdict(CONFLICT, ConflictType.DELETE_UPDATE)
    # DELETE with a base newer than the server record: nothing on the server to protect.
    return Verdict(APPLY)
