"""Server side of the batch / delta sync protocol and the conflict store."""
from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
from django.db import IntegrityError, transaction
from django.db.models import QuerySet
from django.shortcuts import get_object_or_404
from django.utils import timezone
from django.utils.dateparse import parse_datetime
from rest_framework import serializers

from . import conflicts
from .exceptions import ConflictAlreadyResolved, EntityGone
from .models import (
    DeletedEntity,
    EntityType,
    OperationKind,
    Product,
    ResolutionStrategy,
    Sale,
    StockMovement,
    SyncConflict,
    SyncLog,
    SyncOperationLog,
)
from .serializers import ENTITY_SERIALIZERS, SyncConflictSerializer, SyncOperationSerializer

logger = logging.getLogger(__name__)

ENTITY_MODELS = {
    EntityType.PRODUCT: Product,
    EntityType.SALE: Sale,
    EntityType.STOCK_MOVEMENT: StockMovement,
}

# Payload fields that may carry a client-side temporary id of another entity.
REFERENCE_FIELDS = ("product_id",)

SUCCESS = "SUCCESS"
CONFLICT = "CONFLICT"
FAILED = "FAILED"


@dataclass
class OperationOutcome:
    local_id: Optional[str]
    entity_type: Optional[str]
    kind: Optional[str]
    status: str
    server_id: Optional[str] = None
    message: str = ""
    conflict: Optional[SyncConflict] = None
    error: Optional[Dict] = None
    updated_at: Optional[datetime] = None
    sent_base: Optional[datetime] = None

    def result(self) -> Dict:
        data = {
            "local_id": self.local_id,
            "entity_type": self.entity_type,
            "kind": self.kind,
            "status": self.status,
            "server_id": self.server_id,
            "message": self.message,
        }
        if self.updated_at is not None:
            data["updated_at"] = self.updated_at.isoformat()
        if self.conflict is not None:
            data["conflict_id"] = str(self.conflict.conflict_id)
        return data


@dataclass
class BatchContext:
    user: object
    device_id: str
    id_map: Dict[str, str] = field(default_factory=dict)
    # (entity_type, entity_id) -> (base the device sent, updated_at its write produced)
    versions: Dict[tuple, tuple] = field(default_factory=dict)

    def remember_version(self, entity_type: str, entity_id, sent_base, updated_at) -> None:
        if sent_base is not None and updated_at is not None:
            self.versions[(entity_type, str(entity_id))] = (sent_base, updated_at)

    def rebase(self, entity_type: str, entity_id, base_updated_at):
        """
        A later operation from the same device still carries the base it read before
        the device's own earlier write in this batch; move it onto that write's version.
        """
        seen = self.versions.get((entity_type, str(entity_id)))
        if seen is not None and base_updated_at == seen[0]:
            return seen[1]
        return base_updated_at


def default_resolution() -> str:
    value = settings.SYNC_DEFAULT_RESOLUTION
    if value not in ResolutionStrategy.values:
        raise ImproperlyConfigured(
            f"SYNC_DEFAULT_RESOLUTION must be one of {', '.join(ResolutionStrategy.values)}, not {value!r}"
        )
    return value


def serialize_entity(entity_type: str, instance) -> Dict:
    return dict(ENTITY_SERIALIZERS[entity_type](instance).data)


def serialize_conflict(conflict: SyncConflict) -> Dict:
    data = dict(SyncConflictSerializer(conflict).data)
    if not conflict.is_resolved:
        data["suggested_resolution"] = default_resolution()
    return data


def _describe(detail) -> str:
    if isinstance(detail, dict):
        return "; ".join(f"{key}: {_describe(value)}" for key, value in detail.items())
    if isinstance(detail, (list, tuple)):
        return ", ".join(_describe(item) for item in detail)
    return str(detail)


def _error_entry(raw: Dict, code: str, detail, retryable: bool = False) -> Dict:
    if isinstance(detail, serializers.ValidationError):
        detail = detail.detail
    return {
        "local_id": raw.get("local_id"),
        "entity_type": raw.get("entity_type"),
        "entity_id": raw.get("entity_id") or None,
        "error_code": code,
        "error_message": _describe(detail),
        "retryable": retryable,
    }


def _failed(raw: Dict, code: str, detail, retryable: bool = False) -> OperationOutcome:
    error = _error_entry(raw, code, detail, retryable)
    return OperationOutcome(
        local_id=raw.get("local_id"),
        entity_type=raw.get("entity_type"),
        kind=raw.get("kind"),
        status=FAILED,
        message=code,
        error=error,
    )


def _replayed(log: SyncOperationLog) -> OperationOutcome:
    stored = log.result or {}
    return OperationOutcome(
        local_id=log.local_id,
        entity_type=log.entity_type,
        kind=log.kind,
        status=log.status,
        server_id=stored.get("server_id"),
        message=stored.get("message", ""),
        conflict=log.conflict,
        updated_at=parse_datetime(stored["updated_at"]) if stored.get("updated_at") else None,
    )


def resolve_entity_id(entity_id: str, id_map: Dict[str, str]) -> uuid.UUID:
    """
    Map a client temporary id (the local_id of an earlier CREATE) to its server id.
    Falls back to treating the value as a server id.
    """
    if entity_id in id_map:
        return uuid.UUID(id_map[entity_id])
    created = (
        SyncOperationLog.objects.filter(local_id=entity_id, kind=OperationKind.CREATE, status=SUCCESS)
        .exclude(entity_id=None)
        .values_list("entity_id", flat=True)
        .first()
    )
    if created:
        return created
    try:
        return uuid.UUID(str(entity_id))
    except ValueError:
        raise serializers.ValidationError({"entity_id": f"Unknown entity id: {entity_id}"})


def _created_by_device(entity_id, device_id: str) -> bool:
    """True when this device created the record, so it may not have seen any server version of it yet."""
    return SyncOperationLog.objects.filter(
        kind=OperationKind.CREATE, status=SUCCESS, entity_id=entity_id, device_id=device_id
    ).exists()


def _reconcile_references(payload: Dict, id_map: Dict[str, str]) -> Dict:
    payload = dict(payload)
    for name in REFERENCE_FIELDS:
        value = payload.get(name)
        if value:
            payload[name] = str(resolve_entity_id(str(value), id_map))
    return payload


def _record_conflict(ctx: BatchContext, op: Dict, instance, conflict_type: str) -> SyncConflict:
    conflict = SyncConflict.objects.create(
        conflict_type=conflict_type,
        entity_type=op["entity_type"],
        entity_id=instance.pk,
        operation_kind=op["kind"],
        local_id=op["local_id"],
        user=ctx.user,
        device_id=ctx.device_id,
        local_data=op["payload"],
        server_data=serialize_entity(op["entity_type"], instance),
    )
    logger.info(
        "Conflict %s (%s) on %s %s from device %s",
        conflict.conflict_id,
        conflict_type,
        op["entity_type"],
        instance.pk,
        ctx.device_id,
    )
    return conflict


def _delete_entity(entity_type: str, instance) -> None:
    entity_id = instance.pk
    instance.delete()
    DeletedEntity.objects.update_or_create(
        entity_type=entity_type,
        entity_id=entity_id,
        defaults={"deleted_at": timezone.now()},
    )


def _apply(ctx: BatchContext, op: Dict) -> OperationOutcome:
    entity_type = op["entity_type"]
    kind = op["kind"]
    serializer_class = ENTITY_SERIALIZERS[entity_type]
    payload = _reconcile_references(op["payload"], ctx.id_map)
    outcome = OperationOutcome(local_id=op["local_id"], entity_type=entity_type, kind=kind, status=SUCCESS)

    if kind == OperationKind.CREATE:
        serializer = serializer_class(data=payload)
        serializer.is_valid(raise_exception=True)
        instance = serializer.save()
        outcome.server_id = str(instance.pk)
        outcome.message = "created"
        ctx.id_map[op["local_id"]] = outcome.server_id
        return outcome

    entity_id = resolve_entity_id(op["entity_id"], ctx.id_map)
    if payload.get("base_updated_at") is None and _created_by_device(entity_id, ctx.device_id):
        base_updated_at = None
    else:
        base_updated_at = conflicts.parse_base_updated_at(payload)
        outcome.sent_base = base_updated_at
        base_updated_at = ctx.rebase(entity_type, entity_id, base_updated_at)
    model = ENTITY_MODELS[entity_type]
    instance = model.objects.select_for_update().filter(pk=entity_id).first()
    verdict = conflicts.classify(kind, base_updated_at, instance.updated_at if instance else None)
    outcome.server_id = str(entity_id)

    if verdict.outcome == conflicts.ALREADY_DELETED:
        outcome.message = "already deleted"
        return outcome
    if verdict.is_conflict:
        outcome.conflict = _record_conflict(ctx, op, instance, verdict.conflict_type)
        if default_resolution() == ResolutionStrategy.CLIENT_WINS:
            return _resolve_by_policy(outcome, model, entity_id)
        outcome.status = CONFLICT
        outcome.message = verdict.conflict_type
        return outcome

    if kind == OperationKind.UPDATE:
        serializer = serializer_class(instance, data=payload, partial=True)
        serializer.is_valid(raise_exception=True)
        instance = serializer.save()
        outcome.updated_at = instance.updated_at
        outcome.message = "updated"
    else:
        _delete_entity(entity_type, instance)
        outcome.message = "deleted"
    return outcome


def _resolve_by_policy(outcome: OperationOutcome, model, entity_id) -> OperationOutcome:
    """SYNC_DEFAULT_RESOLUTION=CLIENT_WINS: close the conflict right away by applying the client's write."""
    conflict = resolve_conflict(outcome.conflict.conflict_id, ResolutionStrategy.CLIENT_WINS, resolved_by="policy")
    outcome.conflict = conflict
    outcome.message = f"{conflict.conflict_type} resolved {ResolutionStrategy.CLIENT_WINS.value}"
    if outcome.kind == OperationKind.UPDATE:
        outcome.updated_at = model.objects.filter(pk=entity_id).values_list("updated_at", flat=True).first()
    return outcome


def _sent_base(payload: Dict) -> Optional[datetime]:
    try:
        return conflicts.parse_base_updated_at(payload)
    except serializers.ValidationError:
        return None


def apply_operation(ctx: BatchContext, raw: Dict) -> OperationOutcome:
    """Apply one operation in its own transaction; failures never leak into siblings."""
    envelope = SyncOperationSerializer(data=raw)
    if not envelope.is_valid():
        return _failed(raw, "VALIDATION_ERROR", envelope.errors)
    op = envelope.validated_data

    prior = SyncOperationLog.objects.select_related("conflict").filter(local_id=op["local_id"]).first()
    if prior is not None:
        logger.debug("Replay of %s answered from the operation log", op["local_id"])
        outcome = _replayed(prior)
        outcome.sent_base = _sent_base(op["payload"])
    else:
        try:
            with transaction.atomic():
                outcome = _apply(ctx, op)
                SyncOperationLog.objects.create(
                    local_id=op["local_id"],
                    device_id=ctx.device_id,
                    user=ctx.user,
                    entity_type=op["entity_type"],
                    entity_id=outcome.server_id,
                    kind=op["kind"],
                    status=outcome.status,
                    result=outcome.result(),
                    conflict=outcome.conflict,
                )
        except serializers.ValidationError as exc:
            ctx.id_map.pop(op["local_id"], None)
            return _failed(raw, "VALIDATION_ERROR", exc)
        except IntegrityError as exc:
            ctx.id_map.pop(op["local_id"], None)
            prior = SyncOperationLog.objects.select_related("conflict").filter(local_id=op["local_id"]).first()
            if prior is None:
                logger.warning("Operation %s hit an integrity error: %s", op["local_id"], exc)
                return _failed(raw, "SERVER_ERROR", str(exc), retryable=True)
            return _replayed(prior)
        except Exception as exc:
            ctx.id_map.pop(op["local_id"], None)
            logger.exception("Operation %s failed on the server", op["local_id"])
            return _failed(raw, "SERVER_ERROR", str(exc), retryable=True)

    if outcome.status == SUCCESS and outcome.kind == OperationKind.UPDATE:
        ctx.remember_version(outcome.entity_type, outcome.server_id, outcome.sent_base, outcome.updated_at)
    return outcome


def process_batch(user, device_id: str, operations: Iterable[Dict]) -> Dict:
    started = time.monotonic()
    operations = list(operations)
    ctx = BatchContext(user=user, device_id=device_id)
    results: List[Dict] = []
    conflict_list: List[Dict] = []
    errors: List[Dict] = []
    counts = {SUCCESS: 0, CONFLICT: 0, FAILED: 0}

    for raw in operations:
        outcome = apply_operation(ctx, raw)
        counts[outcome.status] += 1
        results.append(outcome.result())
        if outcome.status == CONFLICT and outcome.conflict is not None:
            conflict_list.append(serialize_conflict(outcome.conflict))
        if outcome.error is not None:
            errors.append(outcome.error)

    processing_time_ms = int((time.monotonic() - started) * 1000)
    SyncLog.objects.create(
        sync_type="BATCH",
        device_id=device_id,
        user=user,
        operations_count=len(operations),
        success_count=counts[SUCCESS],
        error_count=counts[FAILED],
        conflict_count=counts[CONFLICT],
        processing_time_ms=processing_time_ms,
    )
    logger.info(
        "Batch from %s: %s ok, %s conflicts, %s errors in %sms",
        device_id,
        counts[SUCCESS],
        counts[CONFLICT],
        counts[FAILED],
        processing_time_ms,
    )
    return {
        "sync_session_id": str(uuid.uuid4()),
        "success_count": counts[SUCCESS],
        "error_count": counts[FAILED],
        "conflict_count": counts[CONFLICT],
        "total_processed": len(operations),
        "results": results,
        "conflicts": conflict_list,
        "errors": errors,
        "processing_time_ms": processing_time_ms,
    }


def build_delta(
    since: Optional[datetime] = None,
    limit: Optional[int] = None,
    entity_types: Optional[List[str]] = None,
    user=None,
    device_id: str = "",
) -> Dict:
    """
    Changes with updated_at > since, oldest first. When the page is cut at `limit`,
    server_time is the timestamp of the last change returned so the next page resumes there.
    On the last page the cursor trails server_time by SYNC_DELTA_SAFETY_MARGIN_SECONDS, so a
    write that committed late with an earlier updated_at is still picked up by the next pull.
    """
    server_time = timezone.now()
    page_size = settings.SYNC_DELTA_PAGE_SIZE
    limit = min(limit or page_size, page_size)
    entity_types = entity_types or list(EntityType.values)

    changes = []
    for entity_type in entity_types:
        model = ENTITY_MODELS[entity_type]
        rows = model.objects.filter(updated_at__lte=server_time)
        tombstones = DeletedEntity.objects.filter(entity_type=entity_type, deleted_at__lte=server_time)
        if since is not None:
            rows = rows.filter(updated_at__gt=since)
            tombstones = tombstones.filter(deleted_at__gt=since)
        for instance in rows.order_by("updated_at")[: limit + 1]:
            changes.append((instance.updated_at, "update", entity_type, instance))
        for tombstone in tombstones.order_by("deleted_at")[: limit + 1]:
            changes.append((tombstone.deleted_at, "delete", entity_type, tombstone))

    changes.sort(key=lambda change: change[0])
    has_more = len(changes) > limit
    page = changes[:limit]

    updates = []
    deleted_ids = []
    for changed_at, change, entity_type, obj in page:
        if change == "update":
            updates.append(
                {
                    "entity_type": entity_type,
                    "entity_id": str(obj.pk),
                    "data": serialize_entity(entity_type, obj),
                    "updated_at": changed_at.isoformat(),
                }
            )
        else:
            deleted_ids.append(
                {"entity_type": entity_type, "entity_id": str(obj.entity_id), "deleted_at": changed_at.isoformat()}
            )

    if has_more:
        cursor = page[-1][0]
    else:
        cursor = server_time - timedelta(seconds=settings.SYNC_DELTA_SAFETY_MARGIN_SECONDS)
        if since is not None:
            cursor = max(cursor, since)
    SyncLog.objects.create(
        sync_type="DELTA",
        device_id=device_id,
        user=user,
        operations_count=len(page),
        success_count=len(page),
    )
    return {
        "updates": updates,
        "deleted_ids": deleted_ids,
        "server_time": cursor.isoformat(),
        "has_more": has_more,
    }


def list_pending_conflicts(
    user,
    entity_type: Optional[str] = None,
    conflict_type: Optional[str] = None,
    device_id: Optional[str] = None,
) -> QuerySet:
    qs = SyncConflict.objects.filter(resolved_at__isnull=True)
    if user is not None and not user.is_staff:
        qs = qs.filter(user=user)
    if entity_type:
        qs = qs.filter(entity_type=entity_type)
    if conflict_type:
        qs = qs.filter(conflict_type=conflict_type)
    if device_id:
        qs = qs.filter(device_id=device_id)
    return qs


def _apply_client_data(conflict: SyncConflict, data: Dict, delete: bool = False) -> None:
    model = ENTITY_MODELS[conflict.entity_type]
    instance = model.objects.select_for_update().filter(pk=conflict.entity_id).first()
    if instance is None:
        raise EntityGone()
    if delete:
        _delete_entity(conflict.entity_type, instance)
        return
    serializer = ENTITY_SERIALIZERS[conflict.entity_type](instance, data=data, partial=True)
    serializer.is_valid(raise_exception=True)
    serializer.save()


@transaction.atomic
def resolve_conflict(
    conflict_id,
    strategy: str,
    merged_data: Optional[Dict] = None,
    resolved_by: str = "",
    user=None,
) -> SyncConflict:
    qs = SyncConflict.objects.select_for_update()
    if user is not None and not user.is_staff:
        qs = qs.filter(user=user)
    conflict = get_object_or_404(qs, conflict_id=conflict_id)
    if conflict.is_resolved:
        raise ConflictAlreadyResolved()

    if strategy == ResolutionStrategy.CLIENT_WINS:
        _apply_client_data(
            conflict,
            conflict.local_data,
            delete=conflict.operation_kind == OperationKind.DELETE,
        )
    elif strategy == ResolutionStrategy.MANUAL:
        if not merged_data:
            raise serializers.ValidationError({"merged_data": "Required for MANUAL resolution."})
        _apply_client_data(conflict, merged_data)

    conflict.close(strategy, resolved_by)
    logger.info("Conflict %s resolved with %s by %s", conflict.conflict_id, strategy, resolved_by or "unknown")
    return conflict


def _has_converged(conflict: SyncConflict, instance) -> bool:
    if conflict.operation_kind == OperationKind.DELETE:
        return False
    serializer = ENTITY_SERIALIZERS[conflict.entity_type](instance, data=conflict.local_data, partial=True)
    if not serializer.is_valid() or not serializer.validated_data:
        return False
    return all(getattr(instance, attr) == value for attr, value in serializer.validated_data.items())


def reconcile_device(user, device_id: str) -> Dict:
    """
    Close pending conflicts for a device that no longer need a human: the entity
    is gone, or the server record already holds what the client tried to write.
    """
    started = time.monotonic()
    closed = 0
    pending = list(list_pending_conflicts(user, device_id=device_id))
    for conflict in pending:
        with transaction.atomic():
            model = ENTITY_MODELS[conflict.entity_type]
            instance = model.objects.select_for_update().filter(pk=conflict.entity_id).first()
            locked = SyncConflict.objects.select_for_update().get(pk=conflict.pk)
            if locked.is_resolved:
                continue
            if instance is None or _has_converged(locked, instance):
                locked.close(ResolutionStrategy.SERVER_WINS, "system")
                closed += 1

    remaining = len(pending) - closed
    SyncLog.objects.create(
        sync_type="FORCE",
        device_id=device_id,
        user=user,
        operations_count=len(pending),
        success_count=closed,
        conflict_count=remaining,
        processing_time_ms=int((time.monotonic() - started) * 1000),
    )
    logger.info("Forced reconciliation for %s closed %s of %s conflicts", device_id, closed, len(pending))
    return {
        "status": "completed",
        "device_id": device_id,
        "conflicts_checked": len(pending),
        "conflicts_closed": closed,
        "conflicts_pending": remaining,
        "server_time": timezone.now().isoformat(),
    }


def sync_status(user=None) -> Dict:
    return {
        "status": "active",
        "server_time": timezone.now().isoformat(),
        "version": settings.SYNC_PROTOCOL_VERSION,
        "entity_counts": {
            "products": Product.objects.count(),
            "sales": Sale.objects.count(),
            "stock_movements": StockMovement.objects.count(),
        },
        "pending_conflicts": list_pending_conflicts(user).count(),
    }
