import uuid

from django.conf import settings
from django.core.serializers.json import DjangoJSONEncoder
from django.db import models
from django.utils import timezone

from .exceptions import ConflictAlreadyResolved


class EntityType(models.TextChoices):
    PRODUCT = "PRODUCT", "Product"
    SALE = "SALE", "Sale"
    STOCK_MOVEMENT = "STOCK_MOVEMENT", "Stock movement"


class OperationKind(models.TextChoices):
    CREATE = "CREATE", "Create"
    UPDATE = "UPDATE", "Update"
    DELETE = "DELETE", "Delete"


class ConflictType(models.TextChoices):
    VERSION_MISMATCH = "VERSION_MISMATCH", "Version mismatch"
    DELETE_UPDATE = "DELETE_UPDATE", "Delete of an updated record"


class ResolutionStrategy(models.TextChoices):
    SERVER_WINS = "SERVER_WINS", "Server wins"
    CLIENT_WINS = "CLIENT_WINS", "Client wins"
    MANUAL = "MANUAL", "Manual merge"


class Product(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=255)
    description = models.TextField(blank=True)
    barcode = models.CharField(max_length=64, blank=True)
    category = models.CharField(max_length=120, blank=True)
    buy_price = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    sell_price = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    stock_qty = models.IntegerField(default=0)
    updated_at = models.DateTimeField(auto_now=True, db_index=True)
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self) -> str:
        return self.name


class Sale(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    sale_datetime = models.DateTimeField(default=timezone.now)
    total = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    payment_type = models.CharField(max_length=10, choices=[("cash", "cash"), ("card", "card")], default="cash")
    customer_name = models.CharField(max_length=255, blank=True)
    seller = models.CharField(max_length=120, blank=True)
    updated_at = models.DateTimeField(auto_now=True, db_index=True)
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self) -> str:
        return f"Sale {self.id}"


class StockMovement(models.Model):
    MOVEMENT_CHOICES = [
        ("IN", "In"),
        ("OUT", "Out"),
        ("ADJUSTMENT", "Adjustment"),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    product = models.ForeignKey(Product, null=True, blank=True, on_delete=models.SET_NULL, related_name="movements")
    quantity = models.IntegerField()
    movement_type = models.CharField(max_length=12, choices=MOVEMENT_CHOICES)
    reason = models.CharField(max_length=255, blank=True)
    updated_at = models.DateTimeField(auto_now=True, db_index=True)
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self) -> str:
        return f"{self.movement_type} {self.quantity}"


class DeletedEntity(models.Model):
    """Tombstone reported by delta sync after an entity row is gone."""

    entity_type = models.CharField(max_length=20, choices=EntityType.choices)
    entity_id = models.UUIDField()
    deleted_at = models.DateTimeField(default=timezone.now, db_index=True)

    class Meta:
        unique_together = [("entity_type", "entity_id")]

    def __str__(self) -> str:
        return f"{self.entity_type} {self.entity_id}"


class SyncConflict(models.Model):
    conflict_id = models.UUIDField(default=uuid.uuid4, unique=True, editable=False)
    conflict_type = models.CharField(max_length=20, choices=ConflictType.choices)
    entity_type = models.CharField(max_length=20, choices=EntityType.choices)
    entity_id = models.UUIDField()
    operation_kind = models.CharField(max_length=10, choices=OperationKind.choices)
    local_id = models.CharField(max_length=64)
    user = models.ForeignKey(settings.AUTH_USER_MODEL, null=True, blank=True, on_delete=models.SET_NULL)
    device_id = models.CharField(max_length=120, blank=True)
    local_data = models.JSONField(default=dict, blank=True, encoder=DjangoJSONEncoder)
    server_data = models.JSONField(default=dict, blank=True, encoder=DjangoJSONEncoder)
    detected_at = models.DateTimeField(auto_now_add=True)
    resolution_strategy = models.CharField(max_length=20, choices=ResolutionStrategy.choices, null=True, blank=True)
    resolved_at = models.DateTimeField(null=True, blank=True)
    resolved_by = models.CharField(max_length=150, blank=True)

    class Meta:
        ordering = ["detected_at"]

    def __str__(self) -> str:
        return f"{self.entity_type} {self.conflict_type}"

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None

    def close(self, strategy: str, resolved_by: str = "") -> None:
        if self.is_resolved:
            raise ConflictAlreadyResolved()
        self.resolution_strategy = strategy
        self.resolved_at = timezone.now()
        self.resolved_by = resolved_by
        self.save(update_fields=["resolution_strategy", "resolved_at", "resolved_by"])


class SyncOperationLog(models.Model):
    """Outcome of an applied operation, keyed by the client's local_id."""

    STATUS_CHOICES = [("SUCCESS", "SUCCESS"), ("CONFLICT", "CONFLICT")]

    local_id = models.CharField(max_length=64, unique=True)
    device_id = models.CharField(max_length=120, blank=True)
    user = models.ForeignKey(settings.AUTH_USER_MODEL, null=True, blank=True, on_delete=models.SET_NULL)
    entity_type = models.CharField(max_length=20, choices=EntityType.choices)
    entity_id = models.UUIDField(null=True, blank=True)
    kind = models.CharField(max_length=10, choices=OperationKind.choices)
    status = models.CharField(max_length=10, choices=STATUS_CHOICES)
    result = models.JSONField(default=dict, blank=True, encoder=DjangoJSONEncoder)
    conflict = models.ForeignKey(SyncConflict, null=True, blank=True, on_delete=models.SET_NULL)
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self) -> str:
        return f"{self.entity_type} {self.kind} {self.local_id}"


class SyncLog(models.Model):
    SYNC_TYPE_CHOICES = [("BATCH", "BATCH"), ("DELTA", "DELTA"), ("FORCE", "FORCE")]

    sync_type = models.CharField(max_length=10, choices=SYNC_TYPE_CHOICES)
    device_id = models.CharField(max_length=120, blank=True)
    user = models.ForeignKey(settings.AUTH_USER_MODEL, null=True, blank=True, on_delete=models.SET_NULL)
    operations_count = models.PositiveIntegerField(default=0)
    success_count = models.PositiveIntegerField(default=0)
    error_count = models.PositiveIntegerField(default=0)
    conflict_count = models.PositiveIntegerField(default=0)
    processing_time_ms = models.PositiveIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self) -> str:
        return f"{self.sync_type} {self.device_id} {self.created_at:%Y-%m-%d %H:%M}"
