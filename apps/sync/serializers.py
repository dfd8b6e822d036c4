from django.conf import settings
from rest_framework import serializers

from .models import (
    ConflictType,
    EntityType,
    OperationKind,
    Product,
    ResolutionStrategy,
    Sale,
    StockMovement,
    SyncConflict,
)


class ProductSerializer(serializers.ModelSerializer):
    class Meta:
        model = Product
        fields = [
            "id",
            "name",
            "description",
            "barcode",
            "category",
            "buy_price",
            "sell_price",
            "stock_qty",
            "updated_at",
        ]
        read_only_fields = ["id", "updated_at"]


class SaleSerializer(serializers.ModelSerializer):
    class Meta:
        model = Sale
        fields = ["id", "sale_datetime", "total", "payment_type", "customer_name", "seller", "updated_at"]
        read_only_fields = ["id", "updated_at"]

    def validate_total(self, value):
        if value < 0:
            raise serializers.ValidationError("Total cannot be negative.")
        return value


class StockMovementSerializer(serializers.ModelSerializer):
    product_id = serializers.PrimaryKeyRelatedField(
        source="product",
        queryset=Product.objects.all(),
        pk_field=serializers.UUIDField(format="hex_verbose"),
        allow_null=True,
        required=False,
    )

    class Meta:
        model = StockMovement
        fields = ["id", "product_id", "quantity", "movement_type", "reason", "updated_at"]
        read_only_fields = ["id", "updated_at"]


# Payload schema per entity type; the wire payload is validated against one of these.
ENTITY_SERIALIZERS = {
    EntityType.PRODUCT: ProductSerializer,
    EntityType.SALE: SaleSerializer,
    EntityType.STOCK_MOVEMENT: StockMovementSerializer,
}


class SyncOperationSerializer(serializers.Serializer):
    local_id = serializers.CharField(max_length=64)
    entity_type = serializers.ChoiceField(choices=EntityType.choices)
    entity_id = serializers.CharField(max_length=64, required=False, allow_blank=True, allow_null=True, default="")
    kind = serializers.ChoiceField(choices=OperationKind.choices)
    payload = serializers.DictField(required=False, default=dict)
    client_timestamp = serializers.DateTimeField(required=False, allow_null=True)
    priority = serializers.IntegerField(required=False, min_value=0)

    def validate(self, attrs):
        if attrs["kind"] != OperationKind.CREATE and not attrs.get("entity_id"):
            raise serializers.ValidationError({"entity_id": "Required for UPDATE and DELETE."})
        return attrs


class SyncBatchRequestSerializer(serializers.Serializer):
    device_id = serializers.CharField(max_length=120)
    user_id = serializers.CharField(max_length=120, required=False, allow_blank=True, allow_null=True)
    operations = serializers.ListField(child=serializers.DictField(), allow_empty=True)

    def validate_operations(self, value):
        limit = settings.SYNC_MAX_BATCH_SIZE
        if len(value) > limit:
            raise serializers.ValidationError(f"At most {limit} operations per batch.")
        return value


class DeltaQuerySerializer(serializers.Serializer):
    since = serializers.DateTimeField(required=False, allow_null=True)
    limit = serializers.IntegerField(required=False, min_value=1)
    entity_types = serializers.CharField(required=False, allow_blank=True)

    def validate_entity_types(self, value):
        names = [item.strip().upper() for item in value.split(",") if item.strip()]
        unknown = [name for name in names if name not in EntityType.values]
        if unknown:
            raise serializers.ValidationError(f"Unknown entity types: {', '.join(unknown)}")
        return names


class ForceSyncSerializer(serializers.Serializer):
    device_id = serializers.CharField(max_length=120)


class SyncConflictSerializer(serializers.ModelSerializer):
    class Meta:
        model = SyncConflict
        fields = [
            "conflict_id",
            "conflict_type",
            "entity_type",
            "entity_id",
            "operation_kind",
            "local_id",
            "device_id",
            "local_data",
            "server_data",
            "detected_at",
            "resolution_strategy",
            "resolved_at",
            "resolved_by",
        ]


class ConflictFilterSerializer(serializers.Serializer):
    entity_type = serializers.ChoiceField(choices=EntityType.choices, required=False)
    conflict_type = serializers.ChoiceField(choices=ConflictType.choices, required=False)
    device_id = serializers.CharField(max_length=120, required=False)


class ConflictResolveSerializer(serializers.Serializer):
    strategy = serializers.ChoiceField(choices=ResolutionStrategy.choices)
    merged_data = serializers.DictField(required=False, allow_null=True)

    def validate(self, attrs):
        if attrs["strategy"] == ResolutionStrategy.MANUAL and not attrs.get("merged_data"):
            raise serializers.ValidationError({"merged_data": "Required for MANUAL resolution."})
        return attrs
