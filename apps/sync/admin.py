from django.contrib import admin, messages

from . import services
from .exceptions import ConflictAlreadyResolved
from .models import (
    DeletedEntity,
    Product,
    ResolutionStrategy,
    Sale,
    StockMovement,
    SyncConflict,
    SyncLog,
    SyncOperationLog,
)


@admin.register(Product)
class ProductAdmin(admin.ModelAdmin):
    list_display = ("name", "barcode", "category", "sell_price", "stock_qty", "updated_at")
    search_fields = ("name", "barcode")
    list_filter = ("category",)


@admin.register(Sale)
class SaleAdmin(admin.ModelAdmin):
    list_display = ("id", "sale_datetime", "total", "payment_type", "customer_name", "updated_at")
    list_filter = ("payment_type",)


@admin.register(StockMovement)
class StockMovementAdmin(admin.ModelAdmin):
    list_display = ("product", "movement_type", "quantity", "reason", "updated_at")
    list_filter = ("movement_type",)


@admin.register(DeletedEntity)
class DeletedEntityAdmin(admin.ModelAdmin):
    list_display = ("entity_type", "entity_id", "deleted_at")
    list_filter = ("entity_type",)
    search_fields = ("entity_id",)


@admin.register(SyncOperationLog)
class SyncOperationLogAdmin(admin.ModelAdmin):
    list_display = ("local_id", "entity_type", "kind", "device_id", "status", "created_at")
    list_filter = ("entity_type", "kind", "status")
    search_fields = ("local_id", "device_id", "entity_id")


@admin.register(SyncConflict)
class SyncConflictAdmin(admin.ModelAdmin):
    list_display = ("entity_type", "entity_id", "conflict_type", "device_id", "resolution_strategy", "detected_at")
    list_filter = ("entity_type", "conflict_type", "resolution_strategy")
    search_fields = ("entity_id", "local_id", "device_id")
    readonly_fields = ("resolution_strategy", "resolved_at", "resolved_by")
    actions = ["resolve_server_wins"]

    @admin.action(description="Resolve selected conflicts: server wins")
    def resolve_server_wins(self, request, queryset):
        resolved = 0
        for conflict in queryset.filter(resolved_at__isnull=True):
            try:
                services.resolve_conflict(
                    conflict.conflict_id,
                    ResolutionStrategy.SERVER_WINS,
                    resolved_by=request.user.get_username(),
                )
            except ConflictAlreadyResolved:
                continue
            resolved += 1
        self.message_user(request, f"{resolved} conflict(s) resolved.", messages.SUCCESS)


@admin.register(SyncLog)
class SyncLogAdmin(admin.ModelAdmin):
    list_display = ("sync_type", "device_id", "operations_count", "success_count", "conflict_count", "error_count", "created_at")
    list_filter = ("sync_type",)
    search_fields = ("device_id",)
