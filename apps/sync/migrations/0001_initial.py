from django.conf import settings
from django.db import migrations, models
import django.core.serializers.json
import django.db.models.deletion
import django.utils.timezone
import uuid


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Product",
            fields=[
                ("id", models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False, serialize=False)),
                ("name", models.CharField(max_length=255)),
                ("description", models.TextField(blank=True)),
                ("barcode", models.CharField(max_length=64, blank=True)),
                ("category", models.CharField(max_length=120, blank=True)),
                ("buy_price", models.DecimalField(max_digits=12, decimal_places=2, default=0)),
                ("sell_price", models.DecimalField(max_digits=12, decimal_places=2, default=0)),
                ("stock_qty", models.IntegerField(default=0)),
                ("updated_at", models.DateTimeField(auto_now=True, db_index=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
        ),
        migrations.CreateModel(
            name="Sale",
            fields=[
                ("id", models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False, serialize=False)),
                ("sale_datetime", models.DateTimeField(default=django.utils.timezone.now)),
                ("total", models.DecimalField(max_digits=12, decimal_places=2, default=0)),
                ("payment_type", models.CharField(max_length=10, choices=[("cash", "cash"), ("card", "card")], default="cash")),
                ("customer_name", models.CharField(max_length=255, blank=True)),
                ("seller", models.CharField(max_length=120, blank=True)),
                ("updated_at", models.DateTimeField(auto_now=True, db_index=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
        ),
        migrations.CreateModel(
            name="StockMovement",
            fields=[
                ("id", models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False, serialize=False)),
                ("quantity", models.IntegerField()),
                (
                    "movement_type",
                    models.CharField(
                        max_length=12,
                        choices=[("IN", "In"), ("OUT", "Out"), ("ADJUSTMENT", "Adjustment")],
                    ),
                ),
                ("reason", models.CharField(max_length=255, blank=True)),
                ("updated_at", models.DateTimeField(auto_now=True, db_index=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "product",
                    models.ForeignKey(
                        null=True,
                        blank=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="movements",
                        to="sync.product",
                    ),
                ),
            ],
        ),
        migrations.CreateModel(
            name="DeletedEntity",
            fields=[
                ("id", models.BigAutoField(primary_key=True, serialize=False)),
                (
                    "entity_type",
                    models.CharField(
                        max_length=20,
                        choices=[("PRODUCT", "Product"), ("SALE", "Sale"), ("STOCK_MOVEMENT", "Stock movement")],
                    ),
                ),
                ("entity_id", models.UUIDField()),
                ("deleted_at", models.DateTimeField(default=django.utils.timezone.now, db_index=True)),
            ],
            options={"unique_together": {("entity_type", "entity_id")}},
        ),
        migrations.CreateModel(
            name="SyncConflict",
            fields=[
                ("id", models.BigAutoField(primary_key=True, serialize=False)),
                ("conflict_id", models.UUIDField(default=uuid.uuid4, unique=True, editable=False)),
                (
                    "conflict_type",
                    models.CharField(
                        max_length=20,
                        choices=[("VERSION_MISMATCH", "Version mismatch"), ("DELETE_UPDATE", "Delete of an updated record")],
                    ),
                ),
                (
                    "entity_type",
                    models.CharField(
                        max_length=20,
                        choices=[("PRODUCT", "Product"), ("SALE", "Sale"), ("STOCK_MOVEMENT", "Stock movement")],
                    ),
                ),
                ("entity_id", models.UUIDField()),
                (
                    "operation_kind",
                    models.CharField(
                        max_length=10,
                        choices=[("CREATE", "Create"), ("UPDATE", "Update"), ("DELETE", "Delete")],
                    ),
                ),
                ("local_id", models.CharField(max_length=64)),
                ("device_id", models.CharField(max_length=120, blank=True)),
                ("local_data", models.JSONField(default=dict, blank=True, encoder=django.core.serializers.json.DjangoJSONEncoder)),
                ("server_data", models.JSONField(default=dict, blank=True, encoder=django.core.serializers.json.DjangoJSONEncoder)),
                ("detected_at", models.DateTimeField(auto_now_add=True)),
                (
                    "resolution_strategy",
                    models.CharField(
                        max_length=20,
                        null=True,
                        blank=True,
                        choices=[("SERVER_WINS", "Server wins"), ("CLIENT_WINS", "Client wins"), ("MANUAL", "Manual merge")],
                    ),
                ),
                ("resolved_at", models.DateTimeField(null=True, blank=True)),
                ("resolved_by", models.CharField(max_length=150, blank=True)),
                (
                    "user",
                    models.ForeignKey(
                        null=True,
                        blank=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={"ordering": ["detected_at"]},
        ),
        migrations.CreateModel(
            name="SyncOperationLog",
            fields=[
                ("id", models.BigAutoField(primary_key=True, serialize=False)),
                ("local_id", models.CharField(max_length=64, unique=True)),
                ("device_id", models.CharField(max_length=120, blank=True)),
                (
                    "entity_type",
                    models.CharField(
                        max_length=20,
                        choices=[("PRODUCT", "Product"), ("SALE", "Sale"), ("STOCK_MOVEMENT", "Stock movement")],
                    ),
                ),
                ("entity_id", models.UUIDField(null=True, blank=True)),
                (
                    "kind",
                    models.CharField(
                        max_length=10,
                        choices=[("CREATE", "Create"), ("UPDATE", "Update"), ("DELETE", "Delete")],
                    ),
                ),
                ("status", models.CharField(max_length=10, choices=[("SUCCESS", "SUCCESS"), ("CONFLICT", "CONFLICT")])),
                ("result", models.JSONField(default=dict, blank=True, encoder=django.core.serializers.json.DjangoJSONEncoder)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "conflict",
                    models.ForeignKey(
                        null=True,
                        blank=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        to="sync.syncconflict",
                    ),
                ),
                (
                    "user",
                    models.ForeignKey(
                        null=True,
                        blank=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
        ),
        migrations.CreateModel(
            name="SyncLog",
            fields=[
                ("id", models.BigAutoField(primary_key=True, serialize=False)),
                (
                    "sync_type",
                    models.CharField(max_length=10, choices=[("BATCH", "BATCH"), ("DELTA", "DELTA"), ("FORCE", "FORCE")]),
                ),
                ("device_id", models.CharField(max_length=120, blank=True)),
                ("operations_count", models.PositiveIntegerField(default=0)),
                ("success_count", models.PositiveIntegerField(default=0)),
                ("error_count", models.PositiveIntegerField(default=0)),
                ("conflict_count", models.PositiveIntegerField(default=0)),
                ("processing_time_ms", models.PositiveIntegerField(default=0)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "user",
                    models.ForeignKey(
                        null=True,
                        blank=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
        ),
    ]
