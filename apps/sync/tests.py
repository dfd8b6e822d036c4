from datetime import datetime, timedelta, timezone as dt_timezone
from decimal import Decimal
from unittest import mock
from uuid import uuid4

from django.contrib.auth import get_user_model
from django.core.exceptions import ImproperlyConfigured
from django.db import IntegrityError
from django.test import SimpleTestCase, override_settings
from django.utils import timezone
from django.utils.dateparse import parse_datetime
from rest_framework.exceptions import ValidationError
from rest_framework.test import APITestCase
from rest_framework_simplejwt.tokens import RefreshToken

from sync_client.config import SyncClientConfig
from sync_client.connectivity import ManualConnectivity
from sync_client.models import EntityType as ClientEntityType
from sync_client.models import Operation, OperationKind as ClientKind, OperationStatus
from sync_client.orchestrator import SyncOrchestrator
from sync_client.queue import OperationQueue
from sync_client.storage import CursorStore, LocalDatabase, SQLiteEntityStore
from sync_client.transport import SyncTransport, check_response, delta_params

from . import checks, conflicts, services
from .models import (
    ConflictType,
    DeletedEntity,
    OperationKind,
    Product,
    Sale,
    StockMovement,
    SyncConflict,
    SyncLog,
    SyncOperationLog,
)

T0 = datetime(2020, 1, 1, 9, 0, tzinfo=dt_timezone.utc)
T1 = datetime(2020, 1, 1, 9, 5, tzinfo=dt_timezone.utc)


def set_updated_at(model, pk, value):
    model.objects.filter(pk=pk).update(updated_at=value)


class ConflictClassificationTests(SimpleTestCase):
    def test_rules(self):
        self.assertEqual(conflicts.classify(OperationKind.CREATE, None, None).outcome, conflicts.APPLY)
        self.assertEqual(conflicts.classify(OperationKind.UPDATE, T0, None).outcome, conflicts.ALREADY_DELETED)
        self.assertEqual(conflicts.classify(OperationKind.DELETE, T0, None).outcome, conflicts.ALREADY_DELETED)
        self.assertEqual(conflicts.classify(OperationKind.UPDATE, T0, T0).outcome, conflicts.APPLY)
        self.assertEqual(conflicts.classify(OperationKind.UPDATE, T0, T1).conflict_type, ConflictType.VERSION_MISMATCH)
        self.assertEqual(conflicts.classify(OperationKind.UPDATE, T1, T0).conflict_type, ConflictType.VERSION_MISMATCH)
        self.assertEqual(conflicts.classify(OperationKind.DELETE, T0, T1).conflict_type, ConflictType.DELETE_UPDATE)
        self.assertEqual(conflicts.classify(OperationKind.DELETE, T1, T0).outcome, conflicts.APPLY)

    def test_base_updated_at_parsing(self):
        self.assertEqual(conflicts.parse_base_updated_at({"base_updated_at": "2020-01-01T09:00:00Z"}), T0)
        self.assertEqual(conflicts.parse_base_updated_at({"base_updated_at": "2020-01-01T09:00:00"}), T0)
        for payload in ({}, {"base_updated_at": "yesterday"}):
            with self.assertRaises(ValidationError):
                conflicts.parse_base_updated_at(payload)


class SyncApiTestCase(APITestCase):
    def setUp(self):
        self.user = get_user_model().objects.create_user(username="tester", password="pass1234")
        self.authenticate(self.user)

    def authenticate(self, user):
        token = RefreshToken.for_user(user)
        self.client.credentials(HTTP_AUTHORIZATION=f"Bearer {token.access_token}")

    def _batch(self, operations, device_id="device-1"):
        return self.client.post("/api/sync/batch", {"device_id": device_id, "operations": operations}, format="json")

    def _product(self, name="Tea", updated_at=T0, **fields):
        product = Product.objects.create(name=name, sell_price=Decimal("10.00"), **fields)
        set_updated_at(Product, product.pk, updated_at)
        product.refresh_from_db()
        return product

    @staticmethod
    def _op(kind, payload, entity_id="", entity_type="PRODUCT", local_id=None):
        return {
            "local_id": local_id or str(uuid4()),
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "kind": kind,
            "payload": payload,
            "client_timestamp": timezone.now().isoformat(),
        }


class BatchSyncTests(SyncApiTestCase):
    def test_create_returns_server_id_and_replay_is_idempotent(self):
        op = self._op("CREATE", {"name": "Green tea", "sell_price": "12.50"})

        first = self._batch([op])
        second = self._batch([op])

        self.assertEqual(first.status_code, 200)
        self.assertEqual(first.data["success_count"], 1)
        server_id = first.data["results"][0]["server_id"]
        self.assertEqual(str(Product.objects.get().pk), server_id)
        self.assertEqual(second.data["results"][0]["server_id"], server_id)
        self.assertEqual(second.data["results"][0]["status"], "SUCCESS")
        self.assertEqual(Product.objects.count(), 1)
        self.assertEqual(SyncOperationLog.objects.count(), 1)

    def test_update_with_current_base_is_applied(self):
        product = self._product()
        resp = self._batch([self._op("UPDATE", {"name": "Black tea", "base_updated_at": T0.isoformat()}, product.pk)])

        product.refresh_from_db()
        self.assertEqual(resp.data["success_count"], 1)
        self.assertEqual(product.name, "Black tea")
        self.assertGreater(product.updated_at, T0)

    def test_stale_update_is_a_version_mismatch(self):
        # Client read the product at 09:00, the server changed it at 09:05.
        product = self._product(updated_at=T1)
        op = self._op("UPDATE", {"name": "Client name", "base_updated_at": T0.isoformat()}, product.pk)

        resp = self._batch([op])

        product.refresh_from_db()
        self.assertEqual(resp.data["conflict_count"], 1)
        self.assertEqual(len(resp.data["conflicts"]), 1)
        conflict = resp.data["conflicts"][0]
        self.assertEqual(conflict["conflict_type"], "VERSION_MISMATCH")
        self.assertEqual(str(conflict["entity_id"]), str(product.pk))
        self.assertEqual(conflict["local_data"]["name"], "Client name")
        self.assertEqual(conflict["server_data"]["name"], "Tea")
        self.assertEqual(conflict["suggested_resolution"], "SERVER_WINS")
        self.assertEqual(resp.data["results"][0]["conflict_id"], str(conflict["conflict_id"]))
        self.assertEqual(product.name, "Tea")
        self.assertEqual(product.updated_at, T1)

    def test_replayed_conflict_does_not_record_a_second_one(self):
        product = self._product(updated_at=T1)
        op = self._op("UPDATE", {"name": "Client name", "base_updated_at": T0.isoformat()}, product.pk)

        first = self._batch([op])
        second = self._batch([op])

        self.assertEqual(SyncConflict.objects.count(), 1)
        self.assertEqual(second.data["conflict_count"], 1)
        self.assertEqual(second.data["conflicts"][0]["conflict_id"], first.data["conflicts"][0]["conflict_id"])

    def test_delete_of_updated_record_is_delete_update(self):
        product = self._product(updated_at=T1)
        resp = self._batch([self._op("DELETE", {"base_updated_at": T0.isoformat()}, product.pk)])

        self.assertEqual(resp.data["conflict_count"], 1)
        self.assertEqual(resp.data["conflicts"][0]["conflict_type"], "DELETE_UPDATE")
        self.assertTrue(Product.objects.filter(pk=product.pk).exists())

    def test_delete_with_current_base_leaves_a_tombstone(self):
        product = self._product()
        resp = self._batch([self._op("DELETE", {"base_updated_at": T0.isoformat()}, product.pk)])

        self.assertEqual(resp.data["success_count"], 1)
        self.assertFalse(Product.objects.filter(pk=product.pk).exists())
        self.assertTrue(DeletedEntity.objects.filter(entity_type="PRODUCT", entity_id=product.pk).exists())

    def test_change_to_missing_record_is_a_noop_success(self):
        missing = uuid4()
        resp = self._batch(
            [
                self._op("UPDATE", {"name": "X", "base_updated_at": T0.isoformat()}, missing),
                self._op("DELETE", {"base_updated_at": T0.isoformat()}, missing),
            ]
        )
        self.assertEqual(resp.data["success_count"], 2)
        self.assertEqual(resp.data["conflict_count"], 0)
        self.assertEqual(resp.data["results"][0]["message"], "already deleted")
        self.assertEqual(SyncConflict.objects.count(), 0)

    def test_mixed_batch_reports_each_outcome(self):
        product = self._product(updated_at=T1)
        resp = self._batch(
            [
                self._op("CREATE", {"name": "Coffee", "sell_price": "20.00"}),
                self._op("UPDATE", {"name": "Stale", "base_updated_at": T0.isoformat()}, product.pk),
            ]
        )
        self.assertEqual(resp.data["success_count"], 1)
        self.assertEqual(resp.data["conflict_count"], 1)
        self.assertEqual(resp.data["error_count"], 0)
        self.assertEqual(resp.data["total_processed"], 2)
        self.assertEqual([r["status"] for r in resp.data["results"]], ["SUCCESS", "CONFLICT"])
        self.assertEqual(SyncLog.objects.filter(sync_type="BATCH").count(), 1)

    def test_validation_error_does_not_block_siblings(self):
        resp = self._batch(
            [
                self._op("CREATE", {"sell_price": "1.00"}),
                self._op("CREATE", {"name": "Valid"}),
                self._op("CREATE", {"total": "-5"}, entity_type="SALE"),
            ]
        )
        self.assertEqual(resp.data["success_count"], 1)
        self.assertEqual(resp.data["error_count"], 2)
        codes = {error["error_code"] for error in resp.data["errors"]}
        self.assertEqual(codes, {"VALIDATION_ERROR"})
        self.assertFalse(any(error["retryable"] for error in resp.data["errors"]))
        self.assertIn("name", resp.data["errors"][0]["error_message"])
        self.assertEqual(Sale.objects.count(), 0)

    def test_failed_operation_is_not_remembered_for_replay(self):
        op = self._op("CREATE", {"sell_price": "1.00"})
        self._batch([op])
        self.assertFalse(SyncOperationLog.objects.filter(local_id=op["local_id"]).exists())

    def test_update_without_base_updated_at_is_rejected(self):
        product = self._product()
        resp = self._batch([self._op("UPDATE", {"name": "X"}, product.pk)])
        self.assertEqual(resp.data["error_count"], 1)
        self.assertIn("base_updated_at", resp.data["errors"][0]["error_message"])

    def test_temporary_ids_are_resolved_within_the_batch(self):
        create = self._op("CREATE", {"name": "Sugar"})
        resp = self._batch(
            [
                create,
                self._op("UPDATE", {"name": "Brown sugar", "base_updated_at": None}, create["local_id"]),
                self._op(
                    "CREATE",
                    {"product_id": create["local_id"], "quantity": 5, "movement_type": "IN"},
                    entity_type="STOCK_MOVEMENT",
                ),
            ]
        )
        self.assertEqual(resp.data["success_count"], 3)
        product = Product.objects.get()
        self.assertEqual(product.name, "Brown sugar")
        self.assertEqual(StockMovement.objects.get().product_id, product.pk)

    def test_temporary_id_from_an_earlier_batch_is_resolved(self):
        create = self._op("CREATE", {"name": "Salt"})
        self._batch([create])
        resp = self._batch([self._op("UPDATE", {"stock_qty": 4, "base_updated_at": None}, create["local_id"])])
        self.assertEqual(resp.data["success_count"], 1)
        self.assertEqual(Product.objects.get().stock_qty, 4)

    def test_null_base_is_rejected_for_records_of_other_devices(self):
        product = self._product()
        resp = self._batch([self._op("UPDATE", {"name": "X", "base_updated_at": None}, product.pk)])
        self.assertEqual(resp.data["error_count"], 1)

    def test_update_then_delete_in_one_batch_both_apply(self):
        product = self._product()
        resp = self._batch(
            [
                self._op("UPDATE", {"name": "Black tea", "base_updated_at": T0.isoformat()}, product.pk),
                self._op("DELETE", {"base_updated_at": T0.isoformat()}, product.pk),
            ]
        )

        self.assertEqual(resp.data["success_count"], 2)
        self.assertEqual(resp.data["conflict_count"], 0)
        self.assertIn("updated_at", resp.data["results"][0])
        self.assertFalse(Product.objects.filter(pk=product.pk).exists())
        self.assertEqual(SyncConflict.objects.count(), 0)

    def test_consecutive_updates_in_one_batch_both_apply(self):
        product = self._product()
        resp = self._batch(
            [
                self._op("UPDATE", {"name": "Black tea", "base_updated_at": T0.isoformat()}, product.pk),
                self._op("UPDATE", {"stock_qty": 3, "base_updated_at": T0.isoformat()}, product.pk),
            ]
        )

        product.refresh_from_db()
        self.assertEqual(resp.data["success_count"], 2)
        self.assertEqual((product.name, product.stock_qty), ("Black tea", 3))
        self.assertEqual(resp.data["results"][1]["updated_at"], product.updated_at.isoformat())

    def test_base_older_than_a_foreign_write_still_conflicts(self):
        product = self._product()
        update = self._op("UPDATE", {"name": "Black tea", "base_updated_at": T0.isoformat()}, product.pk)
        self._batch([update])
        Product.objects.filter(pk=product.pk).update(name="Other device", updated_at=T1 + timedelta(days=1))

        resp = self._batch([self._op("DELETE", {"base_updated_at": T0.isoformat()}, product.pk)])

        self.assertEqual(resp.data["conflicts"][0]["conflict_type"], "DELETE_UPDATE")
        self.assertTrue(Product.objects.filter(pk=product.pk).exists())

    def test_retried_batch_rebases_on_the_replayed_update(self):
        product = self._product()
        update = self._op("UPDATE", {"name": "Black tea", "base_updated_at": T0.isoformat()}, product.pk)
        self._batch([update])

        resp = self._batch([update, self._op("DELETE", {"base_updated_at": T0.isoformat()}, product.pk)])

        self.assertEqual(resp.data["success_count"], 2)
        self.assertFalse(Product.objects.filter(pk=product.pk).exists())

    def test_integrity_error_fails_only_its_operation(self):
        product = self._product()
        with mock.patch("apps.sync.services._apply", side_effect=[IntegrityError("FOREIGN KEY constraint failed")]):
            resp = self._batch([self._op("UPDATE", {"name": "X", "base_updated_at": T0.isoformat()}, product.pk)])

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.data["error_count"], 1)
        self.assertEqual(resp.data["errors"][0]["error_code"], "SERVER_ERROR")
        self.assertTrue(resp.data["errors"][0]["retryable"])

    @override_settings(SYNC_DEFAULT_RESOLUTION="CLIENT_WINS")
    def test_client_wins_policy_applies_stale_writes(self):
        product = self._product(updated_at=T1)
        resp = self._batch([self._op("UPDATE", {"name": "Client name", "base_updated_at": T0.isoformat()}, product.pk)])

        product.refresh_from_db()
        conflict = SyncConflict.objects.get()
        self.assertEqual(resp.data["success_count"], 1)
        self.assertEqual(resp.data["conflict_count"], 0)
        self.assertEqual(resp.data["conflicts"], [])
        self.assertEqual(resp.data["results"][0]["conflict_id"], str(conflict.conflict_id))
        self.assertEqual(product.name, "Client name")
        self.assertEqual((conflict.resolution_strategy, conflict.resolved_by), ("CLIENT_WINS", "policy"))

    @override_settings(SYNC_DEFAULT_RESOLUTION="CLIENT_WINS")
    def test_client_wins_policy_applies_stale_deletes(self):
        product = self._product(updated_at=T1)
        resp = self._batch([self._op("DELETE", {"base_updated_at": T0.isoformat()}, product.pk)])

        self.assertEqual(resp.data["success_count"], 1)
        self.assertFalse(Product.objects.filter(pk=product.pk).exists())
        self.assertIsNotNone(SyncConflict.objects.get().resolved_at)

    @override_settings(SYNC_DEFAULT_RESOLUTION="MANUAL")
    def test_manual_policy_leaves_conflicts_for_a_human(self):
        product = self._product(updated_at=T1)
        resp = self._batch([self._op("UPDATE", {"name": "Client name", "base_updated_at": T0.isoformat()}, product.pk)])

        self.assertEqual(resp.data["conflict_count"], 1)
        self.assertEqual(resp.data["conflicts"][0]["suggested_resolution"], "MANUAL")
        self.assertIsNone(SyncConflict.objects.get().resolved_at)

    def test_unknown_default_resolution_is_reported(self):
        with override_settings(SYNC_DEFAULT_RESOLUTION="LAST_WRITE_WINS"):
            with self.assertRaises(ImproperlyConfigured):
                services.default_resolution()
            self.assertEqual([error.id for error in checks.check_default_resolution(None)], ["sync.E001"])
        self.assertEqual(checks.check_default_resolution(None), [])

    @override_settings(SYNC_MAX_BATCH_SIZE=2)
    def test_oversized_batch_is_rejected(self):
        resp = self._batch([self._op("CREATE", {"name": f"p{i}"}) for i in range(3)])
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(Product.objects.count(), 0)

    def test_malformed_envelope_is_rejected(self):
        resp = self.client.post("/api/sync/batch", {"operations": []}, format="json")
        self.assertEqual(resp.status_code, 400)

    def test_malformed_operation_is_reported_per_operation(self):
        resp = self._batch([{"local_id": "x", "entity_type": "INVOICE", "kind": "CREATE"}])
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.data["errors"][0]["error_code"], "VALIDATION_ERROR")

    def test_authentication_is_required(self):
        self.client.credentials()
        resp = self._batch([])
        self.assertEqual(resp.status_code, 401)


class DeltaSyncTests(SyncApiTestCase):
    @override_settings(SYNC_DELTA_SAFETY_MARGIN_SECONDS=0)
    def test_delta_returns_updates_and_tombstones(self):
        kept = self._product("Kept")
        gone = self._product("Gone")
        self._batch([self._op("DELETE", {"base_updated_at": T0.isoformat()}, gone.pk)])

        resp = self.client.get("/api/sync/delta")

        self.assertEqual(resp.status_code, 200)
        self.assertEqual([u["entity_id"] for u in resp.data["updates"]], [str(kept.pk)])
        self.assertEqual(resp.data["updates"][0]["data"]["name"], "Kept")
        self.assertEqual(resp.data["deleted_ids"][0]["entity_type"], "PRODUCT")
        self.assertEqual(resp.data["deleted_ids"][0]["entity_id"], str(gone.pk))
        self.assertFalse(resp.data["has_more"])

        again = self.client.get("/api/sync/delta", {"since": resp.data["server_time"]})
        self.assertEqual(again.data["updates"], [])
        self.assertEqual(again.data["deleted_ids"], [])

    def test_delta_pages_resume_from_last_change(self):
        for minute in range(3):
            self._product(f"p{minute}", updated_at=T0 + timedelta(minutes=minute))

        first = self.client.get("/api/sync/delta", {"limit": 2})
        self.assertTrue(first.data["has_more"])
        self.assertEqual([u["data"]["name"] for u in first.data["updates"]], ["p0", "p1"])
        self.assertEqual(first.data["server_time"], first.data["updates"][-1]["updated_at"])

        second = self.client.get("/api/sync/delta", {"since": first.data["server_time"], "limit": 2})
        self.assertFalse(second.data["has_more"])
        self.assertEqual([u["data"]["name"] for u in second.data["updates"]], ["p2"])

    def test_last_page_cursor_trails_server_time(self):
        first = self.client.get("/api/sync/delta")
        # A write stamped before the first pull's server_time that committed after it.
        late = self._product("Late", updated_at=timezone.now() - timedelta(seconds=2))

        second = self.client.get("/api/sync/delta", {"since": first.data["server_time"]})

        self.assertEqual([u["entity_id"] for u in second.data["updates"]], [str(late.pk)])
        self.assertGreaterEqual(parse_datetime(second.data["server_time"]), parse_datetime(first.data["server_time"]))

    def test_delta_filters_entity_types(self):
        self._product()
        Sale.objects.create(total=Decimal("5.00"))
        resp = self.client.get("/api/sync/delta", {"entity_types": "sale"})
        self.assertEqual({u["entity_type"] for u in resp.data["updates"]}, {"SALE"})

        bad = self.client.get("/api/sync/delta", {"entity_types": "INVOICE"})
        self.assertEqual(bad.status_code, 400)


class ConflictResolutionTests(SyncApiTestCase):
    def _conflict(self, kind="UPDATE", name="Client name"):
        product = self._product(updated_at=T1)
        payload = {"base_updated_at": T0.isoformat()}
        if kind == "UPDATE":
            payload["name"] = name
        resp = self._batch([self._op(kind, payload, product.pk)])
        return product, resp.data["conflicts"][0]["conflict_id"]

    def _resolve(self, conflict_id, strategy, merged_data=None):
        body = {"strategy": strategy}
        if merged_data is not None:
            body["merged_data"] = merged_data
        return self.client.post(f"/api/sync/conflicts/{conflict_id}/resolve", body, format="json")

    def test_pending_conflicts_are_listed_for_their_user(self):
        self._conflict()
        resp = self.client.get("/api/sync/conflicts")
        self.assertEqual(len(resp.data), 1)
        self.assertEqual(len(self.client.get("/api/sync/conflicts", {"conflict_type": "DELETE_UPDATE"}).data), 0)

        self.authenticate(get_user_model().objects.create_user(username="other", password="pass1234"))
        self.assertEqual(self.client.get("/api/sync/conflicts").data, [])

    def test_client_wins_reapplies_local_data(self):
        product, conflict_id = self._conflict()

        resp = self._resolve(conflict_id, "CLIENT_WINS")

        product.refresh_from_db()
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.data["resolution_strategy"], "CLIENT_WINS")
        self.assertEqual(resp.data["resolved_by"], "tester")
        self.assertEqual(product.name, "Client name")
        self.assertGreater(product.updated_at, T1)
        self.assertEqual(self.client.get("/api/sync/conflicts").data, [])

    def test_client_wins_on_delete_conflict_deletes(self):
        product, conflict_id = self._conflict(kind="DELETE")
        self._resolve(conflict_id, "CLIENT_WINS")
        self.assertFalse(Product.objects.filter(pk=product.pk).exists())
        self.assertTrue(DeletedEntity.objects.filter(entity_id=product.pk).exists())

    def test_server_wins_closes_without_mutation(self):
        product, conflict_id = self._conflict()
        resp = self._resolve(conflict_id, "SERVER_WINS")
        product.refresh_from_db()
        self.assertEqual(resp.data["resolution_strategy"], "SERVER_WINS")
        self.assertEqual(product.name, "Tea")
        self.assertEqual(product.updated_at, T1)

    def test_manual_requires_merged_data(self):
        product, conflict_id = self._conflict()
        self.assertEqual(self._resolve(conflict_id, "MANUAL").status_code, 400)

        resp = self._resolve(conflict_id, "MANUAL", {"name": "Merged", "stock_qty": 7})

        product.refresh_from_db()
        self.assertEqual(resp.status_code, 200)
        self.assertEqual((product.name, product.stock_qty), ("Merged", 7))

    def test_resolution_is_final(self):
        _, conflict_id = self._conflict()
        self._resolve(conflict_id, "SERVER_WINS")
        resp = self._resolve(conflict_id, "CLIENT_WINS")
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(SyncConflict.objects.get().resolution_strategy, "SERVER_WINS")

    def test_client_wins_on_vanished_record_is_refused(self):
        product, conflict_id = self._conflict()
        Product.objects.filter(pk=product.pk).delete()
        resp = self._resolve(conflict_id, "CLIENT_WINS")
        self.assertEqual(resp.status_code, 409)
        self.assertIsNone(SyncConflict.objects.get().resolved_at)

    def test_unknown_or_foreign_conflict_is_404(self):
        self.assertEqual(self._resolve(uuid4(), "SERVER_WINS").status_code, 404)
        _, conflict_id = self._conflict()
        self.authenticate(get_user_model().objects.create_user(username="other", password="pass1234"))
        self.assertEqual(self._resolve(conflict_id, "SERVER_WINS").status_code, 404)


class ForceAndStatusTests(SyncApiTestCase):
    def test_force_closes_conflicts_that_no_longer_need_a_human(self):
        converged = self._product("Tea", updated_at=T1)
        vanished = self._product("Milk", updated_at=T1)
        pending = self._product("Bread", updated_at=T1)
        self._batch(
            [
                self._op("UPDATE", {"name": "Tea", "base_updated_at": T0.isoformat()}, converged.pk),
                self._op("UPDATE", {"name": "Oat milk", "base_updated_at": T0.isoformat()}, vanished.pk),
                self._op("UPDATE", {"name": "Rye", "base_updated_at": T0.isoformat()}, pending.pk),
            ]
        )
        Product.objects.filter(pk=vanished.pk).delete()

        resp = self.client.post("/api/sync/force", {"device_id": "device-1"}, format="json")

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.data["conflicts_checked"], 3)
        self.assertEqual(resp.data["conflicts_closed"], 2)
        self.assertEqual(resp.data["conflicts_pending"], 1)
        self.assertEqual(SyncConflict.objects.filter(resolved_by="system").count(), 2)
        self.assertEqual(SyncConflict.objects.get(resolved_at__isnull=True).entity_id, pending.pk)

    def test_force_requires_device_id(self):
        self.assertEqual(self.client.post("/api/sync/force", {}, format="json").status_code, 400)

    def test_status(self):
        self._product()
        resp = self.client.get("/api/sync/status")
        self.assertEqual(resp.data["status"], "active")
        self.assertEqual(resp.data["version"], "1.0.0")
        self.assertEqual(resp.data["entity_counts"]["products"], 1)
        self.assertEqual(resp.data["pending_conflicts"], 0)
        self.assertIn("server_time", resp.data)


class APIClientTransport(SyncTransport):
    """Client transport that talks to the test server through DRF's APIClient."""

    def __init__(self, client):
        self.client = client

    def _answer(self, response):
        try:
            body = response.json()
        except ValueError:
            body = None
        return check_response(response.status_code, body)

    def push_batch(self, device_id, user_id, operations):
        return self._answer(
            self.client.post("/api/sync/batch", {"device_id": device_id, "operations": operations}, format="json")
        )

    def pull_delta(self, since, limit=None, entity_types=None, device_id=None):
        return self._answer(self.client.get("/api/sync/delta", delta_params(since, limit, entity_types, device_id)))

    def get_status(self):
        return self._answer(self.client.get("/api/sync/status"))

    def force(self, device_id):
        return self._answer(self.client.post("/api/sync/force", {"device_id": device_id}, format="json"))

    def list_conflicts(self, **filters):
        return self._answer(self.client.get("/api/sync/conflicts", filters))

    def resolve_conflict(self, conflict_id, strategy, merged_data=None):
        body = {"strategy": strategy}
        if merged_data is not None:
            body["merged_data"] = merged_data
        return self._answer(self.client.post(f"/api/sync/conflicts/{conflict_id}/resolve", body, format="json"))


class ClientServerSyncTests(SyncApiTestCase):
    def setUp(self):
        super().setUp()
        self.db = LocalDatabase()
        self.store = SQLiteEntityStore(self.db)
        self.cursor = CursorStore(self.db)
        self.queue = OperationQueue(self.db)
        self.transport = APIClientTransport(self.client)
        self.orchestrator = SyncOrchestrator(
            self.queue,
            self.transport,
            ManualConnectivity(online=True),
            self.store,
            self.cursor,
            SyncClientConfig(device_id="device-1", batch_size=1),
        )

    def tearDown(self):
        self.db.close()

    def test_offline_session_is_pushed_and_pulled_back(self):
        create = self.orchestrator.enqueue(
            Operation(entity_type=ClientEntityType.PRODUCT, kind=ClientKind.CREATE, payload={"name": "Flour"})
        )
        self.store.upsert("PRODUCT", create.local_id, {"id": create.local_id, "name": "Flour"})
        update = self.orchestrator.enqueue(
            Operation.update(ClientEntityType.PRODUCT, create.local_id, {"name": "Rye flour"}, None)
        )
        movement = self.orchestrator.enqueue(
            Operation(
                entity_type=ClientEntityType.STOCK_MOVEMENT,
                kind=ClientKind.CREATE,
                payload={"product_id": create.local_id, "quantity": 10, "movement_type": "IN"},
            )
        )

        report = self.orchestrator.run_pass()

        product = Product.objects.get()
        self.assertIsNone(report.error)
        self.assertEqual(report.synced, 3)
        self.assertEqual(product.name, "Rye flour")
        self.assertEqual(StockMovement.objects.get().product_id, product.pk)
        for op in (create, update, movement):
            self.assertEqual(self.queue.get(op.local_id).status, OperationStatus.SYNCED)
        self.assertEqual(self.queue.get(create.local_id).server_id, str(product.pk))
        self.assertIsNone(self.store.get("PRODUCT", create.local_id))
        self.assertEqual(self.store.get("PRODUCT", str(product.pk))["name"], "Rye flour")
        self.assertEqual(self.store.count("STOCK_MOVEMENT"), 1)
        self.assertIsNotNone(self.cursor.get())

    def test_stale_edit_becomes_conflict_then_client_wins(self):
        product = self._product(updated_at=T1)
        op = self.orchestrator.enqueue(
            Operation.update(ClientEntityType.PRODUCT, str(product.pk), {"name": "Offline name"}, T0.isoformat())
        )

        report = self.orchestrator.run_pass()

        stored = self.queue.get(op.local_id)
        self.assertEqual(report.conflicts, 1)
        self.assertEqual(stored.status, OperationStatus.CONFLICT)
        self.assertEqual(self.store.get("PRODUCT", str(product.pk))["name"], "Tea")

        self.transport.resolve_conflict(stored.conflict_id, "CLIENT_WINS")
        self.orchestrator.run_pass()
        self.assertEqual(self.store.get("PRODUCT", str(product.pk))["name"], "Offline name")

    def test_edit_then_delete_in_separate_batches_both_apply(self):
        product = self._product()
        update = self.orchestrator.enqueue(
            Operation.update(ClientEntityType.PRODUCT, str(product.pk), {"name": "Offline name"}, T0.isoformat())
        )
        delete = self.orchestrator.enqueue(Operation.delete(ClientEntityType.PRODUCT, str(product.pk), T0.isoformat()))

        report = self.orchestrator.run_pass()

        self.assertEqual((report.synced, report.conflicts), (2, 0))
        self.assertEqual(self.queue.get(update.local_id).status, OperationStatus.SYNCED)
        self.assertEqual(self.queue.get(delete.local_id).status, OperationStatus.SYNCED)
        self.assertFalse(Product.objects.filter(pk=product.pk).exists())
        self.assertEqual(SyncConflict.objects.count(), 0)
        self.assertIsNone(self.store.get("PRODUCT", str(product.pk)))
