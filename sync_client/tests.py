import os
from unittest import TestCase, mock

import requests

from .backoff import backoff_delay_ms
from .config import SyncClientConfig
from .connectivity import ManualConnectivity, ProbeConnectivity
from .exceptions import (
    DuplicateOperationError,
    InvalidTransitionError,
    ProtocolError,
    TransientNetworkError,
)
from .models import EntityType, Operation, OperationKind, OperationStatus, SyncState
from .orchestrator import SyncOrchestrator
from .queue import OperationQueue
from .storage import CursorStore, LocalDatabase, SQLiteEntityStore
from .transport import HttpSyncTransport, SyncTransport

BASE = "2026-01-01T09:00:00+00:00"


class FakeClock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def product_create(name="Tea", ts=None, **kwargs):
    if ts:
        kwargs["client_timestamp"] = ts
    return Operation(
        entity_type=EntityType.PRODUCT,
        kind=OperationKind.CREATE,
        payload={"name": name, "sell_price": "10.00"},
        **kwargs,
    )


class BackoffTests(TestCase):
    def test_exact_sequence(self):
        expected = [5000, 10000, 20000, 40000, 80000, 160000, 300000, 300000, 300000, 300000]
        self.assertEqual([backoff_delay_ms(n) for n in range(1, 11)], expected)

    def test_formula_with_custom_bounds(self):
        for n in range(1, 11):
            self.assertEqual(backoff_delay_ms(n, 100, 3000), min(100 * 2 ** (n - 1), 3000))

    def test_no_delay_before_first_retry(self):
        self.assertEqual(backoff_delay_ms(0), 0)


class OperationTests(TestCase):
    def test_create_uses_local_id_as_temporary_entity_id(self):
        op = product_create()
        self.assertEqual(op.entity_id, op.local_id)
        self.assertEqual(op.to_wire()["entity_id"], "")

    def test_update_requires_entity_id(self):
        with self.assertRaises(ValueError):
            Operation(entity_type="PRODUCT", kind="UPDATE", payload={})

    def test_update_carries_base_updated_at(self):
        op = Operation.update(EntityType.PRODUCT, "p-1", {"name": "New"}, BASE)
        self.assertEqual(op.payload, {"name": "New", "base_updated_at": BASE})


class OperationQueueTests(TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.db = LocalDatabase()
        self.queue = OperationQueue(self.db, clock=self.clock)

    def tearDown(self):
        self.db.close()

    def test_enqueue_rejects_duplicate_local_id(self):
        op = product_create()
        self.queue.enqueue(op)
        with self.assertRaises(DuplicateOperationError):
            self.queue.enqueue(product_create(local_id=op.local_id))
        self.assertEqual(self.queue.pending_count(), 1)

    def test_next_batch_orders_by_priority_then_age(self):
        late = self.queue.enqueue(product_create("late", ts="2026-01-01T10:00:00+00:00", priority=1))
        early = self.queue.enqueue(product_create("early", ts="2026-01-01T09:00:00+00:00", priority=1))
        low = self.queue.enqueue(product_create("low", ts="2026-01-01T08:00:00+00:00", priority=5))

        batch = self.queue.next_batch(10)

        self.assertEqual([op.local_id for op in batch], [early.local_id, late.local_id, low.local_id])
        self.assertTrue(all(op.status == OperationStatus.IN_FLIGHT for op in batch))
        self.assertEqual(self.queue.counts()["IN_FLIGHT"], 3)
        self.assertEqual(self.queue.next_batch(10), [])

    def test_next_batch_respects_limit(self):
        for i in range(5):
            self.queue.enqueue(product_create(f"p{i}"))
        self.assertEqual(len(self.queue.next_batch(2)), 2)
        self.assertEqual(self.queue.pending_count(), 3)

    def test_operations_on_one_entity_keep_creation_order(self):
        update = self.queue.enqueue(
            Operation.update(EntityType.PRODUCT, "p-1", {"name": "A"}, BASE, priority=5, client_timestamp="2026-01-01T09:00:00+00:00")
        )
        delete = self.queue.enqueue(
            Operation.delete(EntityType.PRODUCT, "p-1", BASE, priority=1, client_timestamp="2026-01-01T09:01:00+00:00")
        )

        first = self.queue.next_batch(1)
        self.assertEqual([op.local_id for op in first], [update.local_id])
        # The delete waits while the update is in flight.
        self.assertEqual(self.queue.next_batch(1), [])

        self.queue.mark_synced(update.local_id)
        self.assertEqual([op.local_id for op in self.queue.next_batch(1)], [delete.local_id])

    def test_earlier_operation_claimed_in_same_batch_unblocks_later_one(self):
        create = self.queue.enqueue(product_create(ts="2026-01-01T09:00:00+00:00", priority=5))
        update = self.queue.enqueue(
            Operation.update(EntityType.PRODUCT, create.local_id, {"name": "B"}, BASE, priority=1, client_timestamp="2026-01-01T09:01:00+00:00")
        )
        batch = self.queue.next_batch(10)
        self.assertEqual([op.local_id for op in batch], [create.local_id, update.local_id])

    def test_mark_failed_schedules_backoff_then_gives_up(self):
        op = self.queue.enqueue(product_create())
        self.queue.next_batch(10)

        failed = self.queue.mark_failed(op.local_id, "timeout")
        self.assertEqual(failed.status, OperationStatus.PENDING)
        self.assertEqual(failed.retry_count, 1)
        self.assertEqual(failed.scheduled_at, self.clock() + 5.0)
        self.assertEqual(self.queue.next_batch(10), [])
        self.assertEqual(self.queue.next_retry_at(), self.clock() + 5.0)

        self.clock.advance(5)
        self.queue.next_batch(10)
        failed = self.queue.mark_failed(op.local_id, "timeout")
        self.assertEqual(failed.scheduled_at, self.clock() + 10.0)

        self.clock.advance(10)
        self.queue.next_batch(10)
        failed = self.queue.mark_failed(op.local_id, "timeout")
        self.assertEqual(failed.status, OperationStatus.FAILED)
        self.assertEqual(failed.retry_count, 3)
        self.assertTrue(failed.error_message.startswith("MaxRetriesExceeded"))
        self.assertIsNone(self.queue.next_retry_at())

    def test_non_retryable_failure_is_terminal(self):
        op = self.queue.enqueue(product_create())
        self.queue.next_batch(10)
        failed = self.queue.mark_failed(op.local_id, "VALIDATION_ERROR: name required", retryable=False)
        self.assertEqual(failed.status, OperationStatus.FAILED)
        self.assertEqual(failed.error_message, "VALIDATION_ERROR: name required")

    def test_invalid_transitions_raise(self):
        op = self.queue.enqueue(product_create())
        with self.assertRaises(InvalidTransitionError):
            self.queue.mark_synced(op.local_id)
        self.queue.next_batch(10)
        self.queue.mark_synced(op.local_id, "server-1")
        with self.assertRaises(InvalidTransitionError):
            self.queue.mark_failed(op.local_id, "late error")
        self.assertEqual(self.queue.get(op.local_id).server_id, "server-1")

    def test_conflict_is_terminal_until_requeued(self):
        op = self.queue.enqueue(Operation.update(EntityType.PRODUCT, "p-1", {"name": "A"}, BASE))
        self.queue.next_batch(10)
        conflict = self.queue.mark_conflict(op.local_id, {"conflict_id": "c-1", "conflict_type": "VERSION_MISMATCH"})
        self.assertEqual(conflict.status, OperationStatus.CONFLICT)
        self.assertEqual(conflict.conflict_id, "c-1")
        self.assertEqual(self.queue.next_batch(10), [])

        requeued = self.queue.requeue(op.local_id)
        self.assertEqual(requeued.status, OperationStatus.PENDING)
        self.assertEqual(requeued.retry_count, 0)
        self.assertEqual(len(self.queue.next_batch(10)), 1)

    def test_recover_in_flight_keeps_retry_budget(self):
        op = self.queue.enqueue(product_create())
        self.queue.next_batch(10)
        self.assertEqual(self.queue.recover_in_flight(), 1)
        recovered = self.queue.get(op.local_id)
        self.assertEqual(recovered.status, OperationStatus.PENDING)
        self.assertEqual(recovered.retry_count, 0)

    def test_rewrite_entity_reference(self):
        create = self.queue.enqueue(product_create())
        update = self.queue.enqueue(Operation.update(EntityType.PRODUCT, create.local_id, {"name": "B"}, BASE))
        movement = self.queue.enqueue(
            Operation(
                entity_type=EntityType.STOCK_MOVEMENT,
                kind=OperationKind.CREATE,
                payload={"product_id": create.local_id, "quantity": 3, "movement_type": "IN"},
            )
        )
        other = self.queue.enqueue(Operation.update(EntityType.PRODUCT, "unrelated", {"name": "C"}, BASE))

        changed = self.queue.rewrite_entity_reference(create.local_id, "server-1")

        self.assertEqual(changed, 2)
        self.assertEqual(self.queue.get(create.local_id).entity_id, create.local_id)
        self.assertEqual(self.queue.get(update.local_id).entity_id, "server-1")
        self.assertEqual(self.queue.get(movement.local_id).payload["product_id"], "server-1")
        self.assertEqual(self.queue.get(movement.local_id).entity_id, movement.local_id)
        self.assertEqual(self.queue.get(other.local_id).entity_id, "unrelated")

    def test_rebase_entity_moves_only_matching_bases(self):
        written = "2026-01-01T09:30:00+00:00"
        later = self.queue.enqueue(Operation.delete(EntityType.PRODUCT, "p-1", BASE))
        other_base = self.queue.enqueue(Operation.update(EntityType.PRODUCT, "p-1", {"name": "B"}, "2026-01-01T08:00:00+00:00"))
        other_entity = self.queue.enqueue(Operation.update(EntityType.PRODUCT, "p-2", {"name": "C"}, BASE))

        changed = self.queue.rebase_entity("PRODUCT", ["p-1"], BASE, written)

        self.assertEqual(changed, 1)
        self.assertEqual(self.queue.get(later.local_id).payload["base_updated_at"], written)
        self.assertEqual(self.queue.get(other_base.local_id).payload["base_updated_at"], "2026-01-01T08:00:00+00:00")
        self.assertEqual(self.queue.get(other_entity.local_id).payload["base_updated_at"], BASE)
        self.assertEqual(self.queue.rebase_entity("PRODUCT", ["p-1"], None, written), 0)

    def test_clear_removes_terminal_rows(self):
        synced = self.queue.enqueue(product_create())
        self.queue.enqueue(product_create())
        self.queue.next_batch(1)
        self.queue.mark_synced(synced.local_id)
        self.assertEqual(self.queue.clear(), 1)
        self.assertEqual(self.queue.counts()["SYNCED"], 0)
        self.assertEqual(self.queue.counts()["PENDING"], 1)


class OrchestratorTests(TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.db = LocalDatabase()
        self.queue = OperationQueue(self.db, clock=self.clock)
        self.store = SQLiteEntityStore(self.db)
        self.cursor = CursorStore(self.db)
        self.connectivity = ManualConnectivity(online=True)
        self.transport = mock.Mock(spec=SyncTransport)
        self.transport.pull_delta.return_value = self._delta()
        self.config = SyncClientConfig(device_id="device-1", db_path=":memory:")
        self.orchestrator = self._orchestrator(self.config)
        self.events = []
        self.orchestrator.add_listener(self.events.append)

    def tearDown(self):
        self.db.close()

    def _orchestrator(self, config):
        return SyncOrchestrator(
            self.queue, self.transport, self.connectivity, self.store, self.cursor, config, clock=self.clock
        )

    @staticmethod
    def _delta(updates=(), deleted=(), server_time="2026-01-01T10:00:00+00:00", has_more=False):
        return {"updates": list(updates), "deleted_ids": list(deleted), "server_time": server_time, "has_more": has_more}

    @staticmethod
    def _response(results, conflicts=(), errors=()):
        counts = {"SUCCESS": 0, "CONFLICT": 0, "FAILED": 0}
        for item in results:
            counts[item["status"]] += 1
        return {
            "success_count": counts["SUCCESS"],
            "conflict_count": counts["CONFLICT"],
            "error_count": counts["FAILED"],
            "results": list(results),
            "conflicts": list(conflicts),
            "errors": list(errors),
            "processing_time_ms": 3,
        }

    def test_network_failure_retries_whole_batch_and_aborts(self):
        ops = [self.orchestrator.enqueue(product_create(f"p{i}")) for i in range(2)]
        self.transport.push_batch.side_effect = TransientNetworkError("timed out")

        report = self.orchestrator.run_pass()

        self.assertEqual(report.aborted, "network")
        self.assertEqual(report.retried, 2)
        self.assertEqual(self.orchestrator.state, SyncState.ERROR)
        self.transport.pull_delta.assert_not_called()
        for op in ops:
            stored = self.queue.get(op.local_id)
            self.assertEqual(stored.status, OperationStatus.PENDING)
            self.assertEqual(stored.retry_count, 1)
            self.assertEqual(stored.scheduled_at, self.clock() + 5.0)
        self.assertIn("error", [event.type for event in self.events])

    def test_malformed_response_is_a_batch_failure(self):
        op = self.orchestrator.enqueue(product_create())
        self.transport.push_batch.return_value = {"unexpected": True}

        report = self.orchestrator.run_pass()

        self.assertEqual(report.aborted, "network")
        self.assertEqual(self.queue.get(op.local_id).status, OperationStatus.PENDING)

    def test_malformed_result_item_does_not_strand_the_batch(self):
        op = self.orchestrator.enqueue(product_create())
        self.transport.push_batch.return_value = self._response([])
        self.transport.push_batch.return_value["results"] = ["oops"]

        report = self.orchestrator.run_pass()

        stored = self.queue.get(op.local_id)
        self.assertEqual(report.aborted, "network")
        self.assertEqual(report.retried, 1)
        self.assertEqual(stored.status, OperationStatus.PENDING)
        self.clock.advance(5)
        self.assertEqual([claimed.local_id for claimed in self.queue.next_batch(10)], [op.local_id])

    def test_synced_update_rebases_later_operations_on_the_entity(self):
        self.orchestrator = self._orchestrator(SyncClientConfig(device_id="device-1", batch_size=1))
        update = self.orchestrator.enqueue(
            Operation.update(EntityType.PRODUCT, "p-1", {"name": "A"}, BASE, client_timestamp="2026-01-01T09:00:00+00:00")
        )
        delete = self.orchestrator.enqueue(
            Operation.delete(EntityType.PRODUCT, "p-1", BASE, client_timestamp="2026-01-01T09:01:00+00:00")
        )
        written = "2026-01-01T09:30:00+00:00"
        self.transport.push_batch.side_effect = [
            self._response([{"local_id": update.local_id, "status": "SUCCESS", "server_id": "p-1", "updated_at": written}]),
            self._response([{"local_id": delete.local_id, "status": "SUCCESS", "server_id": "p-1"}]),
        ]

        report = self.orchestrator.run_pass()

        self.assertEqual(report.synced, 2)
        sent_delete = self.transport.push_batch.call_args_list[1][0][2][0]
        self.assertEqual(sent_delete["local_id"], delete.local_id)
        self.assertEqual(sent_delete["payload"]["base_updated_at"], written)

    def test_mixed_outcomes_are_applied_per_operation(self):
        created = self.orchestrator.enqueue(product_create())
        stale = self.orchestrator.enqueue(Operation.update(EntityType.PRODUCT, "p-1", {"name": "X"}, BASE))
        invalid = self.orchestrator.enqueue(product_create(""))
        conflict = {"conflict_id": "c-1", "conflict_type": "VERSION_MISMATCH", "local_id": stale.local_id}
        self.transport.push_batch.return_value = self._response(
            [
                {"local_id": created.local_id, "status": "SUCCESS", "server_id": "srv-1"},
                {"local_id": stale.local_id, "status": "CONFLICT", "server_id": "p-1", "conflict_id": "c-1"},
                {"local_id": invalid.local_id, "status": "FAILED", "server_id": None},
            ],
            conflicts=[conflict],
            errors=[
                {
                    "local_id": invalid.local_id,
                    "error_code": "VALIDATION_ERROR",
                    "error_message": "name: This field may not be blank.",
                    "retryable": False,
                }
            ],
        )

        report = self.orchestrator.run_pass()

        self.assertEqual((report.synced, report.conflicts, report.failed), (1, 1, 1))
        self.assertEqual(self.queue.get(created.local_id).status, OperationStatus.SYNCED)
        self.assertEqual(self.queue.get(created.local_id).server_id, "srv-1")
        self.assertEqual(self.queue.get(stale.local_id).status, OperationStatus.CONFLICT)
        self.assertEqual(self.queue.get(stale.local_id).conflict_id, "c-1")
        self.assertEqual(self.queue.get(invalid.local_id).status, OperationStatus.FAILED)
        self.assertEqual(self.orchestrator.last_conflict, conflict)
        self.assertEqual(self.orchestrator.state, SyncState.IDLE)
        self.assertIn("conflict", [event.type for event in self.events])

    def test_create_mapping_rewrites_queued_operations_before_sending(self):
        self.orchestrator = self._orchestrator(SyncClientConfig(device_id="device-1", batch_size=1))
        create = self.orchestrator.enqueue(product_create())
        update = self.orchestrator.enqueue(Operation.update(EntityType.PRODUCT, create.local_id, {"name": "B"}, BASE))
        self.store.upsert("PRODUCT", create.local_id, {"id": create.local_id, "name": "Tea"})
        sent = []

        def push(device_id, user_id, operations):
            sent.extend(operations)
            op = operations[0]
            server_id = "srv-1" if op["kind"] == "CREATE" else op["entity_id"]
            return self._response([{"local_id": op["local_id"], "status": "SUCCESS", "server_id": server_id}])

        self.transport.push_batch.side_effect = push

        report = self.orchestrator.run_pass()

        self.assertEqual(report.batches, 2)
        self.assertEqual(sent[1]["local_id"], update.local_id)
        self.assertEqual(sent[1]["entity_id"], "srv-1")
        self.assertIsNone(self.store.get("PRODUCT", create.local_id))
        self.assertEqual(self.store.get("PRODUCT", "srv-1")["id"], "srv-1")

    def test_operation_missing_from_response_is_retried(self):
        op = self.orchestrator.enqueue(product_create())
        self.transport.push_batch.return_value = self._response([])

        report = self.orchestrator.run_pass()

        self.assertEqual(report.retried, 1)
        self.assertEqual(self.queue.get(op.local_id).status, OperationStatus.PENDING)

    def test_exhausted_retries_fail_the_operation(self):
        self.orchestrator = self._orchestrator(SyncClientConfig(device_id="device-1", max_retries=1))
        op = self.orchestrator.enqueue(product_create())
        self.transport.push_batch.side_effect = TransientNetworkError("refused")

        report = self.orchestrator.run_pass()

        self.assertEqual(report.failed, 1)
        stored = self.queue.get(op.local_id)
        self.assertEqual(stored.status, OperationStatus.FAILED)
        self.assertIn("MaxRetriesExceeded", stored.error_message)

    def test_offline_pass_sends_nothing(self):
        self.orchestrator.enqueue(product_create())
        self.connectivity.set_online(False)

        report = self.orchestrator.run_pass()

        self.assertEqual(report.aborted, "offline")
        self.transport.push_batch.assert_not_called()
        self.assertEqual(self.queue.pending_count(), 1)

    def test_connectivity_lost_between_batches_aborts(self):
        self.orchestrator = self._orchestrator(SyncClientConfig(device_id="device-1", batch_size=1))
        first = self.orchestrator.enqueue(product_create("a", ts="2026-01-01T09:00:00+00:00"))
        second = self.orchestrator.enqueue(product_create("b", ts="2026-01-01T09:01:00+00:00"))

        def push(device_id, user_id, operations):
            self.connectivity.set_online(False)
            return self._response([{"local_id": operations[0]["local_id"], "status": "SUCCESS", "server_id": "srv-a"}])

        self.transport.push_batch.side_effect = push

        report = self.orchestrator.run_pass()

        self.assertEqual(report.aborted, "offline")
        self.assertEqual(self.queue.get(first.local_id).status, OperationStatus.SYNCED)
        self.assertEqual(self.queue.get(second.local_id).status, OperationStatus.PENDING)
        self.transport.pull_delta.assert_not_called()

    def test_delta_pages_are_applied_and_cursor_advanced(self):
        self.store.upsert("PRODUCT", "gone", {"id": "gone"})
        self.transport.pull_delta.side_effect = [
            self._delta(
                updates=[{"entity_type": "PRODUCT", "entity_id": "p-1", "data": {"id": "p-1", "name": "A"}, "updated_at": BASE}],
                server_time=BASE,
                has_more=True,
            ),
            self._delta(deleted=[{"entity_type": "PRODUCT", "entity_id": "gone", "deleted_at": BASE}]),
        ]

        report = self.orchestrator.run_pass()

        self.assertEqual((report.delta_updates, report.delta_deletes), (1, 1))
        self.assertEqual(self.store.get("PRODUCT", "p-1")["name"], "A")
        self.assertIsNone(self.store.get("PRODUCT", "gone"))
        self.assertEqual(self.cursor.get(), "2026-01-01T10:00:00+00:00")
        first_since = self.transport.pull_delta.call_args_list[0][0][0]
        second_since = self.transport.pull_delta.call_args_list[1][0][0]
        self.assertIsNone(first_since)
        self.assertEqual(second_since, BASE)

    def test_cursor_does_not_advance_past_unapplied_changes(self):
        self.cursor.advance(BASE)
        page = self._delta(
            updates=[{"entity_type": "PRODUCT", "entity_id": "p-1", "data": {"id": "p-1"}, "updated_at": BASE}]
        )
        with mock.patch.object(self.store, "upsert", side_effect=RuntimeError("disk full")):
            with self.assertRaises(RuntimeError):
                self.orchestrator.apply_delta(page)
        self.assertEqual(self.cursor.get(), BASE)

        self.orchestrator.apply_delta(page)
        self.assertEqual(self.cursor.get(), "2026-01-01T10:00:00+00:00")

    def test_trigger_during_pass_is_coalesced_into_one_rerun(self):
        nested = []

        def pull(*args, **kwargs):
            if not nested:
                nested.append(self.orchestrator.run_pass("manual"))
            return self._delta()

        self.transport.pull_delta.side_effect = pull

        report = self.orchestrator.run_pass()

        self.assertEqual(nested, [None])
        self.assertEqual(report.reason, "rerun")
        self.assertEqual(self.transport.pull_delta.call_count, 2)
        self.assertEqual(self.orchestrator.state, SyncState.IDLE)

    def test_listener_errors_do_not_break_the_pass(self):
        self.orchestrator.add_listener(mock.Mock(side_effect=RuntimeError("ui crashed")))
        op = self.orchestrator.enqueue(product_create())
        self.transport.push_batch.return_value = self._response(
            [{"local_id": op.local_id, "status": "SUCCESS", "server_id": "srv-1"}]
        )

        report = self.orchestrator.run_pass()

        self.assertEqual(report.synced, 1)
        self.assertIn("pass_completed", [event.type for event in self.events])

    def test_force_sync_asks_server_to_reconcile(self):
        self.transport.force.return_value = {"conflicts_closed": 2}
        report = self.orchestrator.force_sync()
        self.assertEqual(report.reason, "force")
        self.transport.force.assert_called_once_with("device-1")

    def test_background_request_runs_pass(self):
        op = self.orchestrator.enqueue(product_create())
        self.transport.push_batch.return_value = self._response(
            [{"local_id": op.local_id, "status": "SUCCESS", "server_id": "srv-1"}]
        )
        self.assertTrue(self.orchestrator.request_sync("foreground"))
        self.assertTrue(self.orchestrator.wait_idle(5))
        self.assertEqual(self.queue.get(op.local_id).status, OperationStatus.SYNCED)


class HttpSyncTransportTests(TestCase):
    def setUp(self):
        self.session = mock.Mock()
        self.session.headers = {}
        self.response = mock.Mock(status_code=200, reason="OK")
        self.response.json.return_value = {"status": "active"}
        self.session.request.return_value = self.response
        self.transport = HttpSyncTransport("http://sync.local/", token="tok", timeout=30, session=self.session)

    def test_push_batch_sends_bearer_token_and_timeout(self):
        self.transport.push_batch("device-1", "7", [{"local_id": "a"}])
        args, kwargs = self.session.request.call_args
        self.assertEqual(args, ("POST", "http://sync.local/api/sync/batch"))
        self.assertEqual(kwargs["headers"], {"Authorization": "Bearer tok"})
        self.assertEqual(kwargs["timeout"], 30)
        self.assertEqual(kwargs["json"], {"device_id": "device-1", "operations": [{"local_id": "a"}], "user_id": "7"})

    def test_pull_delta_builds_query(self):
        self.transport.pull_delta(BASE, limit=50, entity_types=["PRODUCT", "SALE"])
        kwargs = self.session.request.call_args[1]
        self.assertEqual(kwargs["params"], {"since": BASE, "limit": 50, "entity_types": "PRODUCT,SALE"})

    def test_token_provider_is_asked_per_request(self):
        provider = mock.Mock(return_value="fresh")
        transport = HttpSyncTransport("http://sync.local", token_provider=provider, session=self.session)
        transport.get_status()
        self.assertEqual(self.session.request.call_args[1]["headers"], {"Authorization": "Bearer fresh"})

    def test_timeout_and_connection_errors_are_transient(self):
        for error in (requests.Timeout("slow"), requests.ConnectionError("refused")):
            self.session.request.side_effect = error
            with self.assertRaises(TransientNetworkError):
                self.transport.get_status()

    def test_retryable_status_codes_are_transient(self):
        for code in (500, 503, 401, 408, 429):
            self.response.status_code = code
            with self.assertRaises(TransientNetworkError) as ctx:
                self.transport.get_status()
            self.assertEqual(ctx.exception.status_code, code)

    def test_client_errors_are_protocol_errors(self):
        self.response.status_code = 400
        self.response.json.return_value = {"operations": ["too many"]}
        with self.assertRaises(ProtocolError) as ctx:
            self.transport.push_batch("device-1", None, [])
        self.assertEqual(ctx.exception.body, {"operations": ["too many"]})

    def test_non_json_body_is_protocol_error(self):
        self.response.json.side_effect = ValueError("no json")
        with self.assertRaises(ProtocolError):
            self.transport.get_status()


class ConnectivityTests(TestCase):
    def test_listeners_hear_changes_only(self):
        signal = ManualConnectivity(online=False)
        heard = []
        unsubscribe = signal.on_change(heard.append)
        signal.set_online(True)
        signal.set_online(True)
        unsubscribe()
        signal.set_online(False)
        self.assertEqual(heard, [True])
        self.assertFalse(signal.is_online())

    def test_probe_follows_status_endpoint(self):
        transport = mock.Mock(spec=SyncTransport)
        probe = ProbeConnectivity(transport)
        self.assertTrue(probe.refresh())
        transport.get_status.side_effect = TransientNetworkError("down")
        self.assertFalse(probe.refresh())


class ConfigTests(TestCase):
    @mock.patch("sync_client.config.load_dotenv")
    def test_from_env(self, _load_dotenv):
        env = {
            "SYNC_SERVER_URL": "https://sync.example",
            "SYNC_DEVICE_ID": "till-3",
            "SYNC_BATCH_SIZE": "500",
            "SYNC_REQUEST_TIMEOUT": "15",
            "SYNC_MAX_RETRIES": "5",
        }
        with mock.patch.dict(os.environ, env):
            config = SyncClientConfig.from_env()
        self.assertEqual(config.server_url, "https://sync.example")
        self.assertEqual(config.device_id, "till-3")
        self.assertEqual(config.batch_size, 100)
        self.assertEqual(config.request_timeout, 15.0)
        self.assertEqual(config.max_retries, 5)
