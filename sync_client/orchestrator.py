"""
Client sync loop: drains the operation queue in batches, applies the server's
per-operation outcomes, then pulls server-side changes through delta sync.
"""
from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from .config import SyncClientConfig
from .connectivity import ConnectivitySignal, ManualConnectivity
from .exceptions import ProtocolError, SyncClientError
from .models import IdMapping, Operation, OperationKind, OperationStatus, PassReport, SyncEvent, SyncState
from .queue import OperationQueue
from .storage import CursorStore, EntityStore, LocalDatabase, SQLiteEntityStore
from .transport import HttpSyncTransport, SyncTransport

logger = logging.getLogger(__name__)

BATCH_RESPONSE_KEYS = ("success_count", "error_count", "conflict_count", "results")
DELTA_RESPONSE_KEYS = ("updates", "deleted_ids", "server_time")

Listener = Callable[[SyncEvent], None]


class SyncOrchestrator:
    def __init__(
        self,
        queue: OperationQueue,
        transport: SyncTransport,
        connectivity: ConnectivitySignal,
        entity_store: EntityStore,
        cursor_store: CursorStore,
        config: SyncClientConfig,
        clock: Callable[[], float] = time.time,
    ):
        self.queue = queue
        self.transport = transport
        self.connectivity = connectivity
        self.entity_store = entity_store
        self.cursor_store = cursor_store
        self.config = config
        self.clock = clock

        # _state, _running and _rerun are only touched while holding _lock.
        self._lock = threading.Lock()
        self._state = SyncState.IDLE
        self._running = False
        self._rerun = False
        self._idle = threading.Event()
        self._idle.set()

        self._listeners: List[Listener] = []
        self._thread: Optional[threading.Thread] = None
        self._timer: Optional[threading.Timer] = None
        self._retry_timer: Optional[threading.Timer] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._started = False

        self.last_error: Optional[str] = None
        self.last_conflict: Optional[Dict[str, Any]] = None
        self.last_report: Optional[PassReport] = None

    # --- observation ---

    @property
    def state(self) -> SyncState:
        with self._lock:
            return self._state

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _emit(self, event_type: str, **payload) -> None:
        event = SyncEvent(type=event_type, payload=payload)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Sync listener failed on %s", event_type)

    # --- local writes ---

    def enqueue(self, op: Operation) -> Operation:
        """Queue a local mutation with the configured retry budget."""
        op.max_retries = self.config.max_retries
        self.queue.enqueue(op)
        self._emit("queue_changed", counts=self.queue.counts())
        return op

    # --- triggers ---

    def _begin(self) -> bool:
        with self._lock:
            if self._running:
                self._rerun = True
                logger.debug("Sync pass already running; trigger coalesced")
                return False
            self._running = True
            self._state = SyncState.SYNCING
            self._idle.clear()
        self._emit("state_changed", state=SyncState.SYNCING.value)
        return True

    def _finish(self, report: PassReport) -> bool:
        """End a pass; True when a coalesced trigger asks for another one."""
        with self._lock:
            if self._rerun:
                self._rerun = False
                return True
            self._running = False
            self._state = SyncState.ERROR if report.error else SyncState.IDLE
            state = self._state
        self._emit("state_changed", state=state.value)
        self._idle.set()
        return False

    def _run(self, reason: str) -> PassReport:
        while True:
            try:
                report = self._pass(reason)
            except Exception as exc:
                logger.exception("Sync pass crashed (%s)", reason)
                report = PassReport(reason=reason, error=str(exc))
                self.last_error = report.error
                self._emit("error", error=report.error)
            self.last_report = report
            if not self._finish(report):
                break
            reason = "rerun"
        self._schedule_retry()
        return report

    def run_pass(self, reason: str = "manual") -> Optional[PassReport]:
        """Run a pass on the calling thread; None when another pass is already running."""
        if not self._begin():
            return None
        return self._run(reason)

    def request_sync(self, reason: str = "manual") -> bool:
        """Start a pass on a background thread; False when it was coalesced into a running pass."""
        if not self._begin():
            return False
        self._thread = threading.Thread(target=self._run, args=(reason,), name="sync-pass", daemon=True)
        self._thread.start()
        return True

    def force_sync(self) -> Optional[PassReport]:
        """Manual trigger: run a pass now, then ask the server to reconcile this device's conflicts."""
        report = self.run_pass("force")
        if report is None or report.aborted or not self.connectivity.is_online():
            return report
        try:
            result = self.transport.force(self.config.device_id)
        except SyncClientError as exc:
            logger.warning("Server reconciliation failed: %s", exc)
        else:
            logger.info("Server closed %s conflicts for %s", result.get("conflicts_closed", 0), self.config.device_id)
        return report

    def on_foreground(self) -> bool:
        return self.request_sync("foreground")

    def _on_connectivity(self, online: bool) -> None:
        if online:
            self.request_sync("connectivity")

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        return self._idle.wait(timeout)

    # --- lifecycle ---

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        self.queue.recover_in_flight()
        self._unsubscribe = self.connectivity.on_change(self._on_connectivity)
        self._schedule_periodic()
        if self.connectivity.is_online():
            self.request_sync("startup")

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._started = False
        for timer in (self._timer, self._retry_timer):
            if timer is not None:
                timer.cancel()
        self._timer = self._retry_timer = None
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self.wait_idle(timeout)

    def _schedule_periodic(self) -> None:
        if not self._started or self.config.sync_interval <= 0:
            return
        self._timer = threading.Timer(self.config.sync_interval, self._tick)
        self._timer.daemon = True
        self._timer.start()

    def _tick(self) -> None:
        self.request_sync("periodic")
        self._schedule_periodic()

    def _schedule_retry(self) -> None:
        if not self._started:
            return
        next_at = self.queue.next_retry_at()
        if next_at is None:
            return
        if self._retry_timer is not None:
            self._retry_timer.cancel()
        self._retry_timer = threading.Timer(max(0.0, next_at - self.clock()), self.request_sync, args=("retry",))
        self._retry_timer.daemon = True
        self._retry_timer.start()

    # --- the pass ---

    def _pass(self, reason: str) -> PassReport:
        report = PassReport(reason=reason)
        logger.info("Sync pass started (%s)", reason)
        if not self.connectivity.is_online():
            report.aborted = "offline"
        else:
            try:
                self._drain(report)
                if not report.aborted:
                    self._pull_delta(report)
            except SyncClientError as exc:
                report.error = str(exc)
        if report.error:
            self.last_error = report.error
            self._emit("error", error=report.error)
        self._emit("queue_changed", counts=self.queue.counts())
        self._emit("pass_completed", report=report.as_dict())
        logger.info(
            "Sync pass finished (%s): %s synced, %s conflicts, %s failed, %s retrying%s",
            reason,
            report.synced,
            report.conflicts,
            report.failed,
            report.retried,
            f", aborted: {report.aborted}" if report.aborted else "",
        )
        return report

    def _drain(self, report: PassReport) -> None:
        while True:
            if not self.connectivity.is_online():
                report.aborted = "offline"
                return
            batch = self.queue.next_batch(self.config.batch_size)
            if not batch:
                return
            report.batches += 1
            try:
                response = self.transport.push_batch(
                    self.config.device_id,
                    self.config.user_id,
                    [op.to_wire() for op in batch],
                )
                self._check_batch_response(response)
            except SyncClientError as exc:
                logger.warning("Batch of %s operations failed: %s", len(batch), exc)
                for op in batch:
                    self._fail(op, f"{type(exc).__name__}: {exc}", True, report)
                report.aborted = "network"
                report.error = str(exc)
                return
            self._apply_batch_response(batch, response, report)
            self._emit("queue_changed", counts=self.queue.counts())

    @staticmethod
    def _check_batch_response(response) -> None:
        if not isinstance(response, dict) or any(key not in response for key in BATCH_RESPONSE_KEYS):
            raise ProtocolError("Malformed batch response", body=response)
        for key in ("results", "conflicts", "errors"):
            items = response.get(key, [])
            if not isinstance(items, list) or any(not isinstance(item, dict) for item in items):
                raise ProtocolError(f"Batch response {key} is not a list of objects", body=response)
        if any(not item.get("local_id") for item in response["results"]):
            raise ProtocolError("Batch response has a result without a local_id", body=response)

    def _apply_batch_response(self, batch: List[Operation], response: Dict, report: PassReport) -> None:
        results = {item.get("local_id"): item for item in response["results"]}
        conflicts = {item.get("local_id"): item for item in response.get("conflicts") or []}
        errors = {item.get("local_id"): item for item in response.get("errors") or []}

        for op in batch:
            result = results.get(op.local_id)
            status = result.get("status") if result else None
            if status == "SUCCESS":
                server_id = result.get("server_id")
                self.queue.mark_synced(op.local_id, server_id)
                report.synced += 1
                if op.kind == OperationKind.CREATE and server_id:
                    self._reconcile_id(op, str(server_id))
                elif op.kind == OperationKind.UPDATE and result.get("updated_at"):
                    self.queue.rebase_entity(
                        op.entity_type.value,
                        [op.entity_id, str(server_id or "")],
                        op.payload.get("base_updated_at"),
                        result["updated_at"],
                    )
            elif status == "CONFLICT":
                conflict = conflicts.get(op.local_id) or {
                    "conflict_id": result.get("conflict_id"),
                    "conflict_type": result.get("message"),
                }
                self.queue.mark_conflict(op.local_id, conflict)
                report.conflicts += 1
                self.last_conflict = conflict
                self._emit("conflict", local_id=op.local_id, conflict=conflict)
            elif status == "FAILED":
                error = errors.get(op.local_id) or {}
                message = f"{error.get('error_code', 'ERROR')}: {error.get('error_message', '')}".rstrip(": ")
                self._fail(op, message, bool(error.get("retryable", False)), report)
            else:
                self._fail(op, "Missing from batch response", True, report)

    def _fail(self, op: Operation, message: str, retryable: bool, report: PassReport) -> None:
        updated = self.queue.mark_failed(op.local_id, message, retryable=retryable)
        if updated.status == OperationStatus.PENDING:
            report.retried += 1
        else:
            report.failed += 1

    def _reconcile_id(self, op: Operation, server_id: str) -> None:
        if server_id == op.local_id:
            return
        mapping = IdMapping(local_id=op.local_id, server_id=server_id, entity_type=op.entity_type)
        self.queue.rewrite_entity_reference(mapping.local_id, mapping.server_id)
        self.entity_store.rekey(mapping.entity_type.value, mapping.local_id, mapping.server_id)
        self._emit("id_mapped", mapping=mapping)

    def _pull_delta(self, report: PassReport) -> None:
        since = self.cursor_store.get()
        while True:
            page = self.transport.pull_delta(
                since,
                limit=self.config.delta_page_size,
                device_id=self.config.device_id,
            )
            updates, deletes = self.apply_delta(page)
            report.delta_updates += updates
            report.delta_deletes += deletes
            since = page["server_time"]
            if not page.get("has_more"):
                return
            if not self.connectivity.is_online():
                report.aborted = "offline"
                return

    def apply_delta(self, page: Dict) -> tuple:
        """Apply deletes then upserts, and only then move the cursor to the page's server_time."""
        if not isinstance(page, dict) or any(key not in page for key in DELTA_RESPONSE_KEYS):
            raise ProtocolError("Malformed delta response", body=page)
        for item in page["deleted_ids"]:
            self.entity_store.delete(item["entity_type"], item["entity_id"])
        for item in page["updates"]:
            self.entity_store.upsert(item["entity_type"], item["entity_id"], item["data"])
        self.cursor_store.advance(page["server_time"])
        return len(page["updates"]), len(page["deleted_ids"])


def create_orchestrator(
    config: SyncClientConfig,
    transport: Optional[SyncTransport] = None,
    connectivity: Optional[ConnectivitySignal] = None,
    db: Optional[LocalDatabase] = None,
) -> SyncOrchestrator:
    db = db or LocalDatabase(config.db_path)
    queue = OperationQueue(db, config.base_retry_delay_ms, config.max_retry_delay_ms)
    if transport is None:
        transport = HttpSyncTransport(config.server_url, token=config.token, timeout=config.request_timeout)
    return SyncOrchestrator(
        queue=queue,
        transport=transport,
        connectivity=connectivity or ManualConnectivity(online=True),
        entity_store=SQLiteEntityStore(db),
        cursor_store=CursorStore(db),
        config=config,
    )
