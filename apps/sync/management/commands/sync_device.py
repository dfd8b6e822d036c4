import json

from django.core.management.base import BaseCommand, CommandError

from sync_client.config import SyncClientConfig
from sync_client.connectivity import ProbeConnectivity
from sync_client.models import OperationStatus
from sync_client.orchestrator import create_orchestrator
from sync_client.transport import HttpSyncTransport


class Command(BaseCommand):
    help = "Run one client sync pass for a device against a sync server (settings from SYNC_* env vars)."

    def add_arguments(self, parser):
        parser.add_argument("--server", help="Server base URL, overrides SYNC_SERVER_URL.")
        parser.add_argument("--device-id", help="Device id, overrides SYNC_DEVICE_ID.")
        parser.add_argument("--token", help="JWT access token, overrides SYNC_TOKEN.")
        parser.add_argument("--db", help="Path of the device's SQLite file, overrides SYNC_DB_PATH.")
        parser.add_argument("--force", action="store_true", help="Also ask the server to reconcile this device's conflicts.")
        parser.add_argument("--requeue-failed", action="store_true", help="Give FAILED operations a fresh retry budget first.")
        parser.add_argument("--status", action="store_true", help="Only print queue counts.")

    def handle(self, *args, **options):
        config = SyncClientConfig.from_env()
        if options["server"]:
            config.server_url = options["server"]
        if options["device_id"]:
            config.device_id = options["device_id"]
        if options["token"]:
            config.token = options["token"]
        if options["db"]:
            config.db_path = options["db"]

        transport = HttpSyncTransport(config.server_url, token=config.token, timeout=config.request_timeout)
        connectivity = ProbeConnectivity(transport)
        orchestrator = create_orchestrator(config, transport=transport, connectivity=connectivity)
        queue = orchestrator.queue

        if options["status"]:
            self.stdout.write(json.dumps(queue.counts(), indent=2))
            return

        queue.recover_in_flight()
        if options["requeue_failed"]:
            failed = queue.list(OperationStatus.FAILED)
            for op in failed:
                queue.requeue(op.local_id)
            self.stdout.write(f"Requeued {len(failed)} failed operations.")

        if not connectivity.refresh():
            raise CommandError(f"Sync server {config.server_url} is not reachable.")

        report = orchestrator.force_sync() if options["force"] else orchestrator.run_pass("command")
        self.stdout.write(json.dumps(report.as_dict(), indent=2))
        if report.error:
            raise CommandError(f"Sync pass failed: {report.error}")
        self.stdout.write(
            self.style.SUCCESS(
                f"Device {config.device_id}: {report.synced} synced, {report.conflicts} conflicts, "
                f"{report.failed} failed, {queue.pending_count()} pending."
            )
        )
