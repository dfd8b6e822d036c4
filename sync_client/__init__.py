from .backoff import backoff_delay_ms
from .config import SyncClientConfig
from .connectivity import ConnectivitySignal, ManualConnectivity, ProbeConnectivity
from .exceptions import (
    DuplicateOperationError,
    InvalidTransitionError,
    OperationNotFound,
    ProtocolError,
    SyncClientError,
    TransientNetworkError,
)
from .models import EntityType, Operation, OperationKind, OperationStatus, PassReport, SyncEvent, SyncState
from .orchestrator import SyncOrchestrator, create_orchestrator
from .queue import OperationQueue
from .storage import CursorStore, EntityStore, LocalDatabase, SQLiteEntityStore
from .transport import HttpSyncTransport, SyncTransport

__all__ = [
    "backoff_delay_ms",
    "SyncClientConfig",
    "ConnectivitySignal",
    "ManualConnectivity",
    "ProbeConnectivity",
    "DuplicateOperationError",
    "InvalidTransitionError",
    "OperationNotFound",
    "ProtocolError",
    "SyncClientError",
    "TransientNetworkError",
    "EntityType",
    "Operation",
    "OperationKind",
    "OperationStatus",
    "PassReport",
    "SyncEvent",
    "SyncState",
    "SyncOrchestrator",
    "create_orchestrator",
    "OperationQueue",
    "CursorStore",
    "EntityStore",
    "LocalDatabase",
    "SQLiteEntityStore",
    "HttpSyncTransport",
    "SyncTransport",
]
