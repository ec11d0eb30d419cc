"""
Offline Sync

Offline-first synchronization engine: local writes land in a durable mirror
and an operation queue, and are delivered to the remote system of record once
connectivity and credentials allow.
"""

from .auth import (
    CredentialProvider,
    HttpCredentialProvider,
    SingleFlight,
    TokenGuardedPipeline,
)
from .config import SyncSettings, get_settings
from .connectivity import ConnectivityMonitor
from .delivery import HttpDeliveryClient, RemoteDeliveryClient, classify_response
from .errors import (
    AuthExpiredError,
    CredentialRefreshError,
    DeliveryError,
    DeliveryErrorKind,
    MalformedError,
    NotFoundError,
    PermissionDeniedError,
    StorageError,
    SyncError,
    TransientError,
)
from .mapping import RecordMapper, make_entity_id
from .models import (
    Ack,
    Credential,
    Entity,
    InteractionStatus,
    LocalStatus,
    Operation,
    OperationAction,
    OperationStatus,
    ResourceKind,
    SyncResult,
    SyncStatus,
)
from .queue import OperationQueue
from .scheduler import CircuitBreaker, SyncScheduler
from .service import OfflineSyncService, create_sync_service, sync_session
from .status import StatusBus
from .store import LocalMirrorStore

__version__ = "0.1.0"
__all__ = [
    # Main classes
    "OfflineSyncService",
    "LocalMirrorStore",
    "OperationQueue",
    "SyncScheduler",
    "CircuitBreaker",
    "ConnectivityMonitor",
    "StatusBus",
    "TokenGuardedPipeline",
    "SingleFlight",
    "RecordMapper",

    # Remote boundary
    "RemoteDeliveryClient",
    "HttpDeliveryClient",
    "CredentialProvider",
    "HttpCredentialProvider",
    "classify_response",

    # Configuration
    "SyncSettings",
    "get_settings",

    # Data models
    "Entity",
    "Operation",
    "SyncStatus",
    "SyncResult",
    "Credential",
    "Ack",
    "InteractionStatus",
    "LocalStatus",
    "OperationAction",
    "OperationStatus",
    "ResourceKind",

    # Exceptions
    "SyncError",
    "StorageError",
    "DeliveryError",
    "DeliveryErrorKind",
    "AuthExpiredError",
    "PermissionDeniedError",
    "NotFoundError",
    "TransientError",
    "MalformedError",
    "CredentialRefreshError",

    # Convenience functions
    "create_sync_service",
    "sync_session",
    "make_entity_id",
]
