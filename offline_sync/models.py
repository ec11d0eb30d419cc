"""
Data models for the offline sync engine.

Entities are the locally mirrored interaction records; operations are the
queued mutations waiting to be delivered to the remote system of record.
"""

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return time.time_ns() // 1_000_000


# =============================================================================
# Enums
# =============================================================================

class InteractionStatus(Enum):
    """Normalized status of an interaction."""
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    CRITICAL = "critical"


class LocalStatus(Enum):
    """Local mutation not yet confirmed by the remote system."""
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


class OperationAction(Enum):
    """Kind of mutation carried by an operation."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class OperationStatus(Enum):
    """Delivery status of a queued operation."""
    PENDING = "pending"
    FAILED = "failed"
    SYNCED = "synced"


class ResourceKind(Enum):
    """Resource kinds the engine knows how to deliver."""
    INTERACTION = "interaction"
    PROJECT = "project"


# =============================================================================
# Entity
# =============================================================================

@dataclass
class Entity:
    """A locally mirrored interaction record.

    The id has the form ``<type>-<externalId>`` (e.g. ``rfi-1042``).
    """
    id: str
    status: InteractionStatus = InteractionStatus.OPEN
    payload: dict = field(default_factory=dict)
    project_id: Optional[int] = None
    sync_pending: bool = False
    local_status: Optional[LocalStatus] = None

    @property
    def kind(self) -> str:
        """Interaction type encoded in the id prefix."""
        return self.id.split("-", 1)[0]

    @property
    def external_id(self) -> Optional[str]:
        """Identifier of the record in the external system, if any."""
        if "-" not in self.id:
            return None
        return self.id.split("-", 1)[1]

    @property
    def is_tombstoned(self) -> bool:
        return self.local_status == LocalStatus.DELETED

    def to_dict(self) -> dict:
        """Convert to the wire/queue representation."""
        return {
            "id": self.id,
            "type": self.kind,
            "status": self.status.value,
            "project_id": self.project_id,
            "payload": self.payload,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Entity":
        """Create from the wire/queue representation."""
        return cls(
            id=d["id"],
            status=InteractionStatus(d.get("status", InteractionStatus.OPEN.value)),
            payload=dict(d.get("payload") or {}),
            project_id=d.get("project_id"),
        )


# =============================================================================
# Operation
# =============================================================================

@dataclass
class Operation:
    """A queued intent to create, update or delete one remote entity."""
    id: str
    action: OperationAction
    resource: str
    payload: dict
    timestamp: int = field(default_factory=now_ms)
    status: OperationStatus = OperationStatus.PENDING
    retry_count: int = 0
    last_error: Optional[str] = None
    last_sync_attempt: Optional[datetime] = None

    @classmethod
    def new(cls, action: OperationAction, resource: str, payload: dict) -> "Operation":
        """Build a fresh pending operation with a unique id."""
        entity_id = payload.get("id", "unknown")
        return cls(
            id=f"{resource}-{entity_id}-{uuid.uuid4().hex[:12]}",
            action=action,
            resource=resource,
            payload=payload,
        )

    @property
    def entity_id(self) -> Optional[str]:
        return self.payload.get("id")

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "action": self.action.value,
            "resource": self.resource,
            "timestamp": self.timestamp,
            "data": self.payload,
            "status": self.status.value,
            "retry_count": self.retry_count,
            "error": self.last_error,
            "last_sync": self.last_sync_attempt.isoformat() if self.last_sync_attempt else None,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Operation":
        """Create from dictionary."""
        last_sync = d.get("last_sync")
        return cls(
            id=d["id"],
            action=OperationAction(d["action"]),
            resource=d["resource"],
            payload=d["data"],
            timestamp=d["timestamp"],
            status=OperationStatus(d["status"]),
            retry_count=d.get("retry_count", 0),
            last_error=d.get("error"),
            last_sync_attempt=datetime.fromisoformat(last_sync) if last_sync else None,
        )


# =============================================================================
# Status, credentials, acknowledgements
# =============================================================================

@dataclass(frozen=True)
class SyncStatus:
    """Point-in-time snapshot broadcast to status listeners."""
    is_online: bool
    pending_count: int
    sync_in_progress: bool
    last_sync_time: Optional[datetime] = None


@dataclass
class Credential:
    """Bearer credential used for outbound deliveries."""
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    token_type: str = "Bearer"

    @property
    def is_expired(self) -> bool:
        if self.expires_at is None:
            return False
        return datetime.now(timezone.utc) >= self.expires_at

    def needs_refresh(self, buffer_seconds: float = 30) -> bool:
        """Check if the credential is unusable or within buffer of expiry."""
        if not self.access_token:
            return True
        if self.expires_at is None:
            return False
        buffer = timedelta(seconds=buffer_seconds)
        return datetime.now(timezone.utc) >= (self.expires_at - buffer)

    @property
    def authorization(self) -> str:
        return f"{self.token_type} {self.access_token}"


@dataclass(frozen=True)
class Ack:
    """Successful delivery acknowledgement.

    ``duplicate`` is set when the remote side recognised the operation id as
    already applied and treated the delivery as a no-op.
    """
    operation_id: str
    duplicate: bool = False
    status_code: Optional[int] = None


@dataclass
class SyncResult:
    """Outcome of one scheduler pass."""
    success: bool
    items_processed: int = 0
    items_failed: int = 0
    errors: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def skipped(cls) -> "SyncResult":
        return cls(success=True)
