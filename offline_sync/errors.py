"""
Exception hierarchy for the offline sync engine.

Delivery errors are classified once, where the remote client turns a
transport response into one of the ``DeliveryErrorKind`` values. Everything
downstream (pipeline, scheduler) dispatches on the exception type only.
"""

from enum import Enum
from typing import Optional


class SyncError(Exception):
    """Base exception for sync operations."""
    pass


class StorageError(SyncError):
    """Local persistence failed (disk full, locked database, corrupt file)."""
    pass


class DeliveryErrorKind(Enum):
    """Failure classes reported by a remote delivery client."""
    AUTH_EXPIRED = "auth_expired"
    PERMISSION_DENIED = "permission_denied"
    NOT_FOUND = "not_found"
    TRANSIENT = "transient"
    MALFORMED = "malformed"


class DeliveryError(SyncError):
    """Delivery of an operation to the remote system failed."""

    kind: DeliveryErrorKind = DeliveryErrorKind.TRANSIENT

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        """Whether another attempt can possibly succeed."""
        return self.kind == DeliveryErrorKind.TRANSIENT


class AuthExpiredError(DeliveryError):
    """Credential rejected as expired or invalid."""
    kind = DeliveryErrorKind.AUTH_EXPIRED


class PermissionDeniedError(DeliveryError):
    """Credential is valid but lacks permission for the resource."""
    kind = DeliveryErrorKind.PERMISSION_DENIED


class NotFoundError(DeliveryError):
    """Target entity does not exist on the remote side."""
    kind = DeliveryErrorKind.NOT_FOUND


class TransientError(DeliveryError):
    """Network failure, timeout or server-side error."""
    kind = DeliveryErrorKind.TRANSIENT

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retry_after: Optional[int] = None,
    ):
        super().__init__(message, status_code)
        self.retry_after = retry_after


class MalformedError(DeliveryError):
    """Remote rejected the payload shape; retrying cannot fix it."""
    kind = DeliveryErrorKind.MALFORMED


class CredentialRefreshError(SyncError):
    """The credential provider could not produce a new credential."""
    pass
