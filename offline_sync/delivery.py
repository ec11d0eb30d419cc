"""
Remote Delivery Client

The engine talks to the remote system of record only through
``RemoteDeliveryClient.deliver``. Implementations classify every failure into
the ``DeliveryError`` taxonomy at this boundary; nothing downstream inspects
status codes or error messages.

``HttpDeliveryClient`` is a REST implementation:

    create  -> POST   {base}/{resource}s
    update  -> PATCH  {base}/{resource}s/{id}
    delete  -> DELETE {base}/{resource}s/{id}

Every request carries ``Idempotency-Key: <operation id>`` so the remote side
can treat a replayed operation as a no-op.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from .errors import (
    AuthExpiredError,
    DeliveryError,
    MalformedError,
    NotFoundError,
    PermissionDeniedError,
    TransientError,
)
from .models import Ack, Credential, Operation, OperationAction

logger = logging.getLogger(__name__)

# Postgres insufficient_privilege, surfaced by row-level security failures
PG_INSUFFICIENT_PRIVILEGE = "42501"


class RemoteDeliveryClient(ABC):
    """Contract for delivering one operation to the remote system."""

    @abstractmethod
    async def deliver(self, operation: Operation, credential: Credential) -> Ack:
        """Deliver an operation.

        Returns:
            Ack on success, including when the remote side recognised the
            operation id as already applied.

        Raises:
            DeliveryError: one of its subclasses, classifying the failure.
        """

    def supports(self, resource: str) -> bool:
        """Whether this client can interpret the given resource kind."""
        return True

    async def close(self) -> None:
        pass


def classify_response(response: httpx.Response) -> Optional[DeliveryError]:
    """Map an HTTP response to a delivery error, or None for success."""
    status = response.status_code
    if 200 <= status < 300 or status == 409:
        return None

    try:
        body = response.json()
    except ValueError:
        body = None
    detail = ""
    code = None
    if isinstance(body, dict):
        code = body.get("code")
        detail = body.get("message") or body.get("error") or ""
    if not detail:
        detail = response.text[:200]

    message = f"HTTP {status}: {detail}" if detail else f"HTTP {status}"

    if status == 403 or code == PG_INSUFFICIENT_PRIVILEGE:
        return PermissionDeniedError(message, status)
    if status == 401:
        return AuthExpiredError(message, status)
    if status == 404:
        return NotFoundError(message, status)
    if status in (408, 429) or status >= 500:
        retry_after = response.headers.get("Retry-After")
        return TransientError(
            message,
            status,
            retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None,
        )
    return MalformedError(message, status)


class HttpDeliveryClient(RemoteDeliveryClient):
    """Delivers operations to a REST endpoint over httpx."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        resources: tuple[str, ...] = ("interaction", "project"),
        api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.resources = resources
        self.api_key = api_key
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
                transport=self._transport,
            )
        return self._http_client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    def supports(self, resource: str) -> bool:
        return resource in self.resources

    def _build_request(self, operation: Operation) -> tuple[str, str, Optional[dict]]:
        entity_id = operation.entity_id
        collection = f"{self.base_url}/{operation.resource}s"

        if operation.action == OperationAction.CREATE:
            return "POST", collection, operation.payload
        if not entity_id:
            raise MalformedError(f"Operation {operation.id} has no entity id")
        if operation.action == OperationAction.UPDATE:
            return "PATCH", f"{collection}/{entity_id}", operation.payload
        return "DELETE", f"{collection}/{entity_id}", None

    async def deliver(self, operation: Operation, credential: Credential) -> Ack:
        if not self.supports(operation.resource):
            raise MalformedError(f"Unsupported resource kind: {operation.resource}")

        method, url, payload = self._build_request(operation)
        headers = {
            "Authorization": credential.authorization,
            "Idempotency-Key": operation.id,
            "Content-Type": "application/json",
        }
        if self.api_key:
            headers["apikey"] = self.api_key

        client = await self._get_http_client()
        try:
            response = await client.request(method, url, headers=headers, json=payload)
        except httpx.TimeoutException as e:
            raise TransientError(f"Timeout delivering {operation.id}: {e}") from e
        except httpx.RequestError as e:
            raise TransientError(f"Network error delivering {operation.id}: {e}") from e

        error = classify_response(response)
        if error is not None:
            raise error

        duplicate = response.status_code == 409
        if duplicate:
            logger.info(f"Operation {operation.id} already applied remotely")
        else:
            logger.debug(f"Delivered {operation.id}: {method} {url} -> {response.status_code}")
        return Ack(operation_id=operation.id, duplicate=duplicate, status_code=response.status_code)
