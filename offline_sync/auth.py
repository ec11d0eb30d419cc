"""
Token-Guarded Request Pipeline

Wraps every outbound delivery so it carries a currently valid credential:

- Pre-flight: a missing credential, or one within ``expiry_buffer`` seconds of
  expiry, is refreshed before the request goes out.
- Post-flight: an ``AuthExpiredError`` triggers exactly one refresh-and-retry;
  a second rejection is surfaced to the caller.
- Refreshes are single-flight (concurrent callers share one refresh and its
  outcome) and throttled to one attempt per ``min_refresh_interval`` seconds.
- ``PermissionDeniedError`` passes straight through; a new token cannot fix
  missing permissions.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Generic, Optional, TypeVar

import httpx

from .delivery import RemoteDeliveryClient
from .errors import AuthExpiredError, CredentialRefreshError
from .models import Ack, Credential, Operation

logger = logging.getLogger(__name__)

T = TypeVar("T")


# =============================================================================
# Single-flight
# =============================================================================

class SingleFlight(Generic[T]):
    """At most one in-flight execution, shared by every concurrent caller.

    The first caller starts the coroutine; callers arriving while it runs
    await the same task and receive the same result or exception.
    """

    def __init__(self):
        self._lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None

    @property
    def in_flight(self) -> bool:
        return self._task is not None and not self._task.done()

    async def do(self, fn: Callable[[], Awaitable[T]]) -> T:
        async with self._lock:
            if self._task is None or self._task.done():
                self._task = asyncio.ensure_future(fn())
            task = self._task
        # A cancelled waiter must not cancel the shared refresh
        return await asyncio.shield(task)


# =============================================================================
# Credential providers
# =============================================================================

class CredentialProvider(ABC):
    """External source of fresh credentials."""

    @abstractmethod
    async def refresh(self, current: Optional[Credential]) -> Credential:
        """Obtain a new credential.

        Raises:
            CredentialRefreshError: if no credential can be produced.
        """

    async def close(self) -> None:
        pass


class HttpCredentialProvider(CredentialProvider):
    """OAuth2 ``refresh_token`` grant against a token endpoint."""

    def __init__(
        self,
        token_url: str,
        client_id: str,
        client_secret: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
            )
        return self._http_client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    async def refresh(self, current: Optional[Credential]) -> Credential:
        if current is None or not current.refresh_token:
            raise CredentialRefreshError("No refresh token available. Please login.")

        logger.info("Refreshing access token...")
        client = await self._get_http_client()

        try:
            response = await client.post(
                self.token_url,
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": current.refresh_token,
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                },
            )

            if response.status_code in (400, 401):
                raise CredentialRefreshError("Refresh token rejected. Please login again.")

            response.raise_for_status()
            data = response.json()

        except httpx.HTTPStatusError as e:
            raise CredentialRefreshError(f"Token refresh failed: {e}") from e
        except httpx.RequestError as e:
            raise CredentialRefreshError(f"Network error during token refresh: {e}") from e

        if "access_token" not in data:
            raise CredentialRefreshError("Token endpoint response has no access_token")

        expires_in = data.get("expires_in")
        return Credential(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token", current.refresh_token),
            token_type=data.get("token_type", "Bearer"),
            expires_at=(
                datetime.now(timezone.utc) + timedelta(seconds=expires_in)
                if expires_in else None
            ),
        )


# =============================================================================
# Pipeline
# =============================================================================

class TokenGuardedPipeline:
    """Sends operations through a delivery client with credential guarding."""

    def __init__(
        self,
        client: RemoteDeliveryClient,
        provider: CredentialProvider,
        credential: Optional[Credential] = None,
        expiry_buffer: float = 30.0,
        min_refresh_interval: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.provider = provider
        self.expiry_buffer = expiry_buffer
        self.min_refresh_interval = min_refresh_interval
        self._credential = credential
        self._clock = clock
        self._refresh_flight: SingleFlight[Credential] = SingleFlight()
        self._last_refresh_attempt: Optional[float] = None
        self.refresh_attempts = 0

    @property
    def credential(self) -> Optional[Credential]:
        return self._credential

    def set_credential(self, credential: Credential) -> None:
        """Install a credential obtained out-of-band (e.g. after login)."""
        self._credential = credential

    @property
    def refresh_in_progress(self) -> bool:
        return self._refresh_flight.in_flight

    async def send(self, operation: Operation) -> Ack:
        """Deliver one operation, refreshing the credential as needed.

        Raises:
            DeliveryError: classified delivery failure; an ``AuthExpiredError``
                here means the refreshed credential was rejected as well.
            CredentialRefreshError: no usable credential could be obtained.
        """
        await self._preflight()

        credential = self._credential
        if credential is None:
            raise CredentialRefreshError("No credential available for delivery")

        try:
            return await self.client.deliver(operation, credential)
        except AuthExpiredError as e:
            logger.info(f"Authorization rejected for {operation.id} ({e}); refreshing and retrying once")

        fresh = await self.refresh(stale=credential)
        try:
            return await self.client.deliver(operation, fresh)
        except AuthExpiredError as e:
            raise AuthExpiredError(
                f"Authorization rejected after credential refresh: {e}", e.status_code
            ) from e

    async def refresh(self, stale: Optional[Credential] = None) -> Credential:
        """Refresh the credential unless someone already replaced ``stale``."""
        current = self._credential
        if (
            stale is not None
            and current is not None
            and current is not stale
            and not current.needs_refresh(self.expiry_buffer)
        ):
            return current
        return await self._refresh_flight.do(self._do_refresh)

    async def _preflight(self) -> None:
        credential = self._credential
        if credential is not None and not credential.needs_refresh(self.expiry_buffer):
            return

        logger.info("Credential missing or expiring soon, refreshing before request")
        try:
            await self.refresh(stale=credential)
        except CredentialRefreshError as e:
            logger.error(f"Token refresh failed before request: {e}")

    async def _do_refresh(self) -> Credential:
        if self._last_refresh_attempt is not None:
            wait = self.min_refresh_interval - (self._clock() - self._last_refresh_attempt)
            if wait > 0:
                logger.info(f"Token refresh attempted too recently, waiting {wait:.2f}s")
                await asyncio.sleep(wait)
        self._last_refresh_attempt = self._clock()
        self.refresh_attempts += 1

        old = self._credential
        try:
            new = await self.provider.refresh(old)
        except CredentialRefreshError:
            raise
        except Exception as e:
            raise CredentialRefreshError(f"Credential provider failed: {e}") from e

        if old is not None and new.access_token == old.access_token:
            raise CredentialRefreshError("Token refresh returned the same token")

        self._credential = new
        logger.info("Credential refreshed successfully")
        return new
