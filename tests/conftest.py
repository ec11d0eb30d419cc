"""
Shared fixtures and fakes for the offline sync tests.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import pytest

from offline_sync.auth import CredentialProvider
from offline_sync.config import SyncSettings
from offline_sync.delivery import RemoteDeliveryClient
from offline_sync.models import Ack, Credential, Operation


def make_credential(token: str = "token-0", expires_in: float = 3600) -> Credential:
    return Credential(
        access_token=token,
        refresh_token="refresh-token",
        expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
    )


class FakeDeliveryClient(RemoteDeliveryClient):
    """Records deliveries; ``hook`` may return or raise an exception per call."""

    def __init__(self, hook: Optional[Callable] = None, resources=("interaction", "project")):
        self.hook = hook
        self.resources = resources
        self.calls: list[tuple[Operation, Credential]] = []
        self.delivered: list[Operation] = []
        self.closed = False

    def supports(self, resource: str) -> bool:
        return resource in self.resources

    async def deliver(self, operation: Operation, credential: Credential) -> Ack:
        self.calls.append((operation, credential))
        await asyncio.sleep(0)
        if self.hook is not None:
            result = self.hook(operation, credential)
            if asyncio.iscoroutine(result):
                result = await result
            if isinstance(result, Exception):
                raise result
            if isinstance(result, Ack):
                self.delivered.append(operation)
                return result
        self.delivered.append(operation)
        return Ack(operation_id=operation.id)

    async def close(self) -> None:
        self.closed = True


class FakeCredentialProvider(CredentialProvider):
    """Issues ``token-1``, ``token-2``... after an optional delay."""

    def __init__(self, delay: float = 0.0, error: Optional[Exception] = None, same_token: bool = False):
        self.delay = delay
        self.error = error
        self.same_token = same_token
        self.calls = 0
        self.closed = False

    async def refresh(self, current: Optional[Credential]) -> Credential:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if self.same_token and current is not None:
            return make_credential(current.access_token)
        return make_credential(f"token-{self.calls}")

    async def close(self) -> None:
        self.closed = True


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "sync.db"


@pytest.fixture
def settings(db_path):
    return SyncSettings(
        _env_file=None,
        db_path=db_path,
        sync_interval=3600,
        continuation_delay=0.01,
        refresh_min_interval=0.0,
        delivery_timeout=5.0,
    )


@pytest.fixture
def credential():
    return make_credential()


@pytest.fixture
def client():
    return FakeDeliveryClient()


@pytest.fixture
def provider():
    return FakeCredentialProvider()
