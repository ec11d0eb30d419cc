"""
Token-Guarded Pipeline Tests

Pre-flight refresh, single-flight refresh under concurrency, the one-retry
rule and refresh throttling.
"""

import asyncio
import time

import pytest

from conftest import FakeCredentialProvider, FakeDeliveryClient, make_credential
from offline_sync.auth import SingleFlight, TokenGuardedPipeline
from offline_sync.errors import AuthExpiredError, CredentialRefreshError, PermissionDeniedError
from offline_sync.models import Operation, OperationAction


def _op(n: int = 1) -> Operation:
    return Operation.new(OperationAction.UPDATE, "interaction", {"id": f"rfi-{n}"})


def reject_token(*tokens):
    """Delivery hook failing with AuthExpired for the given access tokens."""

    def hook(operation, credential):
        if credential.access_token in tokens:
            return AuthExpiredError("HTTP 401: JWT expired", 401)
        return None

    return hook


class TestSingleFlight:
    """Tests for the shared in-flight call."""

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_call(self):
        flight = SingleFlight()
        calls = 0

        async def work():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)
            return calls

        results = await asyncio.gather(*(flight.do(work) for _ in range(5)))
        assert calls == 1
        assert results == [1] * 5
        assert flight.in_flight is False

    @pytest.mark.asyncio
    async def test_shared_failure(self):
        flight = SingleFlight()

        async def work():
            await asyncio.sleep(0.01)
            raise CredentialRefreshError("revoked")

        results = await asyncio.gather(*(flight.do(work) for _ in range(3)), return_exceptions=True)
        assert all(isinstance(r, CredentialRefreshError) for r in results)

    @pytest.mark.asyncio
    async def test_new_call_after_completion(self):
        flight = SingleFlight()
        calls = []

        async def work():
            calls.append(1)
            return len(calls)

        assert await flight.do(work) == 1
        assert await flight.do(work) == 2


class TestTokenGuardedPipeline:
    """Tests for credential guarding around delivery."""

    @pytest.mark.asyncio
    async def test_valid_credential_sent_as_is(self, client, provider, credential):
        pipeline = TokenGuardedPipeline(client, provider, credential=credential)
        ack = await pipeline.send(_op())

        assert ack.duplicate is False
        assert client.calls[0][1].access_token == "token-0"
        assert provider.calls == 0

    @pytest.mark.asyncio
    async def test_preflight_refresh_when_expiring(self, client, provider):
        pipeline = TokenGuardedPipeline(
            client, provider, credential=make_credential(expires_in=10), expiry_buffer=30
        )
        await pipeline.send(_op())

        assert provider.calls == 1
        assert client.calls[0][1].access_token == "token-1"
        assert pipeline.credential.access_token == "token-1"

    @pytest.mark.asyncio
    async def test_preflight_failure_proceeds_with_current_credential(self, client):
        provider = FakeCredentialProvider(error=CredentialRefreshError("auth server down"))
        pipeline = TokenGuardedPipeline(client, provider, credential=make_credential(expires_in=10))

        await pipeline.send(_op())
        assert client.calls[0][1].access_token == "token-0"

    @pytest.mark.asyncio
    async def test_no_credential_and_refresh_fails(self, client):
        provider = FakeCredentialProvider(error=CredentialRefreshError("no refresh token"))
        pipeline = TokenGuardedPipeline(client, provider)

        with pytest.raises(CredentialRefreshError):
            await pipeline.send(_op())
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_auth_expired_refreshes_and_retries_once(self, provider, credential):
        client = FakeDeliveryClient(hook=reject_token("token-0"))
        pipeline = TokenGuardedPipeline(client, provider, credential=credential)

        await pipeline.send(_op())

        assert provider.calls == 1
        assert [c.access_token for _, c in client.calls] == ["token-0", "token-1"]
        assert len(client.delivered) == 1

    @pytest.mark.asyncio
    async def test_second_auth_expired_surfaces(self, provider, credential):
        client = FakeDeliveryClient(hook=reject_token("token-0", "token-1"))
        pipeline = TokenGuardedPipeline(client, provider, credential=credential)

        with pytest.raises(AuthExpiredError, match="after credential refresh"):
            await pipeline.send(_op())

        assert provider.calls == 1
        assert len(client.calls) == 2

    @pytest.mark.asyncio
    async def test_permission_denied_not_refreshed(self, provider, credential):
        client = FakeDeliveryClient(hook=lambda op, cred: PermissionDeniedError("rls", 403))
        pipeline = TokenGuardedPipeline(client, provider, credential=credential)

        with pytest.raises(PermissionDeniedError):
            await pipeline.send(_op())
        assert provider.calls == 0
        assert len(client.calls) == 1

    @pytest.mark.asyncio
    async def test_concurrent_auth_failures_trigger_one_refresh(self, credential):
        client = FakeDeliveryClient(hook=reject_token("token-0"))
        provider = FakeCredentialProvider(delay=0.02)
        pipeline = TokenGuardedPipeline(client, provider, credential=credential)

        acks = await asyncio.gather(*(pipeline.send(_op(n)) for n in range(10)))

        assert provider.calls == 1
        assert pipeline.refresh_attempts == 1
        assert len(acks) == 10
        assert len(client.delivered) == 10
        tokens = [c.access_token for _, c in client.calls]
        assert tokens.count("token-0") == 10
        assert tokens.count("token-1") == 10

    @pytest.mark.asyncio
    async def test_same_token_refresh_is_error(self, credential):
        client = FakeDeliveryClient(hook=reject_token("token-0"))
        provider = FakeCredentialProvider(same_token=True)
        pipeline = TokenGuardedPipeline(client, provider, credential=credential)

        with pytest.raises(CredentialRefreshError, match="same token"):
            await pipeline.send(_op())
        assert pipeline.credential.access_token == "token-0"

    @pytest.mark.asyncio
    async def test_unexpected_provider_error_wrapped(self, client, credential):
        provider = FakeCredentialProvider(error=RuntimeError("socket closed"))
        pipeline = TokenGuardedPipeline(client, provider, credential=credential)

        with pytest.raises(CredentialRefreshError):
            await pipeline.refresh()

    @pytest.mark.asyncio
    async def test_refresh_throttled(self, client, credential):
        provider = FakeCredentialProvider()
        pipeline = TokenGuardedPipeline(client, provider, credential=credential, min_refresh_interval=0.2)

        start = time.monotonic()
        await pipeline.refresh()
        await pipeline.refresh()
        elapsed = time.monotonic() - start

        assert provider.calls == 2
        assert elapsed >= 0.15

    @pytest.mark.asyncio
    async def test_stale_refresh_skipped_when_already_replaced(self, client, provider, credential):
        pipeline = TokenGuardedPipeline(client, provider, credential=credential)
        fresh = await pipeline.refresh(stale=credential)

        assert await pipeline.refresh(stale=credential) is fresh
        assert provider.calls == 1

    @pytest.mark.asyncio
    async def test_set_credential(self, client, provider):
        pipeline = TokenGuardedPipeline(client, provider)
        pipeline.set_credential(make_credential("login-token"))

        await pipeline.send(_op())
        assert client.calls[0][1].access_token == "login-token"
        assert provider.calls == 0
