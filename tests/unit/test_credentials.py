"""Credential store tests."""

from datetime import datetime, timedelta, timezone

import pytest

from conduit.contracts import utc_now
from conduit.credentials import ConnectionCredentials, InMemoryCredentialStore
from conduit.errors import ConnectionExpiredError, ConnectionNotFoundError


@pytest.mark.asyncio
async def test_resolve_returns_copy():
    store = InMemoryCredentialStore()
    store.add("c1", {"type": "api_key", "data": {"token": "abc"}})

    creds = await store.resolve("c1")
    creds.data["token"] = "changed"
    assert (await store.resolve("c1")).data["token"] == "abc"


@pytest.mark.asyncio
async def test_unknown_connection():
    with pytest.raises(ConnectionNotFoundError):
        await InMemoryCredentialStore().resolve("missing")


@pytest.mark.asyncio
async def test_expired_without_refresher():
    store = InMemoryCredentialStore()
    store.add("c1", ConnectionCredentials(type="oauth2", expires_at=utc_now() - timedelta(minutes=1)))
    with pytest.raises(ConnectionExpiredError):
        await store.resolve("c1")


@pytest.mark.asyncio
async def test_expired_credentials_are_refreshed():
    calls = []

    async def refresher(connection_id, stale):
        calls.append(connection_id)
        return ConnectionCredentials(
            type=stale.type,
            data={"access_token": "fresh"},
            expires_at=utc_now() + timedelta(hours=1),
        )

    store = InMemoryCredentialStore(refresher=refresher)
    store.add("c1", ConnectionCredentials(type="oauth2", expires_at=utc_now() - timedelta(seconds=1)))

    creds = await store.resolve("c1")
    assert creds.data == {"access_token": "fresh"}
    await store.resolve("c1")
    assert calls == ["c1"]


@pytest.mark.asyncio
async def test_failed_refresh_raises_expired():
    async def refresher(connection_id, stale):
        return None

    store = InMemoryCredentialStore(refresher=refresher)
    store.add("c1", ConnectionCredentials(expires_at=utc_now() - timedelta(seconds=1)))
    with pytest.raises(ConnectionExpiredError):
        await store.resolve("c1")


def test_naive_expiry_is_read_as_utc():
    creds = ConnectionCredentials.model_validate({"expires_at": "2020-01-01T00:00:00"})
    assert creds.expires_at == datetime(2020, 1, 1, tzinfo=timezone.utc)
    assert creds.is_expired()


@pytest.mark.asyncio
async def test_naive_expired_connection_raises_expired():
    store = InMemoryCredentialStore()
    store.add("c1", {"type": "oauth2", "expires_at": "2020-01-01T00:00:00"})
    with pytest.raises(ConnectionExpiredError):
        await store.resolve("c1")
