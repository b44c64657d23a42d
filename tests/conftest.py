"""Shared pytest fixtures for invoice lifecycle and signature verification tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator

import pytest
import pytest_asyncio

from cashpay.application.verification.key_store import KeyStore
from cashpay.application.verification.signature_verifier import SignatureVerifier
from cashpay.envs.client_env import Settings
from cashpay.infrastructure.pay_server.pay_server_client import AsyncPayServerClient
from tests.fixtures import FakeClock, FakePayServer, PushChannelRecorder, SigningIdentity

PAY_SERVER_URL = "https://pay.test"


@pytest.fixture
def clock() -> FakeClock:
    """A frozen clock; tests advance it explicitly."""
    return FakeClock()


@pytest.fixture
def pay_server(clock: FakeClock) -> FakePayServer:
    return FakePayServer(PAY_SERVER_URL, clock=clock)


@pytest_asyncio.fixture
async def pay_server_client(
    pay_server: FakePayServer,
) -> AsyncGenerator[AsyncPayServerClient, None]:
    client = pay_server.client()
    yield client
    await client.aclose()


@pytest.fixture
def settings() -> Settings:
    return Settings(endpoint=PAY_SERVER_URL, listen=True)


@pytest.fixture
def push_channels() -> PushChannelRecorder:
    return PushChannelRecorder()


@pytest.fixture
def server_identity() -> SigningIdentity:
    """The pay server's signing key."""
    return SigningIdentity("pay.test")


@pytest.fixture
def published_keys(pay_server: FakePayServer, server_identity: SigningIdentity) -> None:
    """Publish the pay server's key, valid for a day."""
    pay_server.publish_keys(
        server_identity.owner,
        [server_identity.public_key_hex],
        datetime.now(timezone.utc) + timedelta(days=1),
    )


@pytest.fixture
def key_store(
    pay_server_client: AsyncPayServerClient, published_keys: None
) -> KeyStore:
    return KeyStore(pay_server_client, [PAY_SERVER_URL])


@pytest.fixture
def verifier(key_store: KeyStore) -> SignatureVerifier:
    return SignatureVerifier(key_store)
