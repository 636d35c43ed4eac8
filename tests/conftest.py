"""Shared pytest fixtures."""

from datetime import timedelta

import pytest
import respx

from fakes import BASE_URL, FakeSleep, RotatingProvider
from twin_client.api import TwinApiClient
from twin_client.services import (
    AttemptEvent,
    CacheManager,
    CredentialManager,
    RetryPolicy,
    TransportClient,
)


@pytest.fixture
def sleeper() -> FakeSleep:
    return FakeSleep()


@pytest.fixture
def provider() -> RotatingProvider:
    return RotatingProvider()


@pytest.fixture
def credentials(provider: RotatingProvider) -> CredentialManager:
    return CredentialManager(provider)


@pytest.fixture
def events() -> list[AttemptEvent]:
    return []


@pytest.fixture
def policy() -> RetryPolicy:
    """Default constants with jitter pinned to its lower bound."""
    return RetryPolicy(rng=lambda: 0.0)


@pytest.fixture
async def transport(
    credentials: CredentialManager,
    policy: RetryPolicy,
    events: list[AttemptEvent],
    sleeper: FakeSleep,
) -> TransportClient:
    client = TransportClient(
        BASE_URL,
        credentials,
        policy,
        timeout=5.0,
        event_sink=events.append,
        sleep=sleeper,
    )
    yield client
    await client.close()


@pytest.fixture
def cache() -> CacheManager:
    return CacheManager(max_entries=50, default_ttl=timedelta(minutes=5))


@pytest.fixture
def api(transport: TransportClient, cache: CacheManager) -> TwinApiClient:
    return TwinApiClient(transport, cache, stale_while_revalidate=False)


@pytest.fixture
def api_mock():
    """respx router scoped to the test backend."""
    with respx.mock(base_url=BASE_URL, assert_all_called=False) as mock:
        yield mock
