from unittest.mock import AsyncMock

import pytest

from monitor.api.client import ApiClient, RetryPolicy
from monitor.api.rate_limit import RateLimiter
from monitor.auth.manager import AuthSessionManager
from monitor.config import WatchedAccount
from monitor.tests.mocks import API_BASE, FakeAccountService, FakeClock


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_service():
    return FakeAccountService()


@pytest.fixture
def backoff_sleep():
    """Records backoff delays without waiting."""
    return AsyncMock()


@pytest.fixture
async def api_client(fake_service, backoff_sleep):
    client = ApiClient(
        RateLimiter(min_start_interval=0, min_release_gap=0),
        base_url=API_BASE,
        transport=fake_service.transport(),
        retry_policy=RetryPolicy(),
        sleep=backoff_sleep,
    )
    yield client
    await client.aclose()


@pytest.fixture
def auth_manager(api_client):
    return AuthSessionManager(api_client)


@pytest.fixture
def accounts():
    return [
        WatchedAccount(account_id="usr_a", label="Alpha", poll_interval="1m"),
        WatchedAccount(account_id="usr_b", label="Bravo", poll_interval="2m", volume_hint=0.5),
    ]
