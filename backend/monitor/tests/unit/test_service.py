"""Tests for component wiring: session activity drives polling and broadcasts."""

from unittest.mock import Mock

import pytest

from monitor.auth.manager import AuthState
from monitor.auth.session_cache import CachedTokens, FileSessionCache
from monitor.config import MonitorConfig
from monitor.server.settings import MonitorSettings
from monitor.service import MonitorService
from monitor.state.store import StatusKind
from monitor.tests.mocks import API_BASE, MockConnection, account_body, settle


@pytest.fixture
def settings(tmp_path):
    return MonitorSettings(
        api_base_url=API_BASE,
        session_cache_path=str(tmp_path / "session.json"),
        broadcast_traffic=False,
        validate_session_on_startup=False,
    )


@pytest.fixture
def config(accounts):
    return MonitorConfig(accounts=accounts)


@pytest.fixture
async def make_service(fake_service, clock):
    created = []

    def _make(config, settings):
        service = MonitorService(
            config,
            settings,
            transport=fake_service.transport(),
            clock=clock.monotonic,
            sleep=clock.sleep,
            terminate=Mock(),
        )
        created.append(service)
        return service

    yield _make
    for service in created:
        await service.shutdown()


@pytest.fixture
def service(make_service, config, settings, fake_service):
    fake_service.accounts["usr_a"] = account_body("usr_a")
    fake_service.accounts["usr_b"] = account_body("usr_b", state="offline", status="offline")
    return make_service(config, settings)


class TestSessionDrivesPolling:
    async def test_login_starts_polling_and_broadcasts(self, service, clock):
        conn = MockConnection()
        await service.hub.register(conn)

        await service.auth.login("alice", "hunter2")
        assert service.scheduler.running

        await clock.advance(10)

        assert service.store.latest("usr_a").status_kind is StatusKind.OK
        assert service.store.latest("usr_b").profile.state == "offline"
        statuses = [m["payload"]["hasActiveSession"] for m in conn.messages_of_type("sessionStatus")]
        assert statuses == [False, True]
        assert {m["payload"]["accountId"] for m in conn.messages_of_type("accountUpdate")} == {"usr_a", "usr_b"}

    async def test_logout_stops_polling(self, service, clock, fake_service):
        await service.auth.login("alice", "hunter2")
        await clock.advance(10)

        await service.auth.logout()
        polled = len(fake_service.requests)
        await clock.advance(300)

        assert not service.scheduler.running
        assert len(fake_service.requests) == polled

    async def test_rejected_session_stops_polling(self, service, clock, fake_service):
        """A 401 during a poll logs the monitor out and halts polling."""
        conn = MockConnection()
        await service.hub.register(conn)
        await service.auth.login("alice", "hunter2")
        await clock.advance(10)

        fake_service.session_token = "rotated_elsewhere"
        await clock.advance(60)

        assert service.auth.current_state() is AuthState.UNAUTHENTICATED
        assert not service.scheduler.running
        assert conn.messages_of_type("sessionStatus")[-1]["payload"]["hasActiveSession"] is False

    async def test_polls_are_spaced_by_rate_limiter(self, service, clock, fake_service):
        times = []
        fake_service.on_request = lambda _request: times.append(clock.now)

        await service.auth.login("alice", "hunter2")
        await clock.advance(10)

        assert len(times) == 3
        assert all(b - a >= 1.0 for a, b in zip(times, times[1:], strict=False))


class TestStartup:
    async def test_restores_cached_session(self, make_service, config, settings, clock):
        FileSessionCache(settings.session_cache_path).save(CachedTokens(session_token="authcookie_abc"))
        service = make_service(config.model_copy(update={"cache_session": True}), settings)

        await service.start()

        assert service.auth.has_active_session()
        assert service.scheduler.running

    async def test_validates_restored_session(self, make_service, config, settings, clock):
        FileSessionCache(settings.session_cache_path).save(CachedTokens(session_token="stale"))
        settings = settings.model_copy(update={"validate_session_on_startup": True})
        service = make_service(config.model_copy(update={"cache_session": True}), settings)

        await service.start()
        await settle(100)

        assert service.auth.current_state() is AuthState.UNAUTHENTICATED
        assert not service.scheduler.running

    async def test_without_cache_starts_idle(self, service):
        await service.start()

        assert not service.auth.has_active_session()
        assert not service.scheduler.running


class TestTrafficBroadcast:
    async def test_log_entries_reach_dashboards_when_enabled(self, make_service, config, settings):
        service = make_service(config, settings.model_copy(update={"broadcast_traffic": True}))
        conn = MockConnection()
        await service.hub.register(conn)

        await service.auth.login("alice", "hunter2")

        entries = conn.messages_of_type("logEntry")
        assert [e["payload"]["direction"] for e in entries] == ["request", "response"]
        assert not any("YWxpY2U6aHVudGVyMg==" in frame for frame in conn.sent_frames)

    async def test_disabled_when_configured_off(self, service):
        conn = MockConnection()
        await service.hub.register(conn)

        await service.auth.login("alice", "hunter2")

        assert conn.messages_of_type("logEntry") == []


class TestShutdown:
    async def test_closes_dashboards(self, service):
        conn = MockConnection()
        await service.hub.register(conn)
        await service.auth.login("alice", "hunter2")

        await service.shutdown()

        assert conn.closed
        assert not service.scheduler.running
