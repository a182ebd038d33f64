"""Tests for the rate-limited API client against a scripted mock service."""

import asyncio
from unittest.mock import AsyncMock

import httpx

from monitor.api.client import ApiClient, RetryPolicy, select_second_factor
from monitor.api.models import AccountRecord, ApiFailure, FailureKind, LoginResultCode
from monitor.api.rate_limit import RateLimiter
from monitor.api.redaction import REDACTED
from monitor.session import SecondFactorKind, Session
from monitor.tests.mocks import API_BASE, account_body, auth_cookie_header

ACTIVE = Session(session_token="authcookie_abc")


class TestSelectSecondFactor:
    def test_prefers_totp(self):
        assert select_second_factor(["emailOtp", "totp"]) is SecondFactorKind.TOTP

    def test_falls_back_to_first_offered(self):
        assert select_second_factor(["emailOtp", "otp"]) is SecondFactorKind.EMAIL_CODE

    def test_unsupported_kind(self):
        assert select_second_factor(["otp"]) is None


class TestRetryPolicy:
    def test_exponential_backoff_capped(self):
        policy = RetryPolicy()
        delays = [policy.delay(i) for i in range(12)]
        assert delays[:4] == [1.0, 2.0, 4.0, 8.0]
        assert max(delays) == 600.0


class TestLogin:
    async def test_success_without_second_factor(self, api_client):
        """Valid credentials without a challenge yield an established session."""
        outcome = await api_client.login("alice", "hunter2")

        assert outcome.code is LoginResultCode.SUCCESS
        assert outcome.session.session_token == "authcookie_abc"
        assert outcome.session.is_established
        assert outcome.session.established_at is not None

    async def test_second_factor_required(self, api_client, fake_service):
        """A challenge keeps the interim token and records the pending kind."""
        fake_service.second_factors = ["emailOtp", "totp"]

        outcome = await api_client.login("alice", "hunter2")

        assert outcome.code is LoginResultCode.SECOND_FACTOR_REQUIRED
        assert outcome.second_factor_kind is SecondFactorKind.TOTP
        assert outcome.session.session_token == "authcookie_abc"
        assert not outcome.session.is_established

    async def test_invalid_credentials(self, api_client):
        outcome = await api_client.login("alice", "wrong")

        assert outcome.code is LoginResultCode.INVALID_CREDENTIALS
        assert outcome.session.session_token is None

    async def test_missing_session_token(self, api_client, fake_service):
        """A success status without the auth cookie is a protocol violation."""
        fake_service.script("/auth/user", httpx.Response(200, json=account_body("usr_self")))

        outcome = await api_client.login("alice", "hunter2")

        assert outcome.code is LoginResultCode.MISSING_SESSION_TOKEN

    async def test_unsupported_second_factor(self, api_client, fake_service):
        fake_service.second_factors = ["otp"]

        outcome = await api_client.login("alice", "hunter2")

        assert outcome.code is LoginResultCode.UNSUPPORTED_SECOND_FACTOR_KIND

    async def test_network_error_not_retried(self, api_client, fake_service, backoff_sleep):
        fake_service.script("/auth/user", httpx.ConnectError("connection refused"))

        outcome = await api_client.login("alice", "hunter2")

        assert outcome.code is LoginResultCode.NETWORK_ERROR
        assert len(fake_service.requests) == 1
        backoff_sleep.assert_not_awaited()


class TestVerifySecondFactor:
    def _pending(self, kind=SecondFactorKind.TOTP):
        return Session(session_token="authcookie_abc", pending_second_factor=kind)

    async def test_valid_code(self, api_client, fake_service):
        outcome = await api_client.verify_second_factor(self._pending(), "123456")

        assert outcome.code is LoginResultCode.SUCCESS
        assert outcome.session.is_established
        assert outcome.session.second_factor_token == "2fa_cookie_xyz"
        assert fake_service.paths() == ["/auth/twofactorauth/totp/verify"]

    async def test_email_code_endpoint(self, api_client, fake_service):
        await api_client.verify_second_factor(self._pending(SecondFactorKind.EMAIL_CODE), "123456")

        assert fake_service.paths() == ["/auth/twofactorauth/emailotp/verify"]

    async def test_invalid_code_keeps_interim_session(self, api_client):
        pending = self._pending()

        outcome = await api_client.verify_second_factor(pending, "000000")

        assert outcome.code is LoginResultCode.INVALID_SECOND_FACTOR_CODE
        assert outcome.session == pending

    async def test_blank_code_is_invalid_without_request(self, api_client, fake_service):
        outcome = await api_client.verify_second_factor(self._pending(), "   ")

        assert outcome.code is LoginResultCode.INVALID_SECOND_FACTOR_CODE
        assert fake_service.requests == []

    async def test_other_failure_is_verification_failed(self, api_client, fake_service):
        fake_service.script(
            "/auth/twofactorauth/totp/verify",
            httpx.Response(500, json={"error": {"message": "Internal error"}}),
        )

        outcome = await api_client.verify_second_factor(self._pending(), "123456")

        assert outcome.code is LoginResultCode.SECOND_FACTOR_VERIFICATION_FAILED

    async def test_without_token(self, api_client):
        outcome = await api_client.verify_second_factor(Session(), "123456")

        assert outcome.code is LoginResultCode.MISSING_SESSION_TOKEN

    async def test_without_pending_kind(self, api_client):
        outcome = await api_client.verify_second_factor(ACTIVE, "123456")

        assert outcome.code is LoginResultCode.UNSUPPORTED_SECOND_FACTOR_KIND


class TestFetchAccount:
    async def test_success(self, api_client, fake_service):
        fake_service.accounts["usr_a"] = account_body("usr_a", state="online", status="busy", bio="hi")

        result = await api_client.fetch_account(ACTIVE, "usr_a")

        assert isinstance(result, AccountRecord)
        assert result.status == "busy"
        assert result.to_wire()["bio"] == "hi"
        request = fake_service.requests[0]
        assert request.headers["cookie"] == "auth=authcookie_abc"
        assert request.headers["user-agent"] == "VRC.Core.BestHTTP/2.2.1.0"

    async def test_missing_state_defaults_to_unknown(self, api_client, fake_service):
        fake_service.accounts["usr_a"] = {"id": "usr_a", "state": None}

        result = await api_client.fetch_account(ACTIVE, "usr_a")

        assert isinstance(result, AccountRecord)
        assert result.state == "unknown"
        assert result.status == "unknown"

    async def test_unauthorized_invalidates_session(self, api_client):
        """A 401 is an authentication failure and fires the rejection handler."""
        handler = AsyncMock()
        api_client.set_session_rejected_handler(handler)
        stale = Session(session_token="expired")

        result = await api_client.fetch_account(stale, "usr_a")

        assert isinstance(result, ApiFailure)
        assert result.kind is FailureKind.AUTHENTICATION
        assert result.status_code == 401
        handler.assert_awaited_once_with(stale)

    async def test_not_found_is_api_error(self, api_client, backoff_sleep):
        result = await api_client.fetch_account(ACTIVE, "usr_missing")

        assert isinstance(result, ApiFailure)
        assert result.kind is FailureKind.API
        assert result.status_code == 404
        assert result.message == "User not found"
        backoff_sleep.assert_not_awaited()

    async def test_error_body_on_success_status(self, api_client, fake_service):
        fake_service.script("/users/usr_a", httpx.Response(200, json={"error": "rate limited"}))

        result = await api_client.fetch_account(ACTIVE, "usr_a")

        assert isinstance(result, ApiFailure)
        assert result.kind is FailureKind.API
        assert result.status_code == 200

    async def test_network_error_retried_then_succeeds(self, api_client, fake_service, backoff_sleep):
        fake_service.accounts["usr_a"] = account_body("usr_a")
        fake_service.script("/users/usr_a", httpx.ConnectError("reset"), httpx.ReadTimeout("slow"))

        result = await api_client.fetch_account(ACTIVE, "usr_a")

        assert isinstance(result, AccountRecord)
        assert len(fake_service.requests) == 3
        assert [c.args[0] for c in backoff_sleep.await_args_list] == [1.0, 2.0]

    async def test_network_retries_exhausted(self, api_client, fake_service, backoff_sleep):
        fake_service.script("/users/usr_a", *(httpx.ConnectError("down") for _ in range(8)))

        result = await api_client.fetch_account(ACTIVE, "usr_a")

        assert isinstance(result, ApiFailure)
        assert result.kind is FailureKind.NETWORK
        assert result.exhausted
        assert result.describe() == "Network error: down (retries exhausted)"
        assert len(fake_service.requests) == 8
        assert [c.args[0] for c in backoff_sleep.await_args_list] == [1.0, 2.0, 4.0, 8.0, 16.0, 32.0, 64.0]

    async def test_no_session_skips_network(self, api_client, fake_service):
        result = await api_client.fetch_account(Session(), "usr_a")

        assert isinstance(result, ApiFailure)
        assert result.kind is FailureKind.AUTHENTICATION
        assert fake_service.requests == []


class TestFetchSelf:
    async def test_identity(self, api_client):
        result = await api_client.fetch_self(ACTIVE)

        assert isinstance(result, AccountRecord)
        assert result.id == "usr_self"

    async def test_pending_second_factor_is_authentication_failure(self, api_client, fake_service):
        fake_service.script("/auth/user", httpx.Response(200, json={"requiresTwoFactorAuth": ["totp"]}))

        result = await api_client.fetch_self(ACTIVE)

        assert isinstance(result, ApiFailure)
        assert result.kind is FailureKind.AUTHENTICATION


class TestTrafficLogging:
    async def test_observer_receives_redacted_entries(self, api_client, fake_service):
        """Credentials never reach traffic observers."""
        entries = []

        async def observe(entry):
            entries.append(entry)

        api_client.add_traffic_observer(observe)
        fake_service.second_factors = ["totp"]

        await api_client.login("alice", "hunter2")

        assert [e.direction for e in entries] == ["request", "response"]
        request_entry, response_entry = entries
        assert request_entry.summary == "GET /api/1/auth/user"
        assert f"Basic {REDACTED}" in request_entry.content
        assert "authcookie_abc" not in response_entry.content

    async def test_failing_observer_does_not_break_call(self, api_client):
        api_client.add_traffic_observer(AsyncMock(side_effect=RuntimeError("observer down")))

        outcome = await api_client.login("alice", "hunter2")

        assert outcome.code is LoginResultCode.SUCCESS

    async def test_observers_run_after_slot_is_released(self, fake_service):
        """A slow observer never holds the rate-limit slot of the call it logs."""
        limiter = RateLimiter(min_start_interval=0, min_release_gap=0)
        client = ApiClient(limiter, base_url=API_BASE, transport=fake_service.transport())
        entered = asyncio.Event()
        unblock = asyncio.Event()
        released_when_observed = []

        async def slow_observer(_entry):
            released_when_observed.append(limiter._last_release is not None)
            entered.set()
            await unblock.wait()

        client.add_traffic_observer(slow_observer)
        try:
            login = asyncio.create_task(client.login("alice", "hunter2"))
            await asyncio.wait_for(entered.wait(), timeout=1)
            assert not login.done()

            unblock.set()
            outcome = await login
        finally:
            await client.aclose()

        assert outcome.code is LoginResultCode.SUCCESS
        assert released_when_observed == [True, True]


class TestRateLimiting:
    async def test_every_exchange_takes_a_slot(self, fake_service):
        limiter = RateLimiter(min_start_interval=0, min_release_gap=0)
        client = ApiClient(limiter, base_url=API_BASE, transport=fake_service.transport())
        try:
            await client.login("alice", "hunter2")
            await client.fetch_self(ACTIVE)
        finally:
            await client.aclose()

        assert limiter._last_start is not None
        assert limiter._last_release is not None
        assert limiter._last_release >= limiter._last_start

    async def test_cookies_are_not_persisted_between_calls(self, api_client, fake_service):
        """Cookies set by one response are never replayed implicitly."""
        fake_service.script(
            "/users/usr_a",
            httpx.Response(200, json=account_body("usr_a"), headers=[auth_cookie_header("auth", "rotated")]),
        )
        fake_service.accounts["usr_b"] = account_body("usr_b")

        await api_client.fetch_account(ACTIVE, "usr_a")
        await api_client.fetch_account(ACTIVE, "usr_b")

        assert fake_service.requests[1].headers["cookie"] == "auth=authcookie_abc"
