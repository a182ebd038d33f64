"""Rate-limited, retrying HTTP client for the third-party account service."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import httpx
import structlog
from pydantic import ValidationError

from monitor.api.models import (
    AccountRecord,
    ApiFailure,
    FailureKind,
    LoginOutcome,
    LoginResultCode,
    TrafficEntry,
)
from monitor.api.redaction import redact
from monitor.session import SecondFactorKind, Session

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence

    from monitor.api.rate_limit import RateLimiter

    TrafficObserver = Callable[[TrafficEntry], Awaitable[None]]
    SessionRejectedHandler = Callable[[Session], Awaitable[None]]

logger = structlog.get_logger()

DEFAULT_BASE_URL = "https://api.vrchat.cloud/api/1"
DEFAULT_USER_AGENT = "VRC.Core.BestHTTP/2.2.1.0"
DEFAULT_TIMEOUT_SECONDS = 30.0

AUTH_COOKIE = "auth"
SECOND_FACTOR_COOKIE = "twoFactorAuth"

IDENTITY_PATH = "/auth/user"
ACCOUNT_PATH = "/users/{account_id}"
VERIFY_PATHS: dict[SecondFactorKind, str] = {
    SecondFactorKind.TOTP: "/auth/twofactorauth/totp/verify",
    SecondFactorKind.EMAIL_CODE: "/auth/twofactorauth/emailotp/verify",
}
_OFFERED_KINDS: dict[str, SecondFactorKind] = {
    "totp": SecondFactorKind.TOTP,
    "emailotp": SecondFactorKind.EMAIL_CODE,
}

_MAX_LOGGED_BODY = 2000


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Exponential backoff for network failures."""

    initial_delay: float = 1.0
    max_delay: float = 600.0
    max_retries: int = 7

    def delay(self, retry_index: int) -> float:
        """Backoff before retry number ``retry_index`` (zero-based)."""
        return min(self.initial_delay * (2**retry_index), self.max_delay)


def select_second_factor(offered: Sequence[str]) -> SecondFactorKind | None:
    """Pick the second-factor method to use from the kinds the service offers.

    TOTP wins whenever it is offered; otherwise the first offered kind is used.
    Returns None when the chosen kind is not supported.
    """
    if not offered:
        return None
    normalized = [kind.lower() for kind in offered]
    chosen = "totp" if "totp" in normalized else normalized[0]
    return _OFFERED_KINDS.get(chosen)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _transport_error_message(exc: httpx.TransportError) -> str:
    return str(exc) or type(exc).__name__


def _error_message(response: httpx.Response) -> str:
    """Extract the service's error message from a response, falling back to raw text."""
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(body, dict) and "error" in body:
        error = body["error"]
        if isinstance(error, dict):
            return str(error.get("message", error))
        return str(error)
    return response.text[:200] or response.reason_phrase


class ApiClient:
    """Client for the account service.

    Every network exchange is wrapped in a RateLimiter slot. Credential
    material is never stored here: callers pass the Session to attach and
    receive new Session values inside LoginOutcome.

    Fetch calls return ``AccountRecord | ApiFailure`` instead of raising.
    Only network failures are retried. A 401 from any fetch invokes the
    session-rejected handler before the failure is returned.
    """

    def __init__(
        self,
        rate_limiter: RateLimiter,
        *,
        base_url: str = DEFAULT_BASE_URL,
        user_agent: str = DEFAULT_USER_AGENT,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        retry_policy: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._rate_limiter = rate_limiter
        self._retry = retry_policy or RetryPolicy()
        self._sleep = sleep
        self._now = now
        self._traffic_observers: list[TrafficObserver] = []
        self._pending_traffic: list[TrafficEntry] = []
        self._session_rejected_handler: SessionRejectedHandler | None = None
        self._http = httpx.AsyncClient(
            base_url=base_url,
            headers={"User-Agent": user_agent},
            timeout=timeout,
            transport=transport,
            event_hooks={"request": [self._log_request], "response": [self._log_response]},
        )

    def add_traffic_observer(self, observer: TrafficObserver) -> None:
        self._traffic_observers.append(observer)

    def set_session_rejected_handler(self, handler: SessionRejectedHandler) -> None:
        self._session_rejected_handler = handler

    async def aclose(self) -> None:
        await self._http.aclose()

    # -- login flow ----------------------------------------------------------

    async def login(self, username: str, secret: str) -> LoginOutcome:
        """Exchange credentials for a session token via the identity endpoint."""
        try:
            response = await self._exchange(
                "GET",
                IDENTITY_PATH,
                auth=httpx.BasicAuth(username, secret),
            )
        except httpx.TransportError as exc:
            logger.warning("login network error", error=_transport_error_message(exc))
            return LoginOutcome(LoginResultCode.NETWORK_ERROR, detail=_transport_error_message(exc))

        if not response.is_success:
            logger.info("login rejected", status_code=response.status_code)
            return LoginOutcome(LoginResultCode.INVALID_CREDENTIALS, detail=f"HTTP {response.status_code}")

        token = response.cookies.get(AUTH_COOKIE)
        if not token:
            logger.error("login succeeded without a session token", status_code=response.status_code)
            return LoginOutcome(LoginResultCode.MISSING_SESSION_TOKEN)

        try:
            body = response.json()
        except ValueError:
            logger.exception("login response body is not JSON")
            return LoginOutcome(LoginResultCode.NETWORK_ERROR, detail="Malformed login response")

        offered = body.get("requiresTwoFactorAuth") if isinstance(body, dict) else None
        if not offered:
            logger.info("login successful")
            return LoginOutcome(
                LoginResultCode.SUCCESS,
                session=Session(session_token=token, established_at=self._now()),
            )

        kind = select_second_factor(offered)
        if kind is None:
            logger.error("unsupported second factor", offered=offered)
            return LoginOutcome(LoginResultCode.UNSUPPORTED_SECOND_FACTOR_KIND, detail=", ".join(offered))

        logger.info("second factor required", kind=kind)
        return LoginOutcome(
            LoginResultCode.SECOND_FACTOR_REQUIRED,
            session=Session(session_token=token, pending_second_factor=kind),
            second_factor_kind=kind,
        )

    async def verify_second_factor(self, session: Session, code: str) -> LoginOutcome:
        """Submit a second-factor code for the pending interim session."""
        code = code.strip()
        if not code:
            return LoginOutcome(
                LoginResultCode.INVALID_SECOND_FACTOR_CODE,
                session=session,
                second_factor_kind=session.pending_second_factor,
            )

        cookie = session.cookie_header()
        if cookie is None:
            logger.error("cannot verify second factor without an interim session token")
            return LoginOutcome(LoginResultCode.MISSING_SESSION_TOKEN)

        path = VERIFY_PATHS.get(session.pending_second_factor)
        if path is None:
            return LoginOutcome(
                LoginResultCode.UNSUPPORTED_SECOND_FACTOR_KIND,
                detail=str(session.pending_second_factor),
            )

        try:
            response = await self._exchange("POST", path, headers={"Cookie": cookie}, json={"code": code})
        except httpx.TransportError as exc:
            logger.warning("second factor network error", error=_transport_error_message(exc))
            return LoginOutcome(LoginResultCode.NETWORK_ERROR, detail=_transport_error_message(exc))

        if not response.is_success:
            if "invalid code" in response.text.lower():
                logger.info("invalid second factor code")
                return LoginOutcome(
                    LoginResultCode.INVALID_SECOND_FACTOR_CODE,
                    session=session,
                    second_factor_kind=session.pending_second_factor,
                )
            logger.warning("second factor verification failed", status_code=response.status_code)
            return LoginOutcome(
                LoginResultCode.SECOND_FACTOR_VERIFICATION_FAILED,
                detail=f"HTTP {response.status_code}",
            )

        second_factor_token = response.cookies.get(SECOND_FACTOR_COOKIE)
        if second_factor_token is None:
            logger.warning("verification response carried no second factor cookie")
        established = Session(
            session_token=response.cookies.get(AUTH_COOKIE) or session.session_token,
            second_factor_token=second_factor_token,
            established_at=self._now(),
        )
        logger.info("second factor verified")
        return LoginOutcome(LoginResultCode.SUCCESS, session=established)

    def logout(self, session: Session) -> Session:
        """Drop the credential material; the service keeps no state worth revoking."""
        if session.session_token is not None:
            logger.info("session credentials cleared")
        self._http.cookies.clear()
        return Session()

    # -- fetches -------------------------------------------------------------

    async def fetch_account(self, session: Session, account_id: str) -> AccountRecord | ApiFailure:
        result = await self._fetch(session, ACCOUNT_PATH.format(account_id=account_id))
        if isinstance(result, ApiFailure):
            return result
        return self._parse_record(result, account_id=account_id)

    async def fetch_self(self, session: Session) -> AccountRecord | ApiFailure:
        """Identity check for the current session."""
        result = await self._fetch(session, IDENTITY_PATH)
        if isinstance(result, ApiFailure):
            return result
        if result.get("requiresTwoFactorAuth"):
            return ApiFailure(FailureKind.AUTHENTICATION, "Second factor still required")
        return self._parse_record(result, account_id="self")

    async def _fetch(self, session: Session, path: str) -> dict[str, Any] | ApiFailure:
        cookie = session.cookie_header()
        if cookie is None:
            return ApiFailure(FailureKind.AUTHENTICATION, "No active session")

        retry_index = 0
        while True:
            try:
                response = await self._exchange("GET", path, headers={"Cookie": cookie})
            except httpx.TransportError as exc:
                message = _transport_error_message(exc)
                if retry_index >= self._retry.max_retries:
                    logger.error("network retries exhausted", path=path, attempts=retry_index + 1, error=message)
                    return ApiFailure(FailureKind.NETWORK, message, exhausted=True)
                delay = self._retry.delay(retry_index)
                retry_index += 1
                logger.warning(
                    "network error, retrying",
                    path=path,
                    retry=retry_index,
                    delay_seconds=delay,
                    error=message,
                )
                await self._sleep(delay)
                continue
            return await self._classify(response, session)

    async def _classify(self, response: httpx.Response, session: Session) -> dict[str, Any] | ApiFailure:
        status = response.status_code
        if status == httpx.codes.UNAUTHORIZED:
            logger.warning("session rejected by service", path=response.request.url.path)
            await self._notify_session_rejected(session)
            return ApiFailure(FailureKind.AUTHENTICATION, _error_message(response), status)
        if not response.is_success:
            return ApiFailure(FailureKind.API, _error_message(response), status)
        try:
            body = response.json()
        except ValueError:
            return ApiFailure(FailureKind.API, "Malformed response body", status)
        if not isinstance(body, dict):
            return ApiFailure(FailureKind.API, "Unexpected response shape", status)
        if "error" in body:
            return ApiFailure(FailureKind.API, _error_message(response), status)
        return body

    @staticmethod
    def _parse_record(body: dict[str, Any], *, account_id: str) -> AccountRecord | ApiFailure:
        try:
            return AccountRecord.model_validate(body)
        except ValidationError as exc:
            logger.warning("malformed account record", account_id=account_id, errors=exc.error_count())
            return ApiFailure(FailureKind.API, "Malformed account record")

    async def _notify_session_rejected(self, session: Session) -> None:
        if self._session_rejected_handler is None:
            return
        try:
            await self._session_rejected_handler(session)
        except Exception:
            logger.exception("session rejected handler failed")

    async def _exchange(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        traffic: list[TrafficEntry] = []
        try:
            async with self._rate_limiter.slot():
                try:
                    return await self._http.request(method, path, **kwargs)
                finally:
                    # credentials travel only in explicit headers
                    self._http.cookies.clear()
                    traffic, self._pending_traffic = self._pending_traffic, []
        finally:
            # observers run after the slot is released
            await self._deliver_traffic(traffic)

    # -- traffic logging -----------------------------------------------------

    async def _log_request(self, request: httpx.Request) -> None:
        headers = "\n".join(f"{name}: {value}" for name, value in request.headers.items())
        body = request.content.decode("utf-8", errors="replace")[:_MAX_LOGGED_BODY]
        self._record_traffic(
            "request",
            f"{request.method} {request.url.path}",
            f"{headers}\n\n{body}" if body else headers,
        )

    async def _log_response(self, response: httpx.Response) -> None:
        await response.aread()
        headers = "\n".join(f"{name}: {value}" for name, value in response.headers.items())
        body = response.text[:_MAX_LOGGED_BODY]
        self._record_traffic(
            "response",
            f"{response.status_code} {response.request.method} {response.request.url.path}",
            f"{headers}\n\n{body}" if body else headers,
        )

    def _record_traffic(self, direction: str, summary: str, content: str) -> None:
        entry = TrafficEntry(direction=direction, summary=summary, content=redact(content), timestamp=self._now())
        logger.debug("api traffic", direction=direction, summary=entry.summary, content=entry.content)
        if self._traffic_observers:
            self._pending_traffic.append(entry)

    async def _deliver_traffic(self, entries: list[TrafficEntry]) -> None:
        for entry in entries:
            for observer in list(self._traffic_observers):
                try:
                    await observer(entry)
                except Exception:
                    logger.exception("traffic observer failed", direction=entry.direction)
