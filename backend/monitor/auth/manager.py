"""Authentication state machine owning the process-wide session."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING

import structlog

from monitor.api.models import AccountRecord, ApiFailure, FailureKind, LoginOutcome, LoginResultCode
from monitor.auth.session_cache import CachedTokens
from monitor.session import EMPTY_SESSION, SecondFactorKind, Session

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from monitor.api.client import ApiClient
    from monitor.auth.session_cache import FileSessionCache

logger = structlog.get_logger()


class AuthState(StrEnum):
    UNAUTHENTICATED = "unauthenticated"
    AWAITING_SECOND_FACTOR = "awaiting_second_factor"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"


class InvalidTransitionError(Exception):
    """Operation not allowed in the current authentication state."""


@dataclass(frozen=True, slots=True)
class SessionStatus:
    state: AuthState
    has_active_session: bool
    last_established_at: datetime | None
    pending_second_factor: SecondFactorKind


class AuthSessionManager:
    """Drive login, second-factor verification, logout and forced invalidation.

    Login flows are serialized by an internal lock. Each transition replaces
    the held Session value as a whole. Listeners are notified after the lock
    is released, and only when the session becomes active or inactive or an
    active session is replaced by a new one.
    """

    def __init__(
        self,
        api_client: ApiClient,
        session_cache: FileSessionCache | None = None,
        *,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._api = api_client
        self._cache = session_cache
        self._now = now or (lambda: datetime.now(UTC))
        self._state = AuthState.UNAUTHENTICATED
        self._session = EMPTY_SESSION
        self._last_established_at: datetime | None = None
        self._listeners: list[Callable[[SessionStatus], Awaitable[None]]] = []
        self._lock = asyncio.Lock()
        api_client.set_session_rejected_handler(self.invalidate)

    @property
    def session(self) -> Session:
        return self._session

    def current_state(self) -> AuthState:
        return self._state

    def has_active_session(self) -> bool:
        return self._state is AuthState.AUTHENTICATED and self._session.is_established

    def status(self) -> SessionStatus:
        return SessionStatus(
            state=self._state,
            has_active_session=self.has_active_session(),
            last_established_at=self._last_established_at,
            pending_second_factor=self._session.pending_second_factor,
        )

    def add_listener(self, listener: Callable[[SessionStatus], Awaitable[None]]) -> None:
        self._listeners.append(listener)

    async def login(self, username: str, secret: str) -> LoginOutcome:
        async with self._lock:
            outcome = await self._api.login(username, secret)
            match outcome.code:
                case LoginResultCode.SUCCESS:
                    changed = self._apply(AuthState.AUTHENTICATED, outcome.session)
                case LoginResultCode.SECOND_FACTOR_REQUIRED:
                    changed = self._apply(AuthState.AWAITING_SECOND_FACTOR, outcome.session)
                case LoginResultCode.INVALID_CREDENTIALS if self.has_active_session():
                    logger.warning("re-login rejected, keeping current session")
                    changed = False
                case LoginResultCode.INVALID_CREDENTIALS:
                    changed = self._apply(AuthState.UNAUTHENTICATED, EMPTY_SESSION)
                case _:
                    logger.error("login failed", result_code=outcome.code, detail=outcome.detail)
                    changed = self._apply(AuthState.FAILED, EMPTY_SESSION)
        if changed:
            await self._notify()
        return outcome

    async def verify_second_factor(self, code: str) -> LoginOutcome:
        async with self._lock:
            if self._state is not AuthState.AWAITING_SECOND_FACTOR:
                raise InvalidTransitionError("No second-factor challenge is pending")
            outcome = await self._api.verify_second_factor(self._session, code)
            match outcome.code:
                case LoginResultCode.SUCCESS:
                    changed = self._apply(AuthState.AUTHENTICATED, outcome.session)
                case LoginResultCode.INVALID_SECOND_FACTOR_CODE:
                    changed = self._apply(AuthState.AWAITING_SECOND_FACTOR, outcome.session)
                case _:
                    logger.error("second factor failed", result_code=outcome.code, detail=outcome.detail)
                    changed = self._apply(AuthState.FAILED, EMPTY_SESSION)
        if changed:
            await self._notify()
        return outcome

    async def logout(self) -> None:
        async with self._lock:
            cleared = self._api.logout(self._session)
            changed = self._apply(AuthState.UNAUTHENTICATED, cleared)
        logger.info("logged out")
        if changed:
            await self._notify()

    async def invalidate(self, rejected: Session | None = None) -> None:
        """Force the session back to unauthenticated after the service rejected it.

        A rejection for a session that is no longer the current one (a
        late response after logout or re-login) is ignored.
        """
        if rejected is not None and rejected.session_token != self._session.session_token:
            logger.debug("ignoring rejection of a stale session")
            return
        if self._state is AuthState.UNAUTHENTICATED:
            return
        logger.warning("session invalidated", previous_state=self._state)
        if self._apply(AuthState.UNAUTHENTICATED, EMPTY_SESSION):
            await self._notify()

    async def restore(self) -> bool:
        """Adopt a cached session optimistically. Returns True when one was restored."""
        if self._cache is None:
            return False
        tokens = self._cache.load()
        if tokens is None:
            return False
        session = Session(
            session_token=tokens.session_token,
            second_factor_token=tokens.second_factor_token,
            established_at=self._now(),
        )
        logger.info("restored cached session")
        if self._apply(AuthState.AUTHENTICATED, session):
            await self._notify()
        return True

    async def validate(self) -> bool:
        """Probe the service with the current session.

        Only an authentication failure demotes the session; network and API
        failures leave the optimistic session in place.
        """
        if not self.has_active_session():
            return False
        session = self._session
        result = await self._api.fetch_self(session)
        match result:
            case AccountRecord():
                logger.info("session validated", account_id=result.id)
                return True
            case ApiFailure(kind=FailureKind.AUTHENTICATION):
                logger.warning("cached session rejected", reason=result.message)
                await self.invalidate(session)
                return False
            case ApiFailure():
                logger.warning("session validation inconclusive", reason=result.describe())
                return True

    def _apply(self, state: AuthState, session: Session) -> bool:
        """Install a new state and session.

        Returns True if session activity changed or a different active session
        replaced the current one.
        """
        was_active = self.has_active_session()
        previous = self._state
        previous_session = self._session
        self._state = state
        self._session = session
        is_active = self.has_active_session()

        replaced = is_active and (not was_active or session != previous_session)
        if replaced:
            self._last_established_at = session.established_at
            self._save_cache(session)
        elif was_active and not is_active:
            self._clear_cache()

        if previous is not state:
            logger.info("auth state changed", previous_state=previous, state=state)
        return replaced or was_active != is_active

    def _save_cache(self, session: Session) -> None:
        if self._cache is None or session.session_token is None:
            return
        try:
            self._cache.save(
                CachedTokens(
                    session_token=session.session_token,
                    second_factor_token=session.second_factor_token,
                )
            )
        except OSError:
            logger.exception("failed to save session cache")

    def _clear_cache(self) -> None:
        if self._cache is not None:
            self._cache.clear()

    async def _notify(self) -> None:
        status = self.status()
        for listener in list(self._listeners):
            try:
                await listener(status)
            except Exception:
                logger.exception("session listener failed", state=status.state)
