"""Session credential value shared by the API client and the auth state machine."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from enum import StrEnum


class SecondFactorKind(StrEnum):
    NONE = "none"
    TOTP = "totp"
    EMAIL_CODE = "email-code"


@dataclass(frozen=True, slots=True)
class Session:
    """Immutable credential material for one login.

    ``session_token`` is also present mid-flow while a second factor is
    pending; the session only counts as established once
    ``pending_second_factor`` is back to NONE. Transitions build new values
    instead of mutating this one.
    """

    session_token: str | None = None
    second_factor_token: str | None = None
    pending_second_factor: SecondFactorKind = SecondFactorKind.NONE
    established_at: datetime | None = None

    def __post_init__(self) -> None:
        if self.second_factor_token is not None and self.session_token is None:
            raise ValueError("second_factor_token requires session_token")

    @property
    def is_established(self) -> bool:
        return self.session_token is not None and self.pending_second_factor is SecondFactorKind.NONE

    def established(self, at: datetime) -> Session:
        return replace(self, pending_second_factor=SecondFactorKind.NONE, established_at=at)

    def cookie_header(self) -> str | None:
        """Render the credential cookies the service expects, or None without a token."""
        if self.session_token is None:
            return None
        parts = [f"auth={self.session_token}"]
        if self.second_factor_token is not None:
            parts.append(f"twoFactorAuth={self.second_factor_token}")
        return "; ".join(parts)


EMPTY_SESSION = Session()
