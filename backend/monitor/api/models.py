"""Records and result variants returned by the API client."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from monitor.session import EMPTY_SESSION, SecondFactorKind, Session

UNKNOWN = "unknown"


class AccountRecord(BaseModel):
    """A user record as returned by the service.

    Only the fields the monitor reasons about are typed; everything else is
    kept as extra data and passed through to dashboard clients untouched.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True, frozen=True)

    id: str
    display_name: str | None = Field(default=None, alias="displayName")
    state: str = UNKNOWN
    status: str = UNKNOWN
    status_description: str | None = Field(default=None, alias="statusDescription")

    @field_validator("state", "status", mode="before")
    @classmethod
    def _default_unknown(cls, value: object) -> object:
        return UNKNOWN if value is None else value

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class FailureKind(StrEnum):
    AUTHENTICATION = "authentication"
    API = "api"
    NETWORK = "network"


@dataclass(frozen=True, slots=True)
class ApiFailure:
    """Classified failure of a fetch call.

    AUTHENTICATION and API failures are never retried. NETWORK failures are
    only returned after backoff gave up, with ``exhausted`` set.
    """

    kind: FailureKind
    message: str
    status_code: int | None = None
    exhausted: bool = False

    def describe(self) -> str:
        """Human-readable message recorded against the polled account."""
        match self.kind:
            case FailureKind.AUTHENTICATION:
                return f"Authentication error: {self.message}"
            case FailureKind.API:
                return f"API error ({self.status_code}): {self.message}"
            case FailureKind.NETWORK:
                suffix = " (retries exhausted)" if self.exhausted else ""
                return f"Network error: {self.message}{suffix}"


class LoginResultCode(StrEnum):
    SUCCESS = "SUCCESS"
    SECOND_FACTOR_REQUIRED = "SECOND_FACTOR_REQUIRED"
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    INVALID_SECOND_FACTOR_CODE = "INVALID_SECOND_FACTOR_CODE"
    SECOND_FACTOR_VERIFICATION_FAILED = "SECOND_FACTOR_VERIFICATION_FAILED"
    MISSING_SESSION_TOKEN = "MISSING_SESSION_TOKEN"
    UNSUPPORTED_SECOND_FACTOR_KIND = "UNSUPPORTED_SECOND_FACTOR_KIND"
    NETWORK_ERROR = "NETWORK_ERROR"


LOGIN_RESULT_MESSAGES: dict[LoginResultCode, str] = {
    LoginResultCode.SUCCESS: "Login successful",
    LoginResultCode.SECOND_FACTOR_REQUIRED: "Two-factor authentication required",
    LoginResultCode.INVALID_CREDENTIALS: "Invalid username or password",
    LoginResultCode.INVALID_SECOND_FACTOR_CODE: "Invalid verification code",
    LoginResultCode.SECOND_FACTOR_VERIFICATION_FAILED: "Verification failed",
    LoginResultCode.MISSING_SESSION_TOKEN: "Authentication error",
    LoginResultCode.UNSUPPORTED_SECOND_FACTOR_KIND: "Unsupported 2FA method",
    LoginResultCode.NETWORK_ERROR: "Network error",
}


@dataclass(frozen=True, slots=True)
class LoginOutcome:
    """Result of a login or second-factor verification exchange.

    ``session`` is the credential material the caller should hold after this
    outcome: established on SUCCESS, interim with a pending kind on
    SECOND_FACTOR_REQUIRED, unchanged on INVALID_SECOND_FACTOR_CODE, and empty
    otherwise.
    """

    code: LoginResultCode
    session: Session = field(default=EMPTY_SESSION)
    second_factor_kind: SecondFactorKind = SecondFactorKind.NONE
    detail: str | None = None

    @property
    def message(self) -> str:
        return LOGIN_RESULT_MESSAGES[self.code]


@dataclass(frozen=True, slots=True)
class TrafficEntry:
    """Sanitized summary of one request or response."""

    direction: str
    summary: str
    content: str
    timestamp: datetime
