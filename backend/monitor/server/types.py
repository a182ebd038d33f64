"""Request and response bodies for the monitor HTTP API."""

from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field

from monitor.api.models import LoginOutcome, LoginResultCode
from monitor.broadcast.messages import WireModel
from monitor.session import SecondFactorKind


class CredentialsLoginRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["credentials"]
    username: str = Field(min_length=1, max_length=200)
    password: str = Field(min_length=1, max_length=500)


class SecondFactorLoginRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["2fa"]
    code: str = Field(min_length=1, max_length=20)


LoginRequest = Annotated[CredentialsLoginRequest | SecondFactorLoginRequest, Field(discriminator="type")]


class LoginResultPayload(WireModel):
    success: bool
    requires_second_factor: bool
    second_factor_kind: SecondFactorKind | None
    message: str
    result_code: LoginResultCode

    @classmethod
    def from_outcome(cls, outcome: LoginOutcome) -> "LoginResultPayload":
        requires = outcome.code in {
            LoginResultCode.SECOND_FACTOR_REQUIRED,
            LoginResultCode.INVALID_SECOND_FACTOR_CODE,
        }
        return cls(
            success=outcome.code is LoginResultCode.SUCCESS,
            requires_second_factor=requires,
            second_factor_kind=outcome.second_factor_kind if requires else None,
            message=outcome.message,
            result_code=outcome.code,
        )
