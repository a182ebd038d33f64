"""HTTP endpoints: health, build info and the login/logout commands."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

import structlog
from pydantic import TypeAdapter, ValidationError
from starlette.responses import JSONResponse

from monitor.auth.manager import InvalidTransitionError
from monitor.broadcast.messages import to_epoch_ms
from monitor.server.types import (
    CredentialsLoginRequest,
    LoginRequest,
    LoginResultPayload,
    SecondFactorLoginRequest,
)
from shared.build_info import APP_VERSION, GIT_COMMIT

if TYPE_CHECKING:
    from starlette.requests import Request

    from monitor.service import MonitorService

logger = structlog.get_logger()

_MAX_REQUEST_BODY_SIZE = 4096

_login_request_adapter: TypeAdapter[LoginRequest] = TypeAdapter(LoginRequest)


async def health(_request: Request) -> JSONResponse:
    return JSONResponse({"status": "ok", "version": APP_VERSION, "commit": GIT_COMMIT})


async def build_info(request: Request) -> JSONResponse:
    service: MonitorService = request.app.state.service
    return JSONResponse(
        {
            "version": APP_VERSION,
            "commit": GIT_COMMIT,
            "serverStartTime": to_epoch_ms(service.started_at),
        },
    )


async def auth_status(request: Request) -> JSONResponse:
    service: MonitorService = request.app.state.service
    status = service.auth.status()
    return JSONResponse(
        {
            "hasActiveSession": status.has_active_session,
            "lastEstablishedAt": to_epoch_ms(status.last_established_at),
            "state": status.state.value,
            "pendingSecondFactorKind": status.pending_second_factor.value,
        },
    )


async def login(request: Request) -> JSONResponse:
    """POST /api/auth/login - submit credentials or a second-factor code."""
    service: MonitorService = request.app.state.service

    raw_body = await request.body()
    if len(raw_body) > _MAX_REQUEST_BODY_SIZE:
        return JSONResponse({"error": "Request body too large"}, status_code=413)
    try:
        login_request = _login_request_adapter.validate_python(json.loads(raw_body))
    except (ValueError, UnicodeDecodeError) as e:
        detail = e.errors(include_input=False, include_url=False) if isinstance(e, ValidationError) else None
        return JSONResponse({"error": "Invalid request body", "detail": detail}, status_code=400)

    match login_request:
        case CredentialsLoginRequest():
            logger.info("login requested")
            outcome = await service.auth.login(login_request.username, login_request.password)
        case SecondFactorLoginRequest():
            logger.info("second factor submitted")
            try:
                outcome = await service.auth.verify_second_factor(login_request.code)
            except InvalidTransitionError as e:
                return JSONResponse({"error": str(e)}, status_code=409)

    return JSONResponse(LoginResultPayload.from_outcome(outcome).to_wire())


async def logout(request: Request) -> JSONResponse:
    service: MonitorService = request.app.state.service
    await service.auth.logout()
    return JSONResponse({"success": True})
