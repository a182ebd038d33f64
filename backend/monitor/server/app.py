from __future__ import annotations

import contextlib
from pathlib import Path
from typing import TYPE_CHECKING

import structlog
from starlette.applications import Starlette
from starlette.routing import Mount, Route, WebSocketRoute
from starlette.staticfiles import StaticFiles

from monitor.config import load_config
from monitor.server.settings import MonitorSettings
from monitor.server.views import auth_status, build_info, health, login, logout
from monitor.server.websocket import websocket_endpoint
from monitor.service import MonitorService
from shared.logging import setup_logging

logger = structlog.get_logger()

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from starlette.websockets import WebSocket


def create_app(
    settings: MonitorSettings | None = None,
    service: MonitorService | None = None,
) -> Starlette:
    if settings is None:  # pragma: no cover
        settings = MonitorSettings()

    if service is None:
        config = load_config(Path(settings.config_path))
        service = MonitorService(config, settings)

    async def ws_endpoint(websocket: WebSocket) -> None:
        await websocket_endpoint(websocket, service.hub)

    routes = [
        Route("/health", health, methods=["GET"]),
        Route("/api/system/build-info", build_info, methods=["GET"]),
        Route("/api/auth/status", auth_status, methods=["GET"]),
        Route("/api/auth/login", login, methods=["POST"]),
        Route("/api/auth/logout", logout, methods=["POST"]),
        WebSocketRoute("/ws", ws_endpoint),
    ]

    if settings.static_dir is not None:
        static_dir = Path(settings.static_dir).resolve()
        if static_dir.is_dir():
            routes.append(Mount("/", app=StaticFiles(directory=str(static_dir), html=True), name="static"))
        else:
            logger.warning("static directory not found, dashboard UI will not be served", path=str(static_dir))

    @contextlib.asynccontextmanager
    async def lifespan(_app: Starlette) -> AsyncGenerator[None]:
        await service.start()
        yield
        await service.shutdown()

    app = Starlette(routes=routes, lifespan=lifespan)
    app.state.settings = settings
    app.state.service = service

    logger.info("monitor server ready", accounts=len(service.config.accounts))
    return app


def get_app() -> Starlette:  # pragma: no cover
    """ASGI application factory for production use (uvicorn --factory monitor.server.app:get_app)."""
    settings = MonitorSettings()
    config = load_config(Path(settings.config_path))
    setup_logging(
        log_dir=settings.log_dir,
        error_log_dir=settings.log_dir if config.log_errors_to_file else None,
        error_retention_days=settings.error_log_retention_days,
    )
    return create_app(settings=settings, service=MonitorService(config, settings))
