"""FastAPI application exposing the WLED preset orchestrator."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from functools import partial
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from .config import Settings
from .config import settings as default_settings
from .database import get_engine
from .errors import OrchestratorError
from .router import router as api_router
from .scheduler import ScheduleManager
from .services import trigger_apply
from .wled.client import WLEDClient
from .wled.utils import configure_logging, logger

configure_logging()


def _find_project_root() -> Path:
    """Locate the repository root by searching for the frontend directory."""
    for parent in Path(__file__).resolve().parents:
        if (parent / "frontend").exists():
            return parent
    return Path(__file__).resolve().parents[2]


def _mount_frontend_assets(app: FastAPI) -> None:
    """Serve the built frontend if the dist directory is available."""
    dist_dir = _find_project_root() / "frontend" / "dist"
    if not dist_dir.exists():
        logger.bind(dist_path=str(dist_dir)).debug(
            "Frontend build directory not found; skipping static mount"
        )
        return

    logger.bind(dist_path=str(dist_dir)).info("Mounting frontend static assets")
    app.mount(
        "/",
        StaticFiles(directory=str(dist_dir), html=True),
        name="frontend",
    )


async def _handle_orchestrator_error(_request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, OrchestratorError)
    if exc.status_code >= 500:
        logger.bind(status=exc.status_code).error(
            "Request failed: {}", exc.message
        )
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_payload()))


async def _handle_request_validation(_request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, RequestValidationError)
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid request", "details": jsonable_encoder(exc.errors())},
    )


async def _handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.bind(method=request.method, path=request.url.path).opt(exception=exc).error(
        "Unhandled error while serving request"
    )
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


def create_app(settings: Settings | None = None, *, mount_frontend: bool = True) -> FastAPI:
    """Build the application; the scheduler and device client live on ``app.state``."""
    config = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        get_engine()
        client = WLEDClient(timeout=config.device_timeout)
        scheduler = ScheduleManager(
            partial(trigger_apply, client=client, timeout=config.device_timeout),
            tz=config.timezone(),
        )
        app.state.device_client = client
        app.state.scheduler = scheduler
        await scheduler.initialize()
        try:
            yield
        finally:
            await scheduler.shutdown()
            client.close()

    app = FastAPI(
        title="WLED Preset Orchestrator API",
        version="1.0.0",
        description=(
            "Manage WLED controllers, group their states into presets and "
            "apply presets on demand or on a cron schedule."
        ),
        lifespan=lifespan,
    )
    app.state.settings = config

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(config.cors_origins),
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(OrchestratorError, _handle_orchestrator_error)
    app.add_exception_handler(RequestValidationError, _handle_request_validation)
    app.add_exception_handler(Exception, _handle_unexpected_error)

    app.include_router(api_router)

    @app.get("/health", tags=["health"])
    def health() -> dict[str, str]:
        """Simple readiness probe."""
        return {"status": "ok"}

    if mount_frontend:
        _mount_frontend_assets(app)
    return app


app = create_app()
