"""
FastAPI main application for the Flaxeo server.

Provides the REST API and WebSocket endpoint that drive the
stable-diffusion.cpp executables.
"""
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, List, Optional

from fastapi import FastAPI, Request, WebSocket
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from flaxeo import __version__
from flaxeo.backend.api import backend, catalog, gallery, generation, logs, network, server
from flaxeo.backend.config import AppConfig, AppPaths
from flaxeo.backend.errors import FlaxeoError
from flaxeo.backend.services.container import Services

logger = logging.getLogger(__name__)


async def _open_startup_tunnels(services: Services, tunnels: List[str]) -> None:
    for name in tunnels:
        try:
            if name == "ngrok":
                await services.network.start_ngrok()
            elif name == "cloudflare":
                await services.network.start_cloudflare()
            else:
                logger.warning(f"Unknown tunnel '{name}' ignored")
        except FlaxeoError as e:
            logger.warning(f"Could not open {name} tunnel: {e.message}")


def create_app(
    paths: Optional[AppPaths] = None,
    port: Optional[int] = None,
    local: Optional[bool] = None,
    tunnels: Optional[List[str]] = None,
    services: Optional[Services] = None,
) -> FastAPI:
    """
    Build the application and every service it owns.

    Arguments left as None are read from the environment (see AppConfig),
    which is how the launcher passes its command line through uvicorn.
    """
    if services is None:
        services = Services.build(
            paths or AppPaths.from_env(),
            port=port if port is not None else AppConfig.get_port(),
            local_enabled=local if local is not None else AppConfig.is_local_enabled(),
        )
    startup_tunnels = tunnels if tunnels is not None else AppConfig.get_startup_tunnels()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator:
        logger.info("Flaxeo server starting up...")
        services.paths.ensure()
        if AppConfig.is_packaged():
            logger.info("Running from a packaged build")
        await _open_startup_tunnels(services, startup_tunnels)

        yield

        logger.info("Flaxeo server shutting down...")
        await services.shutdown()

    app = FastAPI(
        title="Flaxeo",
        description="Local HTTP orchestration for stable-diffusion.cpp",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(FlaxeoError)
    async def flaxeo_error_handler(request: Request, exc: FlaxeoError):
        logger.warning(f"{request.method} {request.url.path} failed: [{exc.code}] {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        details = "; ".join(
            f"{'.'.join(str(part) for part in error.get('loc', ()))}: {error.get('msg')}"
            for error in exc.errors()
        )
        return JSONResponse(
            status_code=400,
            content={"success": False, "message": f"Invalid request: {details}", "error": "INVALID_REQUEST"},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Global exception handler."""
        logger.error(f"Error processing {request.method} {request.url.path}: {exc}", exc_info=exc)
        return JSONResponse(
            status_code=500,
            content={"success": False, "message": str(exc), "error": "INTERNAL_ERROR"},
        )

    @app.get("/api")
    async def api_root():
        """API root endpoint."""
        return {
            "name": "Flaxeo",
            "version": __version__,
            "status": "running",
        }

    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "server_running": services.server.is_active,
            "cli_state": services.cli.state.value,
        }

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """
        Live engine output and process state changes.

        Clients are subscribed to "log" and "process_state" on connect.
        """
        await services.ws_handler.handle_connection(websocket)

    app.include_router(catalog.router, prefix="/api", tags=["models"])
    app.include_router(server.router, prefix="/api", tags=["server"])
    app.include_router(generation.router, prefix="/api", tags=["generation"])
    app.include_router(gallery.router, prefix="/api", tags=["gallery"])
    app.include_router(logs.router, prefix="/api", tags=["logs"])
    app.include_router(backend.router, prefix="/api/backend", tags=["backend"])
    app.include_router(network.router, prefix="/api/network", tags=["network"])

    app.mount("/output", StaticFiles(directory=str(services.paths.output_dir), check_dir=False), name="output")
    app.mount("/temp", StaticFiles(directory=str(services.paths.temp_dir), check_dir=False), name="temp")

    return app
