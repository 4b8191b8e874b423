"""
pyminerfleet Server - FastAPI application

Exposes the fleet manager to HTTP clients: device registry, cached status
reads, the fleet summary and long-running jobs.

Routing Structure:
    - GET  /health                      -> Fleet health summary
    - /api/devices/*                    -> Device registry, status, fan control
    - /api/fleet/*                      -> Fleet summary
    - /api/jobs/*                       -> Start and poll jobs

Run:
    python -m pyminerfleet serve
    uvicorn pyminerfleet.server.main:app --port 8680
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from pyminerfleet import __version__
from pyminerfleet.config import Settings
from pyminerfleet.exceptions import FleetError
from pyminerfleet.manager import FleetManager
from pyminerfleet.server.api import devices, fleet, jobs

settings = Settings()

# Configure logging based on MF_DEBUG setting
log_level = logging.DEBUG if settings.debug else logging.INFO
logging.basicConfig(
    level=log_level,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)


def create_app(app_settings: Optional[Settings] = None, manager: Optional[FleetManager] = None) -> FastAPI:
    """Build the application; a prebuilt manager is used as-is (tests)."""
    app_settings = app_settings or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        logger.info(f"Starting pyminerfleet server v{__version__}...")
        app.state.manager = manager or FleetManager.from_settings(app_settings)
        for device in app.state.manager.list_devices():
            logger.info(f"  - {device.id}: {device.name or device.host} ({device.key})")
        logger.info(f"Server listening on {app_settings.server_host}:{app_settings.server_port}")

        yield

        # Shutdown
        logger.info("Shutting down pyminerfleet server...")
        await app.state.manager.shutdown()

    app = FastAPI(
        title="pyminerfleet Server",
        description="Fleet orchestration for Braiins OS mining devices",
        version=__version__,
        lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(FleetError)
    async def fleet_error_handler(request: Request, exc: FleetError):
        if exc.status_code >= 500:
            logger.warning(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    app.include_router(devices.router, prefix="/api/devices", tags=["Devices"])
    app.include_router(fleet.router, prefix="/api/fleet", tags=["Fleet"])
    app.include_router(jobs.router, prefix="/api/jobs", tags=["Jobs"])

    @app.get("/health", tags=["Health"])
    async def health_check(request: Request):
        """Health check endpoint with actual device status.

        Returns:
            - healthy: All devices online
            - degraded: Some devices online, some not
            - unhealthy: No device online
            - no_devices: Nothing registered
        """
        fleet_manager: FleetManager = request.app.state.manager
        if not fleet_manager.list_devices():
            return {"status": "no_devices", "version": __version__, "devices": 0}

        summary = await fleet_manager.get_fleet_status()
        if summary.online == summary.total_devices:
            health_status = "healthy"
        elif summary.online > 0:
            health_status = "degraded"
        else:
            health_status = "unhealthy"

        return {
            "status": health_status,
            "version": __version__,
            "devices": summary.total_devices,
            "devices_online": summary.online,
            "devices_offline": summary.offline,
            "devices_unknown": summary.unknown,
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "pyminerfleet.server.main:app",
        host=settings.server_host,
        port=settings.server_port,
    )
