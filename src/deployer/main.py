"""FastAPI application for the deployment server."""

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from deployer import errors
from deployer.api import admin_routes, routes
from deployer.api.dependencies import ServiceContainer
from deployer.config import ServerSettings
from deployer.db.database import create_engine, create_sessionmaker, init_models
from deployer.services.events import EventSink
from deployer.utils.clock import utcnow
from deployer.utils.logging import setup_logger

SERVICE_VERSION = "1.0.0"


async def _sweep_stale_claims(app: FastAPI, interval: float) -> None:
    """Periodically fail claims whose agent crashed or went silent."""
    logger = logging.getLogger("deployer.sweeper")
    while True:
        await asyncio.sleep(interval)
        try:
            async with app.state.session_factory() as db:
                expired = await app.state.services.tasks.expire_stale_claims(db)
            if expired:
                logger.warning(f"Expired {expired} stale task claim(s)")
        except Exception as e:
            logger.error(f"Stale claim sweep failed: {e}", exc_info=True)


def create_app(
    settings: Optional[ServerSettings] = None, events: Optional[EventSink] = None
) -> FastAPI:
    """Build the server application.

    Args:
        settings: Server settings (read from environment if None)
        events: Audit sink (logging sink if None)

    Returns:
        FastAPI app; database and start time are set up in its lifespan
    """
    settings = settings or ServerSettings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup/shutdown hooks.

        Startup:
        - Initialize logger
        - Create storage and database directories
        - Create tables
        - Record the process start time once
        """
        logger = setup_logger("deployer", settings.log_file, level=settings.log_level)
        logger.info("Deployment server starting up...")

        Path(settings.storage_root).mkdir(parents=True, exist_ok=True)
        if settings.database_url.startswith("sqlite") and ":memory:" not in settings.database_url:
            db_path = settings.database_url.split(":///", 1)[-1]
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        engine = create_engine(settings.database_url)
        await init_models(engine)
        app.state.engine = engine
        app.state.session_factory = create_sessionmaker(engine)
        app.state.services = ServiceContainer(settings, events)
        app.state.settings = settings
        app.state.started_at = utcnow()

        sweeper = asyncio.create_task(_sweep_stale_claims(app, settings.stale_sweep_interval_seconds))

        logger.info(f"Deployment server ready on port {settings.port}")

        yield

        logger.info("Deployment server shutting down...")
        sweeper.cancel()
        await asyncio.gather(sweeper, return_exceptions=True)
        await engine.dispose()

    app = FastAPI(
        title="Deployer",
        description="Package deployment server",
        version=SERVICE_VERSION,
        lifespan=lifespan,
    )
    app.include_router(routes.router)
    app.include_router(admin_routes.router)

    @app.exception_handler(errors.DeployerError)
    async def deployer_error_handler(request: Request, exc: errors.DeployerError):
        # HTTP status is always 200, real status in 'code'
        log = logging.getLogger("deployer.api")
        if exc.code >= 500:
            log.error(f"{request.method} {request.url.path} failed: {exc}")
        else:
            log.info(f"{request.method} {request.url.path} rejected ({exc.code}): {exc}")
        return JSONResponse(status_code=200, content=errors.to_payload(exc))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        return JSONResponse(
            status_code=200,
            content=errors.to_payload(errors.ValidationError(f"INVALID_REQUEST: {details}")),
        )

    @app.get("/")
    async def root():
        """Liveness endpoint."""
        return {"status": "ok", "service": "deployer", "version": SERVICE_VERSION}

    @app.get("/api/v1.0/health")
    async def health(request: Request):
        started_at = request.app.state.started_at
        return {
            "code": 200,
            "msg": "success",
            "data": {
                "status": "ok",
                "version": SERVICE_VERSION,
                "started_at": started_at.isoformat(),
                "uptime_seconds": (utcnow() - started_at).total_seconds(),
            },
        }

    return app


app = create_app()


def main():
    """Main entry point for running the server."""
    settings = ServerSettings()
    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        access_log=True,
    )


if __name__ == "__main__":
    main()
