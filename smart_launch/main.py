"""
Main FastAPI application
"""

import asyncio
import os
from typing import Optional

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse
from fastapi.staticfiles import StaticFiles
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from smart_launch.api import health, launch, session
from smart_launch.api.deps import create_limiter
from smart_launch.api.pages import render_error_page
from smart_launch.core.config import Settings, settings
from smart_launch.core.errors import SMARTLaunchError
from smart_launch.core.logging import configure_logging, get_logger
from smart_launch.core.middleware import SecurityHeadersMiddleware
from smart_launch.core.request_id import RequestIDMiddleware, get_request_id
from smart_launch.smart.service import SMARTLaunchService
from smart_launch.smart.state_tokens import StateBackend

logger = get_logger(__name__)


async def smart_launch_error_handler(request: Request, exc: SMARTLaunchError) -> HTMLResponse:
    """Render a request-scoped launch failure as an HTML error page"""
    request_id = get_request_id(request)
    log = logger.error if exc.status_code >= 500 else logger.warning
    log("smart_launch_request_failed", method=request.method, **exc.log_fields())
    return HTMLResponse(render_error_page(exc, request_id=request_id), status_code=exc.status_code)


async def _sweep_periodically(service: SMARTLaunchService, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await service.sweep()
        except Exception as e:
            # The sweep is hygiene only; a failed pass must not stop the next one
            logger.warning("smart_sweep_failed", error_type=type(e).__name__, error=str(e))


def create_app(
    app_settings: Optional[Settings] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    state_backend: Optional[StateBackend] = None,
) -> FastAPI:
    """
    Build the application.

    Raises ConfigurationError when SMART client credentials are missing, so
    the process never starts serving with a partial configuration.
    """
    app_settings = app_settings or settings
    configure_logging(debug=app_settings.DEBUG)

    service = SMARTLaunchService(app_settings, http_client=http_client, state_backend=state_backend)

    app = FastAPI(
        title=app_settings.APP_NAME,
        version=app_settings.APP_VERSION,
        debug=app_settings.DEBUG,
        description="SMART on FHIR EHR launch: discovery, authorization redirect, callback and token exchange.",
        docs_url="/docs" if app_settings.is_development else None,
        redoc_url=None,
    )
    app.state.smart_service = service

    # Rate limiting
    limiter = create_limiter(app_settings)
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    app.add_exception_handler(SMARTLaunchError, smart_launch_error_handler)

    # Middleware (last added runs first)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(RequestIDMiddleware)

    # Routers
    app.include_router(health.router)
    app.include_router(launch.create_router(limiter, app_settings))
    app.include_router(session.router)

    # Static assets (bundled client libraries and stylesheets)
    for mount_path, directory in (("/lib", app_settings.STATIC_LIB_DIR), ("/resources", app_settings.STATIC_RESOURCES_DIR)):
        if os.path.isdir(directory):
            app.mount(mount_path, StaticFiles(directory=directory), name=mount_path.strip("/"))
        else:
            logger.info("static_directory_missing", mount_path=mount_path, directory=directory)

    @app.on_event("startup")
    async def startup_event():
        """Application startup tasks"""
        logger.info(
            "application_startup",
            app_name=app_settings.APP_NAME,
            version=app_settings.APP_VERSION,
            environment=app_settings.ENVIRONMENT,
            debug=app_settings.DEBUG,
        )
        if app_settings.STATE_SWEEP_INTERVAL_SECONDS > 0:
            app.state.sweep_task = asyncio.create_task(
                _sweep_periodically(service, app_settings.STATE_SWEEP_INTERVAL_SECONDS)
            )

    @app.on_event("shutdown")
    async def shutdown_event():
        """Application shutdown tasks"""
        logger.info("application_shutdown", app_name=app_settings.APP_NAME)

        task = getattr(app.state, "sweep_task", None)
        if task:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        await service.close()

    return app


def run():
    uvicorn.run(
        "smart_launch.main:create_app",
        factory=True,
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
    )


if __name__ == "__main__":
    run()
