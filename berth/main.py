"""Berth FastAPI application entry point."""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from berth import __version__
from berth.config import get_settings
from berth.errors import BerthError, RateLimitError
from berth.services.lifecycle import build_services, shutdown_services, start_services

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    settings = get_settings()
    logger.info(
        "berth.startup",
        version=__version__,
        driver=settings.driver.type,
        terminal_backend=settings.terminal.backend,
    )

    services = getattr(app.state, "services", None) or build_services(settings)
    app.state.services = services
    await start_services(services)

    yield

    logger.info("berth.shutdown")
    await shutdown_services(services)


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""
    app = FastAPI(
        title="Berth",
        description="Playground container and terminal session orchestrator",
        version=__version__,
        lifespan=lifespan,
    )

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        """Add request ID to all requests."""
        request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-Id"] = request_id
        return response

    @app.exception_handler(BerthError)
    async def berth_error_handler(request: Request, exc: BerthError):
        """Handle Berth errors with consistent format."""
        request_id = getattr(request.state, "request_id", None)
        headers = None
        if isinstance(exc, RateLimitError):
            headers = {"Retry-After": str(exc.retry_after)}
        if exc.status_code >= 500:
            logger.warning(
                "berth.request_failed",
                code=exc.code,
                message=exc.message,
                path=request.url.path,
                request_id=request_id,
            )
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_dict(request_id),
            headers=headers,
        )

    @app.get("/health")
    async def health() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok"}

    from berth.api.v1 import router as v1_router

    app.include_router(v1_router, prefix="/v1")

    return app


app = create_app()


def run() -> None:
    """Console entry point."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "berth.main:app",
        host=settings.server.host,
        port=settings.server.port,
    )


if __name__ == "__main__":
    run()
