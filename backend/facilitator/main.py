"""
Main FastAPI application entry point.

Creates the facilitator application, configures logging, and registers the
facilitator routes and health check endpoint.
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

# Load environment variables from .env file
load_dotenv()

from facilitator.config import FacilitatorConfig, facilitator_config
from facilitator.payment.errors import InternalError
from facilitator.payment.routes import router as facilitator_router
from facilitator.payment.service import FacilitatorService

API_VERSION = "0.1.0"
SERVICE_NAME = "x402-facilitator"

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


async def purge_nonces(service: FacilitatorService) -> int:
    """Run one nonce purge off the event loop. Failures are logged, not raised."""
    try:
        purged = await run_in_threadpool(service.purge_expired_nonces)
    except InternalError as e:
        logger.warning(f"Nonce purge skipped: {e}")
        return 0
    return purged


async def purge_nonces_periodically(service: FacilitatorService, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        await purge_nonces(service)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Purge expired nonces at startup, then every ``nonce_purge_interval_seconds``."""
    service = app.state.facilitator
    interval = app.state.config.nonce_purge_interval_seconds
    if service is None or interval <= 0:
        yield
        return

    await purge_nonces(service)
    task = asyncio.create_task(purge_nonces_periodically(service, interval))
    try:
        yield
    finally:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


def create_app(
    service: Optional[FacilitatorService] = None,
    config: Optional[FacilitatorConfig] = None,
) -> FastAPI:
    """Create and configure the facilitator application.

    Args:
        service: Pre-built facilitator service; built from config when omitted
        config: Facilitator configuration (default: environment)

    Returns:
        Configured FastAPI application instance
    """
    config = config or facilitator_config
    configure_logging(config.log_level)

    app = FastAPI(
        title="x402 Facilitator",
        description="Verification and settlement of x402 payments",
        version=API_VERSION,
        lifespan=lifespan,
    )
    app.state.config = config

    if service is None:
        try:
            service = FacilitatorService.from_config(config)
        except ValueError as e:
            logger.warning(f"Facilitator disabled: {e}")
    app.state.facilitator = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(InternalError)
    async def internal_error_handler(request: Request, exc: InternalError) -> JSONResponse:
        logger.error(f"Internal error on {request.url.path}: {exc}")
        return JSONResponse(status_code=500, content={"error": exc.code.value})

    @app.get("/health")
    async def health_check() -> JSONResponse:
        """Health check endpoint for monitoring and load balancers."""
        return JSONResponse(
            content={
                "status": "healthy" if app.state.facilitator is not None else "degraded",
                "service": SERVICE_NAME,
                "version": API_VERSION,
            }
        )

    app.include_router(facilitator_router)

    return app


def run() -> None:
    """Serve the facilitator with uvicorn."""
    import uvicorn

    port = int(os.getenv("PORT", "8000"))
    uvicorn.run("facilitator.main:create_app", factory=True, host="0.0.0.0", port=port)


if __name__ == "__main__":
    run()
