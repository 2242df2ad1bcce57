"""FastAPI application: snapshot, stream, sync and health endpoints."""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .market import (
    MarketConfig,
    MarketServices,
    create_health_router,
    create_market_services,
    create_snapshot_router,
    create_stream_router,
    create_sync_router,
)

logger = logging.getLogger(__name__)


def setup_logging(level: str | int = logging.INFO) -> None:
    """Configure the root logger once at startup."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        logging.Formatter("%(asctime)s | %(levelname)-8s | %(name)-30s | %(message)s", datefmt="%Y-%m-%d %H:%M:%S")
    )

    root = logging.getLogger()
    # Avoid duplicate handlers when called more than once
    if not root.handlers:
        root.addHandler(handler)
    root.setLevel(level)

    # Quiet noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def create_app(config: MarketConfig | None = None, services: MarketServices | None = None) -> FastAPI:
    """Build the app. Services are created from the environment unless injected."""
    if services is None:
        config = config or MarketConfig.from_env()
        services = create_market_services(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Market services up: %d instruments, providers %s",
            len(services.registry),
            ", ".join(services.router.providers),
        )
        yield
        logger.info("Shutting down market services")
        await services.aclose()

    app = FastAPI(title="tickstream", version="0.1.0", lifespan=lifespan)
    app.state.services = services

    app.include_router(create_snapshot_router(services.snapshot, services.registry))
    app.include_router(create_stream_router(services.engine))
    app.include_router(create_sync_router(services.sync))
    app.include_router(create_health_router(services.engine))
    return app


def app_from_env() -> FastAPI:
    """uvicorn factory: `uvicorn tickstream.main:app_from_env --factory`."""
    config = MarketConfig.from_env()
    setup_logging(config.log_level)
    return create_app(config)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("tickstream.main:app_from_env", factory=True, host="0.0.0.0", port=8000)
