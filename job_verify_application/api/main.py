"""FastAPI application factory."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..services.resilient_client import aclose_client
from .dependencies import RateLimitExceeded

logger = logging.getLogger("verify.api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("api starting")

    yield

    await aclose_client()
    logger.info("api stopping")


async def _rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    return JSONResponse(
        {"error": "Too many requests"},
        status_code=429,
        headers={"Retry-After": str(exc.retry_after_seconds)},
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""

    app = FastAPI(
        title="Job URL Verifier",
        description="Liveness checks for third-party job application URLs",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.add_exception_handler(RateLimitExceeded, _rate_limit_handler)

    from .routes import check_url, health, verify

    app.include_router(health.router, tags=["Health"])
    app.include_router(verify.router, tags=["Verification"])
    app.include_router(check_url.router, tags=["Verification"])

    return app


def run() -> None:
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    logging.getLogger("httpx").setLevel(logging.WARNING)
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)


if __name__ == "__main__":
    run()
