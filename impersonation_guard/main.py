from __future__ import annotations

import structlog
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from .api.routes.impersonation import exceeded_payload, router as impersonation_router
from .core.config import get_settings
from .core.logging import configure_logging
from .db import dispose_engine, init_db
from .domain.errors import (
    ImpersonationRateLimitExceeded,
    InvalidIdentifierError,
    RateLimitBackendUnavailable,
)
from .telemetry import configure_tracing, setup_prometheus

logger = structlog.get_logger(__name__)


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging()
    app = FastAPI(title=settings.project_name, version="0.1.0")

    @app.on_event("startup")
    async def _startup() -> None:
        if settings.database_url:
            await init_db()
        logger.info(
            "app.startup",
            store="sql" if settings.database_url else "memory",
            rate_limit_enabled=settings.rate_limit_enabled,
        )

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        if settings.database_url:
            await dispose_engine()

    @app.exception_handler(InvalidIdentifierError)
    async def _invalid_identifier(_: Request, exc: InvalidIdentifierError) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"detail": str(exc), "field": exc.field},
        )

    @app.exception_handler(ImpersonationRateLimitExceeded)
    async def _rate_limited(_: Request, exc: ImpersonationRateLimitExceeded) -> JSONResponse:
        payload = exceeded_payload(exc.result)
        return JSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            content={"detail": payload.model_dump(mode="json")},
            headers={"Retry-After": str(payload.retry_after)},
        )

    @app.exception_handler(RateLimitBackendUnavailable)
    async def _backend_unavailable(_: Request, exc: RateLimitBackendUnavailable) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": str(exc)},
        )

    @app.get("/healthz")
    def healthz() -> dict[str, str | bool]:
        return {"ok": True, "service": "impersonation-guard"}

    app.include_router(impersonation_router, prefix=settings.api_v1_prefix)

    if settings.enable_prometheus_metrics:
        setup_prometheus(app)
    configure_tracing(app)

    return app


app = create_app()
