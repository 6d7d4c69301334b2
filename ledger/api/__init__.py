"""Audit Ledger API."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from ledger.api.audit import router as audit_router
from ledger.api.config import Settings
from ledger.audit.facade import AuditFacade

logger = logging.getLogger(__name__)


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    version: str = "1.0.0"
    storage_type: str = "file"


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build the API application.

    The ledger store is opened at startup and closed at shutdown.
    """
    settings = settings or Settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.audit = await AuditFacade.from_config(settings.audit_config)
        logger.info("Audit ledger ready: storage=%s", settings.storage_type)
        try:
            yield
        finally:
            await app.state.audit.close()

    app = FastAPI(
        title=settings.api_title,
        description="Tamper-evident, hash-linked audit ledger with integrity "
        "verification, filtered queries and compliance exports.",
        version=settings.api_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
    )

    app.state.settings = settings
    app.include_router(audit_router)

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    async def health_check() -> HealthResponse:
        """Health check endpoint."""
        return HealthResponse(
            version=settings.api_version,
            storage_type=settings.storage_type,
        )

    return app


app = create_app()
