"""
Main FastAPI application entry point for the Perdexa platform.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from perdexa.platform.admin.router import admin_router
from perdexa.platform.auth.bootstrap import ensure_configured_superadmin
from perdexa.platform.auth.router import auth_router
from perdexa.platform.billing.router import admin_billing_router, billing_router, cron_router
from perdexa.platform.db import init_db
from perdexa.platform.exception_handlers import register_exception_handlers
from perdexa.platform.settings import settings
from perdexa.platform.tenant.router import tenant_router

logger = structlog.get_logger(__name__)

API_PREFIX = "/api/v1"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Create missing tables and seed the configured super admin."""
    logger.info(
        "service.startup.begin",
        version=settings.app_version,
        environment=settings.environment.value,
    )
    await init_db()
    await ensure_configured_superadmin()
    logger.info("service.startup.complete")

    yield

    logger.info("service.shutdown")


def register_routers(app: FastAPI) -> None:
    app.include_router(auth_router, prefix=f"{API_PREFIX}/auth", tags=["Authentication"])
    app.include_router(tenant_router, prefix=f"{API_PREFIX}/tenant", tags=["Tenant"])
    app.include_router(billing_router, prefix=f"{API_PREFIX}/billing", tags=["Billing"])
    app.include_router(admin_router, prefix=f"{API_PREFIX}/admin", tags=["Administration"])
    app.include_router(
        admin_billing_router, prefix=f"{API_PREFIX}/admin/tenants", tags=["Administration"]
    )
    app.include_router(cron_router, prefix=f"{API_PREFIX}/cron", tags=["Cron"])


def create_application() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title=settings.app_name,
        description="Multi-tenant workspace, subscription and identity services",
        version=settings.app_version,
        lifespan=lifespan,
        docs_url="/docs" if not settings.is_production else None,
        redoc_url="/redoc" if not settings.is_production else None,
    )

    if settings.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    register_exception_handlers(app)
    register_routers(app)

    @app.get("/health")
    async def health_check() -> dict[str, Any]:
        """Health check endpoint for monitoring."""
        return {
            "status": "healthy",
            "version": settings.app_version,
            "environment": settings.environment.value,
        }

    return app


app = create_application()
