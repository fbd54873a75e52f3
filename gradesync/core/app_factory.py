"""Application factory for the FastAPI app.

Centralizes app construction (metadata, middleware, handlers, routers) so
tests can build fresh instances.
"""

from __future__ import annotations

from fastapi import FastAPI

from gradesync.api.routes import changes_router, health_router, quota_router, records_router
from gradesync.core.config import settings
from gradesync.core.exception_handlers import setup_exception_handlers
from gradesync.core.logging import configure_logging
from gradesync.core.middleware import request_id_middleware
from gradesync.core.openapi import apply_openapi_customizations


def create_app() -> FastAPI:
    """Create and configure the FastAPI application instance."""
    # Logging first so subsequent init logs are formatted as desired
    configure_logging(settings.log)

    app = FastAPI(
        title="gradesync",
        description=(
            "Authoritative record store for concurrently edited grades: "
            "quota-guarded writes (sliding window per actor and endpoint), "
            "quota checks, and change-event fan-out to subscribers."
        ),
        version="0.1.0",
        debug=settings.app.debug,
    )

    app.middleware("http")(request_id_middleware)

    setup_exception_handlers(app)

    app.include_router(records_router, prefix="/v1")
    app.include_router(quota_router, prefix="/v1")
    app.include_router(changes_router, prefix="/v1")
    app.include_router(health_router)

    apply_openapi_customizations(app)

    return app
