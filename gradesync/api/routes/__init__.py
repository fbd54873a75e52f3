from __future__ import annotations

from gradesync.api.routes.changes import router as changes_router
from gradesync.api.routes.health import router as health_router
from gradesync.api.routes.quota import router as quota_router
from gradesync.api.routes.records import router as records_router

__all__ = ["changes_router", "health_router", "quota_router", "records_router"]
