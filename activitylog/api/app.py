"""Activity log FastAPI application.

Endpoints:
- GET  /health                – liveness
- GET  /activities            – filtered, keyset-paginated listing  (activity:view)
- GET  /activities/filters    – distinct actions / resources        (activity:view)
- GET  /activities/summary    – counts per action over N days       (activity:view)
- GET  /activities/{id}       – one entry                           (activity:view)
- POST /activities/verify     – quick / full chain verification     (activity:verify)
- GET|POST /cron/cleanup      – retention purge, ``Bearer CRON_SECRET``

Authentication happens upstream; the gateway forwards the caller's
granted permissions in the ``X-Permissions`` header (comma-separated).
"""

from __future__ import annotations

import hmac
import logging
from datetime import datetime
from typing import Literal, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError

from activitylog.chain.verify import VerificationResult
from activitylog.config import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE, PERMISSION_VERIFY, PERMISSION_VIEW
from activitylog.errors import ChainStorageError
from activitylog.service import ActivityService
from activitylog.storage.db import get_database
from activitylog.storage.query import ActivityFilters, ActivityPage

logger = logging.getLogger(__name__)


# ------ request models ------


class VerifyRequest(BaseModel):
    mode: Literal["quick", "full"] = "quick"
    limit: Optional[int] = Field(default=None, ge=1)
    start: Optional[int] = Field(default=None, ge=0)


def require_permission(permission: str):
    """Dependency rejecting callers whose forwarded permissions lack *permission*."""

    def _check(x_permissions: str = Header(default="")) -> None:
        granted = {p.strip() for p in x_permissions.split(",") if p.strip()}
        if permission not in granted:
            raise HTTPException(403, f"Missing permission: {permission}")

    return Depends(_check)


def create_app(service: ActivityService | None = None) -> FastAPI:
    if service is None:
        service = ActivityService(get_database())

    app = FastAPI(title="Activity Log")
    app.state.service = service

    @app.exception_handler(ChainStorageError)
    @app.exception_handler(SQLAlchemyError)
    async def _storage_unavailable(request: Request, exc: Exception):
        logger.error(f"Storage error on {request.url.path}: {exc}")
        return JSONResponse(status_code=503, content={"detail": "Activity storage unavailable"})

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.get("/activities", response_model=ActivityPage, dependencies=[require_permission(PERMISSION_VIEW)])
    def list_activities(
        actor_id: Optional[str] = None,
        action: Optional[str] = None,
        resource: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        search: Optional[str] = None,
        limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
        before: Optional[int] = None,
    ):
        filters = ActivityFilters(
            actor_id=actor_id,
            action=action,
            resource=resource,
            start=start,
            end=end,
            search=search,
        )
        return service.get_activities(filters, limit=limit, before=before)

    @app.get("/activities/filters", dependencies=[require_permission(PERMISSION_VIEW)])
    def activity_filters():
        return service.get_filters()

    @app.get("/activities/summary", dependencies=[require_permission(PERMISSION_VIEW)])
    def activity_summary(days: int = Query(7, ge=1, le=365)):
        return {"days": days, "actions": service.get_summary(days)}

    @app.post(
        "/activities/verify",
        response_model=VerificationResult,
        dependencies=[require_permission(PERMISSION_VERIFY)],
    )
    def verify_activities(req: VerifyRequest):
        """Verify the chain.  A broken chain is a 200 with ``valid: false``."""
        try:
            return service.verify_chain(mode=req.mode, limit=req.limit, start=req.start)
        except ValueError as exc:
            raise HTTPException(422, str(exc))

    @app.get("/activities/{entry_id}", dependencies=[require_permission(PERMISSION_VIEW)])
    def get_activity(entry_id: str):
        entry = service.get_activity(entry_id)
        if entry is None:
            raise HTTPException(404, "Activity not found")
        return entry

    @app.api_route("/cron/cleanup", methods=["GET", "POST"])
    def cron_cleanup(authorization: str = Header(default="")):
        secret = service.settings.CRON_SECRET
        if not secret:
            logger.error("CRON_SECRET is not configured; refusing cleanup")
            raise HTTPException(500, "Cron not configured")
        if not hmac.compare_digest(authorization.encode(), f"Bearer {secret}".encode()):
            logger.warning("Unauthorized cron cleanup attempt")
            raise HTTPException(401, "Unauthorized")

        result = service.purge_expired()
        return {
            "success": True,
            "deleted": {"activities": result.deleted},
            "cutoff": result.cutoff.isoformat(),
            "anchor_sequence": result.anchor_sequence,
        }

    return app
