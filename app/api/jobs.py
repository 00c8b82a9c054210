"""
Externally triggered job endpoints (cron / scheduler hooks)
"""
import logging
from typing import Optional

from fastapi import APIRouter, Header, Query, Request
from fastapi.responses import JSONResponse

from app.api.rate_limit import limiter
from app.api.security import is_cron_request_authorized
from app.core.config import settings
from app.services.maintenance_service import ORPHAN_ACTIONS, MaintenanceService
from app.services.tick_scheduler import AlertsTickScheduler

logger = logging.getLogger(__name__)

jobs_router = APIRouter()

# Global services (will be injected)
tick_scheduler: Optional[AlertsTickScheduler] = None
maintenance_service: Optional[MaintenanceService] = None


def set_job_services(ts: AlertsTickScheduler, ms: MaintenanceService):
    """Set global services"""
    global tick_scheduler, maintenance_service
    tick_scheduler = ts
    maintenance_service = ms


def _unauthorized() -> JSONResponse:
    return JSONResponse(status_code=401, content={"success": False, "message": "Unauthorized"})


@jobs_router.get("/alerts-tick")
@limiter.limit(settings.JOBS_RATE_LIMIT)
async def alerts_tick(
    request: Request,
    x_cron_secret: Optional[str] = Header(default=None, alias="x-cron-secret"),
    secret: Optional[str] = Query(default=None),
):
    """Refresh prices for alert-relevant stocks and evaluate their alerts"""
    if not is_cron_request_authorized(x_cron_secret, secret):
        return _unauthorized()
    if not tick_scheduler:
        return JSONResponse(status_code=503, content={"success": False, "message": "Alerts tick not available"})

    try:
        run = await tick_scheduler.run()
    except Exception as e:
        logger.error(f"Alerts tick failed: {e}")
        return JSONResponse(
            status_code=500,
            content={"success": False, "message": "Alerts tick failed", "error": str(e)},
        )

    return {
        "success": True,
        "message": "Alerts tick completed",
        "data": run.to_dict(),
    }


@jobs_router.get("/maintenance/fix-orphans")
@limiter.limit(settings.JOBS_RATE_LIMIT)
async def fix_orphans(
    request: Request,
    action: str = Query(default="dryRun"),
    x_cron_secret: Optional[str] = Header(default=None, alias="x-cron-secret"),
    secret: Optional[str] = Query(default=None),
):
    """Report, deactivate or delete portfolio rows that point at deleted stocks"""
    if not is_cron_request_authorized(x_cron_secret, secret):
        return _unauthorized()
    if action not in ORPHAN_ACTIONS:
        return JSONResponse(
            status_code=400,
            content={"success": False, "message": f"action must be one of: {', '.join(ORPHAN_ACTIONS)}"},
        )
    if not maintenance_service:
        return JSONResponse(status_code=503, content={"success": False, "message": "Maintenance not available"})

    try:
        result = maintenance_service.fix_orphans(action)
    except Exception as e:
        logger.error(f"Fix orphans failed: {e}")
        return JSONResponse(
            status_code=500,
            content={"success": False, "message": "Fix orphans failed", "error": str(e)},
        )

    return {"success": True, "data": result}
