"""
Main entry point for the PriceWatch market data and alerts service
"""
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
import uvicorn

from app.core.config import settings
from app.core.database import init_db
from app.api.jobs import jobs_router, set_job_services
from app.api.rate_limit import limiter
from app.api.routes import api_router, set_services
from app.api.security import require_api_key
from app.services.alert_evaluator import AlertEvaluator
from app.services.credential_pool import CredentialPool
from app.services.data_service import build_market_data_service
from app.services.maintenance_service import MaintenanceService
from app.services.notification_service import NotificationService
from app.services.price_store import PriceStore
from app.services.tick_scheduler import AlertsTickScheduler

# Configure logging
Path(settings.LOG_FILE).parent.mkdir(parents=True, exist_ok=True)
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(settings.LOG_FILE),
        logging.StreamHandler()
    ]
)

logger = logging.getLogger(__name__)

# Global services
data_service = None
tick_scheduler = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    global data_service, tick_scheduler

    logger.info("Starting PriceWatch...")

    # Initialize database
    await init_db()

    # Initialize services
    credential_pool = CredentialPool()
    credential_pool.sync_from_settings()
    data_service = build_market_data_service(credential_pool)
    price_store = PriceStore()
    notification_service = NotificationService()
    alert_evaluator = AlertEvaluator(price_store, notification_service)
    tick_scheduler = AlertsTickScheduler(data_service, price_store, alert_evaluator)

    # Inject services into API routes
    set_services(data_service, price_store, alert_evaluator, credential_pool, notification_service)
    set_job_services(tick_scheduler, MaintenanceService())

    logger.info("PriceWatch started successfully!")

    yield

    logger.info("PriceWatch stopped.")

# Create FastAPI app
app = FastAPI(
    title="PriceWatch",
    description="Rate-limited multi-provider price ingestion and alert evaluation",
    version="1.0.0",
    lifespan=lifespan
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API routes
app.include_router(api_router, prefix="/api/v1", dependencies=[Depends(require_api_key)])
app.include_router(jobs_router, prefix="/jobs")


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "PriceWatch API",
        "version": "1.0.0",
        "status": "running"
    }


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "data_service": data_service is not None,
        "alerts_tick": tick_scheduler is not None,
        "alerts_tick_overdue": tick_scheduler.is_overdue() if tick_scheduler else None,
        "alert_check_interval": settings.ALERT_CHECK_INTERVAL,
        "providers": sorted(data_service.providers) if data_service else [],
    }


def main():
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        log_level=settings.LOG_LEVEL.lower()
    )


if __name__ == "__main__":
    main()
