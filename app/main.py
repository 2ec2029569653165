"""
ShipRates Backend
FastAPI application entry point

- Multi-carrier shipping rate quoting (UPS, Canada Post)
- Rate cache sweeper started/stopped with the application
- Health endpoint with DB ping and rate cache stats
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from app.api.routes import shipping
from app.core.config import settings
from app.core.database import get_db_session
from app.core.rate_cache import shipping_rate_cache

# Import models to register them with SQLAlchemy
from app.models import CarrierConfiguration, StoreConfiguration, Order  # noqa: F401

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Start the rate cache sweeper on startup and stop it on shutdown.
    """
    shipping_rate_cache.start_sweeper()
    logger.info(
        f"Rate cache sweeper started (ttl={settings.RATE_CACHE_TTL_SECONDS}s, "
        f"interval={settings.RATE_CACHE_SWEEP_INTERVAL_SECONDS}s)"
    )

    yield

    await shipping_rate_cache.stop_sweeper()
    logger.info("Rate cache sweeper stopped")


app = FastAPI(
    lifespan=lifespan,
    title=settings.APP_NAME,
    description="Multi-carrier shipping rate quotes for merchant orders.",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(shipping.router, prefix="/api", tags=["Shipping"])


@app.get("/health", tags=["Health"])
async def health_check():
    """
    Health check with an actual DB ping.
    Returns 503 if database is unreachable.
    """
    health_status = {
        "status": "healthy",
        "database": "unknown",
        "rate_cache": shipping_rate_cache.stats(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    try:
        async with get_db_session() as db:
            await db.execute(text("SELECT 1"))
        health_status["database"] = "connected"
    except Exception as e:
        logger.error(f"Health check DB ping failed: {e}")
        health_status["database"] = f"error: {type(e).__name__}: {str(e)[:100]}"
        health_status["status"] = "unhealthy"
        return JSONResponse(status_code=503, content=health_status)

    return health_status
