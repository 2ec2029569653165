"""
Shipping API Routes

Provides endpoints for:
- Rate quoting across every active carrier (cheapest recommended)
- Rate cache statistics and invalidation
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.rate_cache import shipping_rate_cache
from app.api.deps import get_current_user_id
from app.services.shipping_rates import calculate_shipping_rates
from app.schemas.shipping import (
    CacheStatsResponse,
    RateCalculationRequest,
    RateCalculationResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/shipping", tags=["shipping"])


@router.post("/rates", response_model=RateCalculationResponse)
async def get_shipping_rates(
    rate_request: RateCalculationRequest,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """
    Get shipping rates from all active carriers.

    Returns rates sorted by cost with the cheapest marked as recommended.
    Identical requests within the cache window are served from cache.
    """
    result = await calculate_shipping_rates(db, user_id, rate_request.model_dump(exclude_none=True))

    if "error" in result:
        code = result.get("code")
        status_code = status.HTTP_404_NOT_FOUND if code == "ORDER_NOT_FOUND" else status.HTTP_400_BAD_REQUEST
        raise HTTPException(
            status_code=status_code,
            detail={
                "error": result["error"],
                "code": code,
                "carrier_errors": result.get("carrier_errors", []),
            },
        )

    return RateCalculationResponse(**result)


@router.get("/rates/cache/stats", response_model=CacheStatsResponse)
async def get_rate_cache_stats(
    user_id: int = Depends(get_current_user_id),
):
    """Rate cache hit/miss counters and size."""
    return CacheStatsResponse(**shipping_rate_cache.stats())


@router.delete("/rates/cache", status_code=status.HTTP_204_NO_CONTENT)
async def clear_rate_cache(
    user_id: int = Depends(get_current_user_id),
):
    """Drop every cached rate list (e.g. after changing carrier markup)."""
    shipping_rate_cache.clear_all()
    logger.info(f"Rate cache cleared by user {user_id}")
