"""
Shipping rate calculation entry point

calculate_shipping_rates() is what the API route (and any background job)
calls. It returns a plain dict so callers never have to catch: either the
rate list or {"error", "code"}.
"""
import asyncio
import logging
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import ShippingOpsError
from app.core.rate_cache import RateCache
from app.modules.shipping.carriers import CarrierFactory
from app.modules.shipping.request_builder import build_rate_request
from app.services.carrier_credentials import CarrierCredentialStore
from app.services.rate_service import RateAggregator

logger = logging.getLogger(__name__)

ALL_CARRIERS_FAILED = "ALL_CARRIERS_FAILED"


async def calculate_shipping_rates(
    db: AsyncSession,
    user_id: int,
    payload: Dict[str, Any],
    cache: Optional[RateCache] = None,
) -> Dict[str, Any]:
    """
    Calculate shipping rates for a merchant's order.

    Args:
        db: Database session
        user_id: Merchant the request is made for
        payload: {order_id, ship_from?, ship_to?, package?,
                  service_preferences?, additional_services?}
        cache: Optional RateCache (defaults to the process-wide one)

    Returns:
        {"rates", "recommended", "cached", "message", "carrier_errors"}
        or {"error", "code"} (plus "carrier_errors" on total failure)
    """
    try:
        request = await build_rate_request(db, user_id, payload)
    except ShippingOpsError as e:
        logger.info(f"Rate request rejected for user {user_id}: {e.code} - {e.message}")
        return {"error": e.message, "code": e.code}

    store = CarrierCredentialStore(db)
    configs = await store.list_active(user_id)
    carriers = CarrierFactory.get_enabled_carriers(configs, on_token_refresh=store.save_tokens)

    try:
        result = await RateAggregator(cache=cache).aggregate(request, carriers, namespace=str(user_id))
    finally:
        await asyncio.gather(*(carrier.close() for carrier in carriers), return_exceptions=True)

    carrier_errors = [f.to_dict() for f in result.carrier_errors]

    if result.all_failed:
        logger.warning(f"All carriers failed for user {user_id}: {result.message}")
        return {
            "error": result.message,
            "code": ALL_CARRIERS_FAILED,
            "carrier_errors": carrier_errors,
        }

    return {
        "rates": [rate.to_dict() for rate in result.rates],
        "recommended": result.recommended.to_dict() if result.recommended else None,
        "cached": result.cached,
        "message": result.message,
        "carrier_errors": carrier_errors,
    }
