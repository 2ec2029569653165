"""
Multi-Carrier Rate Aggregation

- Aggregates rates from every active carrier configuration concurrently
- Serves repeat requests from the rate cache
- Applies each carrier's markup and returns one list sorted by price
- Recommends the cheapest rate

A carrier that fails, times out or rejects its credentials only loses its
own rates; the failure is recorded and the other carriers still answer.

Usage:
    aggregator = RateAggregator()
    result = await aggregator.aggregate(request, carriers, namespace=str(user_id))
"""
import asyncio
import logging
from dataclasses import dataclass, field, replace
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from app.core.config import settings
from app.core.exceptions import CarrierAuthError, ShippingOpsError
from app.core.rate_cache import RateCache, make_rate_fingerprint, shipping_rate_cache
from app.modules.shipping.carriers.base import (
    BaseCarrier,
    CarrierRateResult,
    RateRequest,
    ShippingRate,
)
from app.modules.shipping.service_routes import matches_preferences

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

NO_CARRIERS_MESSAGE = "No active carriers are configured. Add a carrier to calculate shipping rates."
ALL_FAILED_MESSAGE = "Unable to retrieve rates from any carrier."
AUTH_HINT = " Re-authorize the carriers marked as requiring authentication."
NO_RATES_MESSAGE = "No shipping rates are available for this shipment from your active carriers."


@dataclass
class CarrierFailure:
    """Why one carrier (or one of its services) produced no rates."""
    carrier: str
    error: str
    code: str
    auth_required: bool = False
    service_code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "carrier": self.carrier,
            "error": self.error,
            "code": self.code,
            "auth_required": self.auth_required,
            "service_code": self.service_code,
        }


@dataclass
class AggregatedRates:
    rates: List[ShippingRate]
    recommended: Optional[ShippingRate] = None
    cached: bool = False
    message: Optional[str] = None
    all_failed: bool = False
    carrier_errors: List[CarrierFailure] = field(default_factory=list)

    @property
    def auth_required(self) -> bool:
        return any(f.auth_required for f in self.carrier_errors)


def rate_sort_key(rate: ShippingRate) -> Tuple[Decimal, str, str]:
    """Cheapest first; ties broken by carrier name, then service code."""
    return (rate.cost, rate.carrier.lower(), rate.service_code)


def sort_rates(rates: Iterable[ShippingRate]) -> List[ShippingRate]:
    return sorted(rates, key=rate_sort_key)


def apply_markup(rate: ShippingRate, markup_percentage: Decimal) -> ShippingRate:
    """Add markup_percentage of the carrier charge, rounded to cents."""
    if not markup_percentage:
        return rate
    markup = (rate.cost * markup_percentage / Decimal("100")).quantize(CENT, rounding=ROUND_HALF_UP)
    return replace(rate, cost=(rate.cost + markup).quantize(CENT), markup=markup)


class RateAggregator:
    """
    Fans a RateRequest out to carrier adapters and merges the answers.

    Attributes:
        cache: RateCache for aggregated results
        carrier_timeout: Seconds allowed per carrier (all of its services)
    """

    def __init__(
        self,
        cache: Optional[RateCache] = None,
        carrier_timeout: Optional[float] = None,
    ):
        self.cache = cache if cache is not None else shipping_rate_cache
        self.carrier_timeout = carrier_timeout or settings.CARRIER_AGGREGATION_TIMEOUT_SECONDS

    async def _query_carrier(
        self,
        carrier: BaseCarrier,
        request: RateRequest,
    ) -> Union[CarrierRateResult, CarrierFailure]:
        name = carrier.carrier_name
        try:
            logger.info(f"Fetching rates from {name}")
            return await asyncio.wait_for(carrier.get_rates(request), timeout=self.carrier_timeout)
        except asyncio.TimeoutError:
            logger.error(f"{name} did not answer within {self.carrier_timeout}s")
            return CarrierFailure(name, f"Timed out after {self.carrier_timeout}s", "CARRIER_TIMEOUT")
        except CarrierAuthError as e:
            logger.error(f"{name} authentication failed: {e.message}")
            return CarrierFailure(name, e.message, e.code, auth_required=True)
        except ShippingOpsError as e:
            logger.error(f"Error getting rates from {name}: {e.message}")
            return CarrierFailure(name, e.message, e.code)
        except Exception as e:
            logger.error(f"Error getting rates from {name}: {e}")
            return CarrierFailure(name, str(e), "CARRIER_ERROR")

    async def aggregate(
        self,
        request: RateRequest,
        carriers: List[BaseCarrier],
        namespace: Optional[str] = None,
    ) -> AggregatedRates:
        """
        Get rates for request from every carrier.

        Returns:
            AggregatedRates; all_failed is set when no carrier could answer
        """
        key = make_rate_fingerprint(
            request.ship_from,
            request.ship_to,
            request.package,
            request.service_preferences,
            namespace=namespace,
            additional_services=request.additional_services,
        )

        cached = self.cache.get(key)
        if cached is not None:
            rates = list(cached)
            logger.info(f"Serving {len(rates)} cached rates")
            return AggregatedRates(rates=rates, recommended=rates[0] if rates else None, cached=True)

        if not carriers:
            logger.warning("No carriers enabled for rate lookup")
            return AggregatedRates(rates=[], message=NO_CARRIERS_MESSAGE, all_failed=True)

        outcomes = await asyncio.gather(*(self._query_carrier(c, request) for c in carriers))

        merged: List[ShippingRate] = []
        failures: List[CarrierFailure] = []
        answered = 0

        for carrier, outcome in zip(carriers, outcomes):
            if isinstance(outcome, CarrierFailure):
                failures.append(outcome)
                continue

            answered += 1
            for failed in outcome.failures:
                failures.append(CarrierFailure(
                    carrier.carrier_name,
                    failed.get("error", "Service failed"),
                    "CARRIER_SERVICE_FAILED",
                    service_code=failed.get("service_code"),
                ))

            markup = carrier.markup_percentage
            kept = [
                apply_markup(rate, markup)
                for rate in outcome.rates
                if matches_preferences(rate.service_code, rate.service_type, request.service_preferences)
            ]
            logger.info(f"Got {len(kept)} rates from {carrier.carrier_name}")
            merged.extend(kept)

        if answered == 0:
            message = ALL_FAILED_MESSAGE
            if any(f.auth_required for f in failures):
                message += AUTH_HINT
            return AggregatedRates(rates=[], message=message, all_failed=True, carrier_errors=failures)

        rates = sort_rates(merged)
        if not rates:
            return AggregatedRates(rates=[], message=NO_RATES_MESSAGE, carrier_errors=failures)

        self.cache.set(key, tuple(rates))
        return AggregatedRates(rates=rates, recommended=rates[0], carrier_errors=failures)
