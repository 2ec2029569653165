"""
Canada Post Carrier Implementation

- Implements BaseCarrier interface over the Rating v4 SOAP client
- Converts imperial packages to kg/cm before building the scenario
- Registered via @register_carrier decorator
"""
import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, Tuple

import httpx

from app.core.config import settings
from app.core.exceptions import CarrierError
from app.models.carrier import CarrierCode, CarrierConfiguration
from app.modules.shipping.carriers.base import (
    BaseCarrier,
    Address,
    CarrierRateResult,
    PackageDimensions,
    RateRequest,
    ShippingRate,
)
from app.modules.shipping.carriers import register_carrier
from app.modules.shipping.service_routes import canada_post_service_info
from app.services.canada_post_client import (
    CanadaPostClient,
    CanadaPostCredentials,
    MailingScenario,
    PriceQuote,
    OPTION_COVERAGE,
    OPTION_SIGNATURE,
)

logger = logging.getLogger(__name__)

LB_TO_KG = 0.453592
IN_TO_CM = 2.54


def to_kilograms(package: PackageDimensions) -> str:
    """Weight in kg, 3 decimals, never below the Canada Post minimum."""
    weight = package.weight if package.is_metric else package.weight * LB_TO_KG
    weight = max(weight, settings.CANADA_POST_MIN_WEIGHT_KG)
    return f"{weight:.3f}"


def to_centimetres(value: float, package: PackageDimensions) -> Optional[str]:
    if not value or value <= 0:
        return None
    cm = value if package.is_metric else value * IN_TO_CM
    return f"{cm:.1f}"


def normalize_postal_code(postal_code: str) -> str:
    return "".join((postal_code or "").split()).upper()


def destination_for(address: Address) -> Tuple[str, str]:
    """Pick the destination shape: domestic postal code, US zip code, or country code."""
    if address.country == "CA":
        return "domestic", normalize_postal_code(address.postal_code)
    if address.country == "US":
        return "united-states", address.postal_code.strip()
    return "international", address.country


@register_carrier(CarrierCode.CANADA_POST)
class CanadaPostCarrier(BaseCarrier):
    """
    Canada Post shipping carrier implementation.

    Credentials are sent with every call; nothing is cached between calls.
    """

    def __init__(
        self,
        carrier_config: CarrierConfiguration,
        http_client: Optional[httpx.AsyncClient] = None,
        **kwargs: Any,
    ):
        super().__init__(carrier_config, http_client)
        self._cp_client: Optional[CanadaPostClient] = None

    @property
    def carrier_code(self) -> CarrierCode:
        return CarrierCode.CANADA_POST

    @property
    def carrier_name(self) -> str:
        return "Canada Post"

    def _get_client(self) -> CanadaPostClient:
        if self._cp_client:
            return self._cp_client
        credentials = CanadaPostCredentials.from_api_credentials(self.credentials, use_sandbox=self.use_sandbox)
        self._cp_client = CanadaPostClient(credentials, http_client=self._http_client)
        return self._cp_client

    def build_scenario(self, request: RateRequest) -> MailingScenario:
        package = request.package
        destination_type, destination_value = destination_for(request.ship_to)
        credentials = self.credentials

        options: List[Tuple[str, Optional[str]]] = []
        if request.additional_services.signature_required:
            options.append((OPTION_SIGNATURE, None))
        if request.additional_services.insurance_value and request.additional_services.insurance_value > 0:
            options.append((OPTION_COVERAGE, f"{request.additional_services.insurance_value:.2f}"))

        return MailingScenario(
            origin_postal_code=normalize_postal_code(request.ship_from.postal_code),
            destination_type=destination_type,
            destination_value=destination_value,
            weight_kg=to_kilograms(package),
            length_cm=to_centimetres(package.length, package),
            width_cm=to_centimetres(package.width, package),
            height_cm=to_centimetres(package.height, package),
            customer_number=credentials.get("customer_number"),
            contract_id=credentials.get("contract_id"),
            options=options,
        )

    def _to_shipping_rate(self, quote: PriceQuote) -> Optional[ShippingRate]:
        info = canada_post_service_info(quote.service_code)
        service_name = quote.service_name or (info.name if info else "")
        if not service_name:
            logger.debug(f"Canada Post quote {quote.service_code} has no resolvable service name; skipping")
            return None

        if quote.transit_days:
            estimated_days = f"{quote.transit_days} business day" + ("" if quote.transit_days == 1 else "s")
        elif info:
            estimated_days = info.estimated_days
        else:
            estimated_days = "3-5 business days"

        return ShippingRate(
            carrier=self.carrier_name,
            service_code=quote.service_code,
            service_name=service_name,
            cost=quote.due.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP),
            currency="CAD",
            estimated_days=estimated_days,
            service_type=info.service_type if info else "standard",
        )

    async def get_rates(self, request: RateRequest) -> CarrierRateResult:
        """Get shipping rates from Canada Post (single get-rates call)."""
        if request.ship_from.country != "CA":
            raise CarrierError("Canada Post only rates shipments originating in Canada", carrier=self.carrier_name)

        quotes = await self._get_client().get_rates(self.build_scenario(request))

        result = CarrierRateResult()
        for quote in quotes:
            rate = self._to_shipping_rate(quote)
            if rate is not None:
                result.rates.append(rate)

        logger.info(f"Canada Post returned {len(result.rates)} rates")
        return result

    async def validate_credentials(self) -> Tuple[bool, Optional[str]]:
        """Validate credentials with a discover-services call."""
        try:
            await self._get_client().discover_services()
            return True, None
        except CarrierError as e:
            return False, e.message

    async def discover_services(self, destination_country: Optional[str] = None) -> List[Dict[str, str]]:
        return await self._get_client().discover_services(destination_country)

    async def get_service(self, service_code: str, destination_country: Optional[str] = None) -> Dict[str, Any]:
        return await self._get_client().get_service(service_code, destination_country)

    async def get_option(self, option_code: str) -> Dict[str, str]:
        return await self._get_client().get_option(option_code)

    async def close(self) -> None:
        if self._cp_client is not None:
            await self._cp_client.close()
            self._cp_client = None
            self._http_client = None
        await super().close()
