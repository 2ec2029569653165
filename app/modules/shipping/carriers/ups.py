"""
UPS Carrier Implementation

- Implements BaseCarrier interface
- Wraps UPSClient; one Rate call per eligible service code, run concurrently
- Registered via @register_carrier decorator
"""
import asyncio
import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx

from app.core.exceptions import CarrierAuthError
from app.models.carrier import CarrierCode, CarrierConfiguration
from app.modules.shipping.carriers.base import (
    BaseCarrier,
    CarrierRateResult,
    RateRequest,
    ShippingRate,
)
from app.modules.shipping.carriers import register_carrier
from app.modules.shipping.service_routes import ups_service_info, valid_ups_services
from app.services.ups_client import (
    CUSTOMER_SUPPLIED_PACKAGE,
    UPSClient,
    UPSCredentials,
    UPSRate,
)

logger = logging.getLogger(__name__)

TokenPersister = Callable[[int, Dict[str, Any]], Awaitable[None]]


def _format_business_days(days: int) -> str:
    return f"{days} business day" if days == 1 else f"{days} business days"


@register_carrier(CarrierCode.UPS)
class UPSCarrier(BaseCarrier):
    """
    UPS shipping carrier implementation.

    on_token_refresh(config_id, api_credentials) is awaited with the merged
    credentials whenever a new OAuth token is obtained.
    """

    def __init__(
        self,
        carrier_config: CarrierConfiguration,
        http_client: Optional[httpx.AsyncClient] = None,
        on_token_refresh: Optional[TokenPersister] = None,
    ):
        super().__init__(carrier_config, http_client)
        self._on_token_refresh = on_token_refresh
        self._ups_client: Optional[UPSClient] = None

    @property
    def carrier_code(self) -> CarrierCode:
        return CarrierCode.UPS

    @property
    def carrier_name(self) -> str:
        return "UPS"

    async def _persist_tokens(self, token_payload: Dict[str, Any]) -> None:
        merged = {**self.credentials, **token_payload}
        self._config.api_credentials = merged
        if self._on_token_refresh is not None and self.config_id is not None:
            await self._on_token_refresh(self.config_id, merged)

    def _get_ups_client(self) -> UPSClient:
        """Get or create the UPS client instance from the configuration row."""
        if self._ups_client:
            return self._ups_client

        credentials = UPSCredentials.from_api_credentials(
            self.credentials,
            account_number=getattr(self._config, "account_number", None),
            use_sandbox=self.use_sandbox,
        )
        self._ups_client = UPSClient(
            credentials,
            http_client=self._http_client,
            lock_key=f"ups:{self.config_id}" if self.config_id is not None else None,
            on_token_refresh=self._persist_tokens,
        )
        return self._ups_client

    def _to_shipping_rate(self, ups_rate: UPSRate) -> ShippingRate:
        info = ups_service_info(ups_rate.service_code)
        if ups_rate.business_days_in_transit:
            estimated_days = _format_business_days(ups_rate.business_days_in_transit)
        else:
            estimated_days = info.estimated_days
        return ShippingRate(
            carrier=self.carrier_name,
            service_code=ups_rate.service_code,
            service_name=info.name,
            cost=ups_rate.total_charges.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP),
            currency=ups_rate.currency,
            estimated_days=estimated_days,
            service_type=info.service_type,
        )

    async def get_rates(self, request: RateRequest) -> CarrierRateResult:
        """
        Get shipping rates from UPS.

        The token is secured once up front, so an auth failure raises before
        any Rate call. Each service code is then rated independently; a
        failing code is recorded and never aborts the others.
        """
        service_codes = valid_ups_services(request.ship_from, request.ship_to, request.service_preferences)
        if not service_codes:
            logger.info("No UPS services match this route and preference set")
            return CarrierRateResult()

        client = self._get_ups_client()
        await client.ensure_token()

        extras = request.additional_services
        options = {
            "signature_required": extras.signature_required,
            "saturday_delivery": extras.saturday_delivery,
            "declared_value": extras.insurance_value or request.package.declared_value,
            "packaging_code": self._config.default_package_type or CUSTOMER_SUPPLIED_PACKAGE,
        }

        async def rate_service(code: str) -> List[UPSRate]:
            return await client.get_rate(
                request.ship_from,
                request.ship_to,
                request.package,
                code,
                service_name=ups_service_info(code).name,
                **options,
            )

        outcomes = await asyncio.gather(
            *(rate_service(code) for code in service_codes),
            return_exceptions=True,
        )

        result = CarrierRateResult()
        auth_failures = 0
        for code, outcome in zip(service_codes, outcomes):
            if isinstance(outcome, Exception):
                if isinstance(outcome, CarrierAuthError):
                    auth_failures += 1
                logger.warning(f"UPS service {code} failed: {outcome}")
                result.failures.append({"service_code": code, "error": str(outcome)})
                continue
            for ups_rate in outcome:
                if ups_rate.service_code != code:
                    continue
                result.rates.append(self._to_shipping_rate(ups_rate))

        if auth_failures and auth_failures == len(service_codes):
            raise CarrierAuthError("UPS rejected the access token for every service", carrier=self.carrier_name)

        logger.info(f"UPS returned {len(result.rates)} rates ({len(result.failures)} services failed)")
        return result

    async def validate_credentials(self) -> Tuple[bool, Optional[str]]:
        """Validate credentials by securing an OAuth token."""
        try:
            await self._get_ups_client().ensure_token()
            return True, None
        except CarrierAuthError as e:
            return False, e.message

    async def close(self) -> None:
        if self._ups_client is not None:
            await self._ups_client.close()
            self._ups_client = None
            self._http_client = None
        await super().close()
