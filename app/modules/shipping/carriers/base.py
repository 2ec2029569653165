"""
Base Carrier Interface

All rate adapters implement this interface. Each carrier provides its own:
  - Rate calculation
  - Credential validation
  - Service-name and service-type mapping

The value types below are carrier-agnostic. RateRequest is built per call and
never persisted; ShippingRate is frozen so cached lists can be shared safely.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import httpx

from app.models.carrier import CarrierCode, CarrierConfiguration


# =============================================================================
# Carrier-Agnostic Data Classes
# =============================================================================


@dataclass
class Address:
    """Postal address. country is an ISO-3166 alpha-2 code."""
    postal_code: str
    country: str
    address_line1: str = ""
    address_line2: Optional[str] = None
    city: str = ""
    state: str = ""
    name: str = ""
    company: Optional[str] = None
    phone: Optional[str] = None

    def __post_init__(self):
        self.country = (self.country or "").strip().upper()
        self.postal_code = (self.postal_code or "").strip()

    def is_domestic_to(self, other: "Address") -> bool:
        return self.country == other.country

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Address":
        return cls(
            postal_code=str(data.get("postal_code") or ""),
            country=str(data.get("country") or ""),
            address_line1=data.get("address_line1") or data.get("address") or "",
            address_line2=data.get("address_line2"),
            city=data.get("city") or "",
            state=data.get("state") or "",
            name=data.get("name") or "",
            company=data.get("company"),
            phone=data.get("phone"),
        )


@dataclass
class PackageDimensions:
    """
    Package weight and dimensions.

    units: "imperial" (LBS / IN) or "metric" (KG / CM)
    """
    weight: float
    length: float
    width: float
    height: float
    units: str = "imperial"
    declared_value: Optional[float] = None

    @property
    def is_metric(self) -> bool:
        return self.units == "metric"


@dataclass
class AdditionalServices:
    signature_required: bool = False
    insurance_value: Optional[float] = None
    saturday_delivery: bool = False


@dataclass
class RateRequest:
    """Everything a carrier needs to quote one package."""
    ship_from: Address
    ship_to: Address
    package: PackageDimensions
    service_preferences: List[str] = field(default_factory=list)
    additional_services: AdditionalServices = field(default_factory=AdditionalServices)

    @property
    def is_domestic(self) -> bool:
        return self.ship_from.is_domestic_to(self.ship_to)


@dataclass(frozen=True)
class ShippingRate:
    """
    Normalized rate quote.

    cost is what the merchant charges (carrier charge plus markup);
    markup is the amount added on top of the carrier charge.
    """
    carrier: str
    service_code: str
    service_name: str
    cost: Decimal
    currency: str
    estimated_days: str
    service_type: str = "standard"
    markup: Decimal = Decimal("0.00")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "carrier": self.carrier,
            "service_code": self.service_code,
            "service_name": self.service_name,
            "cost": str(self.cost),
            "currency": self.currency,
            "estimated_days": self.estimated_days,
            "service_type": self.service_type,
            "markup": str(self.markup),
        }


@dataclass
class CarrierRateResult:
    """Rates from one adapter, plus the services that failed to quote."""
    rates: List[ShippingRate] = field(default_factory=list)
    failures: List[Dict[str, Any]] = field(default_factory=list)


# =============================================================================
# Base Carrier Interface
# =============================================================================

class BaseCarrier(ABC):
    """
    Abstract base class for all shipping carriers.

    An adapter owns one httpx.AsyncClient for the lifetime of a calculation;
    callers must await close() when done.
    """

    def __init__(
        self,
        carrier_config: CarrierConfiguration,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize the carrier.

        Args:
            carrier_config: CarrierConfiguration row with credentials
            http_client: Optional pre-built client (tests inject a MockTransport)
        """
        self._config = carrier_config
        self._http_client = http_client

    @property
    @abstractmethod
    def carrier_code(self) -> CarrierCode:
        """Return the carrier code enum value."""
        pass

    @property
    @abstractmethod
    def carrier_name(self) -> str:
        """Return the human-readable carrier name."""
        pass

    @abstractmethod
    async def get_rates(self, request: RateRequest) -> CarrierRateResult:
        """
        Get shipping rates from the carrier.

        Raises:
            CarrierAuthError: credentials rejected; no rate call was made
            CarrierError: the carrier could not be queried at all
        """
        pass

    @abstractmethod
    async def validate_credentials(self) -> Tuple[bool, Optional[str]]:
        """
        Check the stored credentials against the carrier.

        Returns:
            (is_valid, error_message)
        """
        pass

    async def close(self) -> None:
        """Close the HTTP client, if one was opened."""
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    @property
    def config_id(self) -> Optional[int]:
        return getattr(self._config, "id", None)

    @property
    def use_sandbox(self) -> bool:
        return bool(getattr(self._config, "use_sandbox", False))

    @property
    def markup_percentage(self) -> Decimal:
        value = getattr(self._config, "markup_percentage", None)
        return Decimal(str(value)) if value is not None else Decimal("0")

    @property
    def credentials(self) -> Dict[str, Any]:
        return dict(getattr(self._config, "api_credentials", None) or {})
