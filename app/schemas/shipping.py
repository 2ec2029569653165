"""
Shipping Schemas

Pydantic models for the shipping rate API requests and responses.
"""
from decimal import Decimal
from typing import Optional, List
from pydantic import BaseModel, Field, field_validator


# ==================== Address Schemas ====================


class RateAddress(BaseModel):
    """Origin or destination address for a rate request."""
    name: Optional[str] = Field(None, max_length=100)
    company: Optional[str] = Field(None, max_length=100)
    address_line1: Optional[str] = Field(None, max_length=100)
    address_line2: Optional[str] = Field(None, max_length=100)
    city: Optional[str] = Field(None, max_length=100)
    state: Optional[str] = Field(None, max_length=50)
    postal_code: Optional[str] = Field(None, max_length=20)
    country: Optional[str] = Field(None, min_length=2, max_length=2)
    phone: Optional[str] = Field(None, max_length=20)

    @field_validator("country")
    @classmethod
    def validate_country(cls, v):
        return v.upper() if v else v


# ==================== Package Schemas ====================


class PackageInput(BaseModel):
    """Package details; anything omitted comes from the order or defaults."""
    weight: Optional[float] = Field(None, description="LBS (imperial) or KG (metric)")
    length: Optional[float] = Field(None, ge=0)
    width: Optional[float] = Field(None, ge=0)
    height: Optional[float] = Field(None, ge=0)
    units: str = Field("imperial", description="imperial (LBS/IN) or metric (KG/CM)")
    declared_value: Optional[float] = Field(None, ge=0)

    @field_validator("units")
    @classmethod
    def validate_units(cls, v):
        v = v.lower()
        if v not in ("imperial", "metric"):
            raise ValueError("units must be 'imperial' or 'metric'")
        return v


class AdditionalServicesInput(BaseModel):
    signature_required: bool = False
    insurance_value: Optional[float] = Field(None, ge=0)
    saturday_delivery: bool = False


# ==================== Rate Schemas ====================


class RateCalculationRequest(BaseModel):
    """Request shipping rates for an order."""
    order_id: Optional[int] = None
    ship_from: Optional[RateAddress] = None
    ship_to: Optional[RateAddress] = None
    package: Optional[PackageInput] = None
    service_preferences: List[str] = Field(default_factory=list, description="Service codes or types")
    additional_services: Optional[AdditionalServicesInput] = None


class ShippingRateResponse(BaseModel):
    """A single shipping rate option."""
    carrier: str
    service_code: str
    service_name: str
    cost: Decimal
    currency: str
    estimated_days: str
    service_type: str
    markup: Decimal


class CarrierErrorResponse(BaseModel):
    carrier: str
    error: str
    code: str
    auth_required: bool = False
    service_code: Optional[str] = None


class RateCalculationResponse(BaseModel):
    """Sorted rate list with the recommended (cheapest) option."""
    rates: List[ShippingRateResponse]
    recommended: Optional[ShippingRateResponse] = None
    cached: bool = False
    message: Optional[str] = None
    carrier_errors: List[CarrierErrorResponse] = []


class CacheStatsResponse(BaseModel):
    hits: int
    misses: int
    hit_rate: float
    size: int
    max_size: int
    ttl_seconds: int
    evictions: int
    expirations: int
    errors: int
