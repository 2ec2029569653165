"""
Rate request builder

Turns an incoming rate payload into a RateRequest, filling gaps from the
order and the merchant's store configuration:

  ship_from  payload -> active store configuration for the order's store
  ship_to    payload -> order shipping columns
  package    payload -> order dimensions -> settings defaults

Validation happens here, before any carrier is called.
"""
import logging
import math
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import OrderNotFoundError, RateValidationError
from app.models.order import Order
from app.models.store import StoreConfiguration
from app.modules.shipping.carriers.base import (
    AdditionalServices,
    Address,
    PackageDimensions,
    RateRequest,
)

logger = logging.getLogger(__name__)


async def load_order(db: AsyncSession, user_id: int, order_id: Any) -> Order:
    result = await db.execute(
        select(Order).where(
            and_(
                Order.id == order_id,
                Order.user_id == user_id,
            )
        )
    )
    order = result.scalar_one_or_none()
    if order is None:
        raise OrderNotFoundError("Order not found", order_id=str(order_id))
    return order


async def load_store_ship_from(db: AsyncSession, user_id: int, store_name: Optional[str]) -> Optional[Dict[str, Any]]:
    if not store_name:
        return None
    result = await db.execute(
        select(StoreConfiguration).where(
            and_(
                StoreConfiguration.user_id == user_id,
                StoreConfiguration.store_name == store_name,
                StoreConfiguration.is_active == True,  # noqa: E712
            )
        )
    )
    store = result.scalars().first()
    if store is None:
        return None
    return store.ship_from_address or None


def ship_to_from_order(order: Order) -> Address:
    return Address(
        name=order.customer_name or "",
        address_line1=order.shipping_address_line1 or "",
        address_line2=order.shipping_address_line2,
        city=order.shipping_city or "",
        state=order.shipping_state or "",
        postal_code=order.shipping_zip or "",
        country=order.shipping_country or "",
    )


def _package_number(value: Any, name: str) -> Optional[float]:
    """float(value), or None when absent. Non-numeric and non-finite values are rejected."""
    if value is None or value == "":
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise RateValidationError(f"Package {name} must be a number", field=f"package.{name}")
    if not math.isfinite(number):
        raise RateValidationError(f"Package {name} must be a finite number", field=f"package.{name}")
    return number


def _first_positive(*values: Optional[float]) -> Optional[float]:
    for value in values:
        if value is not None and value > 0:
            return value
    return None


def build_package(package: Optional[Dict[str, Any]], order: Optional[Order]) -> PackageDimensions:
    """
    Merge package values from payload, order and defaults, field by field.

    An explicit non-positive weight in the payload is rejected rather than
    silently replaced by a fallback.
    """
    package = package or {}

    explicit_weight = _package_number(package.get("weight"), "weight")
    if explicit_weight is not None and explicit_weight <= 0:
        raise RateValidationError("Package weight must be greater than zero", field="package.weight")

    units = (package.get("units") or "imperial").lower()
    if units not in ("imperial", "metric"):
        raise RateValidationError(f"Unknown package units: {units}", field="package.units")

    # Order columns and defaults are imperial; only use them for imperial packages
    use_fallbacks = units == "imperial"

    def fallback(order_attr: str, default: float) -> Tuple[Optional[float], Optional[float]]:
        if not use_fallbacks:
            return None, None
        stored = getattr(order, order_attr, None) if order is not None else None
        return (float(stored) if stored is not None else None), default

    weight = _first_positive(explicit_weight, *fallback("weight_lbs", settings.DEFAULT_PACKAGE_WEIGHT_LBS))
    if weight is None:
        raise RateValidationError("Package weight must be greater than zero", field="package.weight")

    def dimension(name: str, order_attr: str, default: float) -> float:
        value = _first_positive(_package_number(package.get(name), name), *fallback(order_attr, default))
        return value or 0.0

    return PackageDimensions(
        weight=weight,
        length=dimension("length", "length_inches", settings.DEFAULT_PACKAGE_LENGTH_IN),
        width=dimension("width", "width_inches", settings.DEFAULT_PACKAGE_WIDTH_IN),
        height=dimension("height", "height_inches", settings.DEFAULT_PACKAGE_HEIGHT_IN),
        units=units,
        declared_value=_package_number(package.get("declared_value"), "declared_value"),
    )


def validate_address(address: Optional[Address], label: str) -> Address:
    if address is None:
        raise RateValidationError(f"{label} address is required", field=label)
    if not address.postal_code:
        raise RateValidationError(f"{label} postal code is required", field=f"{label}.postal_code")
    if not address.country:
        raise RateValidationError(f"{label} country is required", field=f"{label}.country")
    return address


async def build_rate_request(db: AsyncSession, user_id: int, payload: Dict[str, Any]) -> RateRequest:
    """
    Build a validated RateRequest for user_id.

    Raises:
        OrderNotFoundError: order_id given but not owned by user_id
        RateValidationError: missing postal code/country or non-positive weight
    """
    order = None
    if payload.get("order_id") is not None:
        order = await load_order(db, user_id, payload["order_id"])

    ship_from = None
    if payload.get("ship_from"):
        ship_from = Address.from_dict(payload["ship_from"])
    elif order is not None:
        store_address = await load_store_ship_from(db, user_id, order.store_name)
        if store_address:
            ship_from = Address.from_dict(store_address)
        else:
            logger.info(f"No active store configuration with a ship-from address for store {order.store_name!r}")

    ship_to = None
    if payload.get("ship_to"):
        ship_to = Address.from_dict(payload["ship_to"])
    elif order is not None:
        ship_to = ship_to_from_order(order)

    ship_from = validate_address(ship_from, "ship_from")
    ship_to = validate_address(ship_to, "ship_to")

    extras = payload.get("additional_services") or {}
    additional_services = AdditionalServices(
        signature_required=bool(extras.get("signature_required", False)),
        insurance_value=extras.get("insurance_value"),
        saturday_delivery=bool(extras.get("saturday_delivery", False)),
    )

    return RateRequest(
        ship_from=ship_from,
        ship_to=ship_to,
        package=build_package(payload.get("package"), order),
        service_preferences=list(payload.get("service_preferences") or []),
        additional_services=additional_services,
    )
