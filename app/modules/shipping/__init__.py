"""
Shipping Module

- BaseCarrier interface for all carrier rate adapters
- CarrierFactory for dependency injection
- Service-route table shared by the UPS adapter and the aggregator
"""
from app.modules.shipping.carriers import CarrierFactory, get_carrier
from app.modules.shipping.carriers.base import BaseCarrier

__all__ = [
    "CarrierFactory",
    "get_carrier",
    "BaseCarrier",
]
