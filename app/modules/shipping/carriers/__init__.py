"""
Carrier adapters

Adapters register themselves with @register_carrier(CarrierCode.X). The
factory turns a merchant's CarrierConfiguration rows into adapter
instances, skipping rows that are inactive or whose carrier has no adapter
(FedEx configurations can exist before an adapter does).
"""
import logging
from typing import Any, Dict, Iterable, List, Optional, Type

from app.models.carrier import CarrierCode, CarrierConfiguration
from app.modules.shipping.carriers.base import BaseCarrier

logger = logging.getLogger(__name__)

_adapters: Dict[CarrierCode, Type[BaseCarrier]] = {}


def register_carrier(carrier_code: CarrierCode):
    def decorator(cls: Type[BaseCarrier]) -> Type[BaseCarrier]:
        _adapters[carrier_code] = cls
        logger.debug(f"Carrier adapter {cls.__name__} handles {carrier_code.value}")
        return cls
    return decorator


class CarrierFactory:

    @staticmethod
    def adapter_for(carrier_name: Any) -> Optional[Type[BaseCarrier]]:
        """Adapter class for a stored carrier name ("UPS", "canada_post", CarrierCode)."""
        try:
            code = carrier_name if isinstance(carrier_name, CarrierCode) else CarrierCode(str(carrier_name).upper())
        except ValueError:
            return None
        return _adapters.get(code)

    @classmethod
    def get_carrier(cls, carrier_config: CarrierConfiguration, **kwargs: Any) -> Optional[BaseCarrier]:
        """
        Build the adapter for one configuration row.

        kwargs (http_client, on_token_refresh) go to the adapter constructor.
        Returns None when the row is inactive or has no adapter.
        """
        if not carrier_config.is_active:
            logger.debug(f"Skipping inactive carrier configuration {carrier_config.id}")
            return None

        adapter_cls = cls.adapter_for(carrier_config.carrier_name)
        if adapter_cls is None:
            logger.warning(
                f"Carrier configuration {carrier_config.id} names {carrier_config.carrier_name!r}, "
                f"which has no rating adapter"
            )
            return None
        return adapter_cls(carrier_config, **kwargs)

    @classmethod
    def get_enabled_carriers(cls, carrier_configs: Iterable[CarrierConfiguration], **kwargs: Any) -> List[BaseCarrier]:
        carriers = (cls.get_carrier(config, **kwargs) for config in carrier_configs)
        return [carrier for carrier in carriers if carrier is not None]

    @staticmethod
    def get_registered_carriers() -> List[CarrierCode]:
        return list(_adapters)


get_carrier = CarrierFactory.get_carrier


# Adapters import register_carrier from this module, so they load last
from app.modules.shipping.carriers.ups import UPSCarrier  # noqa: E402, F401
from app.modules.shipping.carriers.canada_post import CanadaPostCarrier  # noqa: E402, F401
