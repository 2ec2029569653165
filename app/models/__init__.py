from app.models.carrier import CarrierConfiguration, CarrierCode
from app.models.order import Order
from app.models.store import StoreConfiguration
