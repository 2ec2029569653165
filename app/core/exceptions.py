"""
Rate calculation errors

Every error carries a machine-readable code, a P0-P3 severity and a details
dict that is safe to log. Subclasses declare the keyword context they accept
in context_fields; each value is set as an attribute and copied into details.

    ShippingOpsError
    ├── RateValidationError      (field)
    ├── OrderNotFoundError       (order_id)
    ├── CarrierError             (carrier)
    │   ├── CarrierAuthError
    │   ├── CarrierRequestError  (carrier, status_code)
    │   └── SOAPFaultError       (carrier, fault_code, fault_string)
    └── RateCacheError
"""
from typing import Any, Dict, Optional, Tuple


class ShippingOpsError(Exception):
    default_code: str = "SHIPPING_OPS_ERROR"
    default_severity: str = "P2"
    context_fields: Tuple[str, ...] = ()

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        severity: Optional[str] = None,
        **context: Any,
    ):
        unexpected = set(context) - set(self.context_fields)
        if unexpected:
            raise TypeError(f"{type(self).__name__} got unexpected context: {', '.join(sorted(unexpected))}")

        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.severity = severity or self.default_severity
        self.details = dict(details or {})
        for name in self.context_fields:
            value = context.get(name)
            setattr(self, name, value)
            self.details[name] = value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_type": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "severity": self.severity,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


class RateValidationError(ShippingOpsError):
    """Request is missing an address part or has an unusable package."""
    default_code = "RATE_VALIDATION_FAILED"
    default_severity = "P3"
    context_fields = ("field",)


class OrderNotFoundError(ShippingOpsError):
    """No order with that id for this merchant."""
    default_code = "ORDER_NOT_FOUND"
    default_severity = "P3"
    context_fields = ("order_id",)


class CarrierError(ShippingOpsError):
    default_code = "CARRIER_ERROR"
    default_severity = "P1"
    context_fields = ("carrier",)


class CarrierAuthError(CarrierError):
    """Credentials rejected or token refresh failed; the merchant must re-authorize."""
    default_code = "CARRIER_AUTH_FAILED"
    default_severity = "P0"


class CarrierRequestError(CarrierError):
    default_code = "CARRIER_REQUEST_FAILED"
    context_fields = CarrierError.context_fields + ("status_code",)


class SOAPFaultError(CarrierError):
    """Envelope contained a Fault element, whatever the HTTP status."""
    default_code = "CARRIER_SOAP_FAULT"
    context_fields = CarrierError.context_fields + ("fault_code", "fault_string")


class RateCacheError(ShippingOpsError):
    default_code = "RATE_CACHE_ERROR"
    default_severity = "P3"
