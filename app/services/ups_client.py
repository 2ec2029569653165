"""
UPS API Client for shipping rate quotes

Implements UPS OAuth 2.0 authentication and the Rating API:
- client_credentials grant for the first token
- refresh_token grant once a refresh token is on file
- one Rate call per service code

Token refresh is serialized per carrier configuration so concurrent rate
requests for the same merchant trigger a single refresh. New tokens are
handed to a persistence callback; credentials and tokens are never logged.
"""
import base64
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Dict, Hashable, List, Optional, Tuple

import httpx

from app.core.config import settings
from app.core.exceptions import CarrierAuthError, CarrierRequestError
from app.core.locks import KeyedLockManager, token_refresh_locks

logger = logging.getLogger(__name__)

# OAuth endpoints
OAUTH_TOKEN_PATH = "/security/v1/oauth/token"
OAUTH_REFRESH_PATH = "/security/v1/oauth/refresh"

# API endpoints
RATING_PATH = "/api/rating/v1/Rate"

# Signature required on delivery (UPS DCIS type 2)
DELIVERY_CONFIRMATION_SIGNATURE = "2"

CUSTOMER_SUPPLIED_PACKAGE = "02"

CARRIER = "UPS"

TokenCallback = Callable[[Dict[str, Any]], Awaitable[None]]

# Most recent token per configuration id, shared across client instances so a
# caller that waited on the refresh lock can reuse the winner's token.
_recent_tokens: Dict[Hashable, Tuple[str, Optional[str], datetime]] = {}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_expiry(value: Any) -> Optional[datetime]:
    """Parse a stored token_expires_at (ISO-8601 string or datetime)."""
    if not value:
        return None
    if isinstance(value, datetime):
        expires = value
    else:
        try:
            expires = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            logger.warning("UPS token_expires_at is not ISO-8601; treating token as expired")
            return None
    if expires.tzinfo is None:
        expires = expires.replace(tzinfo=timezone.utc)
    return expires


@dataclass
class UPSCredentials:
    """UPS API credentials and current token state."""
    client_id: str
    client_secret: str
    account_number: str
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    enable_negotiated_rates: bool = True
    use_sandbox: bool = True

    @property
    def base_url(self) -> str:
        return settings.UPS_SANDBOX_URL if self.use_sandbox else settings.UPS_PRODUCTION_URL

    @classmethod
    def from_api_credentials(
        cls,
        api_credentials: Dict[str, Any],
        account_number: Optional[str] = None,
        use_sandbox: bool = True,
    ) -> "UPSCredentials":
        negotiated = api_credentials.get("enable_negotiated_rates")
        return cls(
            client_id=api_credentials.get("client_id") or "",
            client_secret=api_credentials.get("client_secret") or "",
            account_number=account_number or api_credentials.get("account_number") or "",
            access_token=api_credentials.get("access_token"),
            refresh_token=api_credentials.get("refresh_token"),
            token_expires_at=parse_expiry(api_credentials.get("token_expires_at")),
            enable_negotiated_rates=True if negotiated is None else bool(negotiated),
            use_sandbox=use_sandbox,
        )

    def token_is_fresh(self, now: datetime, margin_seconds: int) -> bool:
        """True while the access token is more than margin_seconds from expiry."""
        if not self.access_token or not self.token_expires_at:
            return False
        return now < self.token_expires_at - timedelta(seconds=margin_seconds)

    def token_payload(self) -> Dict[str, Any]:
        """Token fields to merge into the stored api_credentials."""
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_expires_at": self.token_expires_at.isoformat() if self.token_expires_at else None,
        }


def ups_party(address: Any) -> Dict[str, Any]:
    """
    Shipper / ShipFrom / ShipTo block from an Address.

    UPS caps names at 35 characters and phone numbers at 15. With a company
    on the address, the company is the Name and the person the AttentionName.
    """
    party: Dict[str, Any] = {
        "Name": (address.company or address.name or "Shipper")[:35],
        "Address": {
            "AddressLine": [line for line in (address.address_line1, address.address_line2) if line],
            "City": address.city,
            "StateProvinceCode": (address.state or "")[:5],
            "PostalCode": address.postal_code,
            "CountryCode": address.country,
        },
    }
    if address.company and address.name:
        party["AttentionName"] = address.name[:35]
    if address.phone:
        party["Phone"] = {"Number": address.phone[:15]}
    return party


def ups_package(
    package: Any,
    declared_value: Optional[float] = None,
    packaging_code: str = CUSTOMER_SUPPLIED_PACKAGE,
) -> Dict[str, Any]:
    """Package block from PackageDimensions; metric packages go out as KGS / CM."""
    weight_code, dimension_code = ("KGS", "CM") if package.is_metric else ("LBS", "IN")
    block: Dict[str, Any] = {
        "PackagingType": {"Code": packaging_code, "Description": "Package"},
        "PackageWeight": {
            "UnitOfMeasurement": {"Code": weight_code},
            "Weight": str(round(package.weight, 1)),
        },
    }

    # Dimensions only when all three are known
    if package.length > 0 and package.width > 0 and package.height > 0:
        block["Dimensions"] = {
            "UnitOfMeasurement": {"Code": dimension_code},
            "Length": str(round(package.length, 1)),
            "Width": str(round(package.width, 1)),
            "Height": str(round(package.height, 1)),
        }

    if declared_value and declared_value > 0:
        block["PackageServiceOptions"] = {
            "DeclaredValue": {"CurrencyCode": "USD", "MonetaryValue": str(round(declared_value, 2))},
        }
    return block


@dataclass
class UPSRate:
    """One rated shipment from UPS."""
    service_code: str
    total_charges: Decimal
    currency: str
    negotiated: bool = False
    business_days_in_transit: Optional[int] = None
    raw_response: Dict = field(default_factory=dict)


def _money(value: Any) -> Optional[Decimal]:
    if value in (None, ""):
        return None
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return amount if amount.is_finite() else None


def parse_rated_shipments(response: Dict, prefer_negotiated: bool = True) -> List[UPSRate]:
    """
    Parse RateResponse.RatedShipment (object or list) into UPSRate values.

    Negotiated charges win over published TotalCharges when present.
    Shipments with a missing, unparseable or non-positive charge are skipped.
    """
    rated_shipments = response.get("RateResponse", {}).get("RatedShipment", [])
    if isinstance(rated_shipments, dict):
        rated_shipments = [rated_shipments]

    rates = []
    for rs in rated_shipments:
        service_code = (rs.get("Service") or {}).get("Code")
        if not service_code:
            continue

        total = rs.get("TotalCharges") or {}
        amount = None
        negotiated = False
        currency = total.get("CurrencyCode") or "USD"

        if prefer_negotiated:
            negotiated_total = (rs.get("NegotiatedRateCharges") or {}).get("TotalCharge") or {}
            amount = _money(negotiated_total.get("MonetaryValue"))
            if amount is not None and amount > 0:
                negotiated = True
                currency = negotiated_total.get("CurrencyCode") or currency
            else:
                amount = None

        if amount is None:
            amount = _money(total.get("MonetaryValue"))

        if amount is None or amount <= 0:
            logger.debug(f"UPS service {service_code} returned no usable charge; skipping")
            continue

        business_days = None
        raw_days = (rs.get("GuaranteedDelivery") or {}).get("BusinessDaysInTransit")
        if raw_days not in (None, ""):
            try:
                business_days = int(raw_days)
            except (TypeError, ValueError):
                business_days = None

        rates.append(UPSRate(
            service_code=service_code,
            total_charges=amount,
            currency=currency,
            negotiated=negotiated,
            business_days_in_transit=business_days,
            raw_response=rs,
        ))

    return rates


class UPSClient:
    """
    UPS API Client with OAuth 2.0 authentication.

    Handles token refresh and rate requests for one carrier configuration.
    """

    def __init__(
        self,
        credentials: UPSCredentials,
        http_client: Optional[httpx.AsyncClient] = None,
        lock_key: Optional[Hashable] = None,
        on_token_refresh: Optional[TokenCallback] = None,
        lock_manager: KeyedLockManager = token_refresh_locks,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.credentials = credentials
        self._http_client = http_client
        self._lock_key = lock_key if lock_key is not None else f"ups:{credentials.client_id}"
        self._on_token_refresh = on_token_refresh
        self._locks = lock_manager
        self._clock = clock

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=settings.CARRIER_REQUEST_TIMEOUT_SECONDS,
                headers={"Content-Type": "application/json"},
            )
        return self._http_client

    async def close(self):
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    def _basic_auth_header(self) -> str:
        auth_string = f"{self.credentials.client_id}:{self.credentials.client_secret}"
        return f"Basic {base64.b64encode(auth_string.encode()).decode()}"

    def _adopt_recent_token(self) -> bool:
        recent = _recent_tokens.get(self._lock_key)
        if not recent:
            return False
        access_token, refresh_token, expires_at = recent
        current = self.credentials.token_expires_at
        if current is not None and current >= expires_at:
            return False
        self.credentials.access_token = access_token
        self.credentials.refresh_token = refresh_token
        self.credentials.token_expires_at = expires_at
        return True

    async def ensure_token(self) -> str:
        """
        Ensure we have a valid OAuth token.

        Reuses the current token while it is outside the refresh margin;
        otherwise refreshes once under the per-configuration lock.

        Raises:
            CarrierAuthError: the single refresh attempt failed
        """
        margin = settings.UPS_TOKEN_REFRESH_MARGIN_SECONDS
        if self.credentials.token_is_fresh(self._clock(), margin):
            return self.credentials.access_token

        lock = await self._locks.get_lock(self._lock_key)
        async with lock:
            # Another caller may have refreshed while we waited
            self._adopt_recent_token()
            if self.credentials.token_is_fresh(self._clock(), margin):
                return self.credentials.access_token

            await self._request_token()
            _recent_tokens[self._lock_key] = (
                self.credentials.access_token,
                self.credentials.refresh_token,
                self.credentials.token_expires_at,
            )

        await self._persist_tokens()
        return self.credentials.access_token

    async def _request_token(self) -> None:
        if not self.credentials.client_id or not self.credentials.client_secret:
            raise CarrierAuthError("UPS client ID and secret are not configured", carrier=CARRIER)

        client = await self._get_http_client()
        if self.credentials.refresh_token:
            url = f"{self.credentials.base_url}{OAUTH_REFRESH_PATH}"
            form = {"grant_type": "refresh_token", "refresh_token": self.credentials.refresh_token}
            grant = "refresh_token"
        else:
            url = f"{self.credentials.base_url}{OAUTH_TOKEN_PATH}"
            form = {"grant_type": "client_credentials"}
            grant = "client_credentials"

        try:
            response = await client.post(
                url,
                headers={
                    "Authorization": self._basic_auth_header(),
                    "Content-Type": "application/x-www-form-urlencoded",
                },
                data=form,
            )
        except httpx.RequestError as e:
            logger.error(f"UPS OAuth request failed: {e}")
            raise CarrierAuthError(f"Network error during UPS authentication: {e}", carrier=CARRIER)

        if response.status_code != 200:
            logger.error(f"UPS OAuth {grant} failed: {response.status_code}")
            raise CarrierAuthError(
                "Failed to authenticate with UPS",
                carrier=CARRIER,
                details={"status": response.status_code, "grant_type": grant},
            )

        try:
            data = response.json()
            access_token = data["access_token"]
        except (ValueError, KeyError):
            raise CarrierAuthError("UPS OAuth response did not include an access token", carrier=CARRIER)

        expires_in = int(data.get("expires_in") or 3600)
        self.credentials.access_token = access_token
        if data.get("refresh_token"):
            self.credentials.refresh_token = data["refresh_token"]
        self.credentials.token_expires_at = self._clock() + timedelta(seconds=expires_in)

        logger.info(f"UPS OAuth token obtained via {grant}, expires in {expires_in}s")

    async def _persist_tokens(self) -> None:
        if self._on_token_refresh is None:
            return
        try:
            await self._on_token_refresh(self.credentials.token_payload())
        except Exception as e:
            # The token is still valid in memory for this calculation
            logger.error(f"Failed to persist refreshed UPS token for {self._lock_key}: {e}")

    async def _make_request(self, method: str, path: str, data: Optional[Dict] = None) -> Dict:
        """Make authenticated API request."""
        token = await self.ensure_token()
        client = await self._get_http_client()
        url = f"{self.credentials.base_url}{path}"

        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "transId": f"rate_{self._clock().strftime('%Y%m%d%H%M%S%f')}",
            "transactionSrc": settings.UPS_TRANSACTION_SOURCE,
        }

        try:
            response = await client.request(method.upper(), url, headers=headers, json=data)
        except httpx.RequestError as e:
            logger.error(f"UPS API request failed: {e}")
            raise CarrierRequestError(f"Network error: {e}", carrier=CARRIER)

        logger.debug(f"UPS API {method} {path} -> {response.status_code}")

        if response.status_code >= 400:
            try:
                error_data = response.json()
            except ValueError:
                error_data = {"raw": response.text[:500]}

            # Extract UPS error details
            error_msg = "UPS API error"
            error_code = str(response.status_code)
            errors = (error_data.get("response") or {}).get("errors") or []
            if errors:
                error_msg = errors[0].get("message", error_msg)
                error_code = errors[0].get("code", error_code)

            logger.error(f"UPS API error: {error_code} - {error_msg}")
            if response.status_code == 401:
                raise CarrierAuthError(error_msg, carrier=CARRIER, details={"ups_code": error_code})
            raise CarrierRequestError(
                error_msg,
                status_code=response.status_code,
                carrier=CARRIER,
                details={"ups_code": error_code},
            )

        try:
            return response.json()
        except ValueError:
            raise CarrierRequestError("UPS returned a non-JSON response", status_code=response.status_code, carrier=CARRIER)

    # ==================== Rating ====================

    def build_rate_request(
        self,
        origin: Any,
        destination: Any,
        package: Any,
        service_code: str,
        service_name: Optional[str] = None,
        signature_required: bool = False,
        saturday_delivery: bool = False,
        declared_value: Optional[float] = None,
        packaging_code: str = CUSTOMER_SUPPLIED_PACKAGE,
    ) -> Dict:
        """RateRequest body for one service code. origin/destination are Addresses."""
        shipper = ups_party(origin)
        shipper["ShipperNumber"] = self.credentials.account_number

        shipment: Dict[str, Any] = {
            "Shipper": shipper,
            "ShipTo": ups_party(destination),
            "ShipFrom": ups_party(origin),
            "Service": {"Code": service_code, "Description": service_name or service_code},
            "Package": [ups_package(package, declared_value, packaging_code)],
        }

        if self.credentials.enable_negotiated_rates:
            shipment["ShipmentRatingOptions"] = {"NegotiatedRatesIndicator": ""}

        service_options: Dict[str, Any] = {}
        if signature_required:
            service_options["DeliveryConfirmation"] = {"DCISType": DELIVERY_CONFIRMATION_SIGNATURE}
        if saturday_delivery:
            service_options["SaturdayDeliveryIndicator"] = ""
        if service_options:
            shipment["ShipmentServiceOptions"] = service_options

        return {
            "RateRequest": {
                "Request": {
                    "RequestOption": "Rate",
                    "TransactionReference": {
                        "CustomerContext": f"Rating_{self._clock().strftime('%Y%m%d%H%M%S')}",
                    },
                },
                "Shipment": shipment,
            }
        }

    async def get_rate(self, origin: Any, destination: Any, package: Any, service_code: str, **options: Any) -> List[UPSRate]:
        """
        Rate one service code.

        options are build_rate_request's keyword arguments. Returns the parsed
        rates for that code (usually one; empty if UPS priced it at zero).
        """
        request_data = self.build_rate_request(origin, destination, package, service_code, **options)
        response = await self._make_request("POST", RATING_PATH, data=request_data)
        return parse_rated_shipments(response, prefer_negotiated=self.credentials.enable_negotiated_rates)
