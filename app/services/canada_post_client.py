"""
Canada Post SOAP Rating Client

Implements the Canada Post Rating v4 SOAP operations:
- get-rates (price quotes for a mailing scenario)
- discover-services (also used to check credentials)
- get-service
- get-option

Every call is a stateless POST of a WS-Security UsernameToken envelope; there
is no token to cache or refresh. Responses are read through an
XMLFieldExtractor and checked for a SOAP Fault before anything else.
"""
import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

import httpx

from app.core.config import settings
from app.core.exceptions import CarrierAuthError, CarrierRequestError, SOAPFaultError
from app.utils.soap_fields import (
    RegexFieldExtractor,
    XMLFieldExtractor,
    extract_fault,
    is_soap_fault,
    xml_text,
)

logger = logging.getLogger(__name__)

RATING_PATH = "/rs/soap/rating/v4"

SOAPENV_NS = "http://schemas.xmlsoap.org/soap/envelope/"
RATING_NS = "http://www.canadapost.ca/ws/soap/ship/rate/v4"
WSSE_NS = "http://docs.oasis-open.org/wss/2004/01/oasis-200401-wss-wssecurity-secext-1.0.xsd"

# Option codes
OPTION_SIGNATURE = "SO"
OPTION_COVERAGE = "COV"

CARRIER = "Canada Post"


@dataclass
class CanadaPostCredentials:
    """Canada Post API key pair and customer identifiers."""
    api_key: str
    api_secret: str
    customer_number: Optional[str] = None
    contract_id: Optional[str] = None
    use_sandbox: bool = True

    @property
    def base_url(self) -> str:
        return settings.CANADA_POST_SANDBOX_URL if self.use_sandbox else settings.CANADA_POST_PRODUCTION_URL

    @classmethod
    def from_api_credentials(cls, api_credentials: Dict[str, Any], use_sandbox: bool = True) -> "CanadaPostCredentials":
        return cls(
            api_key=api_credentials.get("api_key") or "",
            api_secret=api_credentials.get("api_secret") or "",
            customer_number=api_credentials.get("customer_number"),
            contract_id=api_credentials.get("contract_id"),
            use_sandbox=use_sandbox,
        )


@dataclass
class MailingScenario:
    """
    A get-rates scenario, already in Canada Post units.

    destination_type is one of "domestic", "united-states", "international".
    """
    origin_postal_code: str
    destination_type: str
    destination_value: str  # postal code, zip code, or country code
    weight_kg: str
    length_cm: Optional[str] = None
    width_cm: Optional[str] = None
    height_cm: Optional[str] = None
    customer_number: Optional[str] = None
    contract_id: Optional[str] = None
    service_codes: List[str] = field(default_factory=list)
    options: List[Tuple[str, Optional[str]]] = field(default_factory=list)  # (code, amount)


@dataclass
class PriceQuote:
    """One price-quote from a get-rates response."""
    service_code: str
    service_name: Optional[str]
    due: Decimal
    transit_days: Optional[int] = None


class CanadaPostClient:
    """
    Canada Post Rating SOAP client.

    One instance per carrier configuration and calculation; call close()
    when finished.
    """

    def __init__(
        self,
        credentials: CanadaPostCredentials,
        http_client: Optional[httpx.AsyncClient] = None,
        extractor: Optional[XMLFieldExtractor] = None,
        locale: Optional[str] = None,
    ):
        self.credentials = credentials
        self._http_client = http_client
        self._extractor = extractor or RegexFieldExtractor()
        self.locale = locale or settings.CANADA_POST_LOCALE

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=settings.CARRIER_REQUEST_TIMEOUT_SECONDS)
        return self._http_client

    async def close(self):
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    # ==================== Envelope & bodies ====================

    def build_envelope(self, operation: str, body: str) -> str:
        """Wrap an operation body in a SOAP envelope with a WS-Security header."""
        return (
            '<?xml version="1.0" encoding="UTF-8"?>'
            f'<soapenv:Envelope xmlns:soapenv="{SOAPENV_NS}" xmlns:rat="{RATING_NS}">'
            "<soapenv:Header>"
            f'<wsse:Security xmlns:wsse="{WSSE_NS}">'
            "<wsse:UsernameToken>"
            f"<wsse:Username>{xml_text(self.credentials.api_key)}</wsse:Username>"
            f"<wsse:Password>{xml_text(self.credentials.api_secret)}</wsse:Password>"
            "</wsse:UsernameToken>"
            "</wsse:Security>"
            "</soapenv:Header>"
            "<soapenv:Body>"
            f"<rat:{operation}-request>{body}</rat:{operation}-request>"
            "</soapenv:Body>"
            "</soapenv:Envelope>"
        )

    def build_get_rates_body(self, scenario: MailingScenario) -> str:
        parts = [f"<rat:locale>{xml_text(self.locale)}</rat:locale>", "<rat:mailing-scenario>"]

        if scenario.customer_number:
            parts.append(f"<rat:customer-number>{xml_text(scenario.customer_number)}</rat:customer-number>")
        if scenario.contract_id:
            parts.append(f"<rat:contract-id>{xml_text(scenario.contract_id)}</rat:contract-id>")

        if scenario.options:
            parts.append("<rat:options>")
            for code, amount in scenario.options:
                parts.append("<rat:option>")
                parts.append(f"<rat:option-code>{xml_text(code)}</rat:option-code>")
                if amount is not None:
                    parts.append(f"<rat:option-amount>{xml_text(amount)}</rat:option-amount>")
                parts.append("</rat:option>")
            parts.append("</rat:options>")

        parts.append("<rat:parcel-characteristics>")
        parts.append(f"<rat:weight>{scenario.weight_kg}</rat:weight>")
        if scenario.length_cm and scenario.width_cm and scenario.height_cm:
            parts.append(
                "<rat:dimensions>"
                f"<rat:length>{scenario.length_cm}</rat:length>"
                f"<rat:width>{scenario.width_cm}</rat:width>"
                f"<rat:height>{scenario.height_cm}</rat:height>"
                "</rat:dimensions>"
            )
        parts.append("</rat:parcel-characteristics>")

        if scenario.service_codes:
            parts.append("<rat:services>")
            for code in scenario.service_codes:
                parts.append(f"<rat:service-code>{xml_text(code)}</rat:service-code>")
            parts.append("</rat:services>")

        parts.append(f"<rat:origin-postal-code>{xml_text(scenario.origin_postal_code)}</rat:origin-postal-code>")
        parts.append("<rat:destination>")
        if scenario.destination_type == "domestic":
            parts.append(f"<rat:domestic><rat:postal-code>{xml_text(scenario.destination_value)}</rat:postal-code></rat:domestic>")
        elif scenario.destination_type == "united-states":
            parts.append(f"<rat:united-states><rat:zip-code>{xml_text(scenario.destination_value)}</rat:zip-code></rat:united-states>")
        else:
            parts.append(f"<rat:international><rat:country-code>{xml_text(scenario.destination_value)}</rat:country-code></rat:international>")
        parts.append("</rat:destination>")
        parts.append("</rat:mailing-scenario>")
        return "".join(parts)

    def build_discover_services_body(self, destination_country: Optional[str] = None) -> str:
        body = f"<rat:locale>{xml_text(self.locale)}</rat:locale>"
        if destination_country:
            body += f"<rat:destination-country-code>{xml_text(destination_country)}</rat:destination-country-code>"
        if self.credentials.customer_number:
            body += f"<rat:customer-number>{xml_text(self.credentials.customer_number)}</rat:customer-number>"
        if self.credentials.contract_id:
            body += f"<rat:contract-id>{xml_text(self.credentials.contract_id)}</rat:contract-id>"
        return body

    def build_get_service_body(self, service_code: str, destination_country: Optional[str] = None) -> str:
        body = (
            f"<rat:locale>{xml_text(self.locale)}</rat:locale>"
            f"<rat:service-code>{xml_text(service_code)}</rat:service-code>"
        )
        if destination_country:
            body += f"<rat:destination-country-code>{xml_text(destination_country)}</rat:destination-country-code>"
        return body

    def build_get_option_body(self, option_code: str) -> str:
        return (
            f"<rat:locale>{xml_text(self.locale)}</rat:locale>"
            f"<rat:option-code>{xml_text(option_code)}</rat:option-code>"
        )

    # ==================== Transport ====================

    async def _call(self, operation: str, body: str) -> str:
        """
        POST one SOAP operation and return the response XML.

        Raises:
            SOAPFaultError: the envelope carried a Fault (checked first)
            CarrierAuthError: HTTP 401/403
            CarrierRequestError: any other HTTP or network failure
        """
        if not self.credentials.api_key or not self.credentials.api_secret:
            raise CarrierAuthError("Canada Post API key and secret are not configured", carrier=CARRIER)

        client = await self._get_http_client()
        url = f"{self.credentials.base_url}{RATING_PATH}"

        try:
            response = await client.post(
                url,
                headers={
                    "Content-Type": "text/xml; charset=utf-8",
                    "SOAPAction": "",
                    "Accept": "text/xml",
                },
                content=self.build_envelope(operation, body).encode("utf-8"),
            )
        except httpx.RequestError as e:
            logger.error(f"Canada Post {operation} request failed: {e}")
            raise CarrierRequestError(f"Network error: {e}", carrier=CARRIER)

        xml = response.text
        logger.debug(f"Canada Post SOAP {operation} -> {response.status_code}")

        if is_soap_fault(xml):
            fault_code, fault_string = extract_fault(xml, self._extractor)
            logger.warning(f"Canada Post SOAP fault on {operation}: {fault_code} - {fault_string}")
            raise SOAPFaultError(
                f"SOAP Fault: {fault_code} - {fault_string}",
                fault_code=fault_code,
                fault_string=fault_string,
                carrier=CARRIER,
            )

        if response.status_code in (401, 403):
            raise CarrierAuthError("Canada Post rejected the API credentials", carrier=CARRIER, details={"status": response.status_code})

        if response.status_code >= 400:
            raise CarrierRequestError(
                f"HTTP {response.status_code}: {xml[:200]}",
                status_code=response.status_code,
                carrier=CARRIER,
            )

        return xml

    # ==================== Operations ====================

    async def get_rates(self, scenario: MailingScenario) -> List[PriceQuote]:
        xml = await self._call("get-rates", self.build_get_rates_body(scenario))
        return self.parse_price_quotes(xml)

    def parse_price_quotes(self, xml: str) -> List[PriceQuote]:
        """
        Parse price-quote blocks.

        Quotes without a service code or a positive due amount are dropped.
        """
        quotes = []
        for block in self._extractor.find_blocks(xml, "price-quote"):
            code = self._extractor.find_text(block, "service-code")
            raw_due = self._extractor.find_text(block, "due")
            if not code or not raw_due:
                continue
            try:
                due = Decimal(raw_due)
            except InvalidOperation:
                logger.debug(f"Canada Post quote {code} has unparseable due {raw_due!r}; skipping")
                continue
            if not due.is_finite() or due <= 0:
                continue

            transit_days = None
            raw_transit = self._extractor.find_text(block, "expected-transit-time")
            if raw_transit:
                try:
                    transit_days = int(raw_transit)
                except ValueError:
                    transit_days = None

            quotes.append(PriceQuote(
                service_code=code,
                service_name=self._extractor.find_text(block, "service-name"),
                due=due,
                transit_days=transit_days,
            ))
        return quotes

    async def discover_services(self, destination_country: Optional[str] = None) -> List[Dict[str, str]]:
        xml = await self._call("discover-services", self.build_discover_services_body(destination_country))
        services = []
        for block in self._extractor.find_blocks(xml, "service"):
            code = self._extractor.find_text(block, "service-code")
            name = self._extractor.find_text(block, "service-name")
            if code and name:
                services.append({"code": code, "name": name})
        return services

    async def get_service(self, service_code: str, destination_country: Optional[str] = None) -> Dict[str, Any]:
        xml = await self._call("get-service", self.build_get_service_body(service_code, destination_country))
        options = []
        for block in self._extractor.find_blocks(xml, "option"):
            option_code = self._extractor.find_text(block, "option-code")
            if not option_code:
                continue
            options.append({
                "code": option_code,
                "name": self._extractor.find_text(block, "option-name") or option_code,
                "mandatory": (self._extractor.find_text(block, "mandatory") or "").lower() == "true",
            })
        return {
            "code": self._extractor.find_text(xml, "service-code") or service_code,
            "name": self._extractor.find_text(xml, "service-name") or "",
            "options": options,
        }

    async def get_option(self, option_code: str) -> Dict[str, str]:
        xml = await self._call("get-option", self.build_get_option_body(option_code))
        return {
            "code": self._extractor.find_text(xml, "option-code") or option_code,
            "name": self._extractor.find_text(xml, "option-name") or "",
            "class": self._extractor.find_text(xml, "option-class") or "",
        }
