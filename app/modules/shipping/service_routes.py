"""
Carrier service-route table

Which service codes a carrier can quote for a given route, plus the display
name, service type and transit estimate used when the carrier response does
not carry them.
"""
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

DOMESTIC = "domestic"
INTERNATIONAL = "international"

DEFAULT_ESTIMATED_DAYS = "3-5 business days"


@dataclass(frozen=True)
class ServiceInfo:
    code: str
    name: str
    service_type: str
    estimated_days: str
    scope: str  # domestic | international | us


# =============================================================================
# UPS
# =============================================================================

UPS_SERVICES: Dict[str, ServiceInfo] = {
    # Domestic
    "01": ServiceInfo("01", "UPS Next Day Air", "overnight", "1 business day", DOMESTIC),
    "02": ServiceInfo("02", "UPS 2nd Day Air", "expedited", "2 business days", DOMESTIC),
    "03": ServiceInfo("03", "UPS Ground", "standard", "1-5 business days", DOMESTIC),
    "12": ServiceInfo("12", "UPS 3 Day Select", "expedited", "3 business days", DOMESTIC),
    "13": ServiceInfo("13", "UPS Next Day Air Saver", "overnight", "1 business day", DOMESTIC),
    "14": ServiceInfo("14", "UPS Next Day Air Early A.M.", "overnight", "1 business day", DOMESTIC),
    "59": ServiceInfo("59", "UPS 2nd Day Air A.M.", "expedited", "2 business days", DOMESTIC),
    # International
    "07": ServiceInfo("07", "UPS Worldwide Express", "international", "1-3 business days", INTERNATIONAL),
    "08": ServiceInfo("08", "UPS Worldwide Expedited", "international", "3-5 business days", INTERNATIONAL),
    "11": ServiceInfo("11", "UPS Standard", "international", "1-5 business days", INTERNATIONAL),
    "54": ServiceInfo("54", "UPS Worldwide Express Plus", "international", "1-2 business days", INTERNATIONAL),
    "65": ServiceInfo("65", "UPS Saver", "international", "1-3 business days", INTERNATIONAL),
}


# =============================================================================
# Canada Post
# =============================================================================

CANADA_POST_SERVICES: Dict[str, ServiceInfo] = {
    "DOM.RP": ServiceInfo("DOM.RP", "Regular Parcel", "standard", "5-7 business days", DOMESTIC),
    "DOM.EP": ServiceInfo("DOM.EP", "Expedited Parcel", "expedited", "2-3 business days", DOMESTIC),
    "DOM.XP": ServiceInfo("DOM.XP", "Xpresspost", "expedited", "1-2 business days", DOMESTIC),
    "DOM.XP.CERT": ServiceInfo("DOM.XP.CERT", "Xpresspost Certified", "expedited", "1-2 business days", DOMESTIC),
    "DOM.PC": ServiceInfo("DOM.PC", "Priority", "overnight", "1 business day", DOMESTIC),
    "DOM.DT": ServiceInfo("DOM.DT", "Delivered Tonight", "overnight", "Same day", DOMESTIC),
    "USA.EP": ServiceInfo("USA.EP", "Expedited Parcel USA", "expedited", "3-5 business days", "us"),
    "USA.XP": ServiceInfo("USA.XP", "Xpresspost USA", "expedited", "2-3 business days", "us"),
    "USA.TP": ServiceInfo("USA.TP", "Tracked Packet - USA", "standard", "6-10 business days", "us"),
    "USA.SP.AIR": ServiceInfo("USA.SP.AIR", "Small Packet - USA Air", "standard", "6-12 business days", "us"),
    "INT.XP": ServiceInfo("INT.XP", "Xpresspost International", "international", "7-14 business days", INTERNATIONAL),
    "INT.IP.AIR": ServiceInfo("INT.IP.AIR", "International Parcel Air", "international", "7-14 business days", INTERNATIONAL),
    "INT.IP.SURF": ServiceInfo("INT.IP.SURF", "International Parcel Surface", "international", "7-14 business days", INTERNATIONAL),
    "INT.TP": ServiceInfo("INT.TP", "Tracked Packet - International", "international", "7-14 business days", INTERNATIONAL),
    "INT.SP.AIR": ServiceInfo("INT.SP.AIR", "Small Packet International Air", "international", "7-14 business days", INTERNATIONAL),
    "INT.SP.SURF": ServiceInfo("INT.SP.SURF", "Small Packet International Surface", "international", "7-14 business days", INTERNATIONAL),
}


def route_scope(ship_from, ship_to) -> str:
    """Return "domestic" when both addresses share a country, else "international"."""
    from_country = (getattr(ship_from, "country", "") or "").upper()
    to_country = (getattr(ship_to, "country", "") or "").upper()
    return DOMESTIC if from_country == to_country else INTERNATIONAL


def matches_preferences(service_code: str, service_type: str, preferences: Optional[Iterable[str]]) -> bool:
    """
    True if no preferences were given, or the service code or service type is listed.

    Used both to pick UPS codes before calling and to filter every carrier's
    rates afterwards. Preferences compare case-insensitively.
    """
    wanted = {str(p).strip().lower() for p in (preferences or []) if p}
    if not wanted:
        return True
    return service_code.lower() in wanted or (service_type or "").lower() in wanted


def valid_ups_services(ship_from, ship_to, preferences: Optional[Iterable[str]] = None) -> List[str]:
    """
    UPS service codes allowed for this route, in table order.

    Domestic routes get the domestic codes only; any cross-border route gets
    the international codes only.
    """
    scope = route_scope(ship_from, ship_to)
    return [
        code for code, info in UPS_SERVICES.items()
        if info.scope == scope and matches_preferences(info.code, info.service_type, preferences)
    ]


def ups_service_info(code: str) -> ServiceInfo:
    info = UPS_SERVICES.get(code)
    if info:
        return info
    return ServiceInfo(code, f"UPS Service {code}", "standard", DEFAULT_ESTIMATED_DAYS, DOMESTIC)


def canada_post_service_info(code: str) -> Optional[ServiceInfo]:
    """
    Look up a Canada Post service.

    Unknown codes fall back on their prefix so the service type still
    resolves; the name is left empty for the response to supply.
    """
    info = CANADA_POST_SERVICES.get(code)
    if info:
        return info
    if code.startswith("DOM."):
        return ServiceInfo(code, "", "standard", DEFAULT_ESTIMATED_DAYS, DOMESTIC)
    if code.startswith("USA."):
        return ServiceInfo(code, "", "expedited", "3-5 business days", "us")
    if code.startswith("INT."):
        return ServiceInfo(code, "", "international", "7-14 business days", INTERNATIONAL)
    return None


def canada_post_scope(ship_to) -> str:
    """Canada Post destination scope: domestic (CA), us, or international."""
    country = (getattr(ship_to, "country", "") or "").upper()
    if country == "CA":
        return DOMESTIC
    if country == "US":
        return "us"
    return INTERNATIONAL
