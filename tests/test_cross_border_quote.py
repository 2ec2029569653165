"""
Quoting a Montreal to Beverly Hills parcel through both real adapters.
"""
from decimal import Decimal

import httpx
import pytest

from app.core.rate_cache import RateCache
from app.modules.shipping.carriers.base import Address, PackageDimensions, RateRequest
from app.modules.shipping.carriers.canada_post import CanadaPostCarrier
from app.modules.shipping.carriers.ups import UPSCarrier
from app.services.rate_service import RateAggregator
from tests.fakes import UPSStub

USA_RATES_XML = """<soapenv:Envelope xmlns:soapenv="http://schemas.xmlsoap.org/soap/envelope/"><soapenv:Body>
<ns2:get-rates-response xmlns:ns2="http://www.canadapost.ca/ws/soap/ship/rate/v4">
<ns2:price-quotes>
  <ns2:price-quote>
    <ns2:service-code>USA.EP</ns2:service-code>
    <ns2:service-name>Expedited Parcel USA</ns2:service-name>
    <ns2:price-details><ns2:due>24.10</ns2:due></ns2:price-details>
  </ns2:price-quote>
  <ns2:price-quote>
    <ns2:service-code>USA.XP</ns2:service-code>
    <ns2:service-name>Xpresspost USA</ns2:service-name>
    <ns2:price-details><ns2:due>38.60</ns2:due></ns2:price-details>
  </ns2:price-quote>
</ns2:price-quotes>
</ns2:get-rates-response></soapenv:Body></soapenv:Envelope>"""


@pytest.fixture
def montreal_to_beverly_hills():
    return RateRequest(
        ship_from=Address(
            name="Montreal Warehouse",
            address_line1="1000 Rue Chabanel",
            city="Montreal",
            state="QC",
            postal_code="H2N1Z4",
            country="CA",
        ),
        ship_to=Address(
            name="Sam Rivera",
            address_line1="9500 Wilshire Blvd",
            city="Beverly Hills",
            state="CA",
            postal_code="90210",
            country="US",
        ),
        package=PackageDimensions(weight=1.5, length=30, width=20, height=10, units="metric"),
    )


class TestCrossBorderQuote:
    @pytest.mark.asyncio
    async def test_metric_parcel_to_the_united_states(self, ups_config, canada_post_config, montreal_to_beverly_hills):
        ups_stub = UPSStub()
        soap_requests = []

        def canada_post_stub(request: httpx.Request) -> httpx.Response:
            soap_requests.append(request)
            return httpx.Response(200, text=USA_RATES_XML)

        carriers = [
            UPSCarrier(ups_config(), http_client=httpx.AsyncClient(transport=httpx.MockTransport(ups_stub))),
            CanadaPostCarrier(
                canada_post_config(),
                http_client=httpx.AsyncClient(transport=httpx.MockTransport(canada_post_stub)),
            ),
        ]
        try:
            result = await RateAggregator(cache=RateCache(), carrier_timeout=5).aggregate(
                montreal_to_beverly_hills, carriers, namespace="7"
            )
        finally:
            for carrier in carriers:
                await carrier.close()

        # UPS only quotes its international services on a cross-border route
        assert sorted(ups_stub.rated_codes) == ["07", "08", "11", "54", "65"]
        assert "03" not in ups_stub.rated_codes
        package = ups_stub.packages[0]
        assert package["PackageWeight"] == {"UnitOfMeasurement": {"Code": "KGS"}, "Weight": "1.5"}
        assert package["Dimensions"]["UnitOfMeasurement"]["Code"] == "CM"

        envelope = soap_requests[0].content.decode()
        assert "<rat:origin-postal-code>H2N1Z4</rat:origin-postal-code>" in envelope
        assert "<rat:united-states><rat:zip-code>90210</rat:zip-code></rat:united-states>" in envelope
        assert "<rat:domestic>" not in envelope
        assert "<rat:weight>1.500</rat:weight>" in envelope

        assert result.all_failed is False
        assert result.carrier_errors == []
        assert len(result.rates) == 7
        assert [r.cost for r in result.rates] == sorted(r.cost for r in result.rates)
        assert result.recommended.carrier == "Canada Post"
        assert result.recommended.service_code == "USA.EP"
        assert result.recommended.cost == Decimal("24.10")
        assert result.recommended.currency == "CAD"
        assert {r.service_code for r in result.rates if r.carrier == "UPS"} == {"07", "08", "11", "54", "65"}
