"""
Tests for the UPS carrier adapter.
"""
from decimal import Decimal

import httpx
import pytest

from app.core.exceptions import CarrierAuthError
from app.modules.shipping.carriers.base import Address, PackageDimensions, RateRequest
from app.modules.shipping.carriers.ups import UPSCarrier
from tests.fakes import UPSStub


def make_carrier(config, stub, **kwargs):
    return UPSCarrier(config, http_client=httpx.AsyncClient(transport=httpx.MockTransport(stub)), **kwargs)


class TestUPSCarrierRates:
    @pytest.mark.asyncio
    async def test_domestic_rates_for_every_domestic_service(self, ups_config, domestic_us_request):
        stub = UPSStub()
        carrier = make_carrier(ups_config(), stub)

        result = await carrier.get_rates(domestic_us_request)
        await carrier.close()

        assert sorted(stub.rated_codes) == ["01", "02", "03", "12", "13", "14", "59"]
        assert stub.token_calls == 1
        ground = next(r for r in result.rates if r.service_code == "03")
        assert ground.carrier == "UPS"
        assert ground.service_name == "UPS Ground"
        assert ground.cost == Decimal("12.40")
        assert ground.currency == "USD"
        assert ground.service_type == "standard"
        assert result.failures == []

    @pytest.mark.asyncio
    async def test_international_route(self, ups_config, domestic_us_request):
        domestic_us_request.ship_to = Address(postal_code="M5V2T6", country="CA")
        stub = UPSStub()
        carrier = make_carrier(ups_config(), stub)

        await carrier.get_rates(domestic_us_request)
        await carrier.close()

        assert sorted(stub.rated_codes) == ["07", "08", "11", "54", "65"]

    @pytest.mark.asyncio
    async def test_preferences_limit_service_calls(self, ups_config, domestic_us_request):
        domestic_us_request.service_preferences = ["03"]
        stub = UPSStub()
        carrier = make_carrier(ups_config(), stub)

        result = await carrier.get_rates(domestic_us_request)
        await carrier.close()

        assert stub.rated_codes == ["03"]
        assert [r.service_code for r in result.rates] == ["03"]

    @pytest.mark.asyncio
    async def test_no_matching_service_makes_no_calls(self, ups_config, domestic_us_request):
        domestic_us_request.service_preferences = ["international"]
        stub = UPSStub()
        carrier = make_carrier(ups_config(), stub)

        result = await carrier.get_rates(domestic_us_request)
        await carrier.close()

        assert result.rates == []
        assert stub.token_calls == 0

    @pytest.mark.asyncio
    async def test_failing_service_does_not_abort_others(self, ups_config, domestic_us_request):
        stub = UPSStub(failing_codes={"14"})
        carrier = make_carrier(ups_config(), stub)

        result = await carrier.get_rates(domestic_us_request)
        await carrier.close()

        assert len(result.rates) == 6
        assert [f["service_code"] for f in result.failures] == ["14"]

    @pytest.mark.asyncio
    async def test_mismatched_service_code_is_ignored(self, ups_config, domestic_us_request):
        stub = UPSStub(wrong_code_for={"02"})
        carrier = make_carrier(ups_config(), stub)

        result = await carrier.get_rates(domestic_us_request)
        await carrier.close()

        codes = {r.service_code for r in result.rates}
        assert "02" not in codes
        assert "99" not in codes
        assert len(codes) == 6

    @pytest.mark.asyncio
    async def test_auth_failure_makes_no_rate_calls(self, ups_config, domestic_us_request):
        stub = UPSStub(token_status=401)
        carrier = make_carrier(ups_config(refresh_token="revoked"), stub)

        with pytest.raises(CarrierAuthError):
            await carrier.get_rates(domestic_us_request)
        await carrier.close()

        assert stub.rated_codes == []

    @pytest.mark.asyncio
    async def test_every_service_unauthorized_raises(self, ups_config, domestic_us_request):
        domestic_us_request.service_preferences = ["02", "03"]
        stub = UPSStub(unauthorized_codes={"02", "03"})
        carrier = make_carrier(ups_config(), stub)

        with pytest.raises(CarrierAuthError):
            await carrier.get_rates(domestic_us_request)
        await carrier.close()

    @pytest.mark.asyncio
    async def test_metric_package_units(self, ups_config, domestic_us_request):
        domestic_us_request.package = PackageDimensions(weight=1.5, length=30, width=20, height=10, units="metric")
        domestic_us_request.service_preferences = ["03"]
        stub = UPSStub()
        carrier = make_carrier(ups_config(), stub)

        await carrier.get_rates(domestic_us_request)
        await carrier.close()

        package = stub.packages[0]
        assert package["PackageWeight"]["UnitOfMeasurement"]["Code"] == "KGS"
        assert package["Dimensions"]["UnitOfMeasurement"]["Code"] == "CM"

    @pytest.mark.asyncio
    async def test_insurance_becomes_declared_value(self, ups_config, domestic_us_request):
        domestic_us_request.service_preferences = ["03"]
        domestic_us_request.additional_services.insurance_value = 150.0
        stub = UPSStub()
        carrier = make_carrier(ups_config(), stub)

        await carrier.get_rates(domestic_us_request)
        await carrier.close()

        declared = stub.packages[0]["PackageServiceOptions"]["DeclaredValue"]
        assert declared["MonetaryValue"] == "150.0"


class TestUPSCarrierTokens:
    @pytest.mark.asyncio
    async def test_refreshed_token_is_persisted(self, ups_config, domestic_us_request):
        domestic_us_request.service_preferences = ["03"]
        saved = []

        async def save_tokens(config_id, api_credentials):
            saved.append((config_id, api_credentials))

        config = ups_config(config_id=11)
        carrier = make_carrier(config, UPSStub(), on_token_refresh=save_tokens)
        await carrier.get_rates(domestic_us_request)
        await carrier.close()

        assert len(saved) == 1
        config_id, stored = saved[0]
        assert config_id == 11
        assert stored["client_id"] == "ups-client"
        assert stored["access_token"] == "tok"
        assert stored["refresh_token"] == "ref"
        assert config.api_credentials["access_token"] == "tok"

    @pytest.mark.asyncio
    async def test_validate_credentials(self, ups_config):
        carrier = make_carrier(ups_config(config_id=12), UPSStub())
        assert await carrier.validate_credentials() == (True, None)
        await carrier.close()

        carrier = make_carrier(ups_config(config_id=13), UPSStub(token_status=401))
        valid, message = await carrier.validate_credentials()
        await carrier.close()
        assert valid is False
        assert message == "Failed to authenticate with UPS"
