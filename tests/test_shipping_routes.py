"""
Tests for shipping API routes.
"""
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from app.core.database import get_db
from app.core.rate_cache import shipping_rate_cache
from app.core.security import create_access_token
from app.main import app

RATE = {
    "carrier": "Canada Post",
    "service_code": "DOM.RP",
    "service_name": "Regular Parcel",
    "cost": "9.50",
    "currency": "CAD",
    "estimated_days": "4 business days",
    "service_type": "standard",
    "markup": "0.00",
}

BODY = {
    "ship_from": {"postal_code": "M5V 2T6", "country": "ca"},
    "ship_to": {"postal_code": "V6B 1A1", "country": "CA"},
    "package": {"weight": 2.0},
}


async def override_get_db():
    yield MagicMock()


@pytest.fixture
def client():
    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {create_access_token(7)}"}


class TestAuthentication:
    def test_missing_token(self, client):
        response = client.post("/api/shipping/rates", json=BODY)
        assert response.status_code == 401

    def test_invalid_token(self, client):
        response = client.post("/api/shipping/rates", json=BODY, headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401

    def test_non_numeric_subject(self, client):
        token = create_access_token("merchant@example.com")
        response = client.post("/api/shipping/rates", json=BODY, headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401


class TestRateEndpoint:
    def test_rates(self, client, auth_headers):
        result = {"rates": [RATE], "recommended": RATE, "cached": False, "message": None, "carrier_errors": []}
        with patch("app.api.routes.shipping.calculate_shipping_rates", AsyncMock(return_value=result)) as calculate:
            response = client.post("/api/shipping/rates", json=BODY, headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["recommended"]["service_code"] == "DOM.RP"
        assert data["rates"][0]["cost"] == "9.50"
        assert data["cached"] is False

        _, user_id, payload = calculate.call_args.args
        assert user_id == 7
        assert payload["ship_from"]["country"] == "CA"
        assert payload["package"]["units"] == "imperial"
        assert "order_id" not in payload

    def test_order_not_found(self, client, auth_headers):
        result = {"error": "Order not found", "code": "ORDER_NOT_FOUND"}
        with patch("app.api.routes.shipping.calculate_shipping_rates", AsyncMock(return_value=result)):
            response = client.post("/api/shipping/rates", json={"order_id": 404}, headers=auth_headers)

        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "ORDER_NOT_FOUND"

    def test_all_carriers_failed(self, client, auth_headers):
        failure = {"carrier": "UPS", "error": "Failed to authenticate with UPS", "code": "CARRIER_AUTH_FAILED",
                   "auth_required": True, "service_code": None}
        result = {"error": "Unable to retrieve rates from any carrier.", "code": "ALL_CARRIERS_FAILED",
                  "carrier_errors": [failure]}
        with patch("app.api.routes.shipping.calculate_shipping_rates", AsyncMock(return_value=result)):
            response = client.post("/api/shipping/rates", json=BODY, headers=auth_headers)

        assert response.status_code == 400
        detail = response.json()["detail"]
        assert detail["code"] == "ALL_CARRIERS_FAILED"
        assert detail["carrier_errors"][0]["auth_required"] is True

    def test_schema_rejects_unknown_units(self, client, auth_headers):
        body = dict(BODY, package={"weight": 2.0, "units": "stone"})
        response = client.post("/api/shipping/rates", json=body, headers=auth_headers)
        assert response.status_code == 422


class TestCacheEndpoints:
    def test_stats(self, client, auth_headers):
        response = client.get("/api/shipping/rates/cache/stats", headers=auth_headers)
        assert response.status_code == 200
        assert set(response.json()) >= {"hits", "misses", "hit_rate", "size", "max_size"}

    def test_clear(self, client, auth_headers):
        shipping_rate_cache.set("rates_test", ())
        response = client.delete("/api/shipping/rates/cache", headers=auth_headers)

        assert response.status_code == 204
        assert shipping_rate_cache.has_valid("rates_test") is False

    def test_requires_auth(self, client):
        assert client.delete("/api/shipping/rates/cache").status_code == 401


class TestHealth:
    def test_healthy(self, client):
        session_factory = MagicMock()
        session_factory.return_value.__aenter__.return_value = AsyncMock()
        with patch("app.main.get_db_session", session_factory):
            response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["database"] == "connected"

    def test_database_down(self, client):
        session_factory = MagicMock()
        session_factory.return_value.__aenter__.side_effect = OSError("connection refused")
        with patch("app.main.get_db_session", session_factory):
            response = client.get("/health")

        assert response.status_code == 503
        assert response.json()["status"] == "unhealthy"

    def test_lifespan_runs_the_sweeper(self):
        with TestClient(app):
            assert shipping_rate_cache._sweeper_task is not None
        assert shipping_rate_cache._sweeper_task is None
