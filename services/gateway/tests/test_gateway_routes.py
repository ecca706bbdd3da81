"""
Tests for API gateway forwarding
"""

import httpx
import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from gateway.main import Settings, create_app, forward

SETTINGS = Settings(
    products_service_url="http://product-service:4000",
    orders_service_url="http://order-service:5000/",
    gateway_timeout=0.5,
)


def make_client(handler):
    app = create_app(SETTINGS, transport=httpx.MockTransport(handler))
    return TestClient(app)


def test_root_endpoint():
    with make_client(lambda request: httpx.Response(200)) as client:
        response = client.get("/")
    assert response.status_code == 200
    assert response.text == "API Gateway is running!"


def test_health_check():
    with make_client(lambda request: httpx.Response(200)) as client:
        response = client.get("/health")
    assert response.json() == {"status": "ok", "service": "api-gateway"}


def test_forwarding_is_transparent():
    seen = []

    def handler(request):
        seen.append(str(request.url))
        return httpx.Response(200, json={"a": 1})

    with make_client(handler) as client:
        response = client.get("/products")

    assert response.status_code == 200
    assert response.json() == {"a": 1}
    assert seen == ["http://product-service:4000/products"]


def test_orders_forwarded_with_same_path():
    seen = []

    def handler(request):
        seen.append(str(request.url))
        return httpx.Response(200, json=[{"id": 1}])

    with make_client(handler) as client:
        response = client.get("/orders")

    assert response.json() == [{"id": 1}]
    assert seen == ["http://order-service:5000/orders"]


def test_backend_status_relayed_on_success():
    with make_client(lambda request: httpx.Response(201, json=[])) as client:
        response = client.get("/orders")
    assert response.status_code == 201


def test_unreachable_backend_returns_500():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with make_client(handler) as client:
        response = client.get("/products")

    assert response.status_code == 500
    assert response.text == "Error connecting to Product Service"


def test_backend_timeout_returns_500():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with make_client(handler) as client:
        response = client.get("/orders")

    assert response.status_code == 500
    assert response.text == "Error connecting to Order Service"


def test_backend_error_status_not_surfaced():
    def handler(request):
        return httpx.Response(503, json={"error": "internal detail"})

    with make_client(handler) as client:
        response = client.get("/orders")

    assert response.status_code == 500
    assert "internal detail" not in response.text


def test_non_json_backend_body_returns_500():
    with make_client(lambda request: httpx.Response(200, text="<html>")) as client:
        response = client.get("/products")
    assert response.status_code == 500


@pytest.mark.asyncio
async def test_forward_strips_trailing_slash():
    urls = []

    def handler(request):
        urls.append(str(request.url))
        return httpx.Response(200, json=[])

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        response = await forward(client, "http://backend/", "/products", "Product Service")

    assert response.status_code == 200
    assert urls == ["http://backend/products"]


def test_settings_require_backend_urls(monkeypatch):
    monkeypatch.delenv("PRODUCTS_SERVICE_URL", raising=False)
    monkeypatch.setenv("ORDERS_SERVICE_URL", "http://order-service:5000")
    with pytest.raises(ValidationError):
        Settings()


def test_settings_from_env(monkeypatch):
    monkeypatch.setenv("PRODUCTS_SERVICE_URL", "http://p:4000")
    monkeypatch.setenv("ORDERS_SERVICE_URL", "http://o:5000")
    monkeypatch.setenv("GATEWAY_TIMEOUT", "2.5")
    monkeypatch.delenv("PORT", raising=False)

    settings = Settings()

    assert settings.port == 3000
    assert settings.gateway_timeout == 2.5


def test_configured_timeout_reaches_http_client():
    with make_client(lambda request: httpx.Response(200, json=[])) as client:
        timeout = client.app.state.http.timeout
        assert timeout.read == SETTINGS.gateway_timeout
        assert timeout.connect == SETTINGS.gateway_timeout
