import json
import sys

import httpx
import pytest
from fastapi.testclient import TestClient

from composite_service.gateway import (
    CONFIG_ENV_VAR,
    GatewayConfig,
    ProxyRoute,
    configure_http_gateway,
    create_app,
    load_gateway_config,
)
from composite_service.models import validate_config


def make_gateway(*routes):
    return GatewayConfig(
        port=8080,
        proxies=[ProxyRoute(context=context, target=target) for context, target in routes],
    )


def echo_upstream(request: httpx.Request) -> httpx.Response:
    return httpx.Response(
        200,
        json={
            "method": request.method,
            "url": str(request.url),
            "body": request.content.decode(),
            "header": request.headers.get("x-custom"),
        },
    )


def test_configure_http_gateway_builds_service_config():
    service = configure_http_gateway(
        dependencies=["api", "web"],
        port=8080,
        proxies=[
            ("/api", {"target": "http://localhost:8000"}),
            ("/", {"target": "http://localhost:8001"}),
        ],
        minimum_restart_delay=2,
    )

    assert service["command"] == [sys.executable, "-m", "composite_service.gateway"]
    assert service["dependencies"] == ["api", "web"]
    assert service["minimum_restart_delay"] == 2

    gateway = GatewayConfig.model_validate_json(service["env"][CONFIG_ENV_VAR])
    assert gateway.port == 8080
    assert gateway.host == "0.0.0.0"
    assert [route.context for route in gateway.proxies] == ["/api", "/"]

    normalized = validate_config(
        {
            "services": {
                "api": {"command": "api"},
                "web": {"command": "web"},
                "gateway": service,
            }
        }
    )
    assert normalized.services["gateway"].dependencies == ("api", "web")


def test_first_matching_route_wins():
    gateway = make_gateway(("/api", "http://localhost:8000"), ("/", "http://localhost:8001"))

    assert gateway.match("/api").target == "http://localhost:8000"
    assert gateway.match("/api/users").target == "http://localhost:8000"
    assert gateway.match("/").target == "http://localhost:8001"
    assert gateway.match("/about").target == "http://localhost:8001"


def test_proxies_request_to_matching_target():
    gateway = make_gateway(("/api", "http://localhost:8000"), ("/", "http://localhost:8001"))
    app = create_app(gateway, transport=httpx.MockTransport(echo_upstream))

    with TestClient(app) as client:
        api = client.get("/api/users?page=2", headers={"X-Custom": "yes"})
        web = client.post("/login", content=b"user=me")

    assert api.status_code == 200
    assert api.json() == {
        "method": "GET",
        "url": "http://localhost:8000/api/users?page=2",
        "body": "",
        "header": "yes",
    }
    assert web.json()["url"] == "http://localhost:8001/login"
    assert web.json()["method"] == "POST"
    assert web.json()["body"] == "user=me"


def test_upstream_status_and_headers_are_passed_back():
    def upstream(request):
        return httpx.Response(201, text="created", headers={"X-Request-Id": "abc"})

    app = create_app(make_gateway(("/", "http://localhost:8001")), transport=httpx.MockTransport(upstream))

    with TestClient(app) as client:
        response = client.put("/items/1")

    assert response.status_code == 201
    assert response.text == "created"
    assert response.headers["x-request-id"] == "abc"


def test_unmatched_path_is_not_found():
    app = create_app(make_gateway(("/api", "http://localhost:8000")), transport=httpx.MockTransport(echo_upstream))

    with TestClient(app) as client:
        response = client.get("/elsewhere")

    assert response.status_code == 404


def test_unreachable_upstream_is_bad_gateway():
    def refuse(request):
        raise httpx.ConnectError("Connection refused", request=request)

    app = create_app(make_gateway(("/", "http://localhost:8001")), transport=httpx.MockTransport(refuse))

    with TestClient(app) as client:
        response = client.get("/")

    assert response.status_code == 502


def test_load_gateway_config_from_environment(monkeypatch):
    monkeypatch.setenv(
        CONFIG_ENV_VAR,
        json.dumps({"port": 9000, "proxies": [{"context": "/", "target": "http://localhost:3000"}]}),
    )

    gateway = load_gateway_config()

    assert gateway.port == 9000
    assert gateway.proxies[0].target == "http://localhost:3000"


def test_load_gateway_config_requires_environment(monkeypatch):
    monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)

    with pytest.raises(RuntimeError, match=CONFIG_ENV_VAR):
        load_gateway_config()
