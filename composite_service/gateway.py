"""
HTTP gateway service.

A small reverse proxy that can run as one of the services of a composite
service, routing path prefixes to the other services:

    "gateway": configure_http_gateway(
        dependencies=["api", "web"],
        port=8080,
        proxies=[
            ("/api", {"target": "http://localhost:8000"}),
            ("/", {"target": "http://localhost:8001"}),
        ],
    )

The gateway runs as `python -m composite_service.gateway`, configured through
the COMPOSITE_GATEWAY_CONFIG environment variable.
"""

import logging
import os
import sys
from contextlib import asynccontextmanager
from typing import Optional

import httpx
import uvicorn
from fastapi import FastAPI, HTTPException, Request, Response
from pydantic import BaseModel, Field

from .ready_helpers import once_tcp_port_used

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "COMPOSITE_GATEWAY_CONFIG"

# Headers that apply to a single connection and must not be forwarded
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "host",
    "content-length",
}

PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


class ProxyRoute(BaseModel):
    context: str = Field(..., description="Path prefix to match, e.g. '/api'")
    target: str = Field(..., description="Upstream base URL, e.g. 'http://localhost:8000'")


class GatewayConfig(BaseModel):
    host: str = Field("0.0.0.0", description="Interface to listen on")
    port: int = Field(..., ge=1, le=65535, description="Port to listen on")
    proxies: list[ProxyRoute] = Field(default_factory=list)
    timeout: float = Field(60.0, gt=0, description="Upstream request timeout in seconds")

    def match(self, path: str) -> Optional[ProxyRoute]:
        """First route whose context prefixes path."""
        for route in self.proxies:
            if path.startswith(route.context):
                return route
        return None


def configure_http_gateway(
    *,
    port: int,
    proxies: list,
    host: str = "0.0.0.0",
    dependencies=(),
    **service_fields,
) -> dict:
    """Service config for an HTTP gateway proxying path prefixes to targets."""
    gateway = GatewayConfig(
        host=host,
        port=port,
        proxies=[ProxyRoute(context=context, **options) for context, options in proxies],
    )
    return {
        "command": [sys.executable, "-m", "composite_service.gateway"],
        "env": {CONFIG_ENV_VAR: gateway.model_dump_json()},
        "dependencies": list(dependencies),
        "ready": lambda ctx: once_tcp_port_used(port),
        **service_fields,
    }


def create_app(gateway: GatewayConfig, transport: Optional[httpx.AsyncBaseTransport] = None) -> FastAPI:
    """Build the proxy app. transport replaces the network, for tests."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.client = httpx.AsyncClient(transport=transport, timeout=gateway.timeout)
        yield
        await app.state.client.aclose()

    app = FastAPI(title="composite-service gateway", lifespan=lifespan)

    for route in gateway.proxies:
        logger.info(f"Proxy created: {route.context} -> {route.target}")

    @app.api_route("/{path:path}", methods=PROXY_METHODS)
    async def proxy(request: Request, path: str):
        route = gateway.match(request.url.path)
        if route is None:
            raise HTTPException(status_code=404, detail="No proxy route for this path")

        url = route.target.rstrip("/") + request.url.path
        if request.url.query:
            url = f"{url}?{request.url.query}"
        headers = {
            key: value for key, value in request.headers.items() if key.lower() not in HOP_BY_HOP_HEADERS
        }

        try:
            upstream = await request.app.state.client.request(
                request.method,
                url,
                headers=headers,
                content=await request.body(),
            )
        except httpx.ConnectError:
            raise HTTPException(status_code=502, detail=f"Could not connect to {route.target}")
        except httpx.TimeoutException:
            raise HTTPException(status_code=504, detail=f"Timed out waiting for {route.target}")

        response = Response(content=upstream.content, status_code=upstream.status_code)
        # httpx has already decoded the body
        for key, value in upstream.headers.multi_items():
            if key.lower() not in HOP_BY_HOP_HEADERS and key.lower() != "content-encoding":
                response.headers.append(key, value)
        return response

    return app


def load_gateway_config() -> GatewayConfig:
    """Read the gateway config from the environment."""
    raw = os.environ.get(CONFIG_ENV_VAR)
    if not raw:
        raise RuntimeError(f"{CONFIG_ENV_VAR} is not set")
    return GatewayConfig.model_validate_json(raw)


def main():
    """Run the gateway server."""
    logging.basicConfig(level=logging.INFO, format="%(message)s", stream=sys.stdout)
    gateway = load_gateway_config()
    app = create_app(gateway)
    logger.info(f"Listening @ http://{gateway.host}:{gateway.port}")
    uvicorn.run(app, host=gateway.host, port=gateway.port, log_level="warning")


if __name__ == "__main__":
    main()
