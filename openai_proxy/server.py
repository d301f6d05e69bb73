"""
OpenAI Proxy Server

FastAPI application that hands every request to the forwarding engine.
"""

import logging
from typing import Optional
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.responses import PlainTextResponse
from fastapi.middleware.cors import CORSMiddleware
from starlette.requests import ClientDisconnect

from . import __version__
from .config import ProxyConfig, load_config
from .errors import ProxyError, MalformedRequestError
from .forwarder import ForwardingEngine, InboundRequest

logger = logging.getLogger("openai-proxy")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

BANNER = "OpenAI API Proxy Server is running!"

# Every method the upstream API may define
PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


def configure_logging(level: str = "INFO"):
    """Set up process-wide logging."""
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger("openai-proxy").setLevel(level)


async def inbound_from_request(request: Request) -> InboundRequest:
    """Capture the raw request target, headers and body."""
    scope = request.scope
    raw_path = scope.get("raw_path") or scope["path"].encode("utf-8")
    # Some servers include the query in raw_path
    raw_path = raw_path.split(b"?", 1)[0]
    query = scope.get("query_string", b"")

    path_and_query = raw_path.decode("latin-1")
    if query:
        path_and_query += "?" + query.decode("latin-1")

    try:
        body = await request.body()
    except ClientDisconnect as e:
        raise MalformedRequestError("client disconnected while sending the body") from e

    return InboundRequest(
        method=request.method,
        path_and_query=path_and_query,
        headers=[(k.decode("latin-1"), v.decode("latin-1")) for k, v in request.headers.raw],
        body=body,
    )


def disconnect_waiter(request: Request):
    """Build an awaitable factory that returns once the client has left.

    Only valid after the body has been fully read.
    """
    async def wait():
        while True:
            message = await request.receive()
            if message["type"] == "http.disconnect":
                return

    return wait


# =============================================================================
# Application Factory
# =============================================================================

def create_app(
    config: ProxyConfig,
    client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """Create FastAPI application."""

    engine = ForwardingEngine(config, client=client)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown events."""
        logger.info("OpenAI Proxy starting...")
        logger.info(f"  Upstream: {config.upstream_base_url}")
        logger.info(f"  API Key: {config.masked_api_key}")
        yield
        logger.info("OpenAI Proxy shutting down...")
        await engine.aclose()

    app = FastAPI(
        title="OpenAI Proxy",
        description="Transparent reverse proxy for OpenAI-compatible APIs",
        version=__version__,
        lifespan=lifespan,
        # Upstream paths such as /docs must reach the upstream
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )

    app.state.config = config
    app.state.engine = engine

    if config.cors_enabled:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_methods=["*"],
            allow_headers=["*"],
            expose_headers=["*"],
        )

    @app.exception_handler(ProxyError)
    async def proxy_error_handler(request: Request, exc: ProxyError):
        logger.warning(f"{request.method} {request.url.path}: {exc.message}")
        return exc.to_response()

    # =========================================================================
    # Routes
    # =========================================================================

    @app.get("/", response_class=PlainTextResponse)
    async def root():
        """Liveness banner."""
        return BANNER

    @app.api_route("/{path:path}", methods=PROXY_METHODS)
    async def proxy(request: Request, path: str) -> Response:
        """Forward any other request to the upstream."""
        inbound = await inbound_from_request(request)
        return await engine.forward(inbound, wait_for_disconnect=disconnect_waiter(request))

    return app


# =============================================================================
# Main
# =============================================================================

def main(config_path: str = None, config: ProxyConfig = None):
    """Run the OpenAI Proxy server."""
    import uvicorn

    if config is None:
        config = load_config(config_path)

    configure_logging(config.log_level)
    app = create_app(config)

    logger.info(f"OpenAI Proxy running on http://{config.bind_address}")
    logger.info(f"Usage: http://{config.bind_address}/v1/chat/completions")

    uvicorn.run(
        app,
        host=config.bind_host,
        port=config.bind_port,
        log_level=config.log_level.lower(),
    )


if __name__ == "__main__":
    main()
