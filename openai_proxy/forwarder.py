"""
Request Forwarding Engine

Turns one inbound request into one upstream request, executes it and
maps the outcome back to a client response:

    validate -> translate -> execute -> map

The engine holds no per-request state. The only shared objects are the
read-only ProxyConfig and the pooled httpx client.
"""

import re
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional, List, Tuple, Union, Callable, Awaitable, Iterable

import httpx
from fastapi import Response
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from .config import ProxyConfig
from .errors import ProxyError, MalformedRequestError, GatewayError, InternalProxyError

logger = logging.getLogger("openai-proxy.forwarder")

# RFC 7230 6.1: meaningful for a single connection leg only
HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
})

# Host is derived from the upstream URL, content-length from the body httpx
# sends, and the inbound Authorization is replaced by the upstream credential.
REQUEST_STRIP_HEADERS = HOP_BY_HOP_HEADERS | {"host", "content-length", "authorization"}

# The body is re-framed by the ASGI server when it is streamed to the client.
RESPONSE_STRIP_HEADERS = HOP_BY_HOP_HEADERS | {"content-length"}

# httpx adds these when absent; only forward what the client actually sent
CLIENT_DEFAULT_HEADERS = frozenset({"accept", "accept-encoding", "user-agent"})

GATEWAY_FAILURE = "gateway"

# nginx convention for "client went away before the response"
CLIENT_CLOSED_REQUEST = 499

_TOKEN = re.compile(r"^[!#$%&'*+\-.^_`|~0-9A-Za-z]+$")

Header = Tuple[str, str]


# =============================================================================
# Data Model
# =============================================================================

@dataclass(frozen=True)
class InboundRequest:
    """Request as received from the client."""
    method: str
    path_and_query: str
    headers: List[Header] = field(default_factory=list)
    body: bytes = b""


@dataclass(frozen=True)
class OutboundRequest:
    """Request as it will be sent upstream."""
    method: str
    url: str
    headers: List[Header] = field(default_factory=list)
    body: bytes = b""

    def get_header(self, name: str) -> Optional[str]:
        name = name.lower()
        for key, value in self.headers:
            if key.lower() == name:
                return value
        return None


@dataclass
class UpstreamSuccess:
    """The upstream answered. The body has not been read yet."""
    status: int
    headers: List[Tuple[bytes, bytes]]
    response: httpx.Response


@dataclass(frozen=True)
class UpstreamFailure:
    """The upstream could not be reached."""
    kind: str
    detail: str


UpstreamOutcome = Union[UpstreamSuccess, UpstreamFailure]


# =============================================================================
# Translation
# =============================================================================

def _connection_tokens(values: Iterable[str]) -> set:
    """Header names listed in Connection are hop-by-hop as well."""
    tokens = set()
    for value in values:
        for token in value.split(","):
            token = token.strip().lower()
            if token:
                tokens.add(token)
    return tokens


def filter_request_headers(headers: Iterable[Header]) -> List[Header]:
    """Drop headers that must not reach the upstream, keeping order."""
    headers = list(headers)
    extra = _connection_tokens(v for k, v in headers if k.lower() == "connection")
    return [
        (k, v) for k, v in headers
        if k.lower() not in REQUEST_STRIP_HEADERS and k.lower() not in extra
    ]


def filter_response_headers(raw_headers: Iterable[Tuple[bytes, bytes]]) -> List[Tuple[bytes, bytes]]:
    """Drop hop-by-hop headers from the upstream response.

    Works on raw bytes so values reach the client untouched. Names are
    lowercased as ASGI expects.
    """
    raw_headers = list(raw_headers)
    extra = _connection_tokens(
        v.decode("latin-1") for k, v in raw_headers if k.lower() == b"connection"
    )
    result = []
    for name, value in raw_headers:
        lowered = name.decode("latin-1").lower()
        if lowered in RESPONSE_STRIP_HEADERS or lowered in extra:
            continue
        result.append((lowered.encode("latin-1"), value))
    return result


def validate_inbound(inbound: InboundRequest) -> None:
    if not _TOKEN.match(inbound.method or ""):
        raise MalformedRequestError(
            f"invalid method {inbound.method!r}", prefix="Malformed request"
        )
    if not inbound.path_and_query.startswith("/"):
        raise MalformedRequestError(
            f"request target must start with '/', got {inbound.path_and_query!r}",
            prefix="Malformed request",
        )


def build_outbound_request(inbound: InboundRequest, config: ProxyConfig) -> OutboundRequest:
    """Derive the upstream request from an inbound one.

    The path and query are appended to the base URL as-is. The upstream
    credential always replaces whatever Authorization the client sent.
    """
    validate_inbound(inbound)

    headers = filter_request_headers(inbound.headers)
    headers.append(("Authorization", f"Bearer {config.upstream_api_key}"))

    return OutboundRequest(
        method=inbound.method,
        url=f"{config.upstream_base_url}{inbound.path_and_query}",
        headers=headers,
        body=inbound.body,
    )


def _describe(error: Exception) -> str:
    if isinstance(error, httpx.TimeoutException):
        return f"upstream timed out ({type(error).__name__})"
    return str(error) or type(error).__name__


# Close tasks for abandoned responses, kept referenced until they finish
_closing = set()


def _close_abandoned(task: asyncio.Future):
    """Release a response that arrived after its request was abandoned."""
    if task.cancelled() or task.exception() is not None:
        return
    outcome = task.result()
    if isinstance(outcome, UpstreamSuccess):
        closer = asyncio.ensure_future(outcome.response.aclose())
        _closing.add(closer)
        closer.add_done_callback(_closing.discard)


# =============================================================================
# Engine
# =============================================================================

class ForwardingEngine:
    """
    Forwards requests to the configured upstream.

    A single instance serves every request of an application. The httpx
    client is pooled and safe for concurrent use; pass one in to control
    transport (tests use httpx.MockTransport).
    """

    def __init__(self, config: ProxyConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(config.request_timeout, connect=config.connect_timeout),
            follow_redirects=False,
        )

    async def aclose(self):
        """Close the pooled client if this engine created it."""
        if self._owns_client:
            await self.client.aclose()

    async def execute(self, outbound: OutboundRequest) -> UpstreamOutcome:
        """Send the request and wait for status and headers."""
        try:
            request = self.client.build_request(
                outbound.method,
                outbound.url,
                # latin-1 keeps header bytes exactly as received
                headers=[(k.encode("latin-1"), v.encode("latin-1")) for k, v in outbound.headers],
                content=outbound.body or None,
            )
            sent = {k.lower() for k, _ in outbound.headers}
            for name in CLIENT_DEFAULT_HEADERS - sent:
                if name in request.headers:
                    del request.headers[name]
            response = await self.client.send(request, stream=True)
        except httpx.InvalidURL as e:
            return UpstreamFailure(GATEWAY_FAILURE, f"invalid upstream URL: {e}")
        except httpx.TransportError as e:
            return UpstreamFailure(GATEWAY_FAILURE, _describe(e))

        return UpstreamSuccess(
            status=response.status_code,
            headers=filter_response_headers(response.headers.raw),
            response=response,
        )

    async def forward(
        self,
        inbound: InboundRequest,
        wait_for_disconnect: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> Response:
        """Forward one request and build the client response.

        ``wait_for_disconnect`` returns once the client has gone away; when
        given, the upstream call is abandoned if that happens first.
        """
        try:
            outbound = build_outbound_request(inbound, self.config)
            logger.info(f"Proxying request to: {outbound.method} {outbound.url}")

            outcome = await self._execute_or_abandon(outbound, wait_for_disconnect)
            if outcome is None:
                logger.info(f"Client disconnected, abandoned {outbound.method} {outbound.url}")
                return Response(status_code=CLIENT_CLOSED_REQUEST)

            if isinstance(outcome, UpstreamFailure):
                logger.warning(f"Upstream unreachable for {outbound.url}: {outcome.detail}")
                return GatewayError(outcome.detail).to_response()

            logger.info(f"Response status: {outcome.status}")
            return self._relay(outcome, outbound)

        except ProxyError as e:
            logger.warning(f"Rejected request: {e.message}")
            return e.to_response()
        except Exception as e:
            logger.exception("Unexpected error while proxying request")
            return InternalProxyError(str(e) or type(e).__name__).to_response()

    async def _execute_or_abandon(
        self,
        outbound: OutboundRequest,
        wait_for_disconnect: Optional[Callable[[], Awaitable[None]]],
    ) -> Optional[UpstreamOutcome]:
        if wait_for_disconnect is None:
            return await self.execute(outbound)

        upstream = asyncio.ensure_future(self.execute(outbound))
        disconnect = asyncio.ensure_future(wait_for_disconnect())
        delivered = False
        try:
            done, _ = await asyncio.wait(
                {upstream, disconnect}, return_when=asyncio.FIRST_COMPLETED
            )
            if upstream in done:
                delivered = True
                return upstream.result()
            return None
        finally:
            disconnect.cancel()
            if not delivered:
                upstream.cancel()
                # The response may still arrive, or already have arrived
                upstream.add_done_callback(_close_abandoned)

    def _relay(self, outcome: UpstreamSuccess, outbound: OutboundRequest) -> StreamingResponse:
        """Stream the upstream body to the client without decoding it."""
        upstream = outcome.response

        async def body():
            try:
                if upstream.is_stream_consumed:
                    # Transports may hand back a response that is already loaded
                    yield upstream.content
                    return
                async for chunk in upstream.aiter_raw():
                    yield chunk
            except httpx.HTTPError as e:
                # Status and headers are already on the wire
                logger.error(f"Upstream stream interrupted for {outbound.url}: {_describe(e)}")
                raise
            finally:
                await upstream.aclose()

        response = StreamingResponse(
            body(),
            status_code=outcome.status,
            # Also covers a client that leaves before the body is iterated
            background=BackgroundTask(upstream.aclose),
        )
        headers = list(outcome.headers)
        if upstream.is_stream_consumed:
            # httpx has already decoded a loaded body
            headers = [(k, v) for k, v in headers if k != b"content-encoding"]
        response.raw_headers = headers
        return response
