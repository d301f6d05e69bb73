"""
Proxy error taxonomy.

Every failure the proxy itself produces is rendered with the same JSON
envelope::

    {"error": {"message": "...", "type": "proxy_error"}}

Errors reported by the upstream are never wrapped; they pass through
with the upstream's own status and body.
"""

from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

PROXY_ERROR_TYPE = "proxy_error"


class ErrorDetail(BaseModel):
    """Body of the error envelope."""
    message: str = Field(..., description="Human-readable description")
    type: str = PROXY_ERROR_TYPE


class ErrorEnvelope(BaseModel):
    """Client-facing error payload."""
    error: ErrorDetail


class ProxyError(Exception):
    """Base class for failures raised by the proxy itself."""

    status_code = 500
    prefix = "Proxy error"

    def __init__(self, detail: str, prefix: str = None):
        super().__init__(detail)
        self.detail = detail
        if prefix is not None:
            self.prefix = prefix

    @property
    def message(self) -> str:
        return f"{self.prefix}: {self.detail}"

    def envelope(self) -> ErrorEnvelope:
        return ErrorEnvelope(error=ErrorDetail(message=self.message))

    def to_response(self) -> JSONResponse:
        return JSONResponse(
            content=self.envelope().model_dump(),
            status_code=self.status_code,
        )


class MalformedRequestError(ProxyError):
    """The inbound request could not be read or framed."""

    status_code = 400
    prefix = "Failed to read request body"


class GatewayError(ProxyError):
    """The upstream could not be reached (connect, timeout, TLS, DNS)."""

    status_code = 502
    prefix = "Failed to send request to upstream"


class InternalProxyError(ProxyError):
    """Unexpected failure inside the proxy."""

    status_code = 500
    prefix = "Internal proxy error"
