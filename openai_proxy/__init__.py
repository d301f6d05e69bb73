"""
OpenAI Proxy - Transparent Reverse Proxy for OpenAI-compatible APIs

Keeps the upstream API key on the server: clients call the proxy with any
token, the proxy forwards every request with the real credential.
"""

__version__ = "0.1.0"

from .config import ProxyConfig, ConfigError, load_config
from .forwarder import ForwardingEngine, InboundRequest, build_outbound_request
from .server import create_app

__all__ = [
    "__version__",
    "ProxyConfig",
    "ConfigError",
    "load_config",
    "ForwardingEngine",
    "InboundRequest",
    "build_outbound_request",
    "create_app",
]
