"""
Configuration management for OpenAI Proxy.

Resolves a single immutable ProxyConfig at startup from, lowest priority
first: built-in defaults, a YAML file, a .env file and APP_* environment
variables. YAML values support ${VAR} expansion.
"""

import os
import re
import logging
from pathlib import Path
from dataclasses import dataclass
from typing import Optional, Dict, Any, Mapping
from urllib.parse import urlsplit

import yaml
from dotenv import load_dotenv

logger = logging.getLogger("openai-proxy.config")

DEFAULT_CONFIG_FILE = "config.yaml"
DEFAULT_UPSTREAM_BASE_URL = "https://api.openai.com"
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8080
DEFAULT_REQUEST_TIMEOUT = 300.0
DEFAULT_CONNECT_TIMEOUT = 10.0

ENV_PREFIX = "APP_"


class ConfigError(Exception):
    """Configuration could not be resolved into a usable ProxyConfig."""


@dataclass(frozen=True)
class ProxyConfig:
    """Resolved proxy configuration, shared read-only by every request."""
    upstream_base_url: str
    upstream_api_key: str
    bind_host: str = DEFAULT_HOST
    bind_port: int = DEFAULT_PORT
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    cors_enabled: bool = True
    log_level: str = "INFO"

    def __post_init__(self):
        # Paths are appended verbatim, so the base never ends with "/"
        object.__setattr__(self, "upstream_base_url", self.upstream_base_url.rstrip("/"))

    @property
    def bind_address(self) -> str:
        return f"{self.bind_host}:{self.bind_port}"

    @property
    def masked_api_key(self) -> str:
        return mask_secret(self.upstream_api_key)


# APP_<suffix> -> ProxyConfig field
ENV_SETTINGS = {
    "OPENAI_API_KEY": "upstream_api_key",
    "OPENAI_API_BASE": "upstream_base_url",
    "SERVER_HOST": "bind_host",
    "SERVER_PORT": "bind_port",
    "REQUEST_TIMEOUT": "request_timeout",
    "CONNECT_TIMEOUT": "connect_timeout",
    "CORS_ENABLED": "cors_enabled",
    "LOG_LEVEL": "log_level",
}


def mask_secret(value: Optional[str], visible: int = 10) -> str:
    """Show only the first characters of a secret."""
    if not value:
        return "<unset>"
    return f"{value[:visible]}***"


def expand_env_vars(value: Any) -> Any:
    """Recursively expand environment variables in config values."""
    if isinstance(value, str):
        # Match ${VAR} or $VAR patterns
        pattern = r'\$\{([^}]+)\}|\$([A-Za-z_][A-Za-z0-9_]*)'

        def replace(match):
            var_name = match.group(1) or match.group(2)
            return os.environ.get(var_name, match.group(0))

        return re.sub(pattern, replace, value)
    elif isinstance(value, dict):
        return {k: expand_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [expand_env_vars(v) for v in value]
    return value


def parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off"):
        return False
    raise ConfigError(f"Invalid boolean value: {value!r}")


def _read_yaml(path: Path) -> Dict[str, Any]:
    with open(path) as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    return expand_env_vars(raw)


def settings_from_file(data: Dict[str, Any]) -> Dict[str, Any]:
    """Flatten the YAML layout into ProxyConfig field names."""
    settings: Dict[str, Any] = {}

    upstream = data.get("upstream") or {}
    server = data.get("server") or {}
    cors = data.get("cors") or {}
    logging_data = data.get("logging") or {}

    pairs = [
        (upstream, "base_url", "upstream_base_url"),
        (upstream, "api_key", "upstream_api_key"),
        (upstream, "timeout", "request_timeout"),
        (upstream, "connect_timeout", "connect_timeout"),
        (server, "host", "bind_host"),
        (server, "port", "bind_port"),
        (cors, "enabled", "cors_enabled"),
        (logging_data, "level", "log_level"),
    ]
    for section, key, name in pairs:
        if section.get(key) is not None:
            settings[name] = section[key]

    return settings


def settings_from_env(environ: Mapping[str, str]) -> Dict[str, Any]:
    """Collect APP_* overrides."""
    settings = {}
    for suffix, name in ENV_SETTINGS.items():
        value = environ.get(ENV_PREFIX + suffix)
        if value is not None and value != "":
            settings[name] = value
    return settings


def validate_base_url(url: str) -> str:
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise ConfigError(
            f"Upstream base URL must be an absolute http(s) URL, got {url!r}"
        )
    if parts.query or parts.fragment:
        raise ConfigError(f"Upstream base URL must not carry a query or fragment: {url!r}")
    return url.rstrip("/")


def build_config(settings: Dict[str, Any]) -> ProxyConfig:
    """Validate merged settings and freeze them into a ProxyConfig."""
    api_key = str(settings.get("upstream_api_key") or "").strip()
    # An unexpanded ${VAR} means the variable was never exported
    if not api_key or api_key.startswith("$"):
        raise ConfigError(
            "Upstream API key is not set. Add upstream.api_key to the config "
            f"file or set {ENV_PREFIX}OPENAI_API_KEY"
        )

    base_url = validate_base_url(
        str(settings.get("upstream_base_url", DEFAULT_UPSTREAM_BASE_URL)).strip()
    )

    try:
        port = int(settings.get("bind_port", DEFAULT_PORT))
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid server port: {settings.get('bind_port')!r}") from e
    if not 1 <= port <= 65535:
        raise ConfigError(f"Server port out of range: {port}")

    timeouts = {}
    for name, default in (
        ("request_timeout", DEFAULT_REQUEST_TIMEOUT),
        ("connect_timeout", DEFAULT_CONNECT_TIMEOUT),
    ):
        try:
            timeouts[name] = float(settings.get(name, default))
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid {name}: {settings.get(name)!r}") from e
        if timeouts[name] <= 0:
            raise ConfigError(f"{name} must be positive, got {timeouts[name]}")

    log_level = str(settings.get("log_level", "INFO")).upper()
    if not isinstance(logging.getLevelName(log_level), int):
        raise ConfigError(f"Unknown log level: {log_level}")

    return ProxyConfig(
        upstream_base_url=base_url,
        upstream_api_key=api_key,
        bind_host=str(settings.get("bind_host", DEFAULT_HOST)),
        bind_port=port,
        request_timeout=timeouts["request_timeout"],
        connect_timeout=timeouts["connect_timeout"],
        cors_enabled=parse_bool(settings.get("cors_enabled", True)),
        log_level=log_level,
    )


def load_settings(
    path: Optional[str | Path] = None,
    environ: Optional[Mapping[str, str]] = None,
    load_env_file: bool = True,
) -> Dict[str, Any]:
    """Merge file and environment settings without validating them.

    An explicit ``path`` must exist. Without one, ``config.yaml`` in the
    working directory is read when present.
    """
    if load_env_file:
        # Variables already set in the process win over .env
        load_dotenv(Path.cwd() / ".env", override=False)

    if environ is None:
        environ = os.environ

    settings: Dict[str, Any] = {}

    if path is not None:
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")
        settings.update(settings_from_file(_read_yaml(path)))
        logger.debug(f"Loaded config file {path}")
    elif Path(DEFAULT_CONFIG_FILE).exists():
        settings.update(settings_from_file(_read_yaml(Path(DEFAULT_CONFIG_FILE))))
        logger.debug(f"Loaded config file {DEFAULT_CONFIG_FILE}")

    settings.update(settings_from_env(environ))
    return settings


def load_config(
    path: Optional[str | Path] = None,
    environ: Optional[Mapping[str, str]] = None,
    load_env_file: bool = True,
) -> ProxyConfig:
    """Resolve configuration from file and environment."""
    return build_config(load_settings(path, environ, load_env_file))


def create_default_config() -> str:
    """Generate default configuration YAML."""
    return """# OpenAI Proxy Configuration
#
# Every value can be overridden with an APP_* environment variable,
# e.g. APP_OPENAI_API_KEY, APP_OPENAI_API_BASE, APP_SERVER_PORT.

upstream:
  base_url: https://api.openai.com
  api_key: ${OPENAI_API_KEY}
  timeout: 300          # seconds for the whole upstream call
  connect_timeout: 10

server:
  host: 127.0.0.1
  port: 8080

cors:
  enabled: true

logging:
  level: INFO
"""
