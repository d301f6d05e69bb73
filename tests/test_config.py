"""Tests for configuration loading."""

import dataclasses

import pytest
import yaml

from openai_proxy.config import (
    ConfigError,
    ProxyConfig,
    load_config,
    create_default_config,
    mask_secret,
    expand_env_vars,
)


def write_config(tmp_path, data) -> str:
    path = tmp_path / "proxy.yaml"
    path.write_text(yaml.safe_dump(data))
    return str(path)


def test_defaults_from_env_only(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    config = load_config(environ={"APP_OPENAI_API_KEY": "sk-env"}, load_env_file=False)

    assert config.upstream_api_key == "sk-env"
    assert config.upstream_base_url == "https://api.openai.com"
    assert config.bind_host == "127.0.0.1"
    assert config.bind_port == 8080
    assert config.cors_enabled is True


def test_file_values(tmp_path):
    path = write_config(tmp_path, {
        "upstream": {"base_url": "https://llm.internal/", "api_key": "sk-file", "timeout": 60},
        "server": {"host": "0.0.0.0", "port": 9000},
        "cors": {"enabled": False},
        "logging": {"level": "debug"},
    })

    config = load_config(path, environ={}, load_env_file=False)

    assert config.upstream_base_url == "https://llm.internal"
    assert config.upstream_api_key == "sk-file"
    assert config.request_timeout == 60.0
    assert config.bind_address == "0.0.0.0:9000"
    assert config.cors_enabled is False
    assert config.log_level == "DEBUG"


def test_environment_overrides_file(tmp_path):
    path = write_config(tmp_path, {
        "upstream": {"base_url": "https://a.test", "api_key": "sk-file"},
        "server": {"port": 9000},
    })
    environ = {
        "APP_OPENAI_API_KEY": "sk-env",
        "APP_OPENAI_API_BASE": "https://b.test",
        "APP_SERVER_PORT": "7000",
        "APP_CORS_ENABLED": "false",
    }

    config = load_config(path, environ=environ, load_env_file=False)

    assert config.upstream_api_key == "sk-env"
    assert config.upstream_base_url == "https://b.test"
    assert config.bind_port == 7000
    assert config.cors_enabled is False


def test_default_file_in_working_directory(tmp_path, monkeypatch):
    (tmp_path / "config.yaml").write_text("upstream:\n  api_key: sk-cwd\n")
    monkeypatch.chdir(tmp_path)

    config = load_config(environ={}, load_env_file=False)

    assert config.upstream_api_key == "sk-cwd"


def test_dotenv_file_is_loaded(tmp_path, monkeypatch):
    (tmp_path / ".env").write_text("APP_OPENAI_API_KEY=sk-dotenv\n")
    monkeypatch.chdir(tmp_path)
    # Registers the variable so whatever .env sets is undone afterwards
    monkeypatch.setenv("APP_OPENAI_API_KEY", "unused")
    monkeypatch.delenv("APP_OPENAI_API_KEY")

    config = load_config()

    assert config.upstream_api_key == "sk-dotenv"


def test_env_var_expansion(tmp_path, monkeypatch):
    monkeypatch.setenv("MY_UPSTREAM_KEY", "sk-expanded")
    path = write_config(tmp_path, {"upstream": {"api_key": "${MY_UPSTREAM_KEY}"}})

    config = load_config(path, environ={}, load_env_file=False)

    assert config.upstream_api_key == "sk-expanded"


def test_expand_env_vars_leaves_unknown(monkeypatch):
    monkeypatch.delenv("NOPE_NOT_SET", raising=False)
    assert expand_env_vars({"a": ["$NOPE_NOT_SET"]}) == {"a": ["$NOPE_NOT_SET"]}


def test_missing_api_key(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    with pytest.raises(ConfigError, match="API key"):
        load_config(environ={}, load_env_file=False)


def test_unexpanded_api_key_is_missing(tmp_path, monkeypatch):
    monkeypatch.delenv("UNSET_KEY_VAR", raising=False)
    path = write_config(tmp_path, {"upstream": {"api_key": "${UNSET_KEY_VAR}"}})
    with pytest.raises(ConfigError, match="API key"):
        load_config(path, environ={}, load_env_file=False)


def test_explicit_missing_file(tmp_path):
    with pytest.raises(ConfigError, match="not found"):
        load_config(tmp_path / "missing.yaml", environ={}, load_env_file=False)


@pytest.mark.parametrize("environ, message", [
    ({"APP_OPENAI_API_BASE": "api.openai.com"}, "absolute"),
    ({"APP_OPENAI_API_BASE": "ftp://files.test"}, "absolute"),
    ({"APP_OPENAI_API_BASE": "https://a.test?x=1"}, "query"),
    ({"APP_SERVER_PORT": "eighty"}, "port"),
    ({"APP_SERVER_PORT": "70000"}, "out of range"),
    ({"APP_REQUEST_TIMEOUT": "0"}, "positive"),
    ({"APP_CORS_ENABLED": "maybe"}, "boolean"),
    ({"APP_LOG_LEVEL": "chatty"}, "log level"),
])
def test_invalid_values(tmp_path, monkeypatch, environ, message):
    monkeypatch.chdir(tmp_path)
    environ = {"APP_OPENAI_API_KEY": "sk-x", **environ}
    with pytest.raises(ConfigError, match=message):
        load_config(environ=environ, load_env_file=False)


def test_default_template_loads(tmp_path, monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-template")
    path = tmp_path / "config.yaml"
    path.write_text(create_default_config())

    config = load_config(path, environ={}, load_env_file=False)

    assert config.upstream_api_key == "sk-template"
    assert config.upstream_base_url == "https://api.openai.com"
    assert config.bind_port == 8080


def test_config_is_immutable():
    config = ProxyConfig(upstream_base_url="https://a.test", upstream_api_key="k")
    with pytest.raises(dataclasses.FrozenInstanceError):
        config.upstream_api_key = "other"


def test_mask_secret():
    assert mask_secret("sk-1234567890abcdef") == "sk-1234567***"
    assert mask_secret("") == "<unset>"
