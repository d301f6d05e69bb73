"""
OpenAI Proxy CLI

Command-line interface for the OpenAI Proxy server.
"""

import sys
import dataclasses
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

from . import __version__
from .config import (
    DEFAULT_CONFIG_FILE,
    DEFAULT_PORT,
    ConfigError,
    ProxyConfig,
    load_config,
    load_settings,
    create_default_config,
    validate_base_url,
)


console = Console()


def _resolve(ctx) -> ProxyConfig:
    """Load config or exit with a readable message."""
    try:
        return load_config(ctx.obj.get("config_path"))
    except ConfigError as e:
        console.print(f"[red]✗[/red] Failed to load configuration: {e}")
        console.print(
            f"Create a {DEFAULT_CONFIG_FILE} ([cyan]openai-proxy init[/cyan]) "
            "or set APP_OPENAI_API_KEY"
        )
        sys.exit(1)


@click.group()
@click.version_option(__version__, prog_name="openai-proxy")
@click.option("--config", "-c", "config_path", type=click.Path(), help="Path to config file")
@click.pass_context
def cli(ctx, config_path: str):
    """OpenAI Proxy - keep your API key on the server"""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


# =============================================================================
# Server Commands
# =============================================================================

@cli.command()
@click.option("--host", "-h", default=None, help="Host to bind to")
@click.option("--port", "-p", default=None, type=int, help="Port to bind to")
@click.option("--upstream", "-u", default=None, help="Upstream API base URL")
@click.pass_context
def start(ctx, host: str, port: int, upstream: str):
    """Start the proxy server."""
    config = _resolve(ctx)

    # Override with CLI options
    overrides = {}
    if host:
        overrides["bind_host"] = host
    if port:
        overrides["bind_port"] = port
    if upstream:
        try:
            overrides["upstream_base_url"] = validate_base_url(upstream)
        except ConfigError as e:
            console.print(f"[red]✗[/red] {e}")
            sys.exit(1)
    if overrides:
        config = dataclasses.replace(config, **overrides)

    console.print(Panel(
        f"[bold]OpenAI Proxy v{__version__}[/bold]\n"
        f"Listening: [cyan]http://{config.bind_address}[/cyan]\n"
        f"Upstream: [cyan]{config.upstream_base_url}[/cyan]\n"
        f"API Key: {config.masked_api_key}",
        title="🚀 Starting"
    ))
    console.print(f"Usage: http://{config.bind_address}/v1/chat/completions")

    from .server import main as server_main
    server_main(config=config)


@cli.command()
@click.option("--port", "-p", default=None, type=int, help="Proxy port")
@click.pass_context
def status(ctx, port: int):
    """Check whether the proxy is running."""
    import httpx

    if port is None:
        # The API key is not needed to find the port
        try:
            settings = load_settings(ctx.obj.get("config_path"))
            port = int(settings.get("bind_port", DEFAULT_PORT))
        except (ConfigError, TypeError, ValueError) as e:
            console.print(f"[red]✗[/red] Failed to resolve proxy port: {e}")
            sys.exit(1)

    try:
        response = httpx.get(f"http://localhost:{port}/", timeout=5.0)
        response.raise_for_status()
        console.print(f"[green]✓[/green] {response.text} (port {port})")
    except httpx.HTTPError as e:
        console.print(f"[red]✗[/red] Proxy not running on port {port}: {e}")
        sys.exit(1)


# =============================================================================
# Config Commands
# =============================================================================

@cli.command()
@click.option("--force", is_flag=True, help="Overwrite an existing file")
def init(force: bool):
    """Initialize a new configuration file."""
    config_path = Path(DEFAULT_CONFIG_FILE)

    if config_path.exists() and not force:
        if not click.confirm(f"{config_path} already exists. Overwrite?"):
            return

    config_path.write_text(create_default_config())
    console.print(f"[green]✓[/green] Created {config_path}")
    console.print("\nSet OPENAI_API_KEY (or edit the file), then run:")
    console.print("  [cyan]openai-proxy start[/cyan]")


@cli.command("config")
@click.pass_context
def show_config(ctx):
    """Show the resolved configuration."""
    config = _resolve(ctx)

    table = Table(title="Resolved Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")

    table.add_row("Upstream", config.upstream_base_url)
    table.add_row("API Key", config.masked_api_key)
    table.add_row("Listen", config.bind_address)
    table.add_row("Timeout", f"{config.request_timeout:g}s (connect {config.connect_timeout:g}s)")
    table.add_row("CORS", "✓" if config.cors_enabled else "✗")
    table.add_row("Log level", config.log_level)

    console.print(table)


# =============================================================================
# Main
# =============================================================================

def main():
    """Main entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
