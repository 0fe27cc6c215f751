"""Main CLI implementation using Typer."""

import asyncio
from enum import Enum
from pathlib import Path
from typing import Any, Callable, List, Optional

import typer
from docker.errors import DockerException
from pydantic import ValidationError
from rich.console import Console

from shunt.cli.commands import (
    check_engine,
    intercept_container,
    tunnel_networks,
    tunnel_port,
    tunnel_prepare,
    tunnel_start,
    tunnel_status,
    tunnel_stop,
)
from shunt.config import ConfigManager
from shunt.errors import ShuntError
from shunt.providers.engine import DockerEngine
from shunt.utils.logging import setup_logging


# Create Typer app
app = typer.Typer(
    name="shuntctl",
    help="Shunt - transparent HTTP(S) interception for Docker containers",
    add_completion=False,
)

# Console for rich output
console = Console(stderr=True)


class InterceptionMode(str, Enum):
    mount = "mount"
    inject = "inject"


ConfigOption = typer.Option(None, "--config", "-c", help="Config file path")
LogLevelOption = typer.Option(None, "--log-level", "-l", help="Override the configured log level")


async def _invoke(
    handler: Callable[..., Any],
    config_path: Optional[Path],
    log_level: Optional[str],
    **kwargs: Any,
):
    config = await ConfigManager(config_path).load()
    setup_logging(log_level or config.log_level)
    engine = DockerEngine(config=config.docker)
    await handler(engine, config, **kwargs)


def _run_cli_command(
    handler: Callable[..., Any],
    config_path: Optional[Path] = None,
    log_level: Optional[str] = None,
    **kwargs: Any,
):
    """Helper to run a CLI command against the engine with error handling."""
    try:
        asyncio.run(_invoke(handler, config_path, log_level, **kwargs))
    except (ShuntError, DockerException, FileNotFoundError, ValidationError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e


@app.command("intercept")
def intercept_command(
    container: str = typer.Argument(..., help="Container name or ID"),
    proxy_port: int = typer.Option(..., "--proxy-port", "-p", min=1, max=65535, help="Proxy port"),
    cert: Path = typer.Option(
        ..., "--cert", exists=True, dir_okay=False, readable=True, help="CA certificate (PEM)"
    ),
    mode: InterceptionMode = typer.Option(
        InterceptionMode.mount, "--mode", "-m", help="Bind-mount or copy in the override files"
    ),
    overrides_dir: Optional[Path] = typer.Option(
        None, "--overrides-dir", file_okay=False, help="Override files directory"
    ),
    config: Optional[Path] = ConfigOption,
    log_level: Optional[str] = LogLevelOption,
):
    """Recreate a running container with its traffic sent through the proxy."""
    _run_cli_command(
        intercept_container,
        config_path=config,
        log_level=log_level,
        container=container,
        proxy_port=proxy_port,
        cert=cert,
        mode=mode.value,
        overrides_dir=overrides_dir,
    )


# Tunnel subcommands
tunnel_app = typer.Typer(help="Docker tunnel commands")
app.add_typer(tunnel_app, name="tunnel")


@tunnel_app.command("prepare")
def tunnel_prepare_command(
    config: Optional[Path] = ConfigOption,
    log_level: Optional[str] = LogLevelOption,
):
    """Pre-pull the tunnel image."""
    _run_cli_command(tunnel_prepare, config_path=config, log_level=log_level)


@tunnel_app.command("start")
def tunnel_start_command(
    proxy_port: int = typer.Argument(..., min=1, max=65535, help="Proxy port"),
    config: Optional[Path] = ConfigOption,
    log_level: Optional[str] = LogLevelOption,
):
    """Ensure the tunnel for a proxy is running."""
    _run_cli_command(tunnel_start, config_path=config, log_level=log_level, proxy_port=proxy_port)


@tunnel_app.command("networks")
def tunnel_networks_command(
    proxy_port: int = typer.Argument(..., min=1, max=65535, help="Proxy port"),
    networks: Optional[List[str]] = typer.Argument(None, help="Network IDs to attach"),
    config: Optional[Path] = ConfigOption,
    log_level: Optional[str] = LogLevelOption,
):
    """Attach the tunnel to exactly these networks."""
    _run_cli_command(
        tunnel_networks,
        config_path=config,
        log_level=log_level,
        proxy_port=proxy_port,
        networks=networks or [],
    )


@tunnel_app.command("port")
def tunnel_port_command(
    proxy_port: int = typer.Argument(..., min=1, max=65535, help="Proxy port"),
    config: Optional[Path] = ConfigOption,
    log_level: Optional[str] = LogLevelOption,
):
    """Print the local port of the tunnel's SOCKS endpoint."""
    _run_cli_command(tunnel_port, config_path=config, log_level=log_level, proxy_port=proxy_port)


@tunnel_app.command("status")
def tunnel_status_command(
    proxy_port: int = typer.Argument(..., min=1, max=65535, help="Proxy port"),
    config: Optional[Path] = ConfigOption,
    log_level: Optional[str] = LogLevelOption,
):
    """Show tunnel container state."""
    _run_cli_command(tunnel_status, config_path=config, log_level=log_level, proxy_port=proxy_port)


@tunnel_app.command("stop")
def tunnel_stop_command(
    target: str = typer.Argument(..., help="Proxy port, or 'all'"),
    config: Optional[Path] = ConfigOption,
    log_level: Optional[str] = LogLevelOption,
):
    """Kill and remove tunnel containers."""
    if target != "all":
        if not target.isdigit():
            console.print("[red]Error:[/red] Specify a proxy port or 'all'")
            raise typer.Exit(1)
        target = int(target)
    _run_cli_command(tunnel_stop, config_path=config, log_level=log_level, target=target)


@app.command("check")
def check_command(
    config: Optional[Path] = ConfigOption,
    log_level: Optional[str] = LogLevelOption,
):
    """Check the Docker engine is reachable."""
    _run_cli_command(check_engine, config_path=config, log_level=log_level)


def main():
    """Main entry point for CLI."""
    app()
