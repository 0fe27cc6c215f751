"""Command implementations for CLI."""

import asyncio
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional, Union

from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from shunt.errors import ShuntError
from shunt.models.config import ShuntConfig
from shunt.models.interception import InterceptionSpec
from shunt.models.tunnel import TunnelState
from shunt.providers.engine import DockerEngine
from shunt.providers.replacer import ContainerReplacer
from shunt.providers.tunnel import TunnelProvider, get_tunnel_provider


console = Console()
stderr_console = Console(stderr=True)


@contextmanager
def _spinner(description: str) -> Iterator[None]:
    """Show a progress spinner while an engine operation runs."""
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=stderr_console,
        transient=True,
    ) as progress:
        task = progress.add_task(description, total=None)
        yield
        progress.update(task, completed=True)


def _tunnel(engine: DockerEngine, config: ShuntConfig) -> TunnelProvider:
    return get_tunnel_provider(engine, config.tunnel)


async def intercept_container(
    engine: DockerEngine,
    config: ShuntConfig,
    container: str,
    proxy_port: int,
    cert: Path,
    mode: str = "mount",
    overrides_dir: Optional[Path] = None,
):
    """Recreate a running container with interception enabled."""
    overrides = overrides_dir or config.injection.overrides_dir
    if not overrides:
        raise ShuntError("No override files directory configured (use --overrides-dir)")
    overrides_path = Path(overrides).resolve()
    if not overrides_path.is_dir():
        raise ShuntError(f"Override files directory not found: {overrides_path}")

    cert_path = Path(cert).resolve()
    cert_content = await asyncio.to_thread(cert_path.read_text)

    spec = InterceptionSpec(
        mode=mode,
        proxy_port=proxy_port,
        cert_content=cert_content,
        cert_path=str(cert_path),
    )
    replacer = ContainerReplacer(engine, overrides_path, config=config.injection)

    with _spinner(f"Intercepting {container}..."):
        new_id = await replacer.replace(container, spec)

    console.print(
        f"[green]✓[/green] Container {container} now proxied via port {proxy_port} "
        f"([dim]{new_id[:12]}[/dim])"
    )


async def tunnel_prepare(engine: DockerEngine, config: ShuntConfig):
    """Pre-pull the tunnel image."""
    with _spinner(f"Pulling {config.tunnel.image}..."):
        await _tunnel(engine, config).prepare()
    console.print(f"Tunnel image {config.tunnel.image} prepared")


async def tunnel_start(engine: DockerEngine, config: ShuntConfig, proxy_port: int):
    """Ensure the tunnel for a proxy port is running and show its port."""
    tunnel = _tunnel(engine, config)
    with _spinner(f"Starting tunnel for proxy port {proxy_port}..."):
        await tunnel.ensure_running(proxy_port)
        port = await tunnel.get_port(proxy_port)
    console.print(
        f"[green]✓[/green] Tunnel {tunnel.container_name(proxy_port)} "
        f"listening on {config.tunnel.bind_host}:{port}"
    )


async def tunnel_networks(
    engine: DockerEngine,
    config: ShuntConfig,
    proxy_port: int,
    networks: List[str],
):
    """Attach the tunnel to exactly the given networks (plus the default bridge)."""
    tunnel = _tunnel(engine, config)
    with _spinner("Updating tunnel networks..."):
        connected, disconnected = await tunnel.update_networks(proxy_port, networks)

    if not connected and not disconnected:
        console.print("Tunnel networks already up to date")
        return

    table = Table(title=f"Tunnel {tunnel.container_name(proxy_port)}")
    table.add_column("Network", style="cyan")
    table.add_column("Change")
    for network in sorted(connected):
        table.add_row(network[:12], "[green]connected[/green]")
    for network in sorted(disconnected):
        table.add_row(network[:12], "[yellow]disconnected[/yellow]")
    console.print(table)


async def tunnel_port(engine: DockerEngine, config: ShuntConfig, proxy_port: int):
    """Print the tunnel's host port, alone, for use in scripts."""
    port = await _tunnel(engine, config).get_port(proxy_port)
    console.print(port)


async def tunnel_status(engine: DockerEngine, config: ShuntConfig, proxy_port: int):
    """Show the state of the tunnel for a proxy port."""
    tunnel = _tunnel(engine, config)
    state = await tunnel.status(proxy_port)

    table = Table(title="Docker Tunnel")
    table.add_column("Property", style="cyan")
    table.add_column("Value")
    table.add_row("Container", tunnel.container_name(proxy_port))
    state_color = {
        TunnelState.RUNNING: "green",
        TunnelState.STOPPED: "yellow",
        TunnelState.ABSENT: "red",
    }[state]
    table.add_row("State", f"[{state_color}]{state.value}[/{state_color}]")
    if state == TunnelState.RUNNING:
        table.add_row("Port", str(await tunnel.get_port(proxy_port)))
    console.print(table)


async def tunnel_stop(engine: DockerEngine, config: ShuntConfig, target: Union[int, str]):
    """Remove the tunnel for one proxy port, or every tunnel."""
    with _spinner("Stopping tunnels..."):
        count = await _tunnel(engine, config).stop(target)
    console.print(f"Removed {count} tunnel container(s)")


async def check_engine(engine: DockerEngine, config: ShuntConfig):
    """Show Docker engine details."""
    if not await engine.ping():
        raise ShuntError("Docker engine is not reachable")

    version = await engine.version()
    table = Table(title="Docker Engine")
    table.add_column("Property", style="cyan")
    table.add_column("Value")
    table.add_row("Version", str(version.get("Version", "unknown")))
    table.add_row("API version", str(version.get("ApiVersion", "unknown")))
    table.add_row("Platform", f"{version.get('Os', '?')}/{version.get('Arch', '?')}")
    table.add_row("Tunnel image", config.tunnel.image)
    console.print(table)
