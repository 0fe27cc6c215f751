"""Provider for the per-proxy SOCKS tunnel container."""

import asyncio
import logging
import re
import sys
from typing import Any, Dict, Iterable, Optional, Set, Tuple, Union

from docker.errors import APIError
from packaging.version import Version

from shunt.errors import NoPortMapped
from shunt.models.config import TunnelConfig
from shunt.models.tunnel import TunnelState
from shunt.providers.engine import DockerEngine, gather_settled, is_not_connected


logger = logging.getLogger(__name__)

BUILTIN_BRIDGE_FILTERS = {"driver": ["bridge"], "type": ["builtin"]}

_VERSION_RE = re.compile(r"(\d+)(?:\.(\d+))?(?:\.(\d+))?")


def coerce_version(raw: Optional[str]) -> Version:
    """Parse engine version strings like '20.10.7' or '24.0.0-rc.1' loosely."""
    match = _VERSION_RE.search(raw or "")
    if not match:
        return Version("0.0.0")
    return Version(".".join(part or "0" for part in match.groups()))


class TunnelProvider:
    """Manages the SOCKS tunnel container for each proxy port.

    Parallel mutation of one container's state is asking for trouble, so a
    single lock covers every tunnel operation, across all proxy ports.
    """

    def __init__(self, engine: DockerEngine, config: Optional[TunnelConfig] = None):
        """Initialize tunnel provider."""
        self.engine = engine
        self.config = config or TunnelConfig()
        self._lock = asyncio.Lock()

    def container_name(self, proxy_port: int) -> str:
        return self.config.container_name(proxy_port)

    async def prepare(self) -> None:
        """Pre-pull the tunnel image so it's ready when needed. Never raises."""
        if not await self.engine.ping():
            logger.debug("Docker unavailable, skipping tunnel image pull")
            return

        async with self._lock:
            try:
                await self.engine.pull_image(self.config.image)
            except Exception as e:
                logger.warning(f"Failed to pre-pull tunnel image {self.config.image}: {e}")

    async def status(self, proxy_port: int) -> TunnelState:
        """Check the current state of a tunnel container."""
        container = await self.engine.find_container(self.container_name(proxy_port))
        if container is None:
            return TunnelState.ABSENT
        if container["State"].get("Running"):
            return TunnelState.RUNNING
        return TunnelState.STOPPED

    async def ensure_running(self, proxy_port: int) -> None:
        """Make sure the tunnel container exists and is running.

        This does not connect any networks; use update_networks for that.
        """
        async with self._lock:
            if not await self.engine.image_exists(self.config.image):
                await self.engine.pull_image(self.config.image)

            name = self.container_name(proxy_port)
            container = await self.engine.find_container(name)
            if container is None:
                logger.info(f"Creating tunnel container {name}")
                await self.engine.create_container(
                    await self._tunnel_container_config(proxy_port), name=name
                )
                container = await self.engine.inspect_container(name)

            if not container["State"].get("Running"):
                logger.info(f"Starting tunnel container {name}")
                await self.engine.start_container(container["Id"])
            else:
                logger.debug(f"Tunnel container {name} already running")

    async def _tunnel_container_config(self, proxy_port: int) -> Dict[str, Any]:
        port_key = self.config.port_key
        host_config: Dict[str, Any] = {
            "AutoRemove": True,
            "PortBindings": {
                # Loopback only: remote clients must not be able to tunnel into
                # containers. No HostPort, so the engine picks a free one.
                port_key: [{"HostIp": self.config.bind_host, "HostPort": ""}],
            },
        }

        if sys.platform.startswith("linux"):
            # The host hostname isn't defined by default on Linux
            gateway = await self._host_gateway()
            host_config["ExtraHosts"] = [f"{self.config.host_hostname}:{gateway}"]

        return {
            "Image": self.config.image,
            "Labels": {self.config.label: str(proxy_port)},
            "ExposedPorts": {port_key: {}},
            "HostConfig": host_config,
        }

    async def _host_gateway(self) -> str:
        """Address the tunnel should use to reach the host."""
        version_data = await self.engine.version()
        engine_version = coerce_version(version_data.get("Version"))
        if engine_version >= Version(self.config.host_gateway_min_version):
            return "host-gateway"

        # Older engines: use the default bridge gateway, which we're always connected to
        bridge = await self._default_bridge()
        gateway = None
        if bridge:
            ipam_configs = (bridge.get("IPAM") or {}).get("Config") or []
            if ipam_configs:
                gateway = ipam_configs[0].get("Gateway")
        return gateway or self.config.fallback_gateway

    async def _default_bridge(self) -> Optional[Dict[str, Any]]:
        networks = await self.engine.list_networks(filters=BUILTIN_BRIDGE_FILTERS)
        return networks[0] if networks else None

    async def update_networks(
        self,
        proxy_port: int,
        networks: Iterable[str],
    ) -> Tuple[Set[str], Set[str]]:
        """Connect the tunnel to exactly ``networks`` plus the default bridge.

        Recreates the tunnel first if it has disappeared. Returns the
        (connected, disconnected) network IDs.
        """
        bridge = await self._default_bridge()
        bridge_id = bridge["Id"] if bridge else None

        name = self.container_name(proxy_port)
        if await self.engine.find_container(name) is None:
            await self.ensure_running(proxy_port)

        async with self._lock:
            # Must inspect inside the lock, to act on current membership
            container = await self.engine.inspect_container(name)

            expected = set(networks)
            if bridge_id:
                # The bridge gateway is our route to the host, so never drop it
                expected.add(bridge_id)

            attached = (container.get("NetworkSettings") or {}).get("Networks") or {}
            current = {network["NetworkID"] for network in attached.values()}

            missing = expected - current
            extra = current - expected

            await gather_settled(
                *(self.engine.connect_network(network, container["Id"]) for network in missing),
                *(self._disconnect(network, container["Id"]) for network in extra),
            )

        if missing or extra:
            logger.info(
                f"Tunnel {name} networks updated: +{len(missing)} -{len(extra)}"
            )
        return missing, extra

    async def _disconnect(self, network_id: str, container_id: str) -> None:
        try:
            await self.engine.disconnect_network(network_id, container_id)
        except APIError as e:
            if not is_not_connected(e):
                raise
            logger.debug(f"Tunnel already disconnected from {network_id}")

    async def get_port(self, proxy_port: int) -> int:
        """Host port on which the tunnel's SOCKS endpoint is published."""
        name = self.container_name(proxy_port)
        container = await self.engine.find_container(name)
        if container is None:
            # Can't get the container, recreate it first
            await self.ensure_running(proxy_port)
            container = await self.engine.inspect_container(name)

        port_key = self.config.port_key
        ports = (container.get("NetworkSettings") or {}).get("Ports") or {}
        for mapping in ports.get(port_key) or []:
            if mapping.get("HostIp") == self.config.bind_host:
                return int(mapping["HostPort"])

        raise NoPortMapped(name, port_key)

    async def stop(self, proxy_port: Union[int, str]) -> int:
        """Kill and remove tunnel containers for one proxy port, or 'all'.

        Best effort: individual failures are logged and skipped. Returns the
        number of tunnel containers found.
        """
        if proxy_port == "all":
            label_filter = self.config.label
        else:
            label_filter = f"{self.config.label}={proxy_port}"

        async with self._lock:
            containers = await self.engine.list_containers(
                filters={"label": [label_filter]}, all=True
            )
            await asyncio.gather(*(
                self._kill_and_remove(container["Id"]) for container in containers
            ))

        logger.info(f"Stopped {len(containers)} tunnel container(s) for {proxy_port}")
        return len(containers)

    async def _kill_and_remove(self, container_id: str) -> None:
        try:
            await self.engine.kill_container(container_id)
        except Exception as e:
            logger.debug(f"Failed to kill tunnel container {container_id}: {e}")
        try:
            await self.engine.remove_container(container_id)
        except Exception as e:
            logger.debug(f"Failed to remove tunnel container {container_id}: {e}")


_tunnel_provider: Optional[TunnelProvider] = None


def get_tunnel_provider(
    engine: Optional[DockerEngine] = None,
    config: Optional[TunnelConfig] = None,
) -> TunnelProvider:
    """Process-wide tunnel provider, so one lock guards every tunnel.

    The engine and config only take effect on the first call; later calls
    get the existing provider. Its lock binds to the event loop that first
    waits on it, so the provider must only be used from a single loop.
    """
    global _tunnel_provider
    if _tunnel_provider is None:
        _tunnel_provider = TunnelProvider(engine or DockerEngine(), config)
    elif (engine is not None and engine is not _tunnel_provider.engine) or (
        config is not None and config != _tunnel_provider.config
    ):
        logger.warning("Tunnel provider already created, ignoring new engine/config")
    return _tunnel_provider
