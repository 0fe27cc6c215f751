"""Docker-backed providers for interception."""

from shunt.providers.engine import DockerEngine
from shunt.providers.replacer import ContainerReplacer, build_container_config
from shunt.providers.tunnel import TunnelProvider, get_tunnel_provider

__all__ = [
    "DockerEngine",
    "ContainerReplacer",
    "build_container_config",
    "TunnelProvider",
    "get_tunnel_provider",
]
