"""
Shunt - transparent HTTP(S) interception for Docker containers.

Recreates running containers with proxy settings and a trusted CA
injected, and manages the SOCKS tunnel containers that give a proxy
access to intercepted container networks.
"""

__version__ = "1.0.0"

# Re-export key components for easier access
from shunt.models.config import ShuntConfig
from shunt.models.interception import InterceptionSpec
from shunt.providers.replacer import ContainerReplacer
from shunt.providers.tunnel import TunnelProvider

__all__ = [
    "ShuntConfig",
    "InterceptionSpec",
    "ContainerReplacer",
    "TunnelProvider",
]
