"""Pydantic models for configuration and validation."""

from shunt.models.config import ShuntConfig, DockerConfig, TunnelConfig, InjectionConfig
from shunt.models.interception import InterceptionSpec, OverrideContext
from shunt.models.tunnel import TunnelState

__all__ = [
    "ShuntConfig",
    "DockerConfig",
    "TunnelConfig",
    "InjectionConfig",
    "InterceptionSpec",
    "OverrideContext",
    "TunnelState",
]
