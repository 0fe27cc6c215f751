"""Configuration models."""

import posixpath
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class DockerConfig(BaseModel):
    """Docker engine connection settings."""
    base_url: Optional[str] = Field(default=None, description="Defaults to DOCKER_HOST")
    timeout: int = Field(default=60, ge=1)


class TunnelConfig(BaseModel):
    """SOCKS tunnel container settings."""
    image: str = Field(default="httptoolkit/docker-socks-tunnel:v1.1.0")
    label: str = Field(default="tech.httptoolkit.docker.tunnel")
    name_prefix: str = Field(default="httptoolkit-docker-tunnel")
    internal_port: int = Field(default=1080, ge=1, le=65535)
    bind_host: str = Field(default="127.0.0.1")
    host_hostname: str = Field(default="host.docker.internal")
    fallback_gateway: str = Field(default="172.17.0.1")
    host_gateway_min_version: str = Field(default="20.10")

    def container_name(self, proxy_port: int) -> str:
        """Name of the tunnel container for a proxy port."""
        return f"{self.name_prefix}-{proxy_port}"

    @property
    def port_key(self) -> str:
        return f"{self.internal_port}/tcp"


class InjectionConfig(BaseModel):
    """Settings for containers recreated with interception."""
    root_path: str = Field(default="/http-toolkit-injections")
    overrides_dir: Optional[str] = Field(default=None, description="Host directory of override files")
    stop_timeout: int = Field(default=1, ge=0)
    host_ip: str = Field(default="172.17.0.1")
    target_platform: str = Field(default="linux")

    @field_validator("root_path")
    @classmethod
    def validate_root_path(cls, v):
        """Injection root must be an absolute container path."""
        if not v.startswith("/"):
            raise ValueError(f"Injection root must be absolute: {v}")
        return v.rstrip("/") or "/"

    @property
    def overrides_path(self) -> str:
        return posixpath.join(self.root_path, "overrides")

    @property
    def ca_path(self) -> str:
        return posixpath.join(self.root_path, "ca.pem")


class ShuntConfig(BaseModel):
    """Main configuration model."""
    model_config = ConfigDict(extra="ignore")

    log_level: str = Field(default="INFO")
    docker: DockerConfig = Field(default_factory=DockerConfig)
    tunnel: TunnelConfig = Field(default_factory=TunnelConfig)
    injection: InjectionConfig = Field(default_factory=InjectionConfig)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}")
        return v.upper()
