"""Interception request models."""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class InterceptionSpec(BaseModel):
    """How a single container should be intercepted."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    # 'mount' bind-mounts the override files, 'inject' copies them into the
    # container filesystem (needed when the host paths aren't reachable)
    mode: Literal["mount", "inject"] = Field(default="mount")
    proxy_port: int = Field(..., ge=1, le=65535)
    cert_content: str = Field(..., description="PEM encoded CA certificate")
    cert_path: str = Field(..., description="Host path of the CA certificate")


class OverrideContext(BaseModel):
    """Environment of the intercepted process, as seen by the env generator."""
    model_config = ConfigDict(frozen=True)

    host_ip: str
    override_path: str
    target_platform: str = Field(default="linux")
